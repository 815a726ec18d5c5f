"""
Aggregate Keys and Increment Sets

Write-side value objects. An increment set describes how one event changes
a per-grade-subject document; ``apply_to`` merges it into the stored
document explicitly instead of addressing nested fields by dotted paths.
"""

from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple


@dataclass(frozen=True)
class GradeSubjectKey:
    """Identity of a per-grade-subject statistics document"""
    exam_id: str
    school_id: str
    grade_id: str
    subject_id: str

    @property
    def document_id(self) -> str:
        return f"{self.grade_id}_{self.subject_id}"

    @property
    def path(self) -> str:
        return (
            f"exams/{self.exam_id}/stats_per_school/{self.school_id}"
            f"/perGradeSubject/{self.document_id}"
        )

    def identity(self) -> Dict[str, str]:
        """Primary-key columns of the backing row"""
        return {
            "exam_id": self.exam_id,
            "school_id": self.school_id,
            "grade_id": self.grade_id,
            "subject_id": self.subject_id,
        }


@dataclass
class QuestionTallyDelta:
    """Increments for a single question"""
    blank: int = 0
    correct: int = 0
    incorrect: int = 0
    choices: Dict[str, int] = field(default_factory=dict)

    def apply_to(self, stored: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Return the stored tally with this delta added; ``stored`` is not mutated"""
        stored = stored or {}
        choices = dict(stored.get("choices") or {})
        for choice, count in self.choices.items():
            choices[choice] = int(choices.get(choice, 0)) + count
        return {
            "blank": int(stored.get("blank", 0)) + self.blank,
            "correct": int(stored.get("correct", 0)) + self.correct,
            "incorrect": int(stored.get("incorrect", 0)) + self.incorrect,
            "choices": choices,
        }


@dataclass
class GradeSubjectIncrement:
    """
    Increment set for one ``GradeSubjectStats`` document.

    ``detail`` is keyed by the integer question number; it is converted to
    the string keys of the stored JSON document only when applied.
    """
    key: GradeSubjectKey
    total_answer: int = 0
    detail: Dict[int, QuestionTallyDelta] = field(default_factory=dict)

    def question(self, number: int) -> QuestionTallyDelta:
        return self.detail.setdefault(number, QuestionTallyDelta())

    def apply_to(
        self,
        total_answer: int,
        detail: Optional[Mapping[str, Any]],
    ) -> Tuple[int, Dict[str, Any]]:
        """Merge into a stored ``(total_answer, detail)`` pair"""
        merged = deepcopy(dict(detail or {}))
        for number, delta in self.detail.items():
            question_id = str(number)
            merged[question_id] = delta.apply_to(merged.get(question_id))
        return total_answer + self.total_answer, merged
