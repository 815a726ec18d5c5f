"""
Difficulty / Accuracy Classification

Derived statistics for report rendering. Everything here is computed from
stored tallies and never writes back to them.

A question is Easy when at least 70% of the sheets answered it correctly and
Hard below 30%. Blank answers count towards the total, and a question with no
sheets at all has 0% correct and is therefore Hard.
"""

from datetime import datetime
from enum import Enum
from typing import List, Mapping, Optional

from pydantic import BaseModel

from ljk_analytics.aggregation.schemas import GradeSubjectSnapshot, QuestionTally

EASY_MIN_PCT = 70.0
HARD_BELOW_PCT = 30.0

DEFAULT_CHOICES = ("A", "B", "C", "D", "E")


class Difficulty(str, Enum):
    """Question difficulty bands"""
    EASY = "Easy"
    MEDIUM = "Medium"
    HARD = "Hard"


def _pct(part: int, total: int) -> float:
    return part * 100 / total if total > 0 else 0.0


def correct_percentage(tally: QuestionTally) -> float:
    return _pct(tally.correct, tally.total)


def classify_pct(correct_pct: float) -> Difficulty:
    if correct_pct >= EASY_MIN_PCT:
        return Difficulty.EASY
    if correct_pct < HARD_BELOW_PCT:
        return Difficulty.HARD
    return Difficulty.MEDIUM


def classify_difficulty(tally: QuestionTally) -> Difficulty:
    return classify_pct(correct_percentage(tally))


class ChoiceShare(BaseModel):
    """How many sheets picked one option"""
    choice: str
    count: int
    is_key: bool = False


class QuestionReport(BaseModel):
    """Accuracy breakdown of one question"""
    question_number: int
    correct: int
    incorrect: int
    blank: int
    total: int
    correct_pct: float
    incorrect_pct: float
    blank_pct: float
    difficulty: Difficulty
    choices: List[ChoiceShare]


class SubjectReport(BaseModel):
    """Report for one exam/school/grade/subject"""
    exam_id: str
    school_id: str
    grade_id: str
    subject_id: str
    total_answer: int
    easy_count: int
    medium_count: int
    hard_count: int
    mean_correct_pct: float
    questions: List[QuestionReport]
    updated_at: Optional[datetime] = None


def build_question_report(
    number: int,
    tally: QuestionTally,
    key_choice: Optional[str] = None,
) -> QuestionReport:
    """
    Args:
        number: Question number
        tally: Stored tally of the question
        key_choice: Correct option from the answer key, if known
    """
    total = tally.total
    letters = list(DEFAULT_CHOICES)
    letters.extend(sorted(c for c in tally.choices if c not in DEFAULT_CHOICES))

    return QuestionReport(
        question_number=number,
        correct=tally.correct,
        incorrect=tally.incorrect,
        blank=tally.blank,
        total=total,
        correct_pct=round(_pct(tally.correct, total), 2),
        incorrect_pct=round(_pct(tally.incorrect, total), 2),
        blank_pct=round(_pct(tally.blank, total), 2),
        difficulty=classify_difficulty(tally),
        choices=[
            ChoiceShare(choice=letter, count=tally.choices.get(letter, 0), is_key=letter == key_choice)
            for letter in letters
        ],
    )


def build_report(
    stats: GradeSubjectSnapshot,
    answer_key: Optional[Mapping[str, str]] = None,
) -> SubjectReport:
    """
    Build the per-question report of a statistics document.

    Args:
        stats: Snapshot read from the aggregate store
        answer_key: Question number -> correct option, used to flag the key
    """
    answer_key = answer_key or {}
    questions = [
        build_question_report(int(question_id), stats.detail[question_id], answer_key.get(question_id))
        for question_id in sorted((q for q in stats.detail if q.isdigit()), key=int)
    ]

    bands = [q.difficulty for q in questions]
    mean_correct = sum(q.correct_pct for q in questions) / len(questions) if questions else 0.0

    return SubjectReport(
        exam_id=stats.exam_id,
        school_id=stats.school_id,
        grade_id=stats.grade_id,
        subject_id=stats.subject_id,
        total_answer=stats.total_answer,
        easy_count=bands.count(Difficulty.EASY),
        medium_count=bands.count(Difficulty.MEDIUM),
        hard_count=bands.count(Difficulty.HARD),
        mean_correct_pct=round(mean_correct, 2),
        questions=questions,
        updated_at=stats.updated_at,
    )
