"""
Per-Question Tally Aggregator

Turns one answer sheet into the increment set that folds it into its
per-grade-subject statistics document. Pure: the result depends only on the
exam id and the record.

Every question on the sheet lands in exactly one of blank / correct /
incorrect, and a non-blank answer additionally in ``choices[letter]``, so
``blank + correct + incorrect == totalAnswer`` holds per question once all
sheets are folded. Sheets that would break that are refused as a whole.
"""

import re

from ljk_analytics.aggregation.events import AnswerSheetRecord
from ljk_analytics.aggregation.increments import GradeSubjectIncrement, GradeSubjectKey

CHOICE_PATTERN = re.compile(r"[A-Za-z]")


class MalformedAnswerSheet(ValueError):
    """The sheet cannot be folded into per-grade-subject statistics"""


def grade_subject_key(exam_id: str, record: AnswerSheetRecord) -> GradeSubjectKey:
    """
    Resolve the statistics document a sheet belongs to.

    Surrounding whitespace is not part of an id: " sch-001" and "sch-001"
    address the same document.

    Raises:
        MalformedAnswerSheet: exam, school, grade or subject id missing
    """
    fields = (
        ("examId", exam_id),
        ("schoolId", record.school_id),
        ("gradeId", record.grade_id),
        ("subjectId", record.subject_id),
    )
    ids = {name: (value or "").strip() for name, value in fields}
    missing = [name for name, value in ids.items() if not value]
    if missing:
        raise MalformedAnswerSheet(f"missing {', '.join(missing)}")

    return GradeSubjectKey(
        exam_id=ids["examId"],
        school_id=ids["schoolId"],
        grade_id=ids["gradeId"],
        subject_id=ids["subjectId"],
    )


def parse_question_number(question_id: str) -> int:
    """Question ids are positive decimal integers ("1", "25")"""
    text = question_id.strip()
    if not (text.isascii() and text.isdigit()) or int(text) < 1:
        raise MalformedAnswerSheet(f"invalid question number {question_id!r}")
    return int(text)


def normalize_choice(selected: str) -> str:
    """
    Trim surrounding whitespace; an empty result means blank.

    No case folding: letters arrive normalized from the scanner and are kept
    as given.
    """
    choice = selected.strip()
    if choice and not CHOICE_PATTERN.fullmatch(choice):
        raise MalformedAnswerSheet(f"invalid choice {selected!r}")
    return choice


def tally_answer_sheet(exam_id: str, record: AnswerSheetRecord) -> GradeSubjectIncrement:
    """
    Compute the increments for one answer sheet.

    Args:
        exam_id: Exam the sheet was submitted under
        record: The scanned sheet

    Returns:
        GradeSubjectIncrement with ``total_answer == 1`` and one tally per question

    Raises:
        MalformedAnswerSheet: missing ids, unreadable or no answers, or an
            answer that cannot be classified; no partial increment set is produced
    """
    key = grade_subject_key(exam_id, record)
    if record.unreadable:
        raise MalformedAnswerSheet(f"unreadable answers: {', '.join(record.unreadable)}")
    if not record.student_answers:
        raise MalformedAnswerSheet("studentAnswers is empty")

    increment = GradeSubjectIncrement(key=key, total_answer=1)
    for question_id, answer in record.student_answers.items():
        number = parse_question_number(question_id)
        if number in increment.detail:
            raise MalformedAnswerSheet(f"question {number} answered twice")

        choice = normalize_choice(answer.selected)
        tally = increment.question(number)
        if not choice:
            tally.blank += 1
            continue

        tally.choices[choice] = tally.choices.get(choice, 0) + 1
        if answer.is_correct:
            tally.correct += 1
        else:
            tally.incorrect += 1

    return increment
