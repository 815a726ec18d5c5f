"""
Unit Tests - Per-Question Tally Aggregator
"""
import pytest

from ljk_analytics.aggregation.events import AnswerSheetRecord
from ljk_analytics.aggregation.increments import GradeSubjectIncrement, GradeSubjectKey, QuestionTallyDelta
from ljk_analytics.aggregation.tally import (
    MalformedAnswerSheet,
    grade_subject_key,
    normalize_choice,
    parse_question_number,
    tally_answer_sheet,
)


def record(answers, **ids):
    ids = {"schoolId": "sch-001", "gradeId": "k7", "subjectId": "mtk", **ids}
    return AnswerSheetRecord.model_validate({"studentAnswers": answers, **ids})


class TestTallyAnswerSheet:
    """Tests for tally_answer_sheet"""

    def test_one_sheet_counts_once(self):
        """Test total_answer is 1 and every question is tallied exactly once"""
        increment = tally_answer_sheet("uts-2025", record({
            "1": {"selected": "A", "isCorrect": True},
            "2": {"selected": "C", "isCorrect": False},
            "3": {"selected": "", "isCorrect": False},
        }))

        assert increment.total_answer == 1
        assert increment.key == GradeSubjectKey("uts-2025", "sch-001", "k7", "mtk")
        assert increment.detail[1] == QuestionTallyDelta(correct=1, choices={"A": 1})
        assert increment.detail[2] == QuestionTallyDelta(incorrect=1, choices={"C": 1})
        assert increment.detail[3] == QuestionTallyDelta(blank=1)

    def test_padded_choice_is_trimmed(self):
        """Test " B " lands in choices["B"] as an incorrect answer"""
        increment = tally_answer_sheet("uts-2025", record({
            "5": {"selected": " B ", "isCorrect": False},
        }))

        tally = increment.detail[5]
        assert tally.choices == {"B": 1}
        assert " B " not in tally.choices
        assert tally.incorrect == 1
        assert tally.correct == 0

    def test_whitespace_only_is_blank(self):
        """Test a whitespace-only selection is blank and adds no choice"""
        increment = tally_answer_sheet("uts-2025", record({"1": {"selected": "  ", "isCorrect": True}}))

        assert increment.detail[1] == QuestionTallyDelta(blank=1)

    def test_null_selection_is_blank(self):
        """Test a null selection reads as blank"""
        increment = tally_answer_sheet("uts-2025", record({"1": {"selected": None}}))

        assert increment.detail[1].blank == 1

    def test_blank_ignores_is_correct(self):
        """Test isCorrect is not consulted for blank answers"""
        increment = tally_answer_sheet("uts-2025", record({"1": {"selected": "", "isCorrect": True}}))

        assert increment.detail[1].correct == 0
        assert increment.detail[1].blank == 1

    def test_no_case_folding(self):
        """Test lower-case letters are kept as given"""
        increment = tally_answer_sheet("uts-2025", record({"1": {"selected": "a", "isCorrect": False}}))

        assert increment.detail[1].choices == {"a": 1}

    @pytest.mark.parametrize("missing", ["schoolId", "gradeId", "subjectId"])
    def test_missing_identifier_refused(self, missing):
        """Test a sheet without school, grade or subject id is refused"""
        sheet = record({"1": {"selected": "A", "isCorrect": True}}, **{missing: None})

        with pytest.raises(MalformedAnswerSheet, match=missing):
            tally_answer_sheet("uts-2025", sheet)

    def test_blank_exam_id_refused(self):
        """Test an empty exam id is refused"""
        with pytest.raises(MalformedAnswerSheet, match="examId"):
            tally_answer_sheet(" ", record({"1": {"selected": "A"}}))

    def test_empty_answers_refused(self):
        """Test a sheet with no answers is refused"""
        with pytest.raises(MalformedAnswerSheet, match="empty"):
            tally_answer_sheet("uts-2025", record({}))

    def test_multi_letter_choice_refuses_whole_sheet(self):
        """Test one unclassifiable answer refuses the whole sheet"""
        sheet = record({
            "1": {"selected": "A", "isCorrect": True},
            "2": {"selected": "AB", "isCorrect": False},
        })

        with pytest.raises(MalformedAnswerSheet, match="invalid choice"):
            tally_answer_sheet("uts-2025", sheet)

    def test_duplicate_question_number_refused(self):
        """Test "1" and "01" address the same question"""
        sheet = record({
            "1": {"selected": "A", "isCorrect": True},
            "01": {"selected": "B", "isCorrect": False},
        })

        with pytest.raises(MalformedAnswerSheet, match="answered twice"):
            tally_answer_sheet("uts-2025", sheet)


class TestParsing:
    """Tests for question number and choice validation"""

    @pytest.mark.parametrize("question_id,expected", [("1", 1), ("25", 25), (" 7 ", 7), ("007", 7)])
    def test_valid_question_numbers(self, question_id, expected):
        assert parse_question_number(question_id) == expected

    @pytest.mark.parametrize("question_id", ["0", "-1", "q1", "1.5", "", "١"])
    def test_invalid_question_numbers(self, question_id):
        with pytest.raises(MalformedAnswerSheet):
            parse_question_number(question_id)

    @pytest.mark.parametrize("selected,expected", [("A", "A"), (" E\n", "E"), ("", ""), ("   ", "")])
    def test_normalize_choice(self, selected, expected):
        assert normalize_choice(selected) == expected

    @pytest.mark.parametrize("selected", ["1", "AB", "?", "A B"])
    def test_invalid_choices(self, selected):
        with pytest.raises(MalformedAnswerSheet):
            normalize_choice(selected)

    def test_grade_subject_key_path(self):
        """Test the document path of a statistics key"""
        key = grade_subject_key("uts-2025", record({"1": {"selected": "A"}}))

        assert key.document_id == "k7_mtk"
        assert key.path == "exams/uts-2025/stats_per_school/sch-001/perGradeSubject/k7_mtk"


class TestIncrementMerge:
    """Tests for merging increments into stored documents"""

    def test_merge_into_empty_document(self):
        increment = GradeSubjectIncrement(key=GradeSubjectKey("e", "s", "g", "m"), total_answer=1)
        increment.question(3).correct += 1
        increment.question(3).choices["D"] = 1

        total, detail = increment.apply_to(0, {})

        assert total == 1
        assert detail == {"3": {"blank": 0, "correct": 1, "incorrect": 0, "choices": {"D": 1}}}

    def test_merge_does_not_mutate_stored(self):
        """Test the stored document is left untouched"""
        stored = {"1": {"blank": 1, "correct": 0, "incorrect": 0, "choices": {}}}
        increment = GradeSubjectIncrement(key=GradeSubjectKey("e", "s", "g", "m"), total_answer=1)
        increment.question(1).incorrect += 1
        increment.question(1).choices["A"] = 1

        total, detail = increment.apply_to(1, stored)

        assert total == 2
        assert detail["1"] == {"blank": 1, "correct": 0, "incorrect": 1, "choices": {"A": 1}}
        assert stored == {"1": {"blank": 1, "correct": 0, "incorrect": 0, "choices": {}}}

    def test_merge_fills_missing_fields(self):
        """Test fields absent from a stored tally read as zero"""
        increment = GradeSubjectIncrement(key=GradeSubjectKey("e", "s", "g", "m"), total_answer=1)
        increment.question(1).blank += 1

        _, detail = increment.apply_to(4, {"1": {"correct": 4}})

        assert detail["1"] == {"blank": 1, "correct": 4, "incorrect": 0, "choices": {}}


class TestImperfectSheets:
    """Tests for sheets that are read but cannot be folded"""

    def test_unreadable_answer_refuses_sheet(self):
        sheet = record({"1": {"selected": "A", "isCorrect": True}, "2": "B"})

        with pytest.raises(MalformedAnswerSheet, match="unreadable answers: 2"):
            tally_answer_sheet("uts-2025", sheet)

    def test_answers_not_a_map_refuses_sheet(self):
        with pytest.raises(MalformedAnswerSheet, match="studentAnswers"):
            tally_answer_sheet("uts-2025", record("A,B,C"))

    def test_padded_ids_address_the_same_document(self):
        """Test " sch-001" and "sch-001" resolve to one key"""
        padded = record({"1": {"selected": "A"}}, schoolId=" sch-001", gradeId="k7 ", subjectId="\tmtk")

        assert grade_subject_key(" uts-2025 ", padded) == GradeSubjectKey("uts-2025", "sch-001", "k7", "mtk")
