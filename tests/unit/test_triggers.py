"""
Unit Tests - Event Trigger Layer
"""
import asyncio
import random
from datetime import date, datetime, timezone

import pytest
from sqlalchemy import func, select

from ljk_analytics.aggregation.events import EventType
from ljk_analytics.aggregation.increments import GradeSubjectKey
from ljk_analytics.aggregation.triggers import EventDispatcher, SubUpdateResult, SubUpdateStatus
from ljk_analytics.aggregation.updater import AggregateUpdateError, StaleAggregateError
from ljk_analytics.database.models import GradeSubjectStats

KEY = GradeSubjectKey("uts-2025", "sch-001", "k7", "mtk")


class TestUserCreated:
    """Tests for UserCreated dispatch"""

    async def test_regular_user(self, dispatcher, reader, make_user):
        report = await dispatcher.dispatch(make_user("u1"))

        assert report.event_type == "user_created"
        assert report.status_of("dashboard") == SubUpdateStatus.APPLIED
        assert report.status_of("school_teacher") == SubUpdateStatus.SKIPPED
        assert (await reader.dashboard()).total_user == 1

    @pytest.mark.parametrize("role", ["teacher", "headmaster"])
    async def test_staff_counted_per_school(self, dispatcher, reader, make_user, role):
        report = await dispatcher.dispatch(make_user("u1", role=role, school_id="sch-001"))

        assert report.status_of("school_teacher") == SubUpdateStatus.APPLIED
        assert (await reader.school("sch-001")).total_teacher == 1

    async def test_staff_without_school(self, dispatcher, reader, make_user):
        report = await dispatcher.dispatch(make_user("u1", role="teacher"))

        assert report.status_of("school_teacher") == SubUpdateStatus.SKIPPED
        assert report.status_of("dashboard") == SubUpdateStatus.APPLIED

    async def test_concurrent_teachers_same_school(self, dispatcher, reader, make_user):
        """Test ten teachers created at once are all counted"""
        today = datetime.now(timezone.utc)
        events = [make_user(f"t{i}", role="teacher", school_id="sch-001", occurred_at=today) for i in range(10)]

        reports = await asyncio.gather(*(dispatcher.dispatch(e) for e in events))

        assert not any(r.failed for r in reports)
        assert (await reader.school("sch-001")).total_teacher == 10
        snapshot = await reader.dashboard()
        assert snapshot.total_user == 10
        assert [(p.date, p.count) for p in snapshot.growth] == [(today.date(), 10)]

    async def test_redelivery_acknowledged_as_duplicate(self, dispatcher, reader, make_user):
        event = make_user("u1", role="teacher", school_id="sch-001")

        await dispatcher.dispatch(event)
        report = await dispatcher.dispatch(event)

        assert report.status_of("dashboard") == SubUpdateStatus.DUPLICATE
        assert report.status_of("school_teacher") == SubUpdateStatus.DUPLICATE
        assert not report.failed
        assert (await reader.dashboard()).total_user == 1

    def test_growth_day_uses_configured_timezone(self, updater, make_user):
        """Test 23:30 UTC on March 1st is March 2nd in Jakarta"""
        event = make_user("u1", occurred_at=datetime(2025, 3, 1, 23, 30, tzinfo=timezone.utc))

        assert EventDispatcher(updater, tz="UTC").growth_day(event) == date(2025, 3, 1)
        assert EventDispatcher(updater, tz="Asia/Jakarta").growth_day(event) == date(2025, 3, 2)

    def test_naive_timestamp_read_as_utc(self, updater, make_user):
        event = make_user("u1", occurred_at=datetime(2025, 3, 1, 23, 30))

        assert EventDispatcher(updater, tz="Asia/Jakarta").growth_day(event) == date(2025, 3, 2)


class TestAnswerSheetSubmitted:
    """Tests for AnswerSheetSubmitted dispatch"""

    async def test_blank_and_correct_on_same_question(self, dispatcher, reader, make_sheet):
        """Test one correct "A" and one blank sheet for question 1"""
        await dispatcher.dispatch(make_sheet("a1", {"1": ("A", True)}))
        await dispatcher.dispatch(make_sheet("a2", {"1": ("", False)}))

        stats = await reader.grade_subject_stats(KEY)
        assert stats.total_answer == 2
        tally = stats.detail["1"]
        assert (tally.correct, tally.blank, tally.incorrect) == (1, 1, 0)
        assert tally.choices == {"A": 1}

    async def test_padded_choice(self, dispatcher, reader, make_sheet):
        """Test " B " on question 5 is stored under "B" as incorrect"""
        await dispatcher.dispatch(make_sheet("a1", {"5": (" B ", False)}))

        tally = (await reader.grade_subject_stats(KEY)).detail["5"]
        assert tally.choices == {"B": 1}
        assert tally.incorrect == 1

    async def test_sum_invariant_under_interleaving(self, dispatcher, reader, make_sheet):
        """Test N sheets in any order give totalAnswer N and consistent per-question sums"""
        rng = random.Random(7)
        events = [
            make_sheet(f"a{i}", {
                str(q): (rng.choice(["A", "B", "C", "D", "E", "", " "]), rng.random() < 0.5)
                for q in range(1, 11)
            })
            for i in range(25)
        ]
        rng.shuffle(events)

        reports = await asyncio.gather(*(dispatcher.dispatch(e) for e in events))

        assert all(r.status_of("grade_subject") == SubUpdateStatus.APPLIED for r in reports)
        stats = await reader.grade_subject_stats(KEY)
        assert stats.total_answer == 25
        assert len(stats.detail) == 10
        for tally in stats.detail.values():
            assert tally.blank + tally.correct + tally.incorrect == 25
            assert sum(tally.choices.values()) == tally.correct + tally.incorrect
        assert (await reader.dashboard()).total_ljk == 25

    async def test_missing_school_only_counts_globally(self, dispatcher, reader, make_sheet, session_factory):
        """Test a sheet without schoolId still increments total_ljk and nothing else"""
        report = await dispatcher.dispatch(make_sheet("a1", {"1": "A"}, school_id=None))

        assert report.status_of("ljk_total") == SubUpdateStatus.APPLIED
        assert report.status_of("grade_subject") == SubUpdateStatus.SKIPPED
        assert "schoolId" in report.results[1].detail
        assert (await reader.dashboard()).total_ljk == 1

        async with session_factory() as session:
            count = await session.scalar(select(func.count()).select_from(GradeSubjectStats))
        assert count == 0

    async def test_malformed_answers_skip_grade_subject(self, dispatcher, reader, make_sheet):
        report = await dispatcher.dispatch(make_sheet("a1", {"1": "A", "2": ("??", False)}))

        assert report.status_of("grade_subject") == SubUpdateStatus.SKIPPED
        assert report.status_of("ljk_total") == SubUpdateStatus.APPLIED
        assert await reader.grade_subject_stats(KEY) is None

    async def test_failure_isolated_from_siblings(self, dispatcher, updater, reader, make_sheet, monkeypatch):
        """Test an exhausted grade-subject update does not roll back total_ljk"""

        async def exhausted(increment, event_key=None):
            raise AggregateUpdateError("grade_subject", 3, StaleAggregateError("moved"))

        monkeypatch.setattr(updater, "apply_grade_subject", exhausted)

        report = await dispatcher.dispatch(make_sheet("a1", {"1": "A"}))

        assert report.failed
        assert report.status_of("grade_subject") == SubUpdateStatus.FAILED
        assert report.status_of("ljk_total") == SubUpdateStatus.APPLIED
        assert (await reader.dashboard()).total_ljk == 1

    async def test_redelivered_sheet(self, dispatcher, reader, make_sheet):
        event = make_sheet("a1", {"1": "A"})

        await dispatcher.dispatch(event)
        report = await dispatcher.dispatch(event)

        assert report.status_of("ljk_total") == SubUpdateStatus.DUPLICATE
        assert report.status_of("grade_subject") == SubUpdateStatus.DUPLICATE
        assert (await reader.grade_subject_stats(KEY)).total_answer == 1
        assert (await reader.dashboard()).total_ljk == 1


class TestRegistry:
    """Tests for the handler registry"""

    async def test_registered_handler_replaces_default(self, dispatcher, make_user):
        seen = []

        async def handler(event):
            seen.append(event.user_id)
            return [SubUpdateResult(name="audit", status=SubUpdateStatus.APPLIED)]

        dispatcher.register(EventType.USER_CREATED, handler)
        report = await dispatcher.dispatch(make_user("u9"))

        assert seen == ["u9"]
        assert [r.name for r in report.results] == ["audit"]


class TestFoldListener:
    """Tests for the listener told about committed folds"""

    @pytest.fixture
    def folded(self):
        return []

    @pytest.fixture
    def listening_dispatcher(self, updater, folded):
        async def on_folded(key):
            folded.append(key)

        return EventDispatcher(updater, tz="UTC", on_folded=on_folded)

    async def test_called_once_per_fold(self, listening_dispatcher, folded, make_sheet):
        event = make_sheet("a1", {"1": "A"}, school_id=" sch-001")

        await listening_dispatcher.dispatch(event)
        await listening_dispatcher.dispatch(event)

        assert folded == [KEY]

    async def test_not_called_for_skipped_sheet(self, listening_dispatcher, folded, make_sheet):
        await listening_dispatcher.dispatch(make_sheet("a1", {"1": "A"}, school_id=None))

        assert folded == []
