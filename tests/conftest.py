"""
Test Suite Configuration
"""
from typing import Dict, Optional, Tuple, Union

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from ljk_analytics.aggregation.events import AnswerSheetRecord, AnswerSheetSubmitted, UserCreated
from ljk_analytics.aggregation.reader import AggregateReader
from ljk_analytics.aggregation.triggers import EventDispatcher
from ljk_analytics.aggregation.updater import AtomicCounterUpdater, RetryPolicy
from ljk_analytics.database.connection import create_session_factory
from ljk_analytics.database.models import Base

# Each answer is either a bare choice (correct) or a (choice, is_correct) pair
Answers = Dict[str, Union[str, Tuple[str, bool]]]


@pytest.fixture
async def test_engine(tmp_path):
    """
    File-backed SQLite engine, one per test.

    NullPool hands every session its own connection so concurrent
    transactions really interleave; the busy timeout serializes writers.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'aggregates.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return create_session_factory(test_engine)


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=50, backoff_ms=1, backoff_max_ms=20)


@pytest.fixture
def updater(session_factory, fast_retry) -> AtomicCounterUpdater:
    return AtomicCounterUpdater(session_factory, retry=fast_retry)


@pytest.fixture
def dispatcher(updater) -> EventDispatcher:
    return EventDispatcher(updater, tz="UTC")


@pytest.fixture
def reader(session_factory) -> AggregateReader:
    return AggregateReader(session_factory)


@pytest.fixture
def make_sheet():
    """Factory for AnswerSheetSubmitted events"""

    def _make(
        answer_id: str,
        answers: Answers,
        exam_id: str = "uts-2025",
        school_id: Optional[str] = "sch-001",
        grade_id: Optional[str] = "k7",
        subject_id: Optional[str] = "mtk",
    ) -> AnswerSheetSubmitted:
        student_answers = {}
        for question_id, answer in answers.items():
            selected, is_correct = (answer, True) if isinstance(answer, str) else answer
            student_answers[question_id] = {"selected": selected, "isCorrect": is_correct}

        return AnswerSheetSubmitted(
            exam_id=exam_id,
            answer_id=answer_id,
            record=AnswerSheetRecord.model_validate({
                "schoolId": school_id,
                "gradeId": grade_id,
                "subjectId": subject_id,
                "studentAnswers": student_answers,
            }),
        )

    return _make


@pytest.fixture
def make_user():
    """Factory for UserCreated events"""

    def _make(user_id: str, role: str = "user", school_id: Optional[str] = None, **kwargs) -> UserCreated:
        return UserCreated(user_id=user_id, role=role, school_id=school_id, **kwargs)

    return _make
