"""
Atomic Counter Updater

Applies increments to the aggregate tables so that concurrent events never
lose an update:

- Scalar counters are created with INSERT .. ON CONFLICT DO NOTHING and
  changed with in-database ``col = col + delta`` statements.
- Per-grade-subject documents are read, merged and written back with a
  version compare-and-swap; a lost race raises ``StaleAggregateError``.
- Every call runs in one all-or-nothing transaction that is retried with
  exponential backoff on a lost race or a storage-level conflict
  (``OperationalError``). No locks are taken in application code.
- When an event key is given, a ``processed_events`` ledger row is written
  in the same transaction, so redelivered events are folded at most once.

This component only touches aggregate and ledger tables, never answer
sheets or user records.
"""

import asyncio
import random
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, FrozenSet, Mapping, Optional, Sequence, Tuple

import structlog
from prometheus_client import Counter, Histogram
from sqlalchemy import Table, delete, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ljk_analytics.aggregation.increments import GradeSubjectIncrement, GradeSubjectKey
from ljk_analytics.config import get_settings
from ljk_analytics.database.models import (
    DASHBOARD_KEY,
    DashboardAggregate,
    GradeSubjectStats,
    ProcessedEvent,
    SchoolStats,
    UserGrowthBucket,
)

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

AGGREGATE_WRITES = Counter(
    "ljk_aggregate_writes_total",
    "Aggregate write transactions by outcome",
    ["target", "outcome"],
)

AGGREGATE_CONFLICTS = Counter(
    "ljk_aggregate_conflicts_total",
    "Aggregate transactions retried after a write conflict",
    ["target"],
)

TRANSACTION_TIME = Histogram(
    "ljk_aggregate_transaction_seconds",
    "Time spent in committed aggregate transactions",
    ["target"],
)


# =============================================================================
# ERRORS
# =============================================================================

class StaleAggregateError(Exception):
    """A versioned aggregate changed between read and write"""


class AggregateUpdateError(Exception):
    """The retry budget ran out before the transaction could commit"""

    def __init__(self, target: str, attempts: int, cause: Exception):
        super().__init__(f"{target}: gave up after {attempts} attempts ({cause})")
        self.target = target
        self.attempts = attempts
        self.cause = cause


# =============================================================================
# TARGETS
# =============================================================================

class Scope(str, Enum):
    """Sub-updates tracked in the idempotency ledger"""
    DASHBOARD = "dashboard"
    SCHOOL_TEACHER = "school_teacher"
    LJK_TOTAL = "ljk_total"
    GRADE_SUBJECT = "grade_subject"


@dataclass(frozen=True)
class CounterTarget:
    """A scalar counter row and the fields that may be incremented on it"""
    name: str
    table: Table
    identity: Tuple[Tuple[str, str], ...]
    fields: FrozenSet[str]

    @classmethod
    def dashboard(cls) -> "CounterTarget":
        return cls(
            name="dashboard",
            table=DashboardAggregate.__table__,
            identity=(("key", DASHBOARD_KEY),),
            fields=frozenset({"total_user", "total_ljk"}),
        )

    @classmethod
    def daily_growth(cls, day: date) -> "CounterTarget":
        return cls(
            name="daily_growth",
            table=UserGrowthBucket.__table__,
            identity=(("date", day.isoformat()),),
            fields=frozenset({"count"}),
        )

    @classmethod
    def school(cls, school_id: str) -> "CounterTarget":
        return cls(
            name="school",
            table=SchoolStats.__table__,
            identity=(("school_id", school_id),),
            fields=frozenset({"total_teacher"}),
        )


@dataclass(frozen=True)
class CounterMutation:
    """Field -> delta pairs for one counter target"""
    target: CounterTarget
    deltas: Mapping[str, int]

    def __post_init__(self) -> None:
        unknown = set(self.deltas) - self.target.fields
        if unknown:
            raise ValueError(f"{self.target.name} has no counter fields {sorted(unknown)}")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with jitter"""
    max_attempts: int = 12
    backoff_ms: int = 20
    backoff_max_ms: int = 1000

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        aggregation = get_settings().aggregation
        return cls(
            max_attempts=aggregation.max_attempts,
            backoff_ms=aggregation.retry_backoff_ms,
            backoff_max_ms=aggregation.retry_backoff_max_ms,
        )

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt (1-based)"""
        ceiling = min(self.backoff_max_ms, self.backoff_ms * (2 ** (attempt - 1)))
        return ceiling * random.uniform(0.5, 1.0) / 1000


_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# UPDATER
# =============================================================================

class AtomicCounterUpdater:
    """
    Transactional increment API over the aggregate tables.

    Methods return True when the increments were applied and False when the
    event key was already in the ledger.

    Example:
        updater = AtomicCounterUpdater(get_session_factory())
        await updater.increment_ljk_total(event_key="exams/e1/answers/a1")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retry: Optional[RetryPolicy] = None,
    ):
        self._session_factory = session_factory
        self.retry = retry or RetryPolicy.from_settings()

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def apply_counters(
        self,
        mutations: Sequence[CounterMutation],
        event_key: Optional[str] = None,
        scope: Optional[Scope] = None,
    ) -> bool:
        """Apply all mutations in a single transaction"""
        target = "+".join(m.target.name for m in mutations)

        async def work(session: AsyncSession) -> None:
            for mutation in mutations:
                await self._increment(session, mutation)

        return await self._transact(target, work, event_key, scope)

    async def increment_user_totals(self, day: date, event_key: Optional[str] = None) -> bool:
        """total_user and the growth bucket for ``day`` move together"""
        return await self.apply_counters(
            [
                CounterMutation(CounterTarget.dashboard(), {"total_user": 1}),
                CounterMutation(CounterTarget.daily_growth(day), {"count": 1}),
            ],
            event_key=event_key,
            scope=Scope.DASHBOARD,
        )

    async def increment_ljk_total(self, event_key: Optional[str] = None) -> bool:
        return await self.apply_counters(
            [CounterMutation(CounterTarget.dashboard(), {"total_ljk": 1})],
            event_key=event_key,
            scope=Scope.LJK_TOTAL,
        )

    async def increment_school_teachers(self, school_id: str, event_key: Optional[str] = None) -> bool:
        return await self.apply_counters(
            [CounterMutation(CounterTarget.school(school_id), {"total_teacher": 1})],
            event_key=event_key,
            scope=Scope.SCHOOL_TEACHER,
        )

    async def apply_grade_subject(
        self,
        increment: GradeSubjectIncrement,
        event_key: Optional[str] = None,
    ) -> bool:
        """Fold a per-question increment set into its statistics document"""

        async def work(session: AsyncSession) -> None:
            await self._fold_grade_subject(session, increment)

        return await self._transact(
            "grade_subject",
            work,
            event_key,
            Scope.GRADE_SUBJECT,
            exam_id=increment.key.exam_id,
        )

    async def reset_exam_stats(self, exam_id: str) -> int:
        """
        Drop an exam's per-grade-subject documents and their ledger rows.

        Replaying the exam's answer sheets afterwards refolds each sheet
        exactly once; ``total_ljk`` ledger rows are kept so the global total
        is not counted twice.

        Returns:
            Number of statistics documents removed
        """
        stats = GradeSubjectStats.__table__
        ledger = ProcessedEvent.__table__

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(delete(stats).where(stats.c.exam_id == exam_id))
                await session.execute(
                    delete(ledger).where(
                        ledger.c.exam_id == exam_id,
                        ledger.c.scope == Scope.GRADE_SUBJECT.value,
                    )
                )

        logger.warning("Exam statistics reset", exam_id=exam_id, documents=result.rowcount)
        return result.rowcount

    # -------------------------------------------------------------------------
    # Transaction plumbing
    # -------------------------------------------------------------------------

    async def _transact(
        self,
        target: str,
        work: Callable[[AsyncSession], Awaitable[None]],
        event_key: Optional[str],
        scope: Optional[Scope],
        exam_id: Optional[str] = None,
    ) -> bool:
        attempt = 0
        while True:
            attempt += 1
            start_time = time.perf_counter()
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        if event_key is not None and scope is not None:
                            claimed = await self._claim(session, event_key, scope, exam_id)
                            if not claimed:
                                AGGREGATE_WRITES.labels(target=target, outcome="duplicate").inc()
                                logger.info(
                                    "Event already folded, skipping",
                                    target=target,
                                    event_key=event_key,
                                    scope=scope.value,
                                )
                                return False
                        await work(session)

                TRANSACTION_TIME.labels(target=target).observe(time.perf_counter() - start_time)
                AGGREGATE_WRITES.labels(target=target, outcome="applied").inc()
                return True

            except (StaleAggregateError, OperationalError) as e:
                AGGREGATE_CONFLICTS.labels(target=target).inc()
                if attempt >= self.retry.max_attempts:
                    AGGREGATE_WRITES.labels(target=target, outcome="failed").inc()
                    logger.error(
                        "Aggregate update failed, retries exhausted",
                        target=target,
                        event_key=event_key,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise AggregateUpdateError(target, attempt, e) from e

                delay = self.retry.delay(attempt)
                logger.warning(
                    "Aggregate write conflict, retrying",
                    target=target,
                    event_key=event_key,
                    attempt=attempt,
                    delay_ms=round(delay * 1000, 1),
                    error_type=type(e).__name__,
                )
                await asyncio.sleep(delay)

    def _insert(self, session: AsyncSession, table: Table):
        dialect = session.bind.dialect.name
        try:
            return _INSERTS[dialect](table)
        except KeyError:
            raise NotImplementedError(f"Upserts are not supported on {dialect}") from None

    async def _claim(
        self,
        session: AsyncSession,
        event_key: str,
        scope: Scope,
        exam_id: Optional[str],
    ) -> bool:
        """Insert the ledger row; False when it already exists"""
        ledger = ProcessedEvent.__table__
        stmt = (
            self._insert(session, ledger)
            .values(event_key=event_key, scope=scope.value, exam_id=exam_id, processed_at=_utcnow())
            .on_conflict_do_nothing(index_elements=["event_key", "scope"])
            .returning(ledger.c.event_key)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def _increment(self, session: AsyncSession, mutation: CounterMutation) -> None:
        table = mutation.target.table
        identity = dict(mutation.target.identity)
        now = _utcnow()

        await session.execute(
            self._insert(session, table)
            .values(**identity, **{name: 0 for name in mutation.target.fields}, updated_at=now)
            .on_conflict_do_nothing(index_elements=list(identity))
        )

        values: Dict = {table.c[name]: table.c[name] + delta for name, delta in mutation.deltas.items()}
        values[table.c.updated_at] = now
        await session.execute(
            update(table)
            .where(*[table.c[column] == value for column, value in identity.items()])
            .values(values)
        )

    async def _fold_grade_subject(self, session: AsyncSession, increment: GradeSubjectIncrement) -> None:
        stats = GradeSubjectStats.__table__
        identity = increment.key.identity()

        await session.execute(
            self._insert(session, stats)
            .values(**identity, total_answer=0, detail={}, version=0, updated_at=_utcnow())
            .on_conflict_do_nothing(index_elements=list(identity))
        )

        row = (
            await session.execute(
                select(stats.c.total_answer, stats.c.detail, stats.c.version)
                .where(*[stats.c[column] == value for column, value in identity.items()])
            )
        ).one()

        total_answer, detail = increment.apply_to(row.total_answer, row.detail)
        await self._compare_and_swap(session, increment.key, row.version, total_answer, detail)

    async def _compare_and_swap(
        self,
        session: AsyncSession,
        key: GradeSubjectKey,
        expected_version: int,
        total_answer: int,
        detail: Dict,
    ) -> None:
        stats = GradeSubjectStats.__table__
        result = await session.execute(
            update(stats)
            .where(
                *[stats.c[column] == value for column, value in key.identity().items()],
                stats.c.version == expected_version,
            )
            .values(
                total_answer=total_answer,
                detail=detail,
                version=expected_version + 1,
                updated_at=_utcnow(),
            )
        )
        if result.rowcount != 1:
            raise StaleAggregateError(f"{key.path} moved past version {expected_version}")
