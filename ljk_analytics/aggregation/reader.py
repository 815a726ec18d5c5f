"""
Aggregate Reader

Read-side contract for dashboards and report pages. Consumers only ever see
the precomputed aggregates, never raw answer sheets or the event stream.
"""

from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ljk_analytics.aggregation.increments import GradeSubjectKey
from ljk_analytics.aggregation.schemas import (
    DashboardSnapshot,
    GradeSubjectSnapshot,
    GrowthPoint,
    SchoolSnapshot,
)
from ljk_analytics.database.models import (
    DASHBOARD_KEY,
    DashboardAggregate,
    GradeSubjectStats,
    SchoolStats,
    UserGrowthBucket,
)

logger = structlog.get_logger(__name__)


class AggregateReader:
    """Loads aggregate snapshots; every call reads fresh from the database"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def dashboard(self, window_days: int = 7) -> DashboardSnapshot:
        """
        Totals plus the most recent ``window_days`` growth buckets.

        Buckets are returned oldest first; days without user creations have
        no bucket and are absent from the series.
        """
        async with self._session_factory() as session:
            aggregate = await session.get(DashboardAggregate, DASHBOARD_KEY)
            result = await session.execute(
                select(UserGrowthBucket)
                .order_by(UserGrowthBucket.date.desc())
                .limit(window_days)
            )
            buckets = result.scalars().all()

        growth = [GrowthPoint(date=bucket.date, count=bucket.count) for bucket in reversed(buckets)]
        if aggregate is None:
            return DashboardSnapshot(growth=growth)

        return DashboardSnapshot(
            total_user=aggregate.total_user,
            total_ljk=aggregate.total_ljk,
            updated_at=aggregate.updated_at,
            growth=growth,
        )

    async def school(self, school_id: str) -> SchoolSnapshot:
        async with self._session_factory() as session:
            stats = await session.get(SchoolStats, school_id)

        if stats is None:
            return SchoolSnapshot(school_id=school_id)
        return SchoolSnapshot.model_validate(stats, from_attributes=True)

    async def grade_subject_stats(self, key: GradeSubjectKey) -> Optional[GradeSubjectSnapshot]:
        """None until the first answer sheet for the key has been folded in"""
        async with self._session_factory() as session:
            stats = await session.get(
                GradeSubjectStats,
                (key.exam_id, key.school_id, key.grade_id, key.subject_id),
            )

        if stats is None:
            logger.debug("No statistics yet", path=key.path)
            return None
        return GradeSubjectSnapshot.model_validate(stats, from_attributes=True)
