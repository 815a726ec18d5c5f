"""
API Dependencies

FastAPI dependency providers for the aggregation core. Tests override
``get_aggregate_sessions`` to point the API at their own engine. Sheets
folded through the API drop their cached report.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ljk_analytics.aggregation.reader import AggregateReader
from ljk_analytics.aggregation.triggers import EventDispatcher
from ljk_analytics.aggregation.updater import AtomicCounterUpdater
from ljk_analytics.database.connection import get_session_factory
from ljk_analytics.serving.cache import invalidate_report


def get_aggregate_sessions() -> async_sessionmaker[AsyncSession]:
    return get_session_factory()


def get_updater(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_aggregate_sessions),
) -> AtomicCounterUpdater:
    return AtomicCounterUpdater(sessions)


def get_dispatcher(updater: AtomicCounterUpdater = Depends(get_updater)) -> EventDispatcher:
    return EventDispatcher(updater, on_folded=invalidate_report)


def get_reader(
    sessions: async_sessionmaker[AsyncSession] = Depends(get_aggregate_sessions),
) -> AggregateReader:
    return AggregateReader(sessions)
