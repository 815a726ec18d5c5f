"""
Dashboard API Endpoints

Admin dashboard totals, user growth and per-school staff counters.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
import structlog

from ljk_analytics.aggregation.reader import AggregateReader
from ljk_analytics.aggregation.schemas import DashboardSnapshot, SchoolSnapshot
from ljk_analytics.config import get_settings
from ljk_analytics.serving.api.dependencies import get_reader

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.get("/dashboard", response_model=DashboardSnapshot)
async def get_dashboard(
    days: Optional[int] = Query(None, ge=1, le=366, description="Growth buckets to return"),
    reader: AggregateReader = Depends(get_reader),
) -> DashboardSnapshot:
    """
    Total users, total answer sheets and the most recent daily growth buckets.

    Days without user creations are absent from the growth series.
    """
    window = days or get_settings().aggregation.growth_window_days
    return await reader.dashboard(window_days=window)


@router.get("/schools/{school_id}/stats", response_model=SchoolSnapshot)
async def get_school_stats(
    school_id: str,
    reader: AggregateReader = Depends(get_reader),
) -> SchoolSnapshot:
    """Teacher and headmaster count of a school; zero before the first one"""
    return await reader.school(school_id)
