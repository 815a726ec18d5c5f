"""
Serving Module
"""
from .cache import (
    init_redis,
    close_redis,
    connect_redis_optional,
    get_redis,
    invalidate_exam_reports,
    invalidate_report,
    reports_cache,
)

__all__ = [
    "init_redis",
    "close_redis",
    "connect_redis_optional",
    "get_redis",
    "invalidate_exam_reports",
    "invalidate_report",
    "reports_cache",
]
