"""
Database Models - Aggregate Counter Schema

Denormalized counter records maintained by the aggregation core. Raw answer
sheets and user records live with their producers; these tables only hold
values derived from the events those producers emit.

Aggregate Tables:
- DashboardAggregate: process-wide totals (users, answer sheets)
- UserGrowthBucket: per-day user-creation counts
- SchoolStats: per-school staff counters
- GradeSubjectStats: per exam/school/grade/subject question tallies

Bookkeeping:
- ProcessedEvent: idempotency ledger, one row per applied sub-update
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


DASHBOARD_KEY = "dashboard_admin"


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
DetailDocument = JSON().with_variant(JSONB(), "postgresql")


class DashboardAggregate(Base):
    """
    Global Dashboard Aggregate

    Singleton counter row keyed by ``DASHBOARD_KEY``. Created lazily by the
    first event that touches it and only ever mutated through increments.
    """
    __tablename__ = "dashboard_aggregates"

    key: Mapped[str] = mapped_column(String(64), primary_key=True, default=DASHBOARD_KEY)
    total_user: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_ljk: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class UserGrowthBucket(Base):
    """Daily user-creation count, keyed by ISO date (YYYY-MM-DD)"""
    __tablename__ = "user_growth_buckets"

    date: Mapped[str] = mapped_column(String(10), primary_key=True)
    count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class SchoolStats(Base):
    """Per-school count of staff with role teacher or headmaster"""
    __tablename__ = "school_stats"

    school_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    total_teacher: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class GradeSubjectStats(Base):
    """
    Per Grade/Subject Statistics

    One document per (exam, school, grade, subject). ``detail`` maps the
    question number (as a string) to its tally::

        {"1": {"blank": 0, "correct": 3, "incorrect": 1, "choices": {"A": 3, "C": 1}}}

    ``version`` increases on every write and is the compare-and-swap guard
    for the read-merge-write of ``detail``.
    """
    __tablename__ = "grade_subject_stats"

    exam_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    school_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    grade_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    total_answer: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    detail: Mapped[Dict[str, Any]] = mapped_column(DetailDocument, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_grade_subject_stats_exam_school", "exam_id", "school_id"),
    )


class ProcessedEvent(Base):
    """
    Idempotency Ledger

    A row means the sub-update ``scope`` of the event ``event_key`` has been
    folded into the aggregates. Written in the same transaction as the
    increments it guards.
    """
    __tablename__ = "processed_events"

    event_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    scope: Mapped[str] = mapped_column(String(32), primary_key=True)
    exam_id: Mapped[Optional[str]] = mapped_column(String(128))
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_processed_events_exam_scope", "exam_id", "scope"),
    )
