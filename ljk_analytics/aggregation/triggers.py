"""
Event Trigger Layer

Maps each domain event to the aggregate updates it causes:

- UserCreated: total_user and today's growth bucket (one transaction), and
  the school's teacher counter for teachers/headmasters with a school.
- AnswerSheetSubmitted: total_ljk, and the per-grade-subject tallies when
  the sheet carries school, grade and subject ids.

Listeners registered with ``on_folded`` are told which statistics document a
sheet was folded into, after the fold committed.

Sub-updates of one event run concurrently and in isolation: a malformed
sheet or an exhausted retry budget in one of them is logged and reported,
never propagated to its siblings or to the caller.
"""

import asyncio
from datetime import date, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Union
from zoneinfo import ZoneInfo

import structlog
from prometheus_client import Counter
from pydantic import BaseModel

from ljk_analytics.aggregation.events import AnswerSheetSubmitted, EventType, UserCreated
from ljk_analytics.aggregation.increments import GradeSubjectKey
from ljk_analytics.aggregation.tally import MalformedAnswerSheet, tally_answer_sheet
from ljk_analytics.aggregation.updater import AtomicCounterUpdater, Scope
from ljk_analytics.config import get_settings

logger = structlog.get_logger(__name__)

SUB_UPDATES = Counter(
    "ljk_sub_updates_total",
    "Aggregate sub-updates by event type and status",
    ["event_type", "sub_update", "status"],
)

Event = Union[UserCreated, AnswerSheetSubmitted]


class SubUpdateStatus(str, Enum):
    """Outcome of one sub-update"""
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    FAILED = "failed"


class SubUpdateResult(BaseModel):
    name: str
    status: SubUpdateStatus
    detail: Optional[str] = None


class DispatchReport(BaseModel):
    """What happened to one event"""
    event_type: str
    event_key: str
    results: List[SubUpdateResult]

    @property
    def failed(self) -> bool:
        return any(r.status == SubUpdateStatus.FAILED for r in self.results)

    def status_of(self, name: str) -> Optional[SubUpdateStatus]:
        for result in self.results:
            if result.name == name:
                return result.status
        return None


Handler = Callable[[Event], Awaitable[List[SubUpdateResult]]]
FoldListener = Callable[[GradeSubjectKey], Awaitable[None]]


class EventDispatcher:
    """
    Registry of event handlers keyed by event type.

    Example:
        dispatcher = EventDispatcher(AtomicCounterUpdater(session_factory))
        report = await dispatcher.dispatch(event)
    """

    def __init__(
        self,
        updater: AtomicCounterUpdater,
        tz: Optional[str] = None,
        on_folded: Optional[FoldListener] = None,
    ):
        self.updater = updater
        self.on_folded = on_folded
        self._tz = ZoneInfo(tz or get_settings().aggregation.timezone)
        self._handlers: Dict[EventType, Handler] = {}

        self.register(EventType.USER_CREATED, self._on_user_created)
        self.register(EventType.ANSWER_SHEET_SUBMITTED, self._on_answer_sheet_submitted)

    def register(self, event_type: EventType, handler: Handler) -> None:
        """Register the handler for an event type, replacing any previous one"""
        if event_type in self._handlers:
            logger.info("Replacing event handler", event_type=event_type.value)
        self._handlers[event_type] = handler

    async def dispatch(self, event: Event) -> DispatchReport:
        event_type = EventType(event.event_type)
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.warning("No handler for event type", event_type=event_type.value)
            return DispatchReport(event_type=event_type.value, event_key=event.event_key, results=[])

        with structlog.contextvars.bound_contextvars(event_type=event_type.value, event_key=event.event_key):
            results = await handler(event)
            for result in results:
                SUB_UPDATES.labels(
                    event_type=event_type.value,
                    sub_update=result.name,
                    status=result.status.value,
                ).inc()

            logger.info("Event dispatched", results={r.name: r.status.value for r in results})

        return DispatchReport(event_type=event_type.value, event_key=event.event_key, results=results)

    def growth_day(self, event: UserCreated) -> date:
        """Calendar day of the growth bucket, in the configured timezone"""
        occurred_at = event.occurred_at
        if occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        return occurred_at.astimezone(self._tz).date()

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _on_user_created(self, event: UserCreated) -> List[SubUpdateResult]:
        day = self.growth_day(event)
        updates = [
            self._isolated(
                Scope.DASHBOARD,
                lambda: self.updater.increment_user_totals(day, event_key=event.event_key),
            ),
        ]

        if event.is_staff and event.school_id:
            updates.append(
                self._isolated(
                    Scope.SCHOOL_TEACHER,
                    lambda: self.updater.increment_school_teachers(event.school_id, event_key=event.event_key),
                )
            )
        else:
            updates.append(self._skipped(Scope.SCHOOL_TEACHER, f"role {event.role!r} without school staff counter"))

        return list(await asyncio.gather(*updates))

    async def _on_answer_sheet_submitted(self, event: AnswerSheetSubmitted) -> List[SubUpdateResult]:
        async def fold() -> bool:
            increment = tally_answer_sheet(event.exam_id, event.record)
            applied = await self.updater.apply_grade_subject(increment, event_key=event.event_key)
            if applied and self.on_folded is not None:
                await self.on_folded(increment.key)
            return applied

        return list(await asyncio.gather(
            self._isolated(
                Scope.LJK_TOTAL,
                lambda: self.updater.increment_ljk_total(event_key=event.event_key),
            ),
            self._isolated(Scope.GRADE_SUBJECT, fold),
        ))

    # -------------------------------------------------------------------------
    # Isolation
    # -------------------------------------------------------------------------

    async def _skipped(self, scope: Scope, reason: str) -> SubUpdateResult:
        return SubUpdateResult(name=scope.value, status=SubUpdateStatus.SKIPPED, detail=reason)

    async def _isolated(
        self,
        scope: Scope,
        operation: Callable[[], Awaitable[bool]],
    ) -> SubUpdateResult:
        try:
            applied = await operation()
        except MalformedAnswerSheet as e:
            logger.warning(
                "Malformed answer sheet, sub-update skipped",
                sub_update=scope.value,
                reason=str(e),
            )
            return SubUpdateResult(name=scope.value, status=SubUpdateStatus.SKIPPED, detail=str(e))
        except Exception as e:
            logger.error(
                "Sub-update failed, event dropped for this aggregate",
                sub_update=scope.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return SubUpdateResult(name=scope.value, status=SubUpdateStatus.FAILED, detail=str(e))

        status = SubUpdateStatus.APPLIED if applied else SubUpdateStatus.DUPLICATE
        return SubUpdateResult(name=scope.value, status=status)
