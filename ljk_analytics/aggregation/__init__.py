"""
Aggregation Module

Event-driven statistics aggregation: events -> tallies -> atomic counter updates.
"""
from .events import AnswerSheetRecord, AnswerSheetSubmitted, EventType, UserCreated, parse_event
from .difficulty import Difficulty, build_report, classify_difficulty
from .reader import AggregateReader
from .tally import MalformedAnswerSheet, tally_answer_sheet
from .triggers import DispatchReport, EventDispatcher, SubUpdateStatus
from .updater import AggregateUpdateError, AtomicCounterUpdater, RetryPolicy

__all__ = [
    "AnswerSheetRecord",
    "AnswerSheetSubmitted",
    "EventType",
    "UserCreated",
    "parse_event",
    "Difficulty",
    "build_report",
    "classify_difficulty",
    "AggregateReader",
    "MalformedAnswerSheet",
    "tally_answer_sheet",
    "DispatchReport",
    "EventDispatcher",
    "SubUpdateStatus",
    "AggregateUpdateError",
    "AtomicCounterUpdater",
    "RetryPolicy",
]
