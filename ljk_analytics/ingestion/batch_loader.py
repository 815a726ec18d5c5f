"""
Answer Sheet Export Loader

Loads JSON-lines exports of answer sheets and replays them through the
trigger layer. Used to fill gaps left by dropped events and to rebuild an
exam's statistics after ``reset_exam_stats``.

Export line format::

    {"examId": "uts-2025", "answerId": "a1", "schoolId": "...", "gradeId": "...",
     "subjectId": "...", "studentAnswers": {"1": {"selected": "A", "isCorrect": true}}}
"""

import asyncio
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Union

import structlog
from pydantic import BaseModel, ValidationError

from ljk_analytics.aggregation.events import AnswerSheetSubmitted, EventType, parse_event
from ljk_analytics.aggregation.triggers import EventDispatcher, SubUpdateStatus
from ljk_analytics.ingestion.stream_consumer import normalize_payload

logger = structlog.get_logger(__name__)


class LineError(BaseModel):
    """A line of the export that could not be turned into an event"""
    line_number: int
    error: str


@dataclass
class LoadedExport:
    """Events read from one export file"""
    file_path: str
    file_hash: str
    events: List[AnswerSheetSubmitted] = field(default_factory=list)
    errors: List[LineError] = field(default_factory=list)


class ReplayResult(BaseModel):
    """Outcome of replaying a batch of events"""
    total: int = 0
    applied: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed: int = 0
    started_at: datetime
    completed_at: Optional[datetime] = None


class BatchLoader:
    """
    Export loader and replayer.

    Example:
        loader = BatchLoader(dispatcher)
        export = loader.load_answer_sheets("exports/uts-2025.jsonl", exam_id="uts-2025")
        result = await loader.replay(export.events)
    """

    def __init__(self, dispatcher: EventDispatcher, concurrency: int = 8):
        self.dispatcher = dispatcher
        self.concurrency = concurrency

    def _compute_file_hash(self, file_path: Path) -> str:
        """MD5 of the export, logged so replays can be traced to their input"""
        hash_md5 = hashlib.md5()
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(4096), b""):
                hash_md5.update(chunk)
        return hash_md5.hexdigest()

    def load_answer_sheets(
        self,
        file_path: Union[str, Path],
        exam_id: Optional[str] = None,
    ) -> LoadedExport:
        """
        Read an export file.

        Args:
            file_path: JSON-lines export
            exam_id: Keep only sheets of this exam

        Returns:
            LoadedExport with the parsed events and per-line errors
        """
        path = Path(file_path)
        export = LoadedExport(file_path=str(path), file_hash=self._compute_file_hash(path))

        with open(path, "r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    data = json.loads(line)
                    if not isinstance(data, dict):
                        raise ValueError("line is not a JSON object")
                    event = parse_event(normalize_payload(EventType.ANSWER_SHEET_SUBMITTED, data))
                except (ValueError, ValidationError) as e:
                    export.errors.append(LineError(line_number=line_number, error=str(e)))
                    continue

                if exam_id is None or event.exam_id == exam_id:
                    export.events.append(event)

        logger.info(
            "Answer sheet export loaded",
            file_path=export.file_path,
            file_hash=export.file_hash,
            events=len(export.events),
            errors=len(export.errors),
        )
        return export

    async def replay(self, events: Iterable[AnswerSheetSubmitted]) -> ReplayResult:
        """Dispatch events with bounded concurrency and tally the grade-subject outcomes"""
        result = ReplayResult(started_at=datetime.now(timezone.utc))
        semaphore = asyncio.Semaphore(self.concurrency)

        async def dispatch_one(event: AnswerSheetSubmitted):
            async with semaphore:
                return await self.dispatcher.dispatch(event)

        reports = await asyncio.gather(*(dispatch_one(e) for e in events))
        for report in reports:
            result.total += 1
            status = report.status_of("grade_subject")
            if status == SubUpdateStatus.APPLIED:
                result.applied += 1
            elif status == SubUpdateStatus.DUPLICATE:
                result.duplicates += 1
            elif status == SubUpdateStatus.SKIPPED:
                result.skipped += 1
            else:
                result.failed += 1

        result.completed_at = datetime.now(timezone.utc)
        logger.info("Replay complete", **result.model_dump(exclude={"started_at", "completed_at"}))
        return result
