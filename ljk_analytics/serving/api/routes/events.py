"""
Event API Endpoints

HTTP subscription interface for the upstream record store: each call
delivers one created record and is dispatched through the trigger layer.
Redelivering the same record is acknowledged as a duplicate.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError

from ljk_analytics.aggregation.events import AnswerSheetSubmitted, EventType, parse_event
from ljk_analytics.aggregation.triggers import DispatchReport, EventDispatcher
from ljk_analytics.ingestion.stream_consumer import normalize_payload
from ljk_analytics.serving.api.dependencies import get_dispatcher

router = APIRouter()


def _to_event(event_type: EventType, payload: Dict[str, Any]):
    try:
        return parse_event(normalize_payload(event_type, {**payload, "eventType": event_type.value}))
    except ValidationError as e:
        raise RequestValidationError(e.errors(include_url=False))


@router.post("/users/{user_id}", response_model=DispatchReport, status_code=202)
async def user_created(
    user_id: str,
    record: Optional[Dict[str, Any]] = Body(None),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> DispatchReport:
    """A user record was created at users/{user_id}"""
    event = _to_event(EventType.USER_CREATED, {**(record or {}), "userId": user_id})
    return await dispatcher.dispatch(event)


@router.post("/exams/{exam_id}/answers/{answer_id}", response_model=DispatchReport, status_code=202)
async def answer_sheet_submitted(
    exam_id: str,
    answer_id: str,
    record: Dict[str, Any] = Body(...),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> DispatchReport:
    """An answer sheet was stored at exams/{exam_id}/answers/{answer_id}"""
    event: AnswerSheetSubmitted = _to_event(
        EventType.ANSWER_SHEET_SUBMITTED,
        {**record, "examId": exam_id, "answerId": answer_id},
    )
    return await dispatcher.dispatch(event)
