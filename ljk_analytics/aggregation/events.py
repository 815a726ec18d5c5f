"""
Domain Events

Typed events consumed by the aggregation core. Payloads follow the camelCase
wire format of the answer-sheet producers (``schoolId``, ``studentAnswers``,
``isCorrect``); field names are accepted as well when building events in
code.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel


STAFF_ROLES = frozenset({"teacher", "headmaster"})


class EventType(str, Enum):
    """Supported event types"""
    USER_CREATED = "user_created"
    ANSWER_SHEET_SUBMITTED = "answer_sheet_submitted"


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in code"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


def read_identifier(v: Any) -> Any:
    """Numeric ids are read as text; any other non-text value reads as missing"""
    if isinstance(v, bool):
        return None
    if isinstance(v, int):
        return str(v)
    return v if isinstance(v, str) else None


class StudentAnswer(WireModel):
    """One scanned question: the marked choice (blank when empty) and whether it matched the key"""
    selected: str = ""
    is_correct: bool = False

    @field_validator("selected", mode="before")
    @classmethod
    def none_is_blank(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("is_correct", mode="before")
    @classmethod
    def none_is_incorrect(cls, v: Any) -> Any:
        return False if v is None else v


class AnswerSheetRecord(WireModel):
    """
    One scanned answer sheet as produced by the OMR ingestion pipeline.

    Reading a record never fails: a sheet with missing ids or unreadable
    answers still counts towards the global total. Problems are kept on the
    record (ids read as None, unreadable question ids in ``unreadable``) and
    refused later by the tally, which only costs the per-grade fold.
    """
    school_id: Optional[str] = None
    grade_id: Optional[str] = None
    subject_id: Optional[str] = None
    student_answers: Dict[str, StudentAnswer] = Field(default_factory=dict)
    unreadable: Tuple[str, ...] = ()
    student_no: Optional[str] = None
    student_name: Optional[str] = None
    uploaded_by: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def set_aside_unreadable_answers(cls, data: Any) -> Any:
        if isinstance(data, BaseModel):
            return data
        if not isinstance(data, Mapping):
            return {}

        data = dict(data)
        raw = data.pop("studentAnswers", None)
        raw = data.pop("student_answers", raw)

        answers: Dict[str, Any] = {}
        unreadable = []
        if raw is not None and not isinstance(raw, Mapping):
            unreadable.append("studentAnswers")
        for question_id, answer in (raw.items() if isinstance(raw, Mapping) else ()):
            try:
                answers[str(question_id)] = StudentAnswer.model_validate(answer)
            except ValidationError:
                unreadable.append(str(question_id))

        data["student_answers"] = answers
        data["unreadable"] = tuple(unreadable)
        return data

    @field_validator("school_id", "grade_id", "subject_id", "student_no", "student_name", "uploaded_by", mode="before")
    @classmethod
    def lenient_identifiers(cls, v: Any) -> Any:
        return read_identifier(v)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventBase(WireModel):
    """Fields shared by every event"""
    occurred_at: datetime = Field(default_factory=_utcnow)

    @field_validator("occurred_at", mode="wrap")
    @classmethod
    def unreadable_time_is_now(cls, v: Any, handler) -> datetime:
        if v is None:
            return _utcnow()
        try:
            return handler(v)
        except ValidationError:
            return _utcnow()


class UserCreated(EventBase):
    """A user record was created; every user counts, whatever the role"""
    event_type: Literal["user_created"] = EventType.USER_CREATED.value
    user_id: str
    role: Optional[str] = "user"
    school_id: Optional[str] = None

    @field_validator("user_id", "role", "school_id", mode="before")
    @classmethod
    def lenient_identifiers(cls, v: Any) -> Any:
        return read_identifier(v)

    @property
    def event_key(self) -> str:
        return f"users/{self.user_id}"

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


class AnswerSheetSubmitted(EventBase):
    """An answer sheet was stored under exams/{examId}/answers/{answerId}"""
    event_type: Literal["answer_sheet_submitted"] = EventType.ANSWER_SHEET_SUBMITTED.value
    exam_id: str
    answer_id: str
    record: AnswerSheetRecord = Field(default_factory=AnswerSheetRecord)

    @field_validator("exam_id", "answer_id", mode="before")
    @classmethod
    def numeric_identifiers(cls, v: Any) -> Any:
        return read_identifier(v)

    @property
    def event_key(self) -> str:
        return f"exams/{self.exam_id}/answers/{self.answer_id}"


DomainEvent = Annotated[
    Union[UserCreated, AnswerSheetSubmitted],
    Field(discriminator="event_type"),
]

_event_adapter: TypeAdapter = TypeAdapter(DomainEvent)


def parse_event(data: Mapping[str, Any]) -> Union[UserCreated, AnswerSheetSubmitted]:
    """
    Validate a raw payload into a typed event.

    Raises:
        pydantic.ValidationError: unknown ``eventType``, a payload that is not
            an object, or a missing user, exam or answer id
    """
    return _event_adapter.validate_python(dict(data))
