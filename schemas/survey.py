"""
Value types for templates, sessions, responses and relay records.

Rows coming out of the local database or the relay are decoded here, and a
payload that doesn't match raises MalformedRecord instead of leaking dicts.
"""

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from core.exceptions import MalformedRecord
from models.survey import SessionStatus
from schemas.common import UTCDatetime


class Answer(BaseModel):
    question_id: str
    # Older clients send the value under "answer"
    value: Union[int, float, str, List[str]] = Field(validation_alias=AliasChoices("value", "answer"))


_answers_adapter = TypeAdapter(List[Answer])
_questions_adapter = TypeAdapter(List[Dict[str, Any]])


def decode_answers(raw: Union[str, bytes, list], record_id: Optional[str] = None) -> List[Answer]:
    """Strictly decode stored answers (JSON text or an already-parsed list)."""
    try:
        if isinstance(raw, (str, bytes)):
            return _answers_adapter.validate_json(raw)
        return _answers_adapter.validate_python(raw)
    except ValidationError as e:
        raise MalformedRecord(f"Malformed answers payload: {e}", record_id=record_id) from e


def encode_answers(answers: List[Answer]) -> str:
    return json.dumps([a.model_dump() for a in answers], ensure_ascii=False)


def decode_questions(raw: Union[str, list], template_id: Optional[str] = None) -> List[Dict[str, Any]]:
    try:
        if isinstance(raw, str):
            return _questions_adapter.validate_json(raw)
        return _questions_adapter.validate_python(raw)
    except ValidationError as e:
        raise MalformedRecord(f"Malformed questions for template: {e}", record_id=template_id) from e


def encode_questions(questions: List[Dict[str, Any]]) -> str:
    return json.dumps(questions, ensure_ascii=False)


# ---------- Templates ----------

class DisplayMode(str, Enum):
    ONE_BY_ONE = "one_by_one"
    SINGLE_PAGE = "single_page"


class TemplateBase(BaseModel):
    name: str
    description: Optional[str] = None
    questions: List[Dict[str, Any]] = []
    display_mode: DisplayMode = DisplayMode.ONE_BY_ONE
    is_active: bool = True


class TemplateCreate(TemplateBase):
    id: Optional[str] = None


class TemplateUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    questions: Optional[List[Dict[str, Any]]] = None
    display_mode: Optional[DisplayMode] = None
    is_active: Optional[bool] = None


class TemplateSnapshot(TemplateBase):
    """Template as shown to a respondent; also the relay-side copy."""

    id: str

    model_config = {
        "from_attributes": True
    }

    @field_validator("questions", mode="before")
    @classmethod
    def _decode_questions(cls, value):
        if isinstance(value, str):
            return decode_questions(value)
        return value


class TemplateRead(TemplateSnapshot):
    created_at: Optional[UTCDatetime] = None
    updated_at: Optional[UTCDatetime] = None


# ---------- Sessions ----------

class RespondentRef(BaseModel):
    """Who is expected to answer: a known patient, a free-text name, or both."""

    patient_id: Optional[str] = None
    name: Optional[str] = None

    @model_validator(mode="after")
    def _require_identity(self):
        if not self.patient_id and not (self.name and self.name.strip()):
            raise ValueError("respondent needs a patient_id or a name")
        return self


class SessionCreate(BaseModel):
    template_id: str
    respondent: RespondentRef
    ttl_hours: Optional[float] = Field(default=None, ge=0)
    created_by: Optional[str] = None
    remote: bool = True


class SessionRead(BaseModel):
    id: str
    token: str
    patient_id: Optional[str] = None
    template_id: str
    respondent_name: Optional[str] = None
    status: SessionStatus
    expires_at: UTCDatetime
    completed_at: Optional[UTCDatetime] = None
    created_by: Optional[str] = None
    created_at: UTCDatetime

    model_config = {
        "from_attributes": True
    }


class SessionLink(BaseModel):
    token: str
    expires_at: UTCDatetime
    link: str
    qr_code_url: str
    relay_mirrored: bool
    session: SessionRead


class SessionSnapshot(SessionRead):
    """Relay-side mirror of a session, routed to the owning clinic."""

    owner_id: str

    def to_session(self) -> SessionRead:
        return SessionRead.model_validate(self.model_dump(exclude={"owner_id"}))


# ---------- Responses ----------

class RespondentDetails(BaseModel):
    """Demographics the respondent fills in on the survey page."""

    patient_name: Optional[str] = None
    chart_number: Optional[str] = None
    doctor_name: Optional[str] = None
    gender: Optional[str] = None
    age: Optional[str] = None

    @field_validator("age", mode="before")
    @classmethod
    def _age_as_text(cls, value):
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    def respondent_details(self) -> "RespondentDetails":
        return RespondentDetails.model_validate(self.model_dump(include=set(RespondentDetails.model_fields)))


class ResponseRead(RespondentDetails):
    id: str
    session_id: Optional[str] = None
    patient_id: Optional[str] = None
    template_id: str
    respondent_name: Optional[str] = None
    answers: List[Answer]
    submitted_at: UTCDatetime

    model_config = {
        "from_attributes": True
    }

    @field_validator("answers", mode="before")
    @classmethod
    def _decode_answers(cls, value):
        if isinstance(value, (str, bytes)):
            return decode_answers(value)
        return value


class SubmissionRequest(RespondentDetails):
    answers: List[Answer]


class DirectResponseCreate(RespondentDetails):
    template_id: str
    answers: List[Answer]
    respondent_name: Optional[str] = None


class LinkPatientRequest(BaseModel):
    patient_id: str


class SubmissionResult(BaseModel):
    success: bool = True
    already_recorded: bool = False
    destination: str  # "local" or "relay"
    response_id: Optional[str] = None
    message: str


# ---------- Relay ----------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RelayRecord(RespondentDetails):
    """Staging copy of a response waiting to be ingested by its owner."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str
    session_id: Optional[str] = None
    template_id: str
    patient_id: Optional[str] = None
    respondent_name: Optional[str] = None
    answers: List[Answer]
    synced: bool = False
    created_at: UTCDatetime = Field(default_factory=_utcnow)

    @classmethod
    def decode(cls, raw: Union[str, bytes], record_id: Optional[str] = None) -> "RelayRecord":
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise MalformedRecord(f"Malformed relay record: {e}", record_id=record_id) from e

    def encode(self) -> str:
        return self.model_dump_json()


def decode_session_snapshot(raw: Union[str, bytes], token: Optional[str] = None) -> SessionSnapshot:
    try:
        return SessionSnapshot.model_validate_json(raw)
    except ValidationError as e:
        raise MalformedRecord(f"Malformed session snapshot: {e}", record_id=token) from e


def decode_template_snapshot(raw: Union[str, bytes], template_id: Optional[str] = None) -> TemplateSnapshot:
    try:
        return TemplateSnapshot.model_validate_json(raw)
    except ValidationError as e:
        raise MalformedRecord(f"Malformed template snapshot: {e}", record_id=template_id) from e


# ---------- Resolution ----------

class ResolutionStatus(str, Enum):
    VALID = "valid"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    COMPLETED = "completed"


class ResolutionRead(BaseModel):
    status: ResolutionStatus
    session: Optional[SessionRead] = None
    template: Optional[TemplateSnapshot] = None
    source: Optional[str] = None  # "local" or "relay"
    message: str = ""

    @property
    def is_valid(self) -> bool:
        return self.status is ResolutionStatus.VALID


class SyncChange(BaseModel):
    response_id: str
    session_id: Optional[str] = None
    template_id: str
