"""
Survey models for templates, link sessions and submitted responses.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import Column, String, Text, Boolean, ForeignKey, Index
from sqlalchemy.orm import relationship

from core.database import Base
from models.types import UTCDateTime


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, PyEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class SurveyTemplate(Base):
    """Questionnaire definition. The local copy is authoritative."""

    __tablename__ = "survey_templates"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    questions = Column(Text, nullable=False, default="[]")  # JSON list of question objects
    display_mode = Column(String(20), nullable=False, default="one_by_one")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    sessions = relationship("SurveySession", back_populates="template")

    def __repr__(self):
        return f"<SurveyTemplate(id={self.id}, name={self.name}, active={self.is_active})>"


class SurveySession(Base):
    """One offer to complete one survey instance, addressed by a link token."""

    __tablename__ = "survey_sessions"

    id = Column(String(36), primary_key=True, default=_uuid)
    token = Column(String(16), nullable=False, unique=True)
    patient_id = Column(String(36), nullable=True, index=True)
    template_id = Column(String(36), ForeignKey("survey_templates.id"), nullable=False)
    respondent_name = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default=SessionStatus.PENDING.value)
    expires_at = Column(UTCDateTime, nullable=False)
    completed_at = Column(UTCDateTime, nullable=True)
    created_by = Column(String(50), nullable=True)  # e.g. "kiosk", "staff"
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)

    template = relationship("SurveyTemplate", back_populates="sessions")

    __table_args__ = (
        Index("ix_survey_sessions_status", "status"),
    )

    def __repr__(self):
        return f"<SurveySession(id={self.id}, token={self.token}, status={self.status})>"


class SurveyResponse(Base):
    """Durable record of submitted answers."""

    __tablename__ = "survey_responses"

    id = Column(String(36), primary_key=True, default=_uuid)
    # At most one response per session; NULLs (walk-in / kiosk guests) don't collide.
    # No foreign key: a relayed answer may outlive a locally deleted session.
    session_id = Column(String(36), nullable=True, unique=True)
    patient_id = Column(String(36), nullable=True, index=True)
    template_id = Column(String(36), nullable=False, index=True)
    answers = Column(Text, nullable=False)  # JSON list of {question_id, value}
    respondent_name = Column(String(255), nullable=True)
    # Snapshot of what the respondent entered; not kept in sync with patient records
    patient_name = Column(String(255), nullable=True)
    chart_number = Column(String(50), nullable=True)
    doctor_name = Column(String(255), nullable=True)
    gender = Column(String(10), nullable=True)
    age = Column(String(10), nullable=True)
    submitted_at = Column(UTCDateTime, nullable=False, default=_utcnow)

    def __repr__(self):
        return f"<SurveyResponse(id={self.id}, session_id={self.session_id})>"
