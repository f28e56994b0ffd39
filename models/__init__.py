"""
SQLAlchemy ORM models for the local durable store.
"""

from .survey import SessionStatus, SurveyTemplate, SurveySession, SurveyResponse

__all__ = [
    "SessionStatus",
    "SurveyTemplate",
    "SurveySession",
    "SurveyResponse",
]
