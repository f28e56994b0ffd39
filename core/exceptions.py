"""
Domain errors for session issuance, resolution and relay ingestion.
"""

from typing import Optional


class SurveyRelayError(Exception):
    """Base class for all survey relay errors."""


class TemplateNotFound(SurveyRelayError):
    def __init__(self, template_id: str):
        super().__init__(f"Survey template {template_id} not found")
        self.template_id = template_id


class TemplateInactive(SurveyRelayError):
    def __init__(self, template_id: str):
        super().__init__(f"Survey template {template_id} is not active")
        self.template_id = template_id


class SessionNotFound(SurveyRelayError):
    def __init__(self, key: str):
        super().__init__(f"Survey session {key} not found")
        self.key = key


class ResponseNotFound(SurveyRelayError):
    def __init__(self, response_id: str):
        super().__init__(f"Survey response {response_id} not found")
        self.response_id = response_id


class AlreadyTerminal(SurveyRelayError):
    """The session left the pending state before this write reached it."""

    def __init__(self, session_id: str, status: Optional[str] = None):
        super().__init__(f"Survey session {session_id} is already {status or 'terminal'}")
        self.session_id = session_id
        self.status = status


class RelayUnreachable(SurveyRelayError):
    """The relay store could not be reached; local work continues without it."""


class StorageWriteFailed(SurveyRelayError):
    """A local transaction failed; the relay copy must be kept for a retry."""


class MalformedRecord(SurveyRelayError):
    def __init__(self, message: str, record_id: Optional[str] = None):
        super().__init__(message)
        self.record_id = record_id


class TokenGenerationError(SurveyRelayError):
    """No cryptographically secure random source is available."""
