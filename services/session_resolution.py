"""
Token resolution for the respondent's survey page.
"""

from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from core.exceptions import RelayUnreachable
from core.logging import get_logger
from models.survey import SessionStatus
from repositories.survey_template import SurveyTemplateRepository
from schemas.survey import ResolutionRead, ResolutionStatus, SessionRead, TemplateSnapshot
from services.relay_store import RedisRelayStore
from services.session_lifecycle import Clock, SessionLifecycleManager, expire_if_stale, utcnow

logger = get_logger(__name__)

MESSAGES = {
    ResolutionStatus.VALID: "",
    ResolutionStatus.NOT_FOUND: "This survey link is not valid.",
    ResolutionStatus.EXPIRED: "This survey link has expired.",
    ResolutionStatus.COMPLETED: "Your answers were already recorded.",
}

_STATUS_MAP = {
    SessionStatus.EXPIRED: ResolutionStatus.EXPIRED,
    SessionStatus.COMPLETED: ResolutionStatus.COMPLETED,
}


def _result(
    status: ResolutionStatus,
    source: Optional[str],
    session: Optional[SessionRead] = None,
    template: Optional[TemplateSnapshot] = None,
) -> ResolutionRead:
    return ResolutionRead(status=status, session=session, template=template, source=source, message=MESSAGES[status])


class SessionResolutionService:
    """Maps a token to a live session + template or a terminal state.

    The local database answers when this process has one and it responds;
    otherwise the relay snapshot does. The only write is persisting an
    expiry discovered while reading.
    """

    def __init__(
        self,
        lifecycle: Optional[SessionLifecycleManager] = None,
        relay: Optional[RedisRelayStore] = None,
        clock: Clock = utcnow,
    ):
        self.lifecycle = lifecycle
        self.relay = relay
        self.clock = lifecycle.clock if lifecycle is not None else clock

    async def resolve_by_token(self, token: str) -> ResolutionRead:
        token = token.strip().upper()

        if self.lifecycle is not None:
            try:
                return await self._resolve_local(token)
            except SQLAlchemyError as e:
                logger.warning("Local store unavailable, resolving from relay", token=token, error=str(e))

        if self.relay is None:
            raise RelayUnreachable("No store is available to resolve survey tokens")
        return await self._resolve_relay(token)

    async def _resolve_local(self, token: str) -> ResolutionRead:
        session = await self.lifecycle.get_session_by_token(token)
        if session is None:
            return _result(ResolutionStatus.NOT_FOUND, "local")
        if session.status in _STATUS_MAP:
            return _result(_STATUS_MAP[session.status], "local", session=session)

        async with self.lifecycle.session_factory() as db:
            template = await SurveyTemplateRepository(db).get(session.template_id)
        if template is None:
            logger.error("Session references a missing template", session_id=session.id, template_id=session.template_id)
            return _result(ResolutionStatus.NOT_FOUND, "local")

        return _result(
            ResolutionStatus.VALID,
            "local",
            session=session,
            template=TemplateSnapshot.model_validate(template.model_dump()),
        )

    async def _resolve_relay(self, token: str) -> ResolutionRead:
        snapshot = await self.relay.get_session_snapshot(token)
        if snapshot is None:
            return _result(ResolutionStatus.NOT_FOUND, "relay")

        session = snapshot.to_session()
        current = expire_if_stale(session, self.clock())
        if current is not session:
            await self.relay.mark_snapshot_status(token, SessionStatus.EXPIRED)
            logger.info("Relay snapshot expired", session_id=session.id)

        if current.status in _STATUS_MAP:
            return _result(_STATUS_MAP[current.status], "relay", session=current)

        template = await self.relay.get_template_snapshot(current.template_id)
        if template is None:
            logger.error("Relay has no template snapshot", session_id=current.id, template_id=current.template_id)
            return _result(ResolutionStatus.NOT_FOUND, "relay")

        return _result(ResolutionStatus.VALID, "relay", session=current, template=template)
