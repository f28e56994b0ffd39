"""
Session issuance, lazy expiry and the single pending -> completed write path.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import settings
from core.exceptions import (
    AlreadyTerminal,
    RelayUnreachable,
    SessionNotFound,
    TemplateInactive,
    TemplateNotFound,
    TokenGenerationError,
)
from core.logging import get_logger
from models.survey import SessionStatus
from repositories.survey_session import SurveySessionRepository
from repositories.survey_template import SurveyTemplateRepository
from schemas.survey import RespondentRef, SessionRead, SessionSnapshot, TemplateSnapshot
from services.relay_store import RedisRelayStore
from services.token_codec import generate_token

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def expire_if_stale(session: SessionRead, now: Optional[datetime] = None) -> SessionRead:
    """Return an expired copy of a pending session past its deadline.

    Anything else (not yet due, completed, already expired) comes back
    unchanged, so completed sessions never turn into expired ones.
    """
    now = now or utcnow()
    if session.status is SessionStatus.PENDING and now > session.expires_at:
        return session.model_copy(update={"status": SessionStatus.EXPIRED})
    return session


@dataclass(frozen=True)
class IssuedSession:
    session: SessionRead
    relay_mirrored: bool


class SessionLifecycleManager:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        relay: Optional[RedisRelayStore] = None,
        *,
        owner_id: Optional[str] = None,
        allow_remote: Optional[bool] = None,
        token_max_attempts: Optional[int] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.relay = relay
        self.owner_id = owner_id or settings.CLINIC_OWNER_ID
        self.allow_remote = settings.ALLOW_REMOTE_RESPONDENTS if allow_remote is None else allow_remote
        self.token_max_attempts = token_max_attempts or settings.TOKEN_MAX_ATTEMPTS
        self.clock = clock

    async def create_session(
        self,
        template_id: str,
        respondent: RespondentRef,
        ttl_hours: Optional[float] = None,
        created_by: Optional[str] = None,
        remote: bool = True,
    ) -> IssuedSession:
        ttl_hours = settings.SESSION_TTL_HOURS if ttl_hours is None else ttl_hours
        if ttl_hours < 0:
            raise ValueError("ttl_hours must not be negative")

        async with self.session_factory() as db:
            template = await SurveyTemplateRepository(db).get(template_id)
        if template is None:
            raise TemplateNotFound(template_id)
        if not template.is_active:
            raise TemplateInactive(template_id)

        session = await self._insert_with_unique_token(template_id, respondent, ttl_hours, created_by)
        logger.info(
            "Survey session created",
            session_id=session.id,
            template_id=template_id,
            expires_at=session.expires_at.isoformat(),
            created_by=created_by,
        )

        mirrored = False
        if remote and self.allow_remote and self.relay is not None:
            # The local write already committed; a relay failure only costs remote reachability.
            try:
                await self.relay.put_template_snapshot_if_absent(TemplateSnapshot.model_validate(template.model_dump()))
                await self.relay.put_session_snapshot(
                    SessionSnapshot(**session.model_dump(), owner_id=self.owner_id)
                )
                mirrored = True
            except RelayUnreachable as e:
                logger.warning("Session not mirrored to relay", session_id=session.id, error=str(e))

        return IssuedSession(session=session, relay_mirrored=mirrored)

    async def create_kiosk_session(self, template_id: str, respondent: RespondentRef) -> IssuedSession:
        """Same-device session; answered in the clinic, never mirrored."""
        return await self.create_session(template_id, respondent, created_by="kiosk", remote=False)

    async def _insert_with_unique_token(
        self,
        template_id: str,
        respondent: RespondentRef,
        ttl_hours: float,
        created_by: Optional[str],
    ) -> SessionRead:
        for attempt in range(1, self.token_max_attempts + 1):
            token = generate_token()
            async with self.session_factory() as db:
                repo = SurveySessionRepository(db)
                if await repo.token_exists(token):
                    logger.warning("Token collision, regenerating", attempt=attempt)
                    continue
                try:
                    session = await repo.create(
                        token=token,
                        template_id=template_id,
                        expires_at=self.clock() + timedelta(hours=ttl_hours),
                        patient_id=respondent.patient_id,
                        respondent_name=respondent.name,
                        created_by=created_by,
                    )
                    await db.commit()
                    return session
                except IntegrityError:
                    await db.rollback()
                    logger.warning("Token collision on insert, regenerating", attempt=attempt)

        raise TokenGenerationError(f"Could not allocate a unique token after {self.token_max_attempts} attempts")

    async def refresh(self, session: SessionRead) -> SessionRead:
        """Apply lazy expiry and persist it if it was just discovered."""
        current = expire_if_stale(session, self.clock())
        if current.status is session.status:
            return current

        async with self.session_factory() as db:
            repo = SurveySessionRepository(db)
            if await repo.expire_pending(session.id):
                await db.commit()
                logger.info("Survey session expired", session_id=session.id)
                return current
            # Someone else moved it first (usually a completion); trust the row.
            fresh = await repo.get(session.id)
        return fresh or current

    async def get_session(self, session_id: str) -> Optional[SessionRead]:
        async with self.session_factory() as db:
            session = await SurveySessionRepository(db).get(session_id)
        return await self.refresh(session) if session else None

    async def get_session_by_token(self, token: str) -> Optional[SessionRead]:
        async with self.session_factory() as db:
            session = await SurveySessionRepository(db).get_by_token(token)
        return await self.refresh(session) if session else None

    async def list_sessions(
        self,
        patient_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
    ) -> List[SessionRead]:
        async with self.session_factory() as db:
            sessions = await SurveySessionRepository(db).list(patient_id=patient_id)
        refreshed = [await self.refresh(s) for s in sessions]
        if status is not None:
            refreshed = [s for s in refreshed if s.status is SessionStatus(status)]
        return refreshed

    async def mark_completed(
        self,
        session_id: str,
        at: datetime,
        db: Optional[AsyncSession] = None,
    ) -> None:
        """The only pending -> completed transition.

        With `db` the update joins the caller's transaction and is not
        committed here. Raises AlreadyTerminal if the session is no longer
        pending, SessionNotFound if it doesn't exist.
        """
        if db is not None:
            await self._complete(db, session_id, at)
            return

        async with self.session_factory() as own_db:
            try:
                await self._complete(own_db, session_id, at)
            except (AlreadyTerminal, SessionNotFound):
                await own_db.rollback()
                raise
            await own_db.commit()

    async def _complete(self, db: AsyncSession, session_id: str, at: datetime) -> None:
        repo = SurveySessionRepository(db)
        if await repo.complete_pending(session_id, at):
            return
        status = await repo.status_of(session_id)
        if status is None:
            raise SessionNotFound(session_id)
        raise AlreadyTerminal(session_id, status.value)

    async def expire_session(self, session_id: str) -> SessionRead:
        """Explicit clinic-side expiry of a pending session."""
        async with self.session_factory() as db:
            repo = SurveySessionRepository(db)
            if not await repo.expire_pending(session_id):
                status = await repo.status_of(session_id)
                if status is None:
                    raise SessionNotFound(session_id)
                raise AlreadyTerminal(session_id, status.value)
            await db.commit()
            session = await repo.get(session_id)

        await self.mirror_status(session, SessionStatus.EXPIRED)
        return session

    async def mirror_status(
        self,
        session: SessionRead,
        status: SessionStatus,
        completed_at: Optional[datetime] = None,
    ) -> bool:
        """Push a committed local transition to the relay snapshot, if there is one.

        Best effort: the local row is already final, so a relay failure is
        only logged.
        """
        if self.relay is None or session.created_by == "kiosk":
            return False
        try:
            return await self.relay.mark_snapshot_status(session.token, status, completed_at=completed_at)
        except RelayUnreachable as e:
            logger.warning(
                "Relay snapshot not updated",
                session_id=session.id,
                status=status.value,
                error=str(e),
            )
            return False

    async def delete_session(self, session_id: str) -> bool:
        """Explicit clinic-side cleanup; the only way a session row goes away."""
        async with self.session_factory() as db:
            repo = SurveySessionRepository(db)
            session = await repo.get(session_id)
            if session is None:
                return False
            await repo.delete(session_id)
            await db.commit()

        if self.relay is not None:
            try:
                await self.relay.delete_session_snapshot(session.token)
            except RelayUnreachable as e:
                logger.warning("Relay snapshot not deleted", session_id=session_id, error=str(e))
        logger.info("Survey session deleted", session_id=session_id)
        return True
