"""
Submission paths: direct writes for same-device flows, relay writes for
remote respondents, plus the later identity-linking mutation.
"""

from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.exceptions import (
    AlreadyTerminal,
    RelayUnreachable,
    ResponseNotFound,
    SessionNotFound,
    TemplateNotFound,
)
from core.logging import get_logger
from models.survey import SessionStatus
from repositories.survey_response import SurveyResponseRepository
from repositories.survey_session import SurveySessionRepository
from repositories.survey_template import SurveyTemplateRepository
from schemas.survey import Answer, RelayRecord, RespondentDetails, ResponseRead, SyncChange
from services.change_notifier import ChangeNotifier
from services.relay_store import RedisRelayStore
from services.session_lifecycle import Clock, SessionLifecycleManager, expire_if_stale, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class AcceptedSubmission:
    destination: str  # "local" or "relay"
    response_id: str


class SubmissionService:
    def __init__(
        self,
        lifecycle: Optional[SessionLifecycleManager] = None,
        relay: Optional[RedisRelayStore] = None,
        notifier: Optional[ChangeNotifier] = None,
        clock: Clock = utcnow,
    ):
        self.lifecycle = lifecycle
        self.relay = relay
        self.notifier = notifier or ChangeNotifier()
        self.clock = lifecycle.clock if lifecycle is not None else clock

    def _require_local(self) -> SessionLifecycleManager:
        if self.lifecycle is None:
            raise RuntimeError("This process has no local survey database")
        return self.lifecycle

    def _require_relay(self) -> RedisRelayStore:
        if self.relay is None:
            raise RelayUnreachable("No relay store configured")
        return self.relay

    async def submit_by_token(
        self,
        token: str,
        answers: List[Answer],
        details: Optional[RespondentDetails] = None,
    ) -> AcceptedSubmission:
        """Store answers for a survey link wherever this process can reach.

        With a local database the answers go straight in; if that database
        fails they are staged in the relay instead and ingested once it is
        back. Without one (the public relay) they are always staged.
        """
        if self.lifecycle is not None:
            try:
                response = await self.submit_local_by_token(token, answers, details=details)
                return AcceptedSubmission(destination="local", response_id=response.id)
            except SQLAlchemyError as e:
                if self.relay is None:
                    raise
                logger.warning("Local store failed, staging submission in the relay", token=token, error=str(e))

        record = await self.submit_remote(token, answers, details=details)
        return AcceptedSubmission(destination="relay", response_id=record.id)

    # ---- same-device ----

    async def submit_local(
        self,
        session_id: str,
        answers: List[Answer],
        details: Optional[RespondentDetails] = None,
    ) -> ResponseRead:
        """Write a session's response straight into the local database.

        Response insert and session completion share one transaction.
        Raises AlreadyTerminal when the session is no longer open.
        """
        lifecycle = self._require_local()
        session = await lifecycle.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if session.status is not SessionStatus.PENDING:
            raise AlreadyTerminal(session_id, session.status.value)

        now = self.clock()
        async with lifecycle.session_factory() as db:
            try:
                response = await SurveyResponseRepository(db).create(
                    session_id=session.id,
                    patient_id=session.patient_id,
                    template_id=session.template_id,
                    respondent_name=session.respondent_name,
                    answers=answers,
                    submitted_at=now,
                    details=details,
                )
                await lifecycle.mark_completed(session.id, now, db=db)
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise AlreadyTerminal(session_id, SessionStatus.COMPLETED.value)
            except (AlreadyTerminal, SessionNotFound):
                await db.rollback()
                raise

        logger.info("Survey response stored locally", response_id=response.id, session_id=session_id)
        # The relay copy must not stay pending after a local completion
        await lifecycle.mirror_status(session, SessionStatus.COMPLETED, completed_at=now)
        await self.notifier.notify(
            SyncChange(response_id=response.id, session_id=session_id, template_id=response.template_id)
        )
        return response

    async def submit_local_by_token(
        self,
        token: str,
        answers: List[Answer],
        details: Optional[RespondentDetails] = None,
    ) -> ResponseRead:
        lifecycle = self._require_local()
        session = await lifecycle.get_session_by_token(token.strip().upper())
        if session is None:
            raise SessionNotFound(token)
        return await self.submit_local(session.id, answers, details=details)

    async def submit_direct(
        self,
        template_id: str,
        answers: List[Answer],
        respondent_name: Optional[str] = None,
        details: Optional[RespondentDetails] = None,
    ) -> ResponseRead:
        """Guest / walk-in response that has no session."""
        lifecycle = self._require_local()
        async with lifecycle.session_factory() as db:
            if await SurveyTemplateRepository(db).get(template_id) is None:
                raise TemplateNotFound(template_id)
            response = await SurveyResponseRepository(db).create(
                template_id=template_id,
                answers=answers,
                respondent_name=respondent_name,
                submitted_at=self.clock(),
                details=details,
            )
            await db.commit()

        logger.info("Direct survey response stored", response_id=response.id, template_id=template_id)
        await self.notifier.notify(SyncChange(response_id=response.id, template_id=template_id))
        return response

    # ---- remote ----

    async def submit_remote(
        self,
        token: str,
        answers: List[Answer],
        details: Optional[RespondentDetails] = None,
    ) -> RelayRecord:
        """Stage a remote respondent's answers in the relay for the owning clinic."""
        relay = self._require_relay()
        token = token.strip().upper()
        snapshot = await relay.get_session_snapshot(token)
        if snapshot is None:
            raise SessionNotFound(token)

        now = self.clock()
        session = snapshot.to_session()
        current = expire_if_stale(session, now)
        if current is not session:
            await relay.mark_snapshot_status(token, SessionStatus.EXPIRED)
        if current.status is not SessionStatus.PENDING:
            raise AlreadyTerminal(current.id, current.status.value)

        record = RelayRecord(
            owner_id=snapshot.owner_id,
            session_id=current.id,
            template_id=current.template_id,
            patient_id=current.patient_id,
            respondent_name=current.respondent_name,
            answers=answers,
            created_at=now,
            **(details.respondent_details().model_dump() if details is not None else {}),
        )
        await relay.insert(record)

        try:
            await relay.mark_snapshot_status(token, SessionStatus.COMPLETED, completed_at=now)
        except RelayUnreachable as e:
            # The record is already staged; a second submit is absorbed by ingestion.
            logger.warning("Relay snapshot not marked completed", session_id=current.id, error=str(e))
        return record

    # ---- clinic-side maintenance ----

    async def link_response_to_patient(self, response_id: str, patient_id: str) -> ResponseRead:
        """Attach a previously unknown respondent to a clinic patient record."""
        lifecycle = self._require_local()
        async with lifecycle.session_factory() as db:
            responses = SurveyResponseRepository(db)
            if not await responses.set_patient(response_id, patient_id):
                await db.rollback()
                raise ResponseNotFound(response_id)
            response = await responses.get(response_id)
            if response.session_id:
                await SurveySessionRepository(db).set_patient(response.session_id, patient_id)
            await db.commit()

        logger.info("Survey response linked to patient", response_id=response_id, patient_id=patient_id)
        await self.notifier.notify(
            SyncChange(response_id=response.id, session_id=response.session_id, template_id=response.template_id)
        )
        return response

    async def list_responses(
        self,
        patient_id: Optional[str] = None,
        template_id: Optional[str] = None,
    ) -> List[ResponseRead]:
        lifecycle = self._require_local()
        async with lifecycle.session_factory() as db:
            return await SurveyResponseRepository(db).list(patient_id=patient_id, template_id=template_id)

    async def delete_response(self, response_id: str) -> bool:
        lifecycle = self._require_local()
        async with lifecycle.session_factory() as db:
            deleted = await SurveyResponseRepository(db).delete(response_id)
            await db.commit()
        if deleted:
            logger.info("Survey response deleted", response_id=response_id)
        return deleted
