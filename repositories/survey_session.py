import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models.survey import SessionStatus, SurveySession
from repositories.base import BaseRepository
from schemas.survey import SessionRead

logger = logging.getLogger(__name__)


class SurveySessionRepository(BaseRepository[SurveySession]):
    def __init__(self, db_session: AsyncSession):
        super().__init__(SurveySession, db_session)

    async def create(
        self,
        *,
        token: str,
        template_id: str,
        expires_at: datetime,
        patient_id: Optional[str] = None,
        respondent_name: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> SessionRead:
        """Insert a pending session"""
        session = SurveySession(
            token=token,
            template_id=template_id,
            expires_at=expires_at,
            patient_id=patient_id,
            respondent_name=respondent_name,
            created_by=created_by,
            status=SessionStatus.PENDING.value,
        )
        self.db.add(session)
        await self.db.flush()
        await self.db.refresh(session)
        return SessionRead.model_validate(session)

    async def get(self, session_id: str) -> Optional[SessionRead]:
        session = await self.get_row(session_id)
        return SessionRead.model_validate(session) if session else None

    async def get_by_token(self, token: str) -> Optional[SessionRead]:
        result = await self.db.execute(
            select(SurveySession).where(SurveySession.token == token)
        )
        session = result.scalar_one_or_none()
        return SessionRead.model_validate(session) if session else None

    async def token_exists(self, token: str) -> bool:
        result = await self.db.execute(
            select(SurveySession.id).where(SurveySession.token == token)
        )
        return result.first() is not None

    async def list(
        self,
        patient_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[SessionRead]:
        rows = await self.get_rows(
            {"patient_id": patient_id, "status": status},
            order_by=SurveySession.created_at.desc(),
        )
        return [SessionRead.model_validate(row) for row in rows]

    async def complete_pending(self, session_id: str, completed_at: datetime) -> bool:
        """Move a session from pending to completed.

        The status check is part of the UPDATE itself, so two racing writers
        can't both succeed. Returns False when the row was not pending.
        """
        result = await self.db.execute(
            update(SurveySession)
            .where(
                SurveySession.id == session_id,
                SurveySession.status == SessionStatus.PENDING.value,
            )
            .values(status=SessionStatus.COMPLETED.value, completed_at=completed_at)
        )
        return result.rowcount == 1

    async def expire_pending(self, session_id: str) -> bool:
        result = await self.db.execute(
            update(SurveySession)
            .where(
                SurveySession.id == session_id,
                SurveySession.status == SessionStatus.PENDING.value,
            )
            .values(status=SessionStatus.EXPIRED.value)
        )
        return result.rowcount == 1

    async def status_of(self, session_id: str) -> Optional[SessionStatus]:
        result = await self.db.execute(
            select(SurveySession.status).where(SurveySession.id == session_id)
        )
        status = result.scalar_one_or_none()
        return SessionStatus(status) if status else None

    async def set_patient(self, session_id: str, patient_id: str) -> bool:
        result = await self.db.execute(
            update(SurveySession)
            .where(SurveySession.id == session_id)
            .values(patient_id=patient_id)
        )
        return result.rowcount == 1
