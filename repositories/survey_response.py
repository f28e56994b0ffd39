import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models.survey import SurveyResponse
from repositories.base import BaseRepository
from schemas.survey import Answer, RespondentDetails, ResponseRead, encode_answers

logger = logging.getLogger(__name__)


class SurveyResponseRepository(BaseRepository[SurveyResponse]):
    def __init__(self, db_session: AsyncSession):
        super().__init__(SurveyResponse, db_session)

    async def create(
        self,
        *,
        template_id: str,
        answers: List[Answer],
        submitted_at: datetime,
        session_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        respondent_name: Optional[str] = None,
        details: Optional[RespondentDetails] = None,
    ) -> ResponseRead:
        """Insert a response; raises IntegrityError if the session already has one"""
        extra = details.model_dump(include=set(RespondentDetails.model_fields)) if details is not None else {}
        response = SurveyResponse(
            session_id=session_id,
            patient_id=patient_id,
            template_id=template_id,
            answers=encode_answers(answers),
            respondent_name=respondent_name,
            submitted_at=submitted_at,
            **extra,
        )
        self.db.add(response)
        await self.db.flush()
        await self.db.refresh(response)
        return ResponseRead.model_validate(response)

    async def get(self, response_id: str) -> Optional[ResponseRead]:
        response = await self.get_row(response_id)
        return ResponseRead.model_validate(response) if response else None

    async def get_by_session_id(self, session_id: str) -> Optional[ResponseRead]:
        result = await self.db.execute(
            select(SurveyResponse).where(SurveyResponse.session_id == session_id)
        )
        response = result.scalar_one_or_none()
        return ResponseRead.model_validate(response) if response else None

    async def list(
        self,
        patient_id: Optional[str] = None,
        template_id: Optional[str] = None,
    ) -> List[ResponseRead]:
        rows = await self.get_rows(
            {"patient_id": patient_id, "template_id": template_id},
            order_by=SurveyResponse.submitted_at.desc(),
        )
        return [ResponseRead.model_validate(row) for row in rows]

    async def set_patient(self, response_id: str, patient_id: str) -> bool:
        result = await self.db.execute(
            update(SurveyResponse)
            .where(SurveyResponse.id == response_id)
            .values(patient_id=patient_id)
        )
        return result.rowcount == 1
