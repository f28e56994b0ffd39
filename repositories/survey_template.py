import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models.survey import SurveyTemplate
from repositories.base import BaseRepository
from schemas.survey import TemplateCreate, TemplateRead, TemplateUpdate, encode_questions

logger = logging.getLogger(__name__)


class SurveyTemplateRepository(BaseRepository[SurveyTemplate]):
    def __init__(self, db_session: AsyncSession):
        super().__init__(SurveyTemplate, db_session)

    async def create(self, template_data: TemplateCreate) -> TemplateRead:
        """Create a new template"""
        try:
            data = template_data.model_dump(exclude={"questions", "id"}, mode="json")
            template = SurveyTemplate(**data, questions=encode_questions(template_data.questions))
            if template_data.id:
                template.id = template_data.id
            self.db.add(template)
            await self.db.flush()
            await self.db.refresh(template)
            logger.info(f"Created survey template {template.id} ({template.name})")
            return TemplateRead.model_validate(template)
        except Exception as e:
            logger.error(f"Error creating survey template: {e}")
            raise

    async def get(self, template_id: str) -> Optional[TemplateRead]:
        template = await self.get_row(template_id)
        return TemplateRead.model_validate(template) if template else None

    async def list(self, active_only: bool = False) -> List[TemplateRead]:
        filters = {"is_active": True} if active_only else None
        rows = await self.get_rows(filters, order_by=SurveyTemplate.name)
        return [TemplateRead.model_validate(row) for row in rows]

    async def update(self, template_id: str, update_data: TemplateUpdate) -> Optional[TemplateRead]:
        template = await self.get_row(template_id)
        if not template:
            return None

        update_dict = update_data.model_dump(exclude_unset=True, mode="json")
        if "questions" in update_dict:
            update_dict["questions"] = encode_questions(update_data.questions or [])
        for field, value in update_dict.items():
            setattr(template, field, value)

        await self.db.flush()
        await self.db.refresh(template)
        return TemplateRead.model_validate(template)
