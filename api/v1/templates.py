import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError

from api.deps import get_lifecycle
from repositories.survey_template import SurveyTemplateRepository
from schemas.common import StandardSuccessResponse
from schemas.survey import TemplateCreate, TemplateRead, TemplateUpdate
from services.session_lifecycle import SessionLifecycleManager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=TemplateRead, status_code=status.HTTP_201_CREATED)
async def create_template(
    payload: TemplateCreate,
    lifecycle: SessionLifecycleManager = Depends(get_lifecycle),
):
    async with lifecycle.session_factory() as db:
        try:
            template = await SurveyTemplateRepository(db).create(payload)
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Template {payload.id} already exists")
    return template


@router.get("", response_model=List[TemplateRead])
async def list_templates(
    active_only: bool = False,
    lifecycle: SessionLifecycleManager = Depends(get_lifecycle),
):
    async with lifecycle.session_factory() as db:
        return await SurveyTemplateRepository(db).list(active_only=active_only)


@router.get("/{template_id}", response_model=TemplateRead)
async def get_template(
    template_id: str,
    lifecycle: SessionLifecycleManager = Depends(get_lifecycle),
):
    async with lifecycle.session_factory() as db:
        template = await SurveyTemplateRepository(db).get(template_id)
    if template is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Template {template_id} not found")
    return template


@router.patch("/{template_id}", response_model=TemplateRead)
async def update_template(
    template_id: str,
    payload: TemplateUpdate,
    lifecycle: SessionLifecycleManager = Depends(get_lifecycle),
):
    async with lifecycle.session_factory() as db:
        template = await SurveyTemplateRepository(db).update(template_id, payload)
        if template is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Template {template_id} not found")
        await db.commit()
    return template


@router.delete("/{template_id}", response_model=StandardSuccessResponse)
async def delete_template(
    template_id: str,
    lifecycle: SessionLifecycleManager = Depends(get_lifecycle),
):
    """Delete a template that no session was ever issued from"""
    async with lifecycle.session_factory() as db:
        try:
            deleted = await SurveyTemplateRepository(db).delete(template_id)
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Template {template_id} has sessions; deactivate it instead",
            )
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Template {template_id} not found")
    logger.info(f"Deleted survey template {template_id}")
    return StandardSuccessResponse(message="Template deleted")
