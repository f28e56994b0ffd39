import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from api.deps import get_lifecycle
from core.config import settings
from core.exceptions import (
    AlreadyTerminal,
    SessionNotFound,
    TemplateInactive,
    TemplateNotFound,
    TokenGenerationError,
)
from models.survey import SessionStatus
from schemas.common import StandardSuccessResponse
from schemas.survey import SessionCreate, SessionLink, SessionRead
from services.session_lifecycle import SessionLifecycleManager
from services.token_codec import build_link, build_qr_code_url

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=SessionLink, status_code=status.HTTP_201_CREATED)
async def create_session(
    payload: SessionCreate,
    lifecycle: SessionLifecycleManager = Depends(get_lifecycle),
):
    """Issue a survey link for a template and a respondent"""
    try:
        issued = await lifecycle.create_session(
            payload.template_id,
            payload.respondent,
            ttl_hours=payload.ttl_hours,
            created_by=payload.created_by,
            remote=payload.remote,
        )
    except TemplateNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except TemplateInactive as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except TokenGenerationError as e:
        logger.error(f"Token generation failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not issue a survey link")

    session = issued.session
    link = build_link(session.token, settings.PUBLIC_BASE_URL)
    return SessionLink(
        token=session.token,
        expires_at=session.expires_at,
        link=link,
        qr_code_url=build_qr_code_url(link),
        relay_mirrored=issued.relay_mirrored,
        session=session,
    )


@router.get("", response_model=List[SessionRead])
async def list_sessions(
    patient_id: Optional[str] = None,
    status_filter: Optional[SessionStatus] = Query(default=None, alias="status"),
    lifecycle: SessionLifecycleManager = Depends(get_lifecycle),
):
    """List sessions, newest first, with expiry applied"""
    return await lifecycle.list_sessions(patient_id=patient_id, status=status_filter)


@router.get("/{session_id}", response_model=SessionRead)
async def get_session(
    session_id: str,
    lifecycle: SessionLifecycleManager = Depends(get_lifecycle),
):
    session = await lifecycle.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Session {session_id} not found")
    return session


@router.post("/{session_id}/expire", response_model=SessionRead)
async def expire_session(
    session_id: str,
    lifecycle: SessionLifecycleManager = Depends(get_lifecycle),
):
    try:
        return await lifecycle.expire_session(session_id)
    except SessionNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except AlreadyTerminal as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.delete("/{session_id}", response_model=StandardSuccessResponse)
async def delete_session(
    session_id: str,
    lifecycle: SessionLifecycleManager = Depends(get_lifecycle),
):
    if not await lifecycle.delete_session(session_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Session {session_id} not found")
    return StandardSuccessResponse(message="Session deleted")
