"""
Public endpoints used by the respondent's survey page.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from api.deps import Services, get_services
from core.exceptions import AlreadyTerminal, RelayUnreachable, SessionNotFound
from models.survey import SessionStatus
from schemas.survey import ResolutionRead, ResolutionStatus, SubmissionRequest, SubmissionResult

logger = logging.getLogger(__name__)

router = APIRouter()

_RESOLUTION_CODES = {
    ResolutionStatus.VALID: status.HTTP_200_OK,
    ResolutionStatus.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ResolutionStatus.EXPIRED: status.HTTP_410_GONE,
    ResolutionStatus.COMPLETED: status.HTTP_409_CONFLICT,
}

_ACCEPTED_MESSAGES = {
    "local": "Thank you, your answers were recorded.",
    "relay": "Thank you, your answers were sent to the clinic.",
}


@router.get("/{token}", response_model=ResolutionRead)
async def resolve_survey(token: str, services: Services = Depends(get_services)):
    """Resolve a survey token to its session and template, or a terminal state"""
    try:
        result = await services.resolution.resolve_by_token(token)
    except RelayUnreachable as e:
        logger.error(f"Cannot resolve token {token}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="The survey service is temporarily unavailable. Please try again shortly."
        )

    return JSONResponse(
        status_code=_RESOLUTION_CODES[result.status],
        content=result.model_dump(mode="json"),
    )


@router.post("/{token}/responses", response_model=SubmissionResult)
async def submit_survey(
    token: str,
    payload: SubmissionRequest,
    services: Services = Depends(get_services),
):
    """Submit answers for a survey link.

    In the clinic the answers go straight into the local database, or into
    the relay while that database is failing; on the public relay they are
    always staged for the clinic to pick up.
    """
    try:
        accepted = await services.submission.submit_by_token(token, payload.answers, details=payload)
        return SubmissionResult(
            destination=accepted.destination,
            response_id=accepted.response_id,
            message=_ACCEPTED_MESSAGES[accepted.destination],
        )

    except AlreadyTerminal as e:
        if e.status == SessionStatus.EXPIRED.value:
            raise HTTPException(status_code=status.HTTP_410_GONE, detail="This survey link has expired.")
        logger.info(f"Duplicate submission for session {e.session_id}")
        return SubmissionResult(
            already_recorded=True,
            destination="local" if services.lifecycle is not None else "relay",
            message="Your answers were already recorded.",
        )
    except SessionNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="This survey link is not valid.")
    except RelayUnreachable as e:
        logger.error(f"Relay unreachable while submitting for token {token}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Your answers could not be sent right now. Please try again shortly."
        )
