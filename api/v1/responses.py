from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from api.deps import Services, get_lifecycle, get_services
from core.exceptions import ResponseNotFound, TemplateNotFound
from schemas.common import StandardSuccessResponse
from schemas.survey import DirectResponseCreate, LinkPatientRequest, ResponseRead

router = APIRouter(dependencies=[Depends(get_lifecycle)])


@router.post("/direct", response_model=ResponseRead, status_code=status.HTTP_201_CREATED)
async def create_direct_response(
    payload: DirectResponseCreate,
    services: Services = Depends(get_services),
):
    """Store a walk-in answer set that has no survey link"""
    try:
        return await services.submission.submit_direct(
            payload.template_id,
            payload.answers,
            respondent_name=payload.respondent_name,
            details=payload,
        )
    except TemplateNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("", response_model=List[ResponseRead])
async def list_responses(
    patient_id: Optional[str] = None,
    template_id: Optional[str] = None,
    services: Services = Depends(get_services),
):
    return await services.submission.list_responses(patient_id=patient_id, template_id=template_id)


@router.post("/{response_id}/link", response_model=ResponseRead)
async def link_response_to_patient(
    response_id: str,
    payload: LinkPatientRequest,
    services: Services = Depends(get_services),
):
    """Attach a response (and its session) to a clinic patient"""
    try:
        return await services.submission.link_response_to_patient(response_id, payload.patient_id)
    except ResponseNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.delete("/{response_id}", response_model=StandardSuccessResponse)
async def delete_response(
    response_id: str,
    services: Services = Depends(get_services),
):
    if not await services.submission.delete_response(response_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Response {response_id} not found")
    return StandardSuccessResponse(message="Response deleted")
