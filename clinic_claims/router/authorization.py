from fastapi import APIRouter, Depends

from clinic_claims.dependencies import get_api_key, get_orchestrator
from clinic_claims.model import AuthorizationContext, SubmitClaimRequest
from clinic_claims.router.claim import http_error
from clinic_claims.services.errors import ClaimEngineError
from clinic_claims.services.orchestrator import ClaimOrchestrator

router = APIRouter(tags=["Authorizations"])


@router.post("/authorizations/poll/{submission_id}", response_model=AuthorizationContext)
async def poll_authorization_endpoint(
    submission_id: str,
    orchestrator: ClaimOrchestrator = Depends(get_orchestrator),
    api_key: str = Depends(get_api_key)
):
    try:
        return await orchestrator.poll_authorization(submission_id)
    except ClaimEngineError as e:
        raise http_error(e)


@router.post("/authorizations/{encounter_id}", response_model=AuthorizationContext, status_code=201)
async def request_preauthorization_endpoint(
    encounter_id: str,
    request: SubmitClaimRequest,
    orchestrator: ClaimOrchestrator = Depends(get_orchestrator),
    api_key: str = Depends(get_api_key)
):
    try:
        return await orchestrator.request_preauthorization(encounter_id, request.provider_id, request.basket, request.meta)
    except ClaimEngineError as e:
        raise http_error(e)
