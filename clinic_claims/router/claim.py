from fastapi import APIRouter, Depends, HTTPException
from typing import List
import logging

from clinic_claims.dependencies import get_api_key, get_orchestrator
from clinic_claims.model import (
    ClaimRecord,
    ClaimStatusUpdate,
    CopaymentRequest,
    MemberVerification,
    PaymentPlan,
    PaymentPlanRequest,
    SubmitClaimRequest,
    VerifyMemberRequest,
)
from clinic_claims.services.copayment import calculate_payment_plan, copayment_summary
from clinic_claims.services.errors import ClaimEngineError, ErrorKind, RecordNotFound
from clinic_claims.services.orchestrator import ClaimOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Claims"])

HTTP_STATUS = {
    ErrorKind.invalid_member_id: 400,
    ErrorKind.unverified_member: 403,
    ErrorKind.inactive_member: 403,
    ErrorKind.transient: 503,
    ErrorKind.no_session: 409,
    ErrorKind.no_authorization: 409,
    ErrorKind.duplicate_claim: 409,
    ErrorKind.empty_basket: 422,
    ErrorKind.provider_validation_failed: 502,
    ErrorKind.unknown: 502,
}


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ClaimEngineError):
        return HTTPException(status_code=HTTP_STATUS[exc.kind], detail=exc.to_dict())
    if isinstance(exc, RecordNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=409, detail=str(exc))


@router.post("/copayment")
async def copayment_endpoint(
    request: CopaymentRequest,
    orchestrator: ClaimOrchestrator = Depends(get_orchestrator),
    api_key: str = Depends(get_api_key)
):
    result = orchestrator.calculate_copayment(request.basket, request.provider_id, request.benefits)
    return {"calculation": result, "summary": copayment_summary(result)}


@router.post("/copayment/plan", response_model=PaymentPlan)
async def payment_plan_endpoint(
    request: PaymentPlanRequest,
    api_key: str = Depends(get_api_key)
):
    return calculate_payment_plan(request.patient_copayment, request.installments, request.down_payment_percent)


@router.post("/members/verify", response_model=MemberVerification)
async def verify_member_endpoint(
    request: VerifyMemberRequest,
    orchestrator: ClaimOrchestrator = Depends(get_orchestrator),
    api_key: str = Depends(get_api_key)
):
    try:
        return await orchestrator.verify_member(request.provider_id, request.member_id, request.patient)
    except ClaimEngineError as e:
        raise http_error(e)


@router.post("/claims/{encounter_id}/submit", response_model=ClaimRecord, status_code=201)
async def submit_claim_endpoint(
    encounter_id: str,
    request: SubmitClaimRequest,
    orchestrator: ClaimOrchestrator = Depends(get_orchestrator),
    api_key: str = Depends(get_api_key)
):
    try:
        return await orchestrator.submit_claim(encounter_id, request.provider_id, request.basket, request.meta)
    except ClaimEngineError as e:
        logger.info("Claim for encounter %s not submitted: %s", encounter_id, e.kind.value)
        raise http_error(e)


@router.get("/claims/patient/{patient_id}", response_model=List[ClaimRecord])
async def list_patient_claims(
    patient_id: str,
    orchestrator: ClaimOrchestrator = Depends(get_orchestrator),
    api_key: str = Depends(get_api_key)
):
    return orchestrator.list_claims_by_patient(patient_id)


@router.patch("/claims/{claim_id}/status", response_model=ClaimRecord)
async def update_claim_status_endpoint(
    claim_id: str,
    update: ClaimStatusUpdate,
    orchestrator: ClaimOrchestrator = Depends(get_orchestrator),
    api_key: str = Depends(get_api_key)
):
    try:
        return orchestrator.update_claim_status(claim_id, update.status)
    except (ClaimEngineError, RecordNotFound, ValueError) as e:
        raise http_error(e)


@router.post("/claims/{claim_id}/refresh", response_model=ClaimRecord)
async def refresh_claim_status_endpoint(
    claim_id: str,
    orchestrator: ClaimOrchestrator = Depends(get_orchestrator),
    api_key: str = Depends(get_api_key)
):
    try:
        return await orchestrator.refresh_claim_status(claim_id)
    except (ClaimEngineError, RecordNotFound) as e:
        raise http_error(e)
