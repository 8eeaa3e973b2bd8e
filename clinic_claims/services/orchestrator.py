import logging
from typing import Dict, List, Optional

import anyio
from sqlalchemy.orm import Session

from clinic_claims.config import get_retry_delay
from clinic_claims.model import (
    AuthorizationContext,
    AuthorizationStatus,
    Benefits,
    ClaimRecord,
    ClaimStatus,
    CopaymentResult,
    EncounterMeta,
    MemberVerification,
    PatientDetails,
    ProviderClaimPayload,
    ProviderId,
    RecordKind,
    TreatmentItem,
    basket_subtotal,
)
from clinic_claims.services.authorization import AuthorizationResolver, SessionResolver, SessionStore
from clinic_claims.services.claim_builder import BUILDERS, ClaimBuilder
from clinic_claims.services.claim_ledger import ClaimLedger, dump_line_items
from clinic_claims.services.copayment import calculate, resolve_rules
from clinic_claims.services.errors import (
    ClaimEngineError,
    DuplicateClaimError,
    ErrorKind,
    TransportError,
    translate_transport_error,
)
from clinic_claims.services.transport import (
    JubileeTransport,
    ProviderTransport,
    SmartTransport,
    build_transport,
    call_with_reauth,
)
from clinic_claims.services.verification import VerificationAdapter, build_verification_adapter

logger = logging.getLogger(__name__)

FINAL_STATUSES = (ClaimStatus.paid, ClaimStatus.cancelled)


def _claim_number(response: dict) -> Optional[str]:
    data = response.get("data") if isinstance(response.get("data"), dict) else {}
    for value in (
        response.get("SubmissionID"),
        response.get("claimId"),
        response.get("claim_id"),
        data.get("claim_id"),
        data.get("id"),
    ):
        if value not in (None, ""):
            return str(value)
    return None


def _reported_status(response: dict) -> ClaimStatus:
    data = response.get("data") if isinstance(response.get("data"), dict) else {}
    raw = str(response.get("status") or response.get("submissionStatus") or data.get("status") or data.get("claim_status") or "").upper()
    if raw == "CANCELLED":
        return ClaimStatus.cancelled
    if raw == "PENDING":
        return ClaimStatus.processing
    return ClaimStatus.submitted


def upstream_claim_status(response: dict) -> Optional[ClaimStatus]:
    """
    Maps an insurer's claim-status answer onto the ledger's statuses.
    Returns None when the answer carries no status we recognise.
    """
    data = response.get("data") if isinstance(response.get("data"), dict) else {}
    description = response.get("Description")
    candidates = [
        response.get("status"),
        response.get("claim_status"),
        data.get("status"),
        data.get("claim_status"),
        response.get("raw"),
    ]
    if isinstance(description, dict):
        candidates = [description.get(k) for k in ("ClaimStatus", "claimStatus", "Status", "status")] + candidates
    elif isinstance(description, str):
        candidates.insert(0, description)

    for value in candidates:
        if not value:
            continue
        text = str(value).lower()
        if any(word in text for word in ("cancel", "reject", "denied", "declin")):
            return ClaimStatus.cancelled
        if "paid" in text and "unpaid" not in text:
            return ClaimStatus.paid
        if "approv" in text or "accept" in text:
            return ClaimStatus.approved
        if any(word in text for word in ("process", "pending", "review", "submitted", "received")):
            return ClaimStatus.processing
    return None


class ClaimOrchestrator:
    """
    Runs a billing encounter through verify, calculate, authorize and
    submit. One instance per request; transports are shared.
    """

    def __init__(
        self,
        db: Session,
        transports: Optional[Dict[ProviderId, ProviderTransport]] = None,
        builders: Optional[Dict[ProviderId, ClaimBuilder]] = None,
        retry_delay: Optional[float] = None,
    ):
        self.db = db
        self.ledger = ClaimLedger(db)
        self.sessions = SessionStore(db)
        self.transports = transports if transports is not None else {}
        self.builders = builders if builders is not None else {}
        self.retry_delay = get_retry_delay() if retry_delay is None else retry_delay

    # --- collaborators ---

    def _provider(self, provider_id: str) -> ProviderId:
        provider = ProviderId.parse(provider_id)
        if provider is None:
            raise ClaimEngineError(
                ErrorKind.unknown,
                f"Unknown insurance provider '{provider_id}'. Choose one of: {', '.join(p.value for p in ProviderId)}.",
                {"provider_id": provider_id},
            )
        return provider

    def _claimable(self, provider_id: str) -> ProviderId:
        provider = self._provider(provider_id)
        if provider not in BUILDERS:
            raise ClaimEngineError(
                ErrorKind.unknown,
                f"No claim API is integrated for {provider.value}. File this claim manually.",
                {"provider_id": provider.value},
            )
        return provider

    def transport(self, provider: ProviderId) -> ProviderTransport:
        if provider not in self.transports:
            self.transports[provider] = build_transport(provider)
        return self.transports[provider]

    def builder(self, provider: ProviderId) -> ClaimBuilder:
        if provider not in self.builders:
            self.builders[provider] = BUILDERS[provider]()
        return self.builders[provider]

    def adapter(self, provider: ProviderId, timeout: Optional[float] = None) -> VerificationAdapter:
        if provider not in BUILDERS:
            return build_verification_adapter(provider, None)
        return build_verification_adapter(provider, self.transport(provider), resolve_rules(provider.value), timeout)

    # --- caller-facing operations ---

    def calculate_copayment(self, basket: List[TreatmentItem], provider_id: str, benefits: Optional[Benefits] = None) -> CopaymentResult:
        rules = resolve_rules(provider_id).with_benefits(benefits)
        return calculate(basket, provider_id, rules)

    async def verify_member(
        self,
        provider_id: str,
        member_id: str,
        patient_details: Optional[PatientDetails] = None,
        timeout: Optional[float] = None,
    ) -> MemberVerification:
        provider = self._provider(provider_id)
        adapter = self.adapter(provider, timeout)
        try:
            return await adapter.verify_member(member_id, patient_details)
        except ClaimEngineError as e:
            if not e.retryable:
                raise
            logger.warning("Verification of %s with %s failed transiently, retrying in %ss", member_id, provider.value, self.retry_delay)
        await anyio.sleep(self.retry_delay)
        return await adapter.verify_member(member_id, patient_details)

    async def submit_claim(
        self,
        encounter_id: str,
        provider_id: str,
        basket: List[TreatmentItem],
        meta: EncounterMeta,
        timeout: Optional[float] = None,
    ) -> ClaimRecord:
        """
        Submits the encounter's claim once. `timeout` bounds each upstream
        call; None uses the provider's configured timeout.
        """
        provider = self._claimable(provider_id)
        encounter_id = str(encounter_id).strip()

        existing = self.ledger.find_live_claim(encounter_id, provider.value)
        if existing is not None:
            raise DuplicateClaimError(existing.claim_id, existing.created_at)

        if not basket or basket_subtotal(basket) <= 0:
            raise ClaimEngineError(
                ErrorKind.empty_basket,
                "There is nothing billable on this encounter. Add treatments with a price before submitting a claim.",
                {"encounter_id": encounter_id},
            )

        verification = await self.verify_member(provider.value, meta.member_id, meta.patient, timeout)

        rules = resolve_rules(provider.value).with_benefits(verification.benefits)
        copayment = calculate(basket, provider.value, rules)
        if meta.copayment is None:
            meta = meta.model_copy(update={"copayment": copayment})

        auth_context = await self._authorize(provider, encounter_id, basket, verification, meta, timeout)
        payload = self.builder(provider).build(basket, verification, auth_context, meta, encounter_id)

        record = self.ledger.reserve_submission(
            encounter_id,
            provider.value,
            patient_id=meta.patient_id,
            member_id=verification.member_id,
            claim_code=payload.claim_code,
            authorization_number=auth_context.authorization_number,
            line_items=dump_line_items(payload.line_items),
            total_amount=payload.total_amount,
            raw_request=payload.audit_body(),
        )

        try:
            response, sent = await self._send(provider, payload, timeout)
        except ClaimEngineError as e:
            logger.error("Claim %s for encounter %s failed: %s", record.claim_id, encounter_id, e.message)
            self.ledger.update_status(record.claim_id, ClaimStatus.pending, failure_reason=e.message)
            raise
        except Exception as e:
            # the reserved row must not stay live after an unexpected failure
            logger.exception("Claim %s for encounter %s failed unexpectedly", record.claim_id, encounter_id)
            self.ledger.update_status(record.claim_id, ClaimStatus.pending, failure_reason=f"{type(e).__name__}: {e}")
            raise

        status = _reported_status(response) if provider == ProviderId.ga else ClaimStatus.submitted
        record = self.ledger.update_status(
            record.claim_id,
            status,
            provider_claim_number=_claim_number(response),
            submission_id=response.get("SubmissionID"),
            raw_request=sent.audit_body(),
            raw_response=response,
        )
        if provider == ProviderId.ga:
            self.sessions.release(encounter_id, provider.value)

        logger.info("Claim %s for encounter %s recorded as %s", record.claim_id, encounter_id, record.status.value)
        return record

    async def request_preauthorization(
        self,
        encounter_id: str,
        provider_id: str,
        basket: List[TreatmentItem],
        meta: EncounterMeta,
        timeout: Optional[float] = None,
    ) -> AuthorizationContext:
        provider = self._claimable(provider_id)
        if provider != ProviderId.jubilee:
            raise ClaimEngineError(
                ErrorKind.unknown,
                f"{provider.value} does not use pre-authorization. Submit the claim directly.",
                {"provider_id": provider.value},
            )
        if not basket or basket_subtotal(basket) <= 0:
            raise ClaimEngineError(
                ErrorKind.empty_basket,
                "Add the planned treatments with prices before requesting a pre-authorization.",
                {"encounter_id": encounter_id},
            )
        verification = await self.verify_member(provider.value, meta.member_id, meta.patient, timeout)
        resolver = self._authorization_resolver(timeout)
        return await resolver.request_preauthorization(str(encounter_id).strip(), basket, verification, meta)

    async def poll_authorization(self, submission_id: str, timeout: Optional[float] = None) -> AuthorizationContext:
        return await self._authorization_resolver(timeout).poll(submission_id)

    async def refresh_claim_status(self, claim_id: str, timeout: Optional[float] = None) -> ClaimRecord:
        """Asks the insurer for the claim's current status and records it in the ledger."""
        record = self.ledger.get(claim_id)
        if record.kind != RecordKind.claim:
            raise ClaimEngineError(
                ErrorKind.unknown,
                f"Record {claim_id} is a pre-authorization. Poll it by its submission id instead.",
                {"claim_id": claim_id},
            )
        if record.status in FINAL_STATUSES:
            return record

        provider = self._claimable(record.provider_id)
        if provider == ProviderId.ga:
            operation, key, payload = SmartTransport.CLAIM_STATUS, record.provider_claim_number, {"claimId": record.provider_claim_number}
        else:
            key = record.submission_id or record.provider_claim_number
            operation, payload = JubileeTransport.CLAIM_STATUS, {"submissionID": key}
        if not key:
            raise ClaimEngineError(
                ErrorKind.unknown,
                f"Claim {claim_id} has no {provider.value} reference yet. Submit it before checking its status.",
                {"claim_id": claim_id, "status": record.status.value},
            )

        try:
            response = await call_with_reauth(self.transport(provider), operation, payload, timeout=timeout)
        except TransportError as e:
            raise translate_transport_error(e, provider.value, "claim status check") from e
        if response.get("Status") == "ERROR":
            raise ClaimEngineError(
                ErrorKind.unknown,
                f"{provider.value} could not report on claim {key}: {response.get('Description')}. Check the claim reference.",
                {"claim_id": claim_id},
            )

        status = upstream_claim_status(response)
        if status is None:
            logger.warning("Unrecognised %s status for claim %s: %.200s", provider.value, claim_id, response)
            return record
        if status == record.status:
            return record
        logger.info("Claim %s moved from %s to %s upstream", claim_id, record.status.value, status.value)
        return self.ledger.update_status(claim_id, status)

    def list_claims_by_patient(self, patient_id: str) -> List[ClaimRecord]:
        return self.ledger.list_by_patient(patient_id)

    def update_claim_status(self, claim_id: str, status: ClaimStatus) -> ClaimRecord:
        record = self.ledger.get(claim_id)
        if record.status in FINAL_STATUSES and status != record.status:
            raise ValueError(f"Claim {claim_id} is already {record.status.value}; its status can no longer change.")
        return self.ledger.update_status(claim_id, status)

    # --- steps ---

    def _authorization_resolver(self, timeout: Optional[float] = None) -> AuthorizationResolver:
        provider = ProviderId.jubilee
        return AuthorizationResolver(self.transport(provider), self.ledger, self.builder(provider), timeout)

    async def _authorize(
        self,
        provider: ProviderId,
        encounter_id: str,
        basket: List[TreatmentItem],
        verification: MemberVerification,
        meta: EncounterMeta,
        timeout: Optional[float] = None,
    ) -> AuthorizationContext:
        if provider == ProviderId.ga:
            resolver = SessionResolver(self.adapter(provider, timeout), self.sessions)
            return await resolver.resolve(encounter_id, verification.member_id, verification, meta.manual_session_id)

        resolver = self._authorization_resolver(timeout)
        context = await resolver.resolve(encounter_id, basket, verification, meta)
        if context.status == AuthorizationStatus.approved and context.authorization_number:
            return context
        if context.status == AuthorizationStatus.denied:
            raise resolver.no_authorization(encounter_id, "Jubilee denied the pre-authorization.")
        raise resolver.no_authorization(
            encounter_id,
            f"Pre-authorization {context.submission_id} is still pending with Jubilee; poll its status first.",
            submission_id=context.submission_id,
        )

    async def _submit_once(self, provider: ProviderId, payload: ProviderClaimPayload, timeout: Optional[float] = None) -> dict:
        try:
            response = await call_with_reauth(self.transport(provider), payload.operation, payload.body, timeout=timeout)
        except TransportError as e:
            raise translate_transport_error(e, provider.value, "claim submission", ErrorKind.provider_validation_failed) from e

        error = None
        if response.get("Status") == "ERROR":
            error = response.get("Description")
        elif response.get("error") or response.get("errors"):
            error = response.get("error") or response.get("errors")
        if error is not None:
            text = str(error)
            kind = ErrorKind.transient if "rate limit" in text.lower() or "too many requests" in text.lower() else ErrorKind.provider_validation_failed
            raise ClaimEngineError(
                kind,
                f"{provider.value} rejected the claim: {text[:300]}. Correct the claim details and submit again.",
                {"provider_id": provider.value, "response": response},
            )
        return response

    async def _send(self, provider: ProviderId, payload: ProviderClaimPayload, timeout: Optional[float] = None):
        try:
            return await self._submit_once(provider, payload, timeout), payload
        except ClaimEngineError as e:
            if e.kind != ErrorKind.provider_validation_failed or not payload.has_attachments:
                raise
            logger.warning("%s rejected claim %s with attachments, resending without them", provider.value, payload.claim_code)
        reduced = payload.without_attachments()
        return await self._submit_once(provider, reduced, timeout), reduced
