import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from clinic_claims.insurance_database import SessionMapping
from clinic_claims.model import (
    AuthorizationContext,
    AuthorizationStatus,
    ClaimStatus,
    EncounterMeta,
    MemberVerification,
    ProviderId,
    RecordKind,
    TreatmentItem,
)
from clinic_claims.services.benefit_parser import normalize_authorization_number
from clinic_claims.services.claim_builder import JubileeClaimBuilder
from clinic_claims.services.claim_ledger import ClaimLedger, dump_line_items
from clinic_claims.services.errors import (
    ClaimEngineError,
    ErrorKind,
    TransportError,
    translate_transport_error,
)
from clinic_claims.services.transport import JubileeTransport, ProviderTransport, call_with_reauth
from clinic_claims.services.verification import SmartVerificationAdapter

logger = logging.getLogger(__name__)

APPROVED_CODES = {"1"}
DENIED_CODES = {"2", "3"}
DENIED_WORDS = ("reject", "denied", "declin")


class SessionStore:
    """Encounter to SMART session mapping, kept in session_mappings."""

    def __init__(self, db: Session):
        self.db = db

    def _row(self, encounter_id: str, provider_id: str) -> Optional[SessionMapping]:
        return (
            self.db.query(SessionMapping)
            .filter(SessionMapping.encounter_id == encounter_id)
            .filter(SessionMapping.provider_id == provider_id)
            .first()
        )

    def get(self, encounter_id: str, provider_id: str) -> Optional[str]:
        row = self._row(encounter_id, provider_id)
        return row.session_id if row else None

    def save(self, encounter_id: str, provider_id: str, session_id: str, member_id: Optional[str] = None) -> None:
        row = self._row(encounter_id, provider_id)
        if row is None:
            row = SessionMapping(encounter_id=encounter_id, provider_id=provider_id)
            self.db.add(row)
        row.session_id = session_id
        row.member_id = member_id
        self.db.commit()

    def release(self, encounter_id: str, provider_id: str) -> None:
        row = self._row(encounter_id, provider_id)
        if row is not None:
            self.db.delete(row)
            self.db.commit()


class SessionResolver:
    """
    Finds the SMART session a GA claim must reference. Sessions are opened
    by the member's card at the reader; they are never created here.
    """

    provider_id = ProviderId.ga.value

    def __init__(self, adapter: SmartVerificationAdapter, store: SessionStore):
        self.adapter = adapter
        self.store = store

    async def _visit_session(self, member_id: str, session_status: str) -> Optional[str]:
        try:
            return await self.adapter.find_session(member_id, session_status)
        except ClaimEngineError as e:
            if e.kind == ErrorKind.transient:
                raise
            logger.info("SMART %s visit lookup for %s found nothing: %s", session_status, member_id, e.message)
            return None

    async def resolve(
        self,
        encounter_id: str,
        member_id: str,
        verification: Optional[MemberVerification] = None,
        manual_session_id: Optional[str] = None,
    ) -> AuthorizationContext:
        source = "manual"
        session_id = (manual_session_id or "").strip() or None

        if session_id is None:
            source = "store"
            session_id = self.store.get(encounter_id, self.provider_id)
        if session_id is None:
            source = "active_visit"
            session_id = await self._visit_session(member_id, "ACTIVE")
        if session_id is None:
            source = "pending_visit"
            session_id = await self._visit_session(member_id, "PENDING")
        if session_id is None:
            source = "verification"
            if verification is None or not verification.session_id:
                verification = await self.adapter.verify_member(member_id)
            session_id = verification.session_id

        if not session_id:
            raise ClaimEngineError(
                ErrorKind.no_session,
                f"No open GA SMART session for member {member_id}. The member must present their card "
                "at the SMART reader to open a session, then submit the claim again.",
                {"encounter_id": encounter_id, "member_id": member_id},
            )

        self.store.save(encounter_id, self.provider_id, session_id, member_id)
        logger.info("Encounter %s uses SMART session %s (%s)", encounter_id, session_id, source)
        return AuthorizationContext(
            provider_id=self.provider_id,
            session_id=session_id,
            status=AuthorizationStatus.approved,
            source=source,
        )

    def release(self, encounter_id: str) -> None:
        self.store.release(encounter_id, self.provider_id)


def preauthorization_status(response: dict) -> AuthorizationStatus:
    description = response.get("Description")
    details = description if isinstance(description, dict) else {}
    code = details.get("preathorizationStatus", details.get("preauthorizationStatus"))
    if code is None:
        code = response.get("preathorizationStatus", response.get("preauthorizationStatus"))
    code = str(code).strip() if code is not None else ""

    if code in APPROVED_CODES:
        return AuthorizationStatus.approved
    if code in DENIED_CODES:
        return AuthorizationStatus.denied
    text = " ".join(str(v) for v in (code, details.get("Status"), details.get("Remarks"), description if isinstance(description, str) else "")).lower()
    if any(word in text for word in DENIED_WORDS):
        return AuthorizationStatus.denied
    return AuthorizationStatus.pending


class AuthorizationResolver:
    """
    Authorization numbers for Jubilee claims, in priority order: manually
    entered, issued by verification, then a stored pre-authorization. With
    none of these a pre-authorization is requested; its outcome is polled by
    the caller, never simulated.
    """

    provider_id = ProviderId.jubilee.value

    def __init__(
        self,
        transport: ProviderTransport,
        ledger: ClaimLedger,
        builder: Optional[JubileeClaimBuilder] = None,
        timeout: Optional[float] = None,
    ):
        self.transport = transport
        self.ledger = ledger
        self.builder = builder or JubileeClaimBuilder()
        self.timeout = timeout

    def _approved(self, number: str, source: str, submission_id: Optional[str] = None) -> AuthorizationContext:
        return AuthorizationContext(
            provider_id=self.provider_id,
            authorization_number=number,
            submission_id=submission_id,
            status=AuthorizationStatus.approved,
            source=source,
        )

    async def resolve(
        self,
        encounter_id: str,
        basket: List[TreatmentItem],
        verification: MemberVerification,
        meta: EncounterMeta,
        request_if_missing: bool = True,
    ) -> AuthorizationContext:
        manual = normalize_authorization_number(meta.manual_authorization_number)
        if manual:
            return self._approved(manual, "manual")

        if verification.authorization_number:
            return self._approved(verification.authorization_number, "verification")

        for record in self.ledger.find_preauthorizations(encounter_id, self.provider_id):
            if record.authorization_number:
                return self._approved(record.authorization_number, "preauthorization", record.submission_id)
            if record.status == ClaimStatus.approved:
                raise self.no_authorization(
                    encounter_id,
                    f"Jubilee approved pre-authorization {record.submission_id} but issued no authorization number.",
                    submission_id=record.submission_id,
                )
            if record.submission_id:
                return AuthorizationContext(
                    provider_id=self.provider_id,
                    submission_id=record.submission_id,
                    status=AuthorizationStatus.pending,
                    source="preauthorization",
                )

        if not request_if_missing:
            raise self.no_authorization(encounter_id, "No authorization number is available for this encounter.")
        return await self.request_preauthorization(encounter_id, basket, verification, meta)

    def no_authorization(self, encounter_id: str, reason: str, **details) -> ClaimEngineError:
        return ClaimEngineError(
            ErrorKind.no_authorization,
            f"{reason} Enter the authorization number from Jubilee, or request a pre-authorization and "
            "submit the claim once it is approved.",
            {"encounter_id": encounter_id, **details},
        )

    async def request_preauthorization(
        self,
        encounter_id: str,
        basket: List[TreatmentItem],
        verification: MemberVerification,
        meta: EncounterMeta,
    ) -> AuthorizationContext:
        payload = self.builder.build_preauthorization(basket, verification, meta, encounter_id)
        try:
            response = await call_with_reauth(
                self.transport, JubileeTransport.SEND_PREAUTHORIZATION, payload.body, timeout=self.timeout
            )
        except TransportError as e:
            raise translate_transport_error(e, self.provider_id, "pre-authorization request", ErrorKind.no_authorization) from e

        if response.get("Status") == "ERROR":
            raise self.no_authorization(
                encounter_id,
                f"Jubilee refused the pre-authorization: {response.get('Description')}.",
                response=response,
            )

        number = normalize_authorization_number(response.get("AuthorizationNo"))
        submission_id = response.get("SubmissionID")
        submission_id = str(submission_id) if submission_id not in (None, "") else None
        if not number and not submission_id:
            raise self.no_authorization(
                encounter_id,
                "Jubilee accepted the pre-authorization but returned neither an authorization number nor a submission id.",
                response=response,
            )

        status = ClaimStatus.approved if number else ClaimStatus.pending
        self.ledger.insert(
            kind=RecordKind.preauthorization,
            encounter_id=encounter_id,
            provider_id=self.provider_id,
            patient_id=meta.patient_id,
            member_id=verification.member_id,
            claim_code=payload.claim_code,
            authorization_number=number,
            submission_id=submission_id,
            line_items=dump_line_items(payload.line_items),
            total_amount=payload.total_amount,
            status=status,
            raw_request=payload.audit_body(),
            raw_response=response,
        )
        logger.info("Pre-authorization for encounter %s: number=%s submission=%s", encounter_id, number, submission_id)

        if number:
            return self._approved(number, "preauthorization", submission_id)
        return AuthorizationContext(
            provider_id=self.provider_id,
            submission_id=submission_id,
            status=AuthorizationStatus.pending,
            source="preauthorization",
        )

    async def poll(self, submission_id: str) -> AuthorizationContext:
        """Asks Jubilee once for the pre-authorization outcome and records it."""
        try:
            response = await call_with_reauth(
                self.transport, JubileeTransport.PREAUTHORIZATION_STATUS, {"submissionID": submission_id}, timeout=self.timeout
            )
        except TransportError as e:
            raise translate_transport_error(e, self.provider_id, "pre-authorization status check") from e

        if response.get("Status") == "ERROR":
            raise ClaimEngineError(
                ErrorKind.unknown,
                f"Jubilee could not report on pre-authorization {submission_id}: {response.get('Description')}. "
                "Check the submission id and try again.",
                {"submission_id": submission_id},
            )

        status = preauthorization_status(response)
        description = response.get("Description")
        details = description if isinstance(description, dict) else {}
        number = normalize_authorization_number(details.get("AuthorizationNo") or response.get("AuthorizationNo"))

        record = self.ledger.find_by_submission_id(submission_id)
        if record is not None and record.kind == RecordKind.preauthorization:
            if status == AuthorizationStatus.approved:
                self.ledger.update_status(
                    record.claim_id, ClaimStatus.approved,
                    authorization_number=number or record.authorization_number, raw_response=response,
                )
                number = number or record.authorization_number
            elif status == AuthorizationStatus.denied:
                self.ledger.update_status(
                    record.claim_id, ClaimStatus.cancelled,
                    failure_reason=str(details.get("Remarks") or description or "denied"), raw_response=response,
                )
        elif record is None:
            logger.warning("Polled pre-authorization %s has no ledger record", submission_id)

        return AuthorizationContext(
            provider_id=self.provider_id,
            authorization_number=number,
            submission_id=submission_id,
            status=status,
            source="poll",
        )

