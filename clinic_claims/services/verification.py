import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from clinic_claims.model import (
    MemberStatus,
    MemberVerification,
    PatientDetails,
    ProviderId,
    ProviderRules,
)
from clinic_claims.rule_loader import get_provider_rule
from clinic_claims.services.benefit_parser import (
    extract_session_id,
    normalize_authorization_number,
    parse_jubilee_benefits,
    parse_smart_benefits,
)
from clinic_claims.services.errors import (
    ClaimEngineError,
    ErrorKind,
    ProviderRequestError,
    TokenExpired,
    TransientProviderError,
)
from clinic_claims.services.transport import (
    JubileeTransport,
    ProviderTransport,
    SmartTransport,
    call_with_reauth,
)

logger = logging.getLogger(__name__)

REMEDIATION = {
    ErrorKind.invalid_member_id: "Check the member number on the insurance card and enter it again.",
    ErrorKind.unverified_member: "Ask the member to complete verification with the insurer, then verify again.",
    ErrorKind.inactive_member: "The cover is not active. Bill the visit as cash or ask the member to contact the insurer.",
    ErrorKind.transient: "The insurer could not be reached. Try again in a moment.",
    ErrorKind.unknown: "The insurer returned an unexpected response. Contact support if it keeps happening.",
}


def classify_message(message: Any) -> ErrorKind:
    """Maps an insurer error text to the engine's error kinds."""
    text = str(message or "").lower()
    if "unverified" in text or "not verified" in text:
        return ErrorKind.unverified_member
    if "not found" in text or "invalid" in text:
        return ErrorKind.invalid_member_id
    if "inactive" in text or "expired" in text or "suspended" in text:
        return ErrorKind.inactive_member
    if "rate limit" in text or "too many requests" in text:
        return ErrorKind.transient
    return ErrorKind.unknown


def member_status_from(value: Any) -> MemberStatus:
    text = str(value or "").lower()
    if "suspend" in text:
        return MemberStatus.suspended
    if "inactive" in text or "expired" in text or "terminated" in text:
        return MemberStatus.inactive
    return MemberStatus.active


class VerificationAdapter(ABC):
    provider_id: ProviderId

    def __init__(self, transport: ProviderTransport, rules: Optional[ProviderRules] = None, timeout: Optional[float] = None):
        self.transport = transport
        self.rules = rules or get_provider_rule(self.provider_id.value)
        self.timeout = timeout

    @property
    def display_name(self) -> str:
        return (self.rules.display_name if self.rules else "") or self.provider_id.value

    def fail(self, kind: ErrorKind, detail: str = "", **details) -> ClaimEngineError:
        parts = [f"{self.display_name}:", str(detail).strip(), REMEDIATION[kind]]
        message = " ".join(p for p in parts if p)
        return ClaimEngineError(kind, message, {"provider_id": self.provider_id.value, **details})

    def validate_member_id(self, member_id: str) -> str:
        """Format check done locally, before any request leaves the clinic."""
        member_id = (member_id or "").strip()
        pattern = self.rules.member_id_pattern if self.rules else None
        if not member_id or (pattern and not re.fullmatch(pattern, member_id)):
            raise self.fail(ErrorKind.invalid_member_id, f"'{member_id}' is not a valid member number.", member_id=member_id)
        return member_id

    async def call(self, operation: str, payload: Optional[dict] = None) -> dict:
        try:
            return await call_with_reauth(self.transport, operation, payload, timeout=self.timeout)
        except TransientProviderError as e:
            raise self.fail(ErrorKind.transient, str(e)) from e
        except TokenExpired as e:
            raise self.fail(ErrorKind.unknown, "Credentials were rejected twice.") from e
        except ProviderRequestError as e:
            kind = classify_message(e.body)
            if kind == ErrorKind.unknown and e.status_code == 404:
                kind = ErrorKind.invalid_member_id
            raise self.fail(kind, e.body[:200], status_code=e.status_code) from e

    @abstractmethod
    async def verify_member(self, member_id: str, patient_details: Optional[PatientDetails] = None) -> MemberVerification:
        ...


class JubileeVerificationAdapter(VerificationAdapter):
    """Card lookup followed by the CheckVerification call."""

    provider_id = ProviderId.jubilee

    def _check(self, response: Dict[str, Any], default: str) -> Any:
        description = response.get("Description")
        if response.get("Status") != "OK":
            message = description if isinstance(description, str) else default
            raise self.fail(classify_message(message), message)
        return description

    async def verify_member(self, member_id: str, patient_details: Optional[PatientDetails] = None) -> MemberVerification:
        member_id = self.validate_member_id(member_id)
        patient_details = patient_details or PatientDetails()

        card = self._check(
            await self.call(JubileeTransport.CARD_DETAILS, {"MemberNo": member_id}),
            "Member not found",
        )
        card = card if isinstance(card, dict) else {}
        status = member_status_from(card.get("ActiveStatus"))
        if status != MemberStatus.active:
            raise self.fail(ErrorKind.inactive_member, f"Member status is '{card.get('ActiveStatus')}'.", member_id=member_id)

        response = await self.call(JubileeTransport.CHECK_VERIFICATION, {"MemberNo": member_id})
        description = self._check(response, "Verification failed")
        source = response if response.get("Benefits") is not None else description
        benefits, warning = parse_jubilee_benefits(source)

        authorization_number = normalize_authorization_number(response.get("AuthorizationNo"))
        logger.info("Jubilee member %s verified (authorization %s)", member_id, authorization_number or "none")

        return MemberVerification(
            provider_id=self.provider_id.value,
            member_id=member_id,
            is_valid=True,
            member_name=card.get("MemberName") or patient_details.name,
            scheme_name=card.get("Company") or "",
            status=status,
            benefits=benefits,
            dependents=[],
            authorization_number=authorization_number,
            benefits_warning=warning,
        )


class SmartVerificationAdapter(VerificationAdapter):
    """GA members through the SMART network: visit, member and benefit lookups."""

    provider_id = ProviderId.ga

    async def find_session(self, member_id: str, session_status: str) -> Optional[str]:
        response = await self.call(SmartTransport.VISIT, {"patientNumber": member_id, "sessionStatus": session_status})
        return extract_session_id(response)

    async def verify_member(self, member_id: str, patient_details: Optional[PatientDetails] = None) -> MemberVerification:
        member_id = self.validate_member_id(member_id)
        patient_details = patient_details or PatientDetails()

        session_id = None
        try:
            session_id = await self.find_session(member_id, "PENDING")
        except ClaimEngineError as e:
            if e.kind not in (ErrorKind.invalid_member_id, ErrorKind.unknown):
                raise
            logger.info("No pending SMART visit for %s: %s", member_id, e.message)

        member = await self.call(SmartTransport.MEMBER, {"patientNumber": member_id, "sessionId": session_id})
        if isinstance(member.get("data"), dict):
            member = member["data"]
        if not member or member.get("error"):
            raise self.fail(classify_message(member.get("error") or "Member not found"), member_id=member_id)

        status = member_status_from(member.get("status") or member.get("member_status"))
        if status != MemberStatus.active:
            raise self.fail(ErrorKind.inactive_member, f"Member status is '{status.value}'.", member_id=member_id)

        try:
            raw_benefits = await self.call(SmartTransport.BENEFITS, {"patientNumber": member_id, "sessionId": session_id})
        except ClaimEngineError as e:
            if e.kind == ErrorKind.transient:
                raise
            logger.warning("SMART benefits lookup failed for %s: %s", member_id, e.message)
            raw_benefits = None
        benefits, warning = parse_smart_benefits(raw_benefits)

        return MemberVerification(
            provider_id=self.provider_id.value,
            member_id=member_id,
            is_valid=True,
            member_name=member.get("patient_name") or patient_details.name,
            scheme_name=member.get("medical_aid_plan") or "GA Smart",
            status=status,
            benefits=benefits,
            dependents=member.get("dependents") or [],
            session_id=session_id,
            benefits_warning=warning,
        )


ADAPTERS = {
    ProviderId.jubilee: JubileeVerificationAdapter,
    ProviderId.ga: SmartVerificationAdapter,
}


def build_verification_adapter(
    provider_id: ProviderId,
    transport: ProviderTransport,
    rules: Optional[ProviderRules] = None,
    timeout: Optional[float] = None,
) -> VerificationAdapter:
    adapter_cls = ADAPTERS.get(provider_id)
    if adapter_cls is None:
        raise ClaimEngineError(
            ErrorKind.unknown,
            f"{provider_id.value} has no member verification service. Bill the visit without verification.",
            {"provider_id": provider_id.value},
        )
    return adapter_cls(transport, rules, timeout)
