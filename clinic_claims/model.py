from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Optional, Dict, Any
from datetime import date, datetime
from decimal import Decimal
from enum import Enum


class ProviderId(str, Enum):
    jubilee = "JUBILEE"
    ga = "GA"
    nhif = "NHIF"
    cash = "CASH"

    @classmethod
    def parse(cls, value: str) -> Optional["ProviderId"]:
        """Case-insensitive lookup; None for ids this system does not know."""
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return None


class CopayRule(str, Enum):
    flat_percentage = "flat_percentage"
    deductible_percentage = "deductible_percentage"
    full_coverage = "full_coverage"
    full_cash = "full_cash"


class ProviderFamily(str, Enum):
    authorization = "authorization"
    session = "session"
    none = "none"


class MemberStatus(str, Enum):
    active = "active"
    inactive = "inactive"
    suspended = "suspended"


class AuthorizationStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    denied = "denied"


class ClaimStatus(str, Enum):
    pending = "pending"
    submitted = "submitted"
    processing = "processing"
    approved = "approved"
    paid = "paid"
    cancelled = "cancelled"


class RecordKind(str, Enum):
    claim = "claim"
    preauthorization = "preauthorization"


LIVE_CLAIM_STATUSES = (
    ClaimStatus.submitted.value,
    ClaimStatus.processing.value,
    ClaimStatus.approved.value,
    ClaimStatus.paid.value,
)


class TreatmentItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    unit_cost: int = Field(..., ge=0, description="Price of one unit in whole currency units")
    quantity: int = Field(1, ge=1)
    line_total: Optional[int] = Field(None, ge=0, description="Explicit total for the line, when the till supplies one")

    @field_validator("name")
    def normalize_name(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v

    @property
    def computed_total(self) -> int:
        return self.unit_cost * self.quantity


def basket_subtotal(basket: List[TreatmentItem]) -> int:
    return sum(item.unit_cost * item.quantity for item in basket)


class Benefits(BaseModel):
    dental_coverage: bool = False
    annual_limit: int = 0
    used_amount: int = 0
    remaining_amount: int = 0
    copayment_percent: Optional[Decimal] = None
    deductible: Optional[int] = None
    benefit_codes: List[str] = Field(default_factory=list)


class ProviderRules(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_id: str
    display_name: str = ""
    rule: CopayRule
    copayment_percent: Decimal = Decimal("0")
    deductible: int = 0
    family: ProviderFamily = ProviderFamily.none
    member_id_pattern: Optional[str] = None

    @field_validator("provider_id")
    def normalize_provider_id(cls, v):
        if isinstance(v, str):
            return v.upper().strip()
        return v

    def with_benefits(self, benefits: Optional[Benefits]) -> "ProviderRules":
        """Rules with the member's verified percentage/deductible taking precedence."""
        if benefits is None:
            return self
        updates: Dict[str, Any] = {}
        if benefits.copayment_percent is not None:
            updates["copayment_percent"] = benefits.copayment_percent
        if benefits.deductible is not None:
            updates["deductible"] = benefits.deductible
        return self.model_copy(update=updates) if updates else self


class PatientDetails(BaseModel):
    name: str = ""
    date_of_birth: Optional[date] = None
    gender: Optional[str] = None
    phone: Optional[str] = None
    patient_number: Optional[str] = Field(None, description="Clinic-facing patient file number, e.g. SD-25-00247")
    id_number: Optional[str] = None

    @property
    def first_name(self) -> str:
        parts = self.name.split()
        return parts[0] if parts else ""

    @property
    def last_name(self) -> str:
        return " ".join(self.name.split()[1:])


class MemberVerification(BaseModel):
    provider_id: str
    member_id: str
    is_valid: bool
    member_name: str = ""
    scheme_name: str = ""
    status: MemberStatus = MemberStatus.active
    benefits: Benefits = Field(default_factory=Benefits)
    dependents: List[Dict[str, Any]] = Field(default_factory=list)
    authorization_number: Optional[str] = None
    session_id: Optional[str] = None
    benefits_warning: Optional[str] = None


class CopaymentResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    subtotal: int
    deductible_applied: int
    insurance_covered: int
    patient_copayment: int
    copayment_percent: Decimal
    provider_id: str


class InstallmentPlan(BaseModel):
    down_payment: int
    monthly_payment: int
    number_of_months: int
    total_with_interest: int


class PaymentPlan(BaseModel):
    full_payment: int
    installment_plan: Optional[InstallmentPlan] = None


class AuthorizationContext(BaseModel):
    provider_id: str
    authorization_number: Optional[str] = None
    session_id: Optional[str] = None
    submission_id: Optional[str] = None
    status: AuthorizationStatus = AuthorizationStatus.pending
    source: Optional[str] = None


class PaymentModifier(BaseModel):
    type: str = Field("6", description="Provider modifier code: 6 discount, 1 fixed copay, 2 percentage copay")
    amount: int = Field(..., ge=0)
    reference_number: str = ""
    description: Optional[str] = None


class ClaimLineItem(BaseModel):
    sequence: int
    name: str
    item_code: str
    procedure_code: Optional[str] = None
    quantity: int
    unit_price: Decimal
    line_total: int


class ProviderClaimPayload(BaseModel):
    provider_id: str
    operation: str
    claim_code: str
    body: Dict[str, Any]
    line_items: List[ClaimLineItem]
    modifiers: List[PaymentModifier] = Field(default_factory=list)
    original_subtotal: int
    total_amount: int
    discrepancies: List[str] = Field(default_factory=list)
    attachment_fields: List[str] = Field(default_factory=list)

    @property
    def has_attachments(self) -> bool:
        return any(self._attachment_values())

    def _entities(self) -> List[Dict[str, Any]]:
        entities = self.body.get("entities")
        return entities if isinstance(entities, list) else [self.body]

    def _attachment_values(self) -> List[Any]:
        return [entity.get(f) for entity in self._entities() for f in self.attachment_fields]

    def without_attachments(self) -> "ProviderClaimPayload":
        """Copy of the payload with every binary attachment field blanked."""
        reduced = self.model_copy(deep=True)
        for entity in reduced._entities():
            for field in reduced.attachment_fields:
                if field in entity:
                    entity[field] = None
        return reduced

    def audit_body(self) -> Dict[str, Any]:
        """Body safe to persist: attachments are replaced by their length."""
        audit = self.model_copy(deep=True)
        for entity in audit._entities():
            for field in audit.attachment_fields:
                value = entity.get(field)
                if value:
                    entity[field] = f"[base64 attachment - {len(value)} chars]"
        return audit.body


class EncounterMeta(BaseModel):
    patient_id: str
    member_id: str
    patient: PatientDetails = Field(default_factory=PatientDetails)
    diagnosis_codes: List[str] = Field(default_factory=list)
    diagnosis_remarks: Optional[str] = None
    visit_date: date = Field(default_factory=date.today)
    practitioner_no: Optional[str] = None
    doctor_name: Optional[str] = None
    created_by: str = "System User"
    clinical_notes: Optional[str] = None
    manual_authorization_number: Optional[str] = None
    manual_session_id: Optional[str] = None
    discounts: List[PaymentModifier] = Field(default_factory=list)
    attachments: Dict[str, str] = Field(default_factory=dict, description="Base64 documents keyed by provider field, e.g. PatientFile")
    copayment: Optional[CopaymentResult] = None

    @field_validator("member_id", "patient_id")
    def normalize_ids(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v


class ClaimRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    claim_id: str
    encounter_id: str
    provider_id: str
    patient_id: Optional[str] = None
    member_id: Optional[str] = None
    kind: RecordKind = RecordKind.claim
    claim_code: Optional[str] = None
    provider_claim_number: Optional[str] = None
    authorization_number: Optional[str] = None
    submission_id: Optional[str] = None
    line_items: List[Dict[str, Any]] = Field(default_factory=list)
    total_amount: int = 0
    status: ClaimStatus = ClaimStatus.pending
    failure_reason: Optional[str] = None
    raw_request: Optional[Dict[str, Any]] = None
    raw_response: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("line_items", mode="before")
    def default_line_items(cls, v):
        return v or []

    @field_validator("total_amount", mode="before")
    def default_total(cls, v):
        return v or 0


# --- request bodies for the HTTP layer ---

class CopaymentRequest(BaseModel):
    provider_id: str
    basket: List[TreatmentItem] = Field(..., min_length=1)
    benefits: Optional[Benefits] = None


class PaymentPlanRequest(BaseModel):
    patient_copayment: int = Field(..., ge=0)
    installments: int = Field(3, ge=1, le=24)
    down_payment_percent: int = Field(30, ge=0, le=100)


class VerifyMemberRequest(BaseModel):
    provider_id: str
    member_id: str
    patient: PatientDetails = Field(default_factory=PatientDetails)


class SubmitClaimRequest(BaseModel):
    provider_id: str
    basket: List[TreatmentItem]
    meta: EncounterMeta


class ClaimStatusUpdate(BaseModel):
    status: ClaimStatus
