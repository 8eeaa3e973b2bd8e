import itertools
import logging
import time
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from threading import Lock
from typing import Dict, List, Optional, Tuple

from clinic_claims.config import get_provider_settings
from clinic_claims.model import (
    AuthorizationContext,
    ClaimLineItem,
    EncounterMeta,
    MemberVerification,
    PaymentModifier,
    ProviderClaimPayload,
    ProviderId,
    TreatmentItem,
    basket_subtotal,
)
from clinic_claims.rule_loader import get_code_table
from clinic_claims.services.benefit_parser import select_benefit_code
from clinic_claims.services.transport import JubileeTransport, SmartTransport

logger = logging.getLogger(__name__)

DEFAULT_DIAGNOSIS = "K02.9"
DIAGNOSIS_NAMES = {"K02.9": "Dental caries", "K00.9": "Disorder of tooth development"}

DISCOUNT_MODIFIER = "6"
FIXED_COPAY_MODIFIER = "1"
PERCENT_COPAY_MODIFIER = "2"


def lookup_code(table: Dict[str, str], name: str, fallback: str) -> str:
    """First table key contained in the (upper-cased) item name, else the fallback."""
    upper = (name or "").upper()
    for key, code in table.items():
        if key.upper() in upper:
            return code
    return fallback


def age_on(dob: Optional[date], today: date) -> Optional[int]:
    if dob is None:
        return None
    return today.year - dob.year - ((today.month, today.day) < (dob.month, dob.day))


def money(value) -> str:
    return f"{Decimal(value):.2f}"


class ClaimCodeGenerator:
    """
    Produces <PREFIX>_<encounter>_<n> codes. The counter starts from the
    millisecond clock so codes stay unique across restarts.
    """

    def __init__(self, prefix: str, seed: Optional[int] = None):
        self.prefix = prefix
        self._counter = itertools.count(seed if seed is not None else int(time.time() * 1000))
        self._lock = Lock()

    def next_number(self) -> int:
        with self._lock:
            return next(self._counter)

    def next_code(self, encounter_id: str) -> Tuple[str, int]:
        number = self.next_number()
        return f"{self.prefix}_{encounter_id}_{number}", number


_generators: Dict[str, ClaimCodeGenerator] = {}
_generators_lock = Lock()


def code_generator(prefix: str) -> ClaimCodeGenerator:
    """Process-wide generator per prefix."""
    with _generators_lock:
        if prefix not in _generators:
            _generators[prefix] = ClaimCodeGenerator(prefix)
        return _generators[prefix]


def build_line_items(
    basket: List[TreatmentItem],
    item_codes: Dict[str, str],
    item_fallback: str,
    procedure_codes: Optional[Dict[str, str]] = None,
    procedure_fallback: Optional[str] = None,
) -> Tuple[List[ClaimLineItem], List[str]]:
    """
    Line total is unit cost times quantity. When the till supplied a
    different explicit total, that total is kept, the unit price is derived
    from it and the mismatch is reported.
    """
    lines: List[ClaimLineItem] = []
    discrepancies: List[str] = []
    for sequence, item in enumerate(basket, start=1):
        computed = item.computed_total
        line_total = computed
        unit_price = Decimal(item.unit_cost)
        if item.line_total is not None and item.line_total != computed:
            line_total = item.line_total
            unit_price = (Decimal(line_total) / item.quantity).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
            note = (
                f"{item.name}: line total {line_total} differs from {item.quantity} x {item.unit_cost} = {computed}; "
                f"unit price re-derived as {unit_price}"
            )
            discrepancies.append(note)
            logger.warning("Line total mismatch: %s", note)

        procedure_code = None
        if procedure_codes is not None:
            procedure_code = lookup_code(procedure_codes, item.name, procedure_fallback)
        lines.append(
            ClaimLineItem(
                sequence=sequence,
                name=item.name,
                item_code=lookup_code(item_codes, item.name, item_fallback),
                procedure_code=procedure_code,
                quantity=item.quantity,
                unit_price=unit_price,
                line_total=line_total,
            )
        )
    return lines, discrepancies


def build_modifiers(meta: EncounterMeta, reference_number: str) -> List[PaymentModifier]:
    """Discounts and the patient's share become explicit modifiers; item prices stay untouched."""
    modifiers: List[PaymentModifier] = []
    for discount in meta.discounts:
        if discount.amount > 0:
            modifiers.append(discount.model_copy(update={"type": discount.type or DISCOUNT_MODIFIER, "reference_number": discount.reference_number or reference_number}))

    copayment = meta.copayment
    if copayment is not None and copayment.patient_copayment > 0:
        percent_only = copayment.deductible_applied == 0 and copayment.copayment_percent > 0
        modifiers.append(
            PaymentModifier(
                type=PERCENT_COPAY_MODIFIER if percent_only else FIXED_COPAY_MODIFIER,
                amount=copayment.patient_copayment,
                reference_number=reference_number,
                description=f"Patient copayment ({copayment.copayment_percent}%)" if percent_only else "Patient copayment",
            )
        )
    return modifiers


class ClaimBuilder(ABC):
    provider_id: ProviderId
    operation: str
    prefix: str
    attachment_fields: List[str] = []

    def __init__(self, code_table: Optional[dict] = None, codes: Optional[ClaimCodeGenerator] = None, settings: Optional[dict] = None):
        self.code_table = code_table if code_table is not None else get_code_table(self.provider_id.value)
        self.codes = codes or code_generator(self.prefix)
        self.settings = settings or get_provider_settings(self.provider_id.value)

    @property
    def diagnosis_fallback(self) -> str:
        return self.code_table.get("diagnosis_fallback") or DEFAULT_DIAGNOSIS

    def diagnosis_codes(self, meta: EncounterMeta) -> List[str]:
        return [c for c in meta.diagnosis_codes if c] or [self.diagnosis_fallback]

    def line_items(self, basket: List[TreatmentItem]) -> Tuple[List[ClaimLineItem], List[str]]:
        procedures = self.code_table.get("procedures")
        return build_line_items(
            basket,
            self.code_table.get("items", {}),
            self.code_table.get("item_fallback", ""),
            procedures if procedures else None,
            self.code_table.get("procedure_fallback"),
        )

    def build(
        self,
        basket: List[TreatmentItem],
        verification: MemberVerification,
        auth_context: AuthorizationContext,
        meta: EncounterMeta,
        encounter_id: str,
    ) -> ProviderClaimPayload:
        claim_code, number = self.codes.next_code(encounter_id)
        lines, discrepancies = self.line_items(basket)
        modifiers = build_modifiers(meta, claim_code)
        total = sum(line.line_total for line in lines)
        net = max(total - sum(m.amount for m in modifiers), 0)

        body = self.claim_body(
            basket=basket,
            verification=verification,
            auth_context=auth_context,
            meta=meta,
            encounter_id=encounter_id,
            claim_code=claim_code,
            number=number,
            lines=lines,
            modifiers=modifiers,
            total=total,
            net=net,
        )
        return ProviderClaimPayload(
            provider_id=self.provider_id.value,
            operation=self.operation,
            claim_code=claim_code,
            body=body,
            line_items=lines,
            modifiers=modifiers,
            original_subtotal=basket_subtotal(basket),
            total_amount=total,
            discrepancies=discrepancies,
            attachment_fields=list(self.attachment_fields),
        )

    @abstractmethod
    def claim_body(self, **parts) -> dict:
        ...


class JubileeClaimBuilder(ClaimBuilder):
    """Folio-shaped SendClaim / SendPreauthorization entities."""

    provider_id = ProviderId.jubilee
    operation = JubileeTransport.SEND_CLAIM
    prefix = "JUB"
    attachment_fields = ["PatientFile", "ClaimFile"]

    def _entity(self, meta: EncounterMeta, verification: MemberVerification, authorization_number: str, lines, number: int, status: str) -> dict:
        now = datetime.now()
        today = now.date().isoformat()
        patient = meta.patient
        age = age_on(patient.date_of_birth, now.date())
        created_by = meta.created_by
        return {
            "ClaimYear": str(now.year),
            "ClaimMonth": f"{now.month:02d}",
            "CardNo": verification.member_id,
            "FirstName": patient.first_name or verification.member_name.split(" ")[0],
            "LastName": patient.last_name or " ".join(verification.member_name.split(" ")[1:]),
            "Gender": patient.gender or "UNKNOWN",
            "DateOfBirth": patient.date_of_birth.isoformat() if patient.date_of_birth else "",
            "Age": str(age) if age is not None else "",
            "TelephoneNo": patient.phone or "",
            "PatientFileNo": patient.patient_number or meta.patient_id,
            "AuthorizationNo": authorization_number,
            "AttendanceDate": meta.visit_date.isoformat(),
            "PatientTypeCode": "OUT",
            "DateAdmitted": None,
            "DateDischarged": None,
            "PractitionerNo": meta.practitioner_no or self.settings.get("practitioner_no", ""),
            "CreatedBy": created_by,
            "DateCreated": today,
            "LastModifiedBy": None,
            "LastModified": None,
            "FolioDiseases": [
                {
                    "DiseaseCode": code,
                    "Remarks": meta.diagnosis_remarks,
                    "Status": status,
                    "CreatedBy": created_by,
                    "DateCreated": today,
                    "LastModifiedBy": None,
                    "LastModified": None,
                }
                for code in self.diagnosis_codes(meta)
            ],
            "FolioItems": [
                {
                    "ItemCode": line.item_code,
                    "OtherDetails": line.name,
                    "ItemQuantity": line.quantity,
                    "UnitPrice": money(line.unit_price),
                    "AmountClaimed": money(line.line_total),
                    "ApprovalRefNo": authorization_number or None,
                    "CreatedBy": created_by,
                    "DateCreated": today,
                    "LastModifiedBy": None,
                    "LastModified": None,
                }
                for line in lines
            ],
            "ProviderID": self.settings.get("provider_code", ""),
            "DelayReason": None,
            "LateAuthorizationReason": None,
            "EmergencyAuthorizationReason": None,
            "LateSubmissionReason": None,
            "BillNo": f"BILL-{number}",
        }

    def _clinical_notes(self, meta: EncounterMeta, verification: MemberVerification, lines, heading: str) -> str:
        if meta.clinical_notes:
            return meta.clinical_notes
        name = meta.patient.name or verification.member_name
        items = ", ".join(line.name for line in lines)
        return f"<html><body><p>{heading} for {name}</p><p>Procedures: {items}</p></body></html>"

    def claim_body(self, *, verification, auth_context, meta, claim_code, number, lines, net, **_) -> dict:
        now = datetime.now()
        entity = {"FolioID": None}
        entity.update(self._entity(meta, verification, auth_context.authorization_number or "", lines, number, "Final"))
        entity.update(
            {
                "FolioNo": str(number % 100000),
                "SerialNo": f"{now.month:02d}\\{now.year}\\{number}",
                "PatientFile": meta.attachments.get("PatientFile"),
                "ClaimFile": meta.attachments.get("ClaimFile"),
                "ClinicalNotes": self._clinical_notes(meta, verification, lines, "Dental treatment"),
                "AmountClaimed": money(net),
                "ClaimCode": claim_code,
            }
        )
        return {"entities": [entity]}

    def build_preauthorization(
        self,
        basket: List[TreatmentItem],
        verification: MemberVerification,
        meta: EncounterMeta,
        encounter_id: str,
    ) -> ProviderClaimPayload:
        """Pre-authorization request: demographics, diagnosis, items with item and procedure codes."""
        claim_code, number = self.codes.next_code(encounter_id)
        lines, discrepancies = self.line_items(basket)
        total = sum(line.line_total for line in lines)

        benefit_code = select_benefit_code(verification.benefits)
        if benefit_code is None:
            logger.warning("No benefit code known for Jubilee member %s; pre-authorization sent without one", verification.member_id)

        entity = self._entity(meta, verification, "", lines, number, "Provisional")
        entity.update(
            {
                "ClaimFile": None,
                "jubileeProcedure": lines[0].procedure_code if lines else self.code_table.get("procedure_fallback"),
                "jubileeBenefits": benefit_code,
                "ClinicalNotes": self._clinical_notes(meta, verification, lines, "Pre-authorization request"),
                "AmountClaimed": money(total),
            }
        )
        return ProviderClaimPayload(
            provider_id=self.provider_id.value,
            operation=JubileeTransport.SEND_PREAUTHORIZATION,
            claim_code=claim_code,
            body={"entities": [entity]},
            line_items=lines,
            original_subtotal=basket_subtotal(basket),
            total_amount=total,
            discrepancies=discrepancies,
            attachment_fields=[],
        )


class SmartClaimBuilder(ClaimBuilder):
    """SMART final-claim invoices for GA members."""

    provider_id = ProviderId.ga
    operation = SmartTransport.FINAL_CLAIM
    prefix = "CLAIM"

    def claim_body(self, *, verification, auth_context, meta, encounter_id, claim_code, number, lines, modifiers, total, net, **_) -> dict:
        now = datetime.now()
        today = now.date().isoformat()
        clock = now.strftime("%H:%M:%S")
        invoice_number = f"INV_{encounter_id}_{number}"
        return {
            "claim_code": claim_code,
            "payer_code": "GA",
            "payer_name": "GA Insurance",
            "medicalaid_code": "GA",
            "amount": net,
            "gross_amount": total,
            "batch_number": f"BATCH_{number}",
            "dispatch_date": f"{today} 00:00:00",
            "patient_number": verification.member_id,
            "patient_name": meta.patient.name or verification.member_name,
            "location_code": self.settings.get("provider_code", ""),
            "scheme_name": verification.scheme_name,
            "member_number": verification.member_id,
            "visit_number": encounter_id,
            "session_id": auth_context.session_id,
            "visit_start": f"{meta.visit_date.isoformat()} {clock}",
            "currency": "TZS",
            "doctor_name": meta.doctor_name or "",
            "sp_id": 1,
            "diagnosis": [
                {
                    "code": code,
                    "coding_standard": "ICD10",
                    "is_added_with_claim": True,
                    "name": DIAGNOSIS_NAMES.get(code, code),
                    "is_primary": i == 0,
                }
                for i, code in enumerate(self.diagnosis_codes(meta))
            ],
            "pre_authorization": [],
            "invoices": [
                {
                    "amount": net,
                    "gross_amount": total,
                    "invoice_date": f"{today} 00:00:00",
                    "invoice_number": invoice_number,
                    "invoice_ref_number": invoice_number,
                    "lines": [
                        {
                            "serial_no": line.sequence,
                            "additional_info": "",
                            "amount": line.line_total,
                            "charge_date": today,
                            "charge_time": clock,
                            "item_code": line.item_code,
                            "item_name": line.name,
                            "pre_authorization_code": "",
                            "quantity": line.quantity,
                            "service_group": "DENTAL",
                            "unit_price": float(line.unit_price),
                        }
                        for line in lines
                    ],
                    "payment_modifiers": [
                        {"type": m.type, "amount": m.amount, "reference_number": m.reference_number} for m in modifiers
                    ],
                    "pool_number": "1",
                    "service_type": "Outpatient",
                }
            ],
        }


BUILDERS = {
    ProviderId.jubilee: JubileeClaimBuilder,
    ProviderId.ga: SmartClaimBuilder,
}
