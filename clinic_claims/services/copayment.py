import logging
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR
from typing import List, Optional

from clinic_claims.model import (
    CopayRule,
    CopaymentResult,
    InstallmentPlan,
    PaymentPlan,
    ProviderId,
    ProviderRules,
    TreatmentItem,
    basket_subtotal,
)
from clinic_claims.rule_loader import get_provider_rule

logger = logging.getLogger(__name__)

INSTALLMENT_THRESHOLD = 50000


def _floor(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def _cash_rules(provider_id: str) -> ProviderRules:
    return ProviderRules(provider_id=provider_id or ProviderId.cash.value, rule=CopayRule.full_cash, copayment_percent=Decimal("100"))


def resolve_rules(provider_id: str) -> ProviderRules:
    """Configured rules for a provider; unknown ids are billed as cash."""
    rules = get_provider_rule(provider_id)
    if rules is None:
        logger.warning("Unknown provider %r, billing the patient the full amount", provider_id)
        return _cash_rules(str(provider_id))
    return rules


def calculate(
    basket: List[TreatmentItem],
    provider_id: str,
    provider_rules: Optional[ProviderRules] = None,
) -> CopaymentResult:
    rules = provider_rules if provider_rules is not None else resolve_rules(provider_id)
    subtotal = basket_subtotal(basket)
    percent = Decimal(rules.copayment_percent)
    deductible = 0

    if rules.rule == CopayRule.flat_percentage:
        patient = _floor(Decimal(subtotal) * percent / 100)
    elif rules.rule == CopayRule.deductible_percentage:
        deductible = min(subtotal, max(rules.deductible, 0))
        patient = deductible + _floor(Decimal(subtotal - deductible) * percent / 100)
    elif rules.rule == CopayRule.full_coverage:
        patient = 0
        percent = Decimal("0")
    else:
        patient = subtotal
        percent = Decimal("100")

    patient = min(max(patient, 0), subtotal)
    return CopaymentResult(
        subtotal=subtotal,
        deductible_applied=deductible,
        insurance_covered=subtotal - patient,
        patient_copayment=patient,
        copayment_percent=percent,
        provider_id=str(provider_id).upper(),
    )


def calculate_payment_plan(patient_copayment: int, installments: int = 3, down_payment_percent: int = 30) -> PaymentPlan:
    plan = PaymentPlan(full_payment=patient_copayment)
    if patient_copayment <= INSTALLMENT_THRESHOLD:
        return plan

    down_payment = _floor(Decimal(patient_copayment) * Decimal(down_payment_percent) / 100)
    remaining = patient_copayment - down_payment
    monthly = int((Decimal(remaining) / installments).to_integral_value(rounding=ROUND_CEILING))
    plan.installment_plan = InstallmentPlan(
        down_payment=down_payment,
        monthly_payment=monthly,
        number_of_months=installments,
        total_with_interest=down_payment + monthly * installments,
    )
    return plan


def format_currency(amount: int) -> str:
    return f"{amount:,} Tsh"


def copayment_summary(result: CopaymentResult) -> str:
    """One line summary for receipts, e.g. 'GA covers: 40,000 Tsh | Copayment: 10,000 Tsh | Patient pays: 10,000 Tsh'."""
    if result.provider_id == ProviderId.cash.value or (result.insurance_covered == 0 and result.copayment_percent == 100):
        return f"Cash payment: {format_currency(result.patient_copayment)}"

    parts = [f"{result.provider_id} covers: {format_currency(result.insurance_covered)}"]
    if result.deductible_applied > 0:
        parts.append(f"Deductible: {format_currency(result.deductible_applied)}")
    copay = result.patient_copayment - result.deductible_applied
    if copay > 0:
        parts.append(f"Copayment: {format_currency(copay)}")
    parts.append(f"Patient pays: {format_currency(result.patient_copayment)}")
    return " | ".join(parts)
