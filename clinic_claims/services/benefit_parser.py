import json
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional, Tuple

from clinic_claims.model import Benefits

logger = logging.getLogger(__name__)

BENEFIT_CODE_PATTERN = re.compile(r'BenefitCode"?\s*:?\s*"?(\d+)', re.IGNORECASE)
SESSION_ID_KEYS = ("sessionId", "session_id", "id", "visit_id", "visitId")

UNREADABLE_BENEFITS = "Benefit details could not be read from the insurer response; balances are unknown."
TEXT_ONLY_BENEFITS = "Benefit details arrived as plain text; only benefit codes were recovered."


def to_amount(value: Any) -> Optional[int]:
    """Whole currency units from numbers or strings like '1,000,000.00'; None if unreadable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(Decimal(str(value).replace(",", "").strip()))
    except (InvalidOperation, ValueError):
        return None


def to_percent(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        percent = Decimal(str(value).replace("%", "").strip())
    except (InvalidOperation, ValueError):
        return None
    if percent < 0 or percent > 100:
        return None
    return percent


def _is_dental(entry: dict) -> bool:
    name = entry.get("BenefitName") or entry.get("benefit_name") or entry.get("name") or ""
    return "dental" in str(name).lower()


def _benefit_code(entry: Any) -> Optional[str]:
    if isinstance(entry, (str, int)):
        return str(entry)
    if isinstance(entry, dict):
        code = entry.get("BenefitCode") or entry.get("benefit_code") or entry.get("code")
        return str(code) if code else None
    return None


def _jubilee_from_entries(entries: List[Any], cover_limit: Optional[int]) -> Benefits:
    dental = [e for e in entries if isinstance(e, dict) and _is_dental(e)]
    others = [e for e in entries if e not in dental]
    ordered = dental + others

    codes = [c for c in (_benefit_code(e) for e in ordered) if c]
    balances = [to_amount(e.get("BenefitBalance") or e.get("balance")) for e in (dental or ordered) if isinstance(e, dict)]
    remaining = sum(b for b in balances if b is not None)
    annual = cover_limit if cover_limit is not None else remaining

    return Benefits(
        dental_coverage=bool(ordered),
        annual_limit=annual,
        used_amount=max(annual - remaining, 0),
        remaining_amount=remaining,
        benefit_codes=codes,
    )


def parse_jubilee_benefits(description: Any) -> Tuple[Benefits, Optional[str]]:
    """
    Reads the Description of a CheckVerification response.

    Jubilee sends either an object with a Benefits list, the same object
    serialized as a JSON string, or loose text. Text falls back to scraping
    BenefitCode values; when nothing is recoverable the member is still
    verified but with empty benefits and a warning.
    """
    if isinstance(description, str):
        try:
            description = json.loads(description)
        except ValueError:
            codes = BENEFIT_CODE_PATTERN.findall(description)
            if codes:
                logger.warning("Jubilee benefits returned as text, recovered codes %s", codes)
                return Benefits(dental_coverage=True, benefit_codes=codes), TEXT_ONLY_BENEFITS
            logger.warning("Jubilee benefits unreadable: %.200s", description)
            return Benefits(), UNREADABLE_BENEFITS

    if isinstance(description, list):
        return _jubilee_from_entries(description, None), None

    if not isinstance(description, dict):
        logger.warning("Jubilee benefits missing or of unexpected type %s", type(description).__name__)
        return Benefits(), UNREADABLE_BENEFITS

    entries = description.get("Benefits") or description.get("benefits") or []
    if not isinstance(entries, list):
        entries = [entries]
    cover_limit = to_amount(description.get("CoverLimit") or description.get("cover_limit"))
    return _jubilee_from_entries(entries, cover_limit), None


def _unwrap(payload: Any) -> Any:
    if isinstance(payload, dict) and isinstance(payload.get("data"), (dict, list)):
        payload = payload["data"]
    if isinstance(payload, list):
        payload = payload[0] if payload else {}
    return payload


def parse_smart_benefits(raw: Any) -> Tuple[Benefits, Optional[str]]:
    """Maps a SMART /api/benefits body (co_pay_amount, amount, used) to Benefits."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("SMART benefits unreadable: %.200s", raw)
            return Benefits(), UNREADABLE_BENEFITS

    benefits = _unwrap(raw)
    if not isinstance(benefits, dict) or not benefits:
        return Benefits(), UNREADABLE_BENEFITS

    copay = benefits.get("co_pay_amount")
    if copay is None:
        copay = benefits.get("copay")
    annual = to_amount(benefits.get("amount") if benefits.get("amount") is not None else benefits.get("annual_limit")) or 0
    used = to_amount(benefits.get("used")) or 0

    return Benefits(
        dental_coverage=True,
        annual_limit=annual,
        used_amount=used,
        remaining_amount=max(annual - used, 0),
        copayment_percent=to_percent(copay),
    ), None


def _session_from(obj: Any) -> Optional[str]:
    if not isinstance(obj, dict):
        return None
    for key in SESSION_ID_KEYS:
        value = obj.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def extract_session_id(payload: Any) -> Optional[str]:
    """
    Finds the session id in a SMART visit response. The id may sit at the
    top level, under a `data` wrapper or inside a `content` page.
    """
    candidates = [payload]
    if isinstance(payload, dict):
        candidates.append(payload.get("data"))
    for candidate in list(candidates):
        if isinstance(candidate, dict) and isinstance(candidate.get("content"), list):
            candidates.extend(candidate["content"])
        elif isinstance(candidate, list):
            candidates.extend(candidate)

    for candidate in candidates:
        session_id = _session_from(candidate)
        if session_id:
            return session_id
    return None


def normalize_authorization_number(value: Any) -> Optional[str]:
    """
    Jubilee numbers sometimes arrive as '12345---VERIFIED' or with other
    decoration; only the first run of digits of the first segment is valid.
    """
    if value is None:
        return None
    head = str(value).split("---")[0]
    match = re.search(r"\d+", head)
    return match.group(0) if match else None


def select_benefit_code(benefits: Benefits) -> Optional[str]:
    return benefits.benefit_codes[0] if benefits.benefit_codes else None
