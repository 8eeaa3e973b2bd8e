import json
import logging
from pathlib import Path
from threading import Lock
from typing import Dict, Optional

from clinic_claims.config import is_dev_mode
from clinic_claims.model import ProviderRules

logger = logging.getLogger(__name__)

# Path to JSON files
DATA_PATH = Path(__file__).resolve().parent / "data"

# Module-level caches
_cached_provider_rules: Optional[Dict[str, ProviderRules]] = None
_cached_code_tables: Optional[Dict[str, dict]] = None

# Lock to make cache thread-safe
_cache_lock = Lock()


def load_json(file_name: str):
    """Load a JSON file from the data folder."""
    file_path = DATA_PATH / file_name
    with open(file_path, "r", encoding="utf-8") as f:
        return json.load(f)


def reset_cache():
    """Manually reset all caches."""
    global _cached_provider_rules, _cached_code_tables
    with _cache_lock:
        _cached_provider_rules = None
        _cached_code_tables = None


def _load_provider_rules():
    global _cached_provider_rules
    raw = load_json("providers.json")
    _cached_provider_rules = {
        provider_id.upper(): ProviderRules(provider_id=provider_id, **entry)
        for provider_id, entry in raw.items()
    }


def _load_code_tables():
    global _cached_code_tables
    raw = load_json("procedure_codes.json")
    _cached_code_tables = {provider_id.upper(): table for provider_id, table in raw.items()}


# --- Preload all caches at import ---
with _cache_lock:
    _load_provider_rules()
    _load_code_tables()


# --- Public API ---
def get_provider_rules() -> Dict[str, ProviderRules]:
    with _cache_lock:
        if is_dev_mode() or _cached_provider_rules is None:
            _load_provider_rules()
        return dict(_cached_provider_rules)


def get_provider_rule(provider_id: str) -> Optional[ProviderRules]:
    rule = get_provider_rules().get(str(provider_id).upper())
    if rule is None:
        logger.warning("No cost-sharing rules configured for provider %r", provider_id)
    return rule


def get_code_table(provider_id: str) -> dict:
    with _cache_lock:
        if is_dev_mode() or _cached_code_tables is None:
            _load_code_tables()
        return _cached_code_tables.get(str(provider_id).upper(), {})
