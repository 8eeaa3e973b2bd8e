from dotenv import load_dotenv
import os

# Load .env into environment variables
load_dotenv()

PROVIDER_DEFAULT_URLS = {
    "JUBILEE": "https://cmsuat.jubileetanzania.co.tz/jubileeapi",
    "GA": "",
}


def get_valid_api_keys() -> set[str]:
    keys = os.getenv("MY_API_KEYS", "")
    return {k.strip() for k in keys.split(",") if k.strip()}


def get_database_url() -> str:
    return os.getenv("CLAIMS_DATABASE_URL", "sqlite:///insurance_database.db")


def is_dev_mode() -> bool:
    return os.getenv("DEV_MODE") == "1"


def get_request_timeout() -> float:
    return float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "30"))


def get_retry_delay() -> float:
    """Seconds to wait before the single retry of a transient failure."""
    return float(os.getenv("CLAIM_RETRY_DELAY", "1.5"))


def get_provider_settings(provider_id: str) -> dict:
    """
    Connection settings for one upstream insurer, read from
    <PROVIDER>_BASE_URL, <PROVIDER>_USERNAME, ... environment variables.
    """
    prefix = provider_id.upper()
    return {
        "base_url": os.getenv(f"{prefix}_BASE_URL", PROVIDER_DEFAULT_URLS.get(prefix, "")),
        "username": os.getenv(f"{prefix}_USERNAME", ""),
        "password": os.getenv(f"{prefix}_PASSWORD", ""),
        "provider_code": os.getenv(f"{prefix}_PROVIDER_ID", ""),
        "client_id": os.getenv(f"{prefix}_CLIENT_ID", ""),
        "client_secret": os.getenv(f"{prefix}_CLIENT_SECRET", ""),
        "practitioner_no": os.getenv(f"{prefix}_PRACTITIONER_NO", ""),
        "timeout": get_request_timeout(),
    }
