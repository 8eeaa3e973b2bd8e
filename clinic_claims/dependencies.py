# clinic_claims/dependencies.py
from typing import Dict

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session
import logging

from clinic_claims.config import get_valid_api_keys
from clinic_claims.insurance_database import get_db
from clinic_claims.model import ProviderId
from clinic_claims.services.orchestrator import ClaimOrchestrator
from clinic_claims.services.transport import ProviderTransport

console = logging.getLogger("X-API-Key")

# shared upstream clients, closed by the app lifespan
provider_transports: Dict[ProviderId, ProviderTransport] = {}


def get_api_key(api_key: str = Header(..., alias="X-API-Key")) -> str:
    valid_keys = get_valid_api_keys()
    if api_key not in valid_keys:
        console.warning("Unauthorized API access attempt: %s...", api_key[:4])
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key"
        )
    return api_key


def get_orchestrator(db: Session = Depends(get_db)) -> ClaimOrchestrator:
    return ClaimOrchestrator(db, transports=provider_transports)


async def close_transports():
    for transport in list(provider_transports.values()):
        await transport.aclose()
    provider_transports.clear()
