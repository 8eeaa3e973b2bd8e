# services/transport.py
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, NamedTuple, Optional

import httpx

from clinic_claims.config import get_provider_settings
from clinic_claims.model import ProviderId
from clinic_claims.services.errors import (
    ProviderRequestError,
    TokenExpired,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

TOKEN_EXPIRED_MARKERS = ("token expired", "token has expired", "invalid token", "invalid_token")


class Operation(NamedTuple):
    method: str
    path: str
    style: str = "query"  # "query" or "json"


class ProviderTransport(ABC):
    """Thin request/response channel to one insurer. No business logic."""

    provider_id: str = ""

    @abstractmethod
    async def call(self, operation: str, payload: Optional[dict] = None, timeout: Optional[float] = None) -> dict:
        ...

    @abstractmethod
    async def authenticate(self) -> None:
        ...

    async def aclose(self) -> None:
        return None


async def call_with_reauth(
    transport: ProviderTransport,
    operation: str,
    payload: Optional[dict] = None,
    timeout: Optional[float] = None,
) -> dict:
    """Performs the call, re-authenticating and replaying exactly once on TokenExpired."""
    try:
        return await transport.call(operation, payload, timeout=timeout)
    except TokenExpired:
        logger.warning("%s token rejected during %s, re-authenticating and replaying once", transport.provider_id, operation)
        await transport.authenticate()
        return await transport.call(operation, payload, timeout=timeout)


def _looks_like_expired_token(body: Any) -> bool:
    if not isinstance(body, dict):
        return False
    for key in ("Description", "message", "Message", "error", "error_description"):
        value = body.get(key)
        if isinstance(value, str) and any(marker in value.lower() for marker in TOKEN_EXPIRED_MARKERS):
            return True
    return False


class HttpProviderTransport(ProviderTransport):
    operations: Dict[str, Operation] = {}

    def __init__(self, settings: Optional[dict] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_provider_settings(self.provider_id)
        self.base_url = (self.settings.get("base_url") or "").rstrip("/")
        self.timeout = float(self.settings.get("timeout") or 30)
        self._client = client
        self._token: Optional[str] = None
        self._token_type = "Bearer"

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"{self._token_type} {self._token}"}

    async def _send(self, method: str, url: str, timeout: Optional[float] = None, **kwargs) -> httpx.Response:
        try:
            return await self.client.request(method, url, timeout=timeout or self.timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"{self.provider_id} timed out calling {url}") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"{self.provider_id} unreachable: {e}") from e

    def _decode(self, response: httpx.Response) -> dict:
        if response.status_code == 401:
            self._token = None
            raise TokenExpired(f"{self.provider_id} rejected the access token")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(f"{self.provider_id} returned {response.status_code}")
        if response.status_code >= 400:
            raise ProviderRequestError(response.status_code, response.text)

        try:
            body = response.json()
        except ValueError:
            return {"raw": response.text}
        if _looks_like_expired_token(body):
            self._token = None
            raise TokenExpired(f"{self.provider_id} reported an expired token")
        return body if isinstance(body, dict) else {"data": body}

    def _token_body(self, response: httpx.Response) -> dict:
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(f"{self.provider_id} token endpoint returned {response.status_code}")
        if response.status_code >= 400:
            raise ProviderRequestError(response.status_code, response.text)
        try:
            body = response.json()
        except ValueError:
            raise ProviderRequestError(response.status_code, f"token endpoint answered with non-JSON: {response.text[:200]}") from None
        if not isinstance(body, dict):
            raise ProviderRequestError(response.status_code, str(body))
        return body

    async def call(self, operation: str, payload: Optional[dict] = None, timeout: Optional[float] = None) -> dict:
        if operation not in self.operations:
            raise ValueError(f"{self.provider_id} does not support operation {operation!r}")
        if self._token is None:
            await self.authenticate()

        op = self.operations[operation]
        payload = dict(payload or {})
        path = op.path.format(**payload) if "{" in op.path else op.path

        kwargs: Dict[str, Any] = {"headers": self._auth_headers()}
        if op.style == "json":
            kwargs["json"] = payload
        else:
            kwargs["params"] = {k: v for k, v in payload.items() if v is not None and "{" + k + "}" not in op.path}

        logger.info("%s %s %s", self.provider_id, op.method, path)
        response = await self._send(op.method, self._url(path), timeout=timeout, **kwargs)
        return self._decode(response)


class JubileeTransport(HttpProviderTransport):
    provider_id = ProviderId.jubilee.value

    CARD_DETAILS = "card_details"
    CHECK_VERIFICATION = "check_verification"
    SEND_PREAUTHORIZATION = "send_preauthorization"
    PREAUTHORIZATION_STATUS = "preauthorization_status"
    SEND_CLAIM = "send_claim"
    CLAIM_STATUS = "claim_status"

    operations = {
        CARD_DETAILS: Operation("GET", "/Getcarddetails"),
        CHECK_VERIFICATION: Operation("GET", "/CheckVerification"),
        SEND_PREAUTHORIZATION: Operation("POST", "/SendPreauthorization", "json"),
        PREAUTHORIZATION_STATUS: Operation("GET", "/getPreauthorizationStatus"),
        SEND_CLAIM: Operation("POST", "/SendClaim", "json"),
        CLAIM_STATUS: Operation("GET", "/getClaimStatus"),
    }

    async def authenticate(self) -> None:
        form = {
            "username": self.settings.get("username", ""),
            "password": self.settings.get("password", ""),
            "providerid": self.settings.get("provider_code", ""),
        }
        response = await self._send("POST", self._url("/Token"), data=form)
        body = self._token_body(response)
        description = body.get("Description")
        if body.get("Status") != "OK" or not isinstance(description, dict) or not description.get("access_token"):
            raise ProviderRequestError(response.status_code, str(description or body))

        self._token = description["access_token"]
        self._token_type = description.get("token_type") or "Bearer"
        logger.info("Authenticated with Jubilee (expires in %ss)", description.get("expires_in"))


class SmartTransport(HttpProviderTransport):
    provider_id = ProviderId.ga.value

    VISIT = "visit"
    MEMBER = "member"
    BENEFITS = "benefits"
    FINAL_CLAIM = "final_claim"
    CLAIM_STATUS = "claim_status"

    operations = {
        VISIT: Operation("GET", "/api/visit"),
        MEMBER: Operation("GET", "/api/member"),
        BENEFITS: Operation("GET", "/api/benefits"),
        FINAL_CLAIM: Operation("POST", "/api/final-claim", "json"),
        CLAIM_STATUS: Operation("GET", "/api/claims/{claimId}/status"),
    }

    async def authenticate(self) -> None:
        form = {
            "grant_type": "password",
            "client_id": self.settings.get("client_id", ""),
            "client_secret": self.settings.get("client_secret", ""),
            "username": self.settings.get("username", ""),
            "password": self.settings.get("password", ""),
        }
        response = await self._send("POST", self._url("/oauth/token"), data=form)
        body = self._token_body(response)
        if not body.get("access_token"):
            raise ProviderRequestError(response.status_code, str(body))
        self._token = body["access_token"]
        self._token_type = body.get("token_type") or "Bearer"
        logger.info("Authenticated with SMART (expires in %ss)", body.get("expires_in"))


TRANSPORTS = {
    ProviderId.jubilee: JubileeTransport,
    ProviderId.ga: SmartTransport,
}


def build_transport(provider_id: ProviderId, settings: Optional[dict] = None) -> ProviderTransport:
    try:
        transport_cls = TRANSPORTS[provider_id]
    except KeyError:
        raise ValueError(f"No claim API is integrated for provider {provider_id}") from None
    return transport_cls(settings=settings)
