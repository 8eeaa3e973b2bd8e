from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    invalid_member_id = "InvalidMemberId"
    unverified_member = "UnverifiedMember"
    inactive_member = "InactiveMember"
    transient = "Transient"
    no_session = "NoSession"
    no_authorization = "NoAuthorization"
    duplicate_claim = "DuplicateClaim"
    empty_basket = "EmptyBasket"
    provider_validation_failed = "ProviderValidationFailed"
    unknown = "Unknown"


class ClaimEngineError(Exception):
    """
    Failure of a claims-engine operation.

    `kind` is one of the fixed ErrorKind values; `message` is meant for the
    operator and says what to do next.
    """

    def __init__(self, kind: ErrorKind, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.transient

    def to_dict(self) -> Dict[str, Any]:
        return {"error_kind": self.kind.value, "message": self.message, "details": self.details}

    def __repr__(self) -> str:
        return f"ClaimEngineError({self.kind.value!r}, {self.message!r})"


class DuplicateClaimError(ClaimEngineError):
    def __init__(self, claim_id: str, created_at=None):
        when = created_at.isoformat() if created_at else "earlier"
        super().__init__(
            ErrorKind.duplicate_claim,
            f"A claim for this encounter has already been submitted ({when}, claim {claim_id}). "
            "Track it from the claims list instead of submitting again.",
            {"claim_id": claim_id, "created_at": when},
        )
        self.claim_id = claim_id
        self.created_at = created_at


# --- transport level conditions ---

class TransportError(Exception):
    pass


class TokenExpired(TransportError):
    """The provider rejected the access token; re-authenticate and replay."""


class TransientProviderError(TransportError):
    """Timeout, connection failure, rate limit or upstream 5xx."""


class ProviderRequestError(TransportError):
    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"provider returned {status_code}: {body[:300]}")
        self.status_code = status_code
        self.body = body


class RecordNotFound(LookupError):
    pass


def translate_transport_error(
    exc: TransportError,
    provider_id: str,
    action: str,
    rejected_kind: ErrorKind = ErrorKind.unknown,
) -> ClaimEngineError:
    """Engine error for a transport failure during `action` (e.g. 'claim submission')."""
    if isinstance(exc, TransientProviderError):
        return ClaimEngineError(
            ErrorKind.transient,
            f"{provider_id} could not be reached during {action}. Try again in a moment.",
            {"provider_id": provider_id, "cause": str(exc)},
        )
    if isinstance(exc, ProviderRequestError):
        return ClaimEngineError(
            rejected_kind,
            f"{provider_id} rejected the {action}: {exc.body[:300] or exc.status_code}. Correct the request and try again.",
            {"provider_id": provider_id, "status_code": exc.status_code},
        )
    return ClaimEngineError(
        ErrorKind.unknown,
        f"{provider_id} kept rejecting our credentials during {action}. Check the provider credentials configuration.",
        {"provider_id": provider_id, "cause": str(exc)},
    )
