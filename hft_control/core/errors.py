# hft_control/core/errors.py

from typing import Any, Dict, Optional


# -----------------------------
# Base Error
# -----------------------------

class ControlError(Exception):
    """Base class for all control-plane errors.

    Every error carries a ``kind`` that crosses component boundaries and
    ends up as the ``reason`` of a failed intent.
    """

    kind = "internal"

    def __init__(
        self,
        message: str = "",
        *,
        provider_code: Optional[str] = None,
        provider_message: Optional[str] = None,
    ):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.provider_code = provider_code
        self.provider_message = provider_message

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "reason": self.kind,
            "message": self.message,
        }
        if self.provider_code:
            body["provider_code"] = self.provider_code
        if self.provider_message:
            body["provider_message"] = self.provider_message
        return body


# -----------------------------
# Upstream Errors
# -----------------------------

class AuthError(ControlError):
    """Credential rejected by provider or exchange (4xx). Never retried."""
    kind = "auth"


class TransientNetworkError(ControlError):
    """Timeout, connection reset, 5xx, or rate limit. Retried with backoff."""
    kind = "transient_network"


class CapacityError(ControlError):
    """Provider has no capacity for the requested shape."""
    kind = "capacity"


class ProtocolError(ControlError):
    """Upstream returned a payload we cannot interpret."""
    kind = "protocol"


class SigningError(ProtocolError):
    """Request could not be signed or envelope could not be opened."""
    pass


# -----------------------------
# Precondition / Postcondition Errors
# -----------------------------

class StateError(ControlError):
    """Precondition violated; refused without side effects."""
    kind = "state"

    def __init__(self, reason: str, message: str = "", **kwargs):
        super().__init__(message or reason, **kwargs)
        self.reason = reason

    def to_response(self) -> Dict[str, Any]:
        body = super().to_response()
        body["blocking_reason"] = self.reason
        return body


class IntegrityError(ControlError):
    """Post-condition failed even though the upstream call reported success."""
    kind = "integrity"


# -----------------------------
# Persistence Errors
# -----------------------------

class StoreError(ControlError):
    kind = "store"


class RecordNotFound(StoreError):
    pass


class ConcurrencyError(StoreError):
    """Compare-and-swap lost against a concurrent writer."""
    pass
