# hft_control/core/http.py
"""Outbound HTTP helpers: error classification and retry with exponential backoff."""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, TypeVar

import requests

from hft_control.core.errors import (
    AuthError,
    CapacityError,
    ControlError,
    ProtocolError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

CAPACITY_CODES = {
    "InsufficientInstanceCapacity",
    "InsufficientCapacity",
    "InsufficientHostCapacity",
    "OperationDenied.NoStock",
    "ZONE_RESOURCE_POOL_EXHAUSTED",
    "SkuNotAvailable",
    "OutOfHostCapacity",
}


def truncate(text: Any, limit: int = 200) -> str:
    text = "" if text is None else str(text)
    return text if len(text) <= limit else text[:limit] + "..."


@dataclass(frozen=True)
class RetryPolicy:
    """Three attempts, sleeping base * 2^n between them."""
    max_attempts: int = 3
    base_delay_s: float = 1.0

    def should_retry(self, attempt: int, error: Exception) -> bool:
        if attempt + 1 >= self.max_attempts:
            return False
        return isinstance(error, TransientNetworkError)

    def calculate_delay(self, attempt: int) -> float:
        return self.base_delay_s * (2 ** attempt)


DEFAULT_RETRY = RetryPolicy()


def with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy = DEFAULT_RETRY,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "request",
) -> T:
    """Run ``operation``; retry only TransientNetworkError."""
    attempt = 0
    while True:
        try:
            return operation()
        except ControlError as e:
            if not policy.should_retry(attempt, e):
                raise
            delay = policy.calculate_delay(attempt)
            logger.warning(
                f"[retry] {label} attempt {attempt + 1}/{policy.max_attempts} failed "
                f"({e.kind}: {e.message}); retrying in {delay:.0f}s"
            )
            sleep(delay)
            attempt += 1


def classify_status(
    status_code: int,
    body: str = "",
    *,
    provider_code: Optional[str] = None,
    label: str = "upstream",
) -> Optional[ControlError]:
    """Map a non-2xx response to an error kind (None for 2xx)."""
    if 200 <= status_code < 300:
        return None

    message = f"{label} HTTP {status_code}: {truncate(body)}"
    if provider_code and provider_code in CAPACITY_CODES:
        return CapacityError(message, provider_code=provider_code, provider_message=truncate(body))
    if status_code in (401, 403):
        return AuthError(message, provider_code=provider_code or str(status_code))
    if status_code in (408, 425, 429) or status_code >= 500:
        return TransientNetworkError(message, provider_code=provider_code or str(status_code))
    return ProtocolError(message, provider_code=provider_code or str(status_code), provider_message=truncate(body))


class UpstreamClient:
    """Thin wrapper over a requests session that raises typed errors."""

    def __init__(
        self,
        label: str,
        session: Optional[requests.Session] = None,
        timeout: float = 30,
    ):
        self.label = label
        self.session = session or requests.Session()
        self.timeout = timeout

    def request(self, method: str, url: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        try:
            return self.session.request(method, url, **kwargs)
        except requests.exceptions.Timeout as e:
            raise TransientNetworkError(f"{self.label} timeout: {url}") from e
        except requests.exceptions.ConnectionError as e:
            raise TransientNetworkError(f"{self.label} connection failed: {truncate(e)}") from e
        except requests.exceptions.RequestException as e:
            raise ProtocolError(f"{self.label} request failed: {truncate(e)}") from e

    def json(
        self,
        method: str,
        url: str,
        *,
        ok_statuses: Iterable[int] = (),
        code_field: Optional[str] = None,
        **kwargs,
    ) -> Any:
        """Send, classify errors and decode a JSON body (empty body -> {})."""
        response = self.request(method, url, **kwargs)
        text = response.text or ""

        payload: Any = {}
        if text.strip():
            try:
                payload = response.json()
            except ValueError:
                payload = None

        if response.status_code not in ok_statuses:
            code = None
            if isinstance(payload, dict) and code_field:
                code = _dig(payload, code_field)
            error = classify_status(
                response.status_code, text, provider_code=code, label=self.label,
            )
            if error is not None:
                logger.error(f"[{self.label}] {error.message}")
                raise error

        if payload is None:
            raise ProtocolError(f"{self.label} returned non-JSON body: {truncate(text)}")
        return payload


def _dig(payload: dict, path: str) -> Optional[str]:
    """Follow a dotted path; numeric parts index into lists (``error.errors.0.reason``)."""
    current: Any = payload
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return str(current) if current is not None else None
