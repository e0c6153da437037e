# hft_control/health/classifier.py
"""Probe classification: healthy / warning / down."""

from dataclasses import dataclass
from typing import Any, Optional

from hft_control.core.models import HealthStatus

OK_BODY_STATUSES = {"ok", "healthy"}


@dataclass(frozen=True)
class HealthThresholds:
    healthy_ms: int = 100
    warning_ms: int = 150


DEFAULT_THRESHOLDS = HealthThresholds()


def body_is_ok(body: Any) -> bool:
    """Health bodies report {"status": "ok"|"healthy"}; the host agent also sends ok=true."""
    if not isinstance(body, dict):
        return False
    status = body.get("status")
    if isinstance(status, str) and status.lower() in OK_BODY_STATUSES:
        return True
    return body.get("ok") is True


def classify(
    http_status: Optional[int],
    latency_ms: Optional[int],
    body: Any = None,
    thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
) -> HealthStatus:
    if http_status is None or latency_ms is None:
        return HealthStatus.DOWN
    if not 200 <= http_status < 300 or not body_is_ok(body):
        return HealthStatus.DOWN
    if latency_ms <= thresholds.healthy_ms:
        return HealthStatus.HEALTHY
    if latency_ms <= thresholds.warning_ms:
        return HealthStatus.WARNING
    return HealthStatus.DOWN


def counts_as_failure(
    status: HealthStatus,
    latency_ms: Optional[int],
    thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
) -> bool:
    if status == HealthStatus.DOWN:
        return True
    return latency_ms is not None and latency_ms > thresholds.warning_ms
