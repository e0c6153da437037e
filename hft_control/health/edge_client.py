# hft_control/health/edge_client.py
"""Dashboard-side client of the control plane's health surface."""

import logging
import threading
from typing import Any, Callable, Dict, Iterable, Optional, Set

import requests

from hft_control.core.http import UpstreamClient
from hft_control.health.backoff import AdaptivePoller, BackoffPolicy, Debouncer

logger = logging.getLogger(__name__)


class ControlPlaneClient:
    """Calls the control-plane HTTP surface."""

    def __init__(self, base_url: str, timeout: float = 15, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.http = UpstreamClient("control-plane", session=session, timeout=timeout)

    def run_health_check(self) -> Dict[str, Any]:
        return self.http.json("POST", f"{self.base_url}/health-check/run")

    def desync(self) -> Dict[str, Any]:
        return self.http.json("GET", f"{self.base_url}/health-check/desync")


class HealthMonitor:
    """
    Adaptive health polling plus debounced reaction to store change
    notifications (the realtime feed delivers one notification per row).
    """

    def __init__(
        self,
        client: ControlPlaneClient,
        on_report: Callable[[Dict[str, Any]], None],
        on_change: Callable[[Set[str]], None],
        policy: BackoffPolicy = BackoffPolicy(),
        debounce_s: float = 0.4,
        **poller_kwargs,
    ):
        self.poller = AdaptivePoller(client.run_health_check, policy, **poller_kwargs)
        self._on_report = on_report
        self._on_change = on_change
        self._changed: Set[str] = set()
        self._changed_lock = threading.Lock()
        self._debounced = Debouncer(self._deliver_changes, debounce_s)

    @property
    def disabled(self) -> bool:
        return self.poller.disabled

    def tick(self) -> None:
        report = self.poller.tick()
        if report is not None:
            self._on_report(report)

    def retry(self) -> None:
        report = self.poller.retry()
        if report is not None:
            self._on_report(report)

    def notify_change(self, tables: Iterable[str]) -> None:
        with self._changed_lock:
            self._changed.update(tables)
        self._debounced()

    def _deliver_changes(self) -> None:
        with self._changed_lock:
            changed, self._changed = self._changed, set()
        if changed:
            logger.debug(f"[monitor] Store changed: {sorted(changed)}")
            self._on_change(changed)

    def close(self) -> None:
        self._debounced.cancel()
