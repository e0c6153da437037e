# hft_control/health/checker.py
"""
Health Checker Service - probes every enabled failover entry and drives
primary election.

Runs as a separate process: 30 s between cycles, 10 s while the primary
is degraded.
"""

import logging
import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import requests

from hft_control.core.errors import ControlError
from hft_control.core.events import EventEmitter
from hft_control.core.events_model import ControlEvent
from hft_control.core.http import truncate
from hft_control.core.models import (
    FailoverEntry,
    FailoverEvent,
    HealthEvent,
    HealthStatus,
    LatencySample,
    utcnow,
)
from hft_control.core.repository import ControlStore
from hft_control.health.classifier import (
    DEFAULT_THRESHOLDS,
    HealthThresholds,
    classify,
    counts_as_failure,
)
from hft_control.health.desync import Desync, DesyncDetector, status_from_body
from hft_control.health.failover import FailoverCoordinator
from host_agent.client import HostAgentClient

logger = logging.getLogger(__name__)


def get_with_deadline(
    url: str,
    timeout: float,
    *,
    get: Callable[..., requests.Response] = requests.get,
    clock: Callable[[], float] = time.monotonic,
    chunk_size: int = 1024,
) -> requests.Response:
    """
    GET bounded by one deadline for connect, headers and body.

    requests applies ``timeout`` per socket read, so a server trickling
    bytes could hold a probe open indefinitely; the body is read in
    chunks and abandoned once the deadline passes.
    """
    deadline = clock() + timeout
    response = get(url, timeout=timeout, stream=True)
    chunks = []
    try:
        for chunk in response.iter_content(chunk_size=chunk_size):
            chunks.append(chunk)
            if clock() > deadline:
                raise requests.exceptions.ReadTimeout(f"{url} body not received within {timeout:.1f}s")
    finally:
        response.close()
    response._content = b"".join(chunks)
    return response


@dataclass
class ProbeResult:
    provider: str
    status: HealthStatus
    latency_ms: Optional[int] = None
    http_status: Optional[int] = None
    url: Optional[str] = None
    message: Optional[str] = None
    body: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "status": self.status.value,
            "latency_ms": self.latency_ms,
            "http_status": self.http_status,
            "message": self.message,
        }


@dataclass
class CycleReport:
    results: List[ProbeResult] = field(default_factory=list)
    failover: Optional[FailoverEvent] = None
    desync: Optional[Desync] = None
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": True,
            "skipped": False,
            "degraded": self.degraded,
            "results": [r.to_dict() for r in self.results],
            "failover": None,
            "desync": self.desync.to_dict() if self.desync else None,
        }
        if self.failover is not None:
            body["failover"] = {
                "from_provider": self.failover.from_provider,
                "to_provider": self.failover.to_provider,
                "reason": self.failover.reason,
                "automatic": self.failover.automatic,
            }
        return body


class HealthChecker:
    """
    Background service that monitors failover entries.

    Architecture:
    - One cycle at a time; a tick arriving while a cycle runs is dropped
    - Entries are probed in parallel, each entry's probe -> counter ->
      event sequence runs on one worker
    - Election and desync checks run after all probes of the cycle
    """

    def __init__(
        self,
        store: ControlStore,
        emitter: EventEmitter,
        coordinator: FailoverCoordinator,
        desync: DesyncDetector,
        thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
        interval_s: int = 30,
        degraded_interval_s: int = 10,
        default_timeout_ms: int = 10000,
        max_workers: int = 8,
        http_get: Callable[..., requests.Response] = get_with_deadline,
        client_factory: Callable[..., HostAgentClient] = HostAgentClient.for_ip,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self._store = store
        self._emitter = emitter
        self.coordinator = coordinator
        self.desync = desync
        self.thresholds = thresholds
        self.interval_s = interval_s
        self.degraded_interval_s = degraded_interval_s
        self.default_timeout_ms = default_timeout_ms
        self.max_workers = max_workers
        self._http_get = http_get
        self._client_factory = client_factory
        self._clock = clock
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()

        logger.info("Health Checker initialized")
        logger.info(f"Check interval: {interval_s}s (degraded: {degraded_interval_s}s)")
        logger.info(f"Failure threshold: {coordinator.threshold}")

    # -------------------------
    # Loop
    # -------------------------

    def start(self):
        """Start the health checker loop."""
        logger.info("=" * 80)
        logger.info("🏥 HEALTH CHECKER STARTED")
        logger.info("=" * 80)
        logger.info("Press Ctrl+C to stop")

        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)

        while not self._stop_event.is_set():
            interval = self.interval_s
            try:
                report = self.run_cycle()
                interval = self.next_interval(report)
            except Exception as e:
                logger.error(f"Error in check cycle: {e}", exc_info=True)
            self._stop_event.wait(interval)

        logger.info("Health Checker stopped")

    def stop(self):
        self._stop_event.set()

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, stopping...")
        self.stop()

    def next_interval(self, report: Optional[CycleReport]) -> int:
        if report is not None and report.degraded:
            return self.degraded_interval_s
        return self.interval_s

    # -------------------------
    # Cycle
    # -------------------------

    def run_cycle(self) -> Optional[CycleReport]:
        """
        Single health check cycle.

        Returns None when another cycle is still in flight.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("[health] Previous cycle still running, tick dropped")
            return None
        try:
            entries = [e for e in self._store.list_failover_entries() if e.is_enabled]
            report = CycleReport()
            if not entries:
                logger.debug("[health] No enabled failover entries")
                return report

            logger.info(f"[health] Probing {len(entries)} entr{'y' if len(entries) == 1 else 'ies'}")
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(entries))) as pool:
                report.results = list(pool.map(self._check_entry, entries))

            report.failover = self.coordinator.evaluate()
            report.desync = self._check_desync(report.results)
            report.degraded = self._primary_degraded()
            return report
        finally:
            self._cycle_lock.release()

    def probe_url(self, entry: FailoverEntry) -> Optional[str]:
        """Explicit health_url, else derived from the host record's IP."""
        if entry.health_url:
            return entry.health_url
        if entry.host_id is None:
            return None
        host = self._store.get_host(entry.host_id)
        if host is None or not host.public_ip:
            return None
        return f"http://{host.public_ip}/health"

    def probe(self, entry: FailoverEntry) -> ProbeResult:
        url = self.probe_url(entry)
        if url is None:
            return ProbeResult(entry.provider, HealthStatus.DOWN, message="no probe url")

        timeout_s = (entry.timeout_ms or self.default_timeout_ms) / 1000
        started = self._clock()
        try:
            response = self._http_get(url, timeout=timeout_s)
        except requests.exceptions.Timeout:
            return ProbeResult(entry.provider, HealthStatus.DOWN, url=url,
                               message=f"aborted after {timeout_s:.0f}s")
        except requests.exceptions.RequestException as e:
            return ProbeResult(entry.provider, HealthStatus.DOWN, url=url, message=truncate(e))
        latency_ms = int((self._clock() - started) * 1000)
        if latency_ms > timeout_s * 1000:
            return ProbeResult(entry.provider, HealthStatus.DOWN, url=url, http_status=response.status_code,
                               message=f"aborted after {timeout_s:.0f}s")

        try:
            body = response.json()
        except ValueError:
            body = None

        status = classify(response.status_code, latency_ms, body, self.thresholds)
        message = None
        if status == HealthStatus.DOWN:
            message = f"HTTP {response.status_code}" if response.status_code >= 300 else f"slow or bad body ({latency_ms}ms)"
        return ProbeResult(entry.provider, status, latency_ms, response.status_code, url, message, body)

    def _check_entry(self, entry: FailoverEntry) -> ProbeResult:
        result = self.probe(entry)

        entry.latency_ms = result.latency_ms
        entry.last_health_check = utcnow()
        entry.last_status = result.status
        if counts_as_failure(result.status, result.latency_ms, self.thresholds):
            entry.consecutive_failures += 1
        else:
            entry.consecutive_failures = 0
        self._store.record_probe(entry)

        self._store.append_health_event(HealthEvent(
            provider=entry.provider,
            status=result.status,
            latency_ms=result.latency_ms,
            message=result.message,
        ))
        if result.latency_ms is not None:
            self._store.append_latency_sample(LatencySample(
                source="health",
                target=entry.provider,
                latency_ms=result.latency_ms,
            ))
        self._emitter.emit([ControlEvent.health_probe(entry, result.status, result.latency_ms)])

        marker = "✅" if result.status == HealthStatus.HEALTHY else "⚠️" if result.status == HealthStatus.WARNING else "❌"
        logger.info(
            f"[health] {marker} {entry.provider}: {result.status.value} "
            f"({result.latency_ms}ms, failures={entry.consecutive_failures})"
        )
        return result

    # -------------------------
    # Post-probe checks
    # -------------------------

    def _primary(self) -> Optional[FailoverEntry]:
        return next((e for e in self._store.list_failover_entries() if e.is_primary and e.is_enabled), None)

    def _primary_degraded(self) -> bool:
        primary = self._primary()
        if primary is None:
            return True
        return primary.consecutive_failures > 0 or primary.last_status != HealthStatus.HEALTHY

    def _check_desync(self, results: List[ProbeResult]) -> Optional[Desync]:
        primary = self._primary()
        if primary is None:
            return None
        result = next((r for r in results if r.provider == primary.provider), None)
        if result is None or result.status == HealthStatus.DOWN:
            return None

        host_status = status_from_body(result.body)
        if host_status is None and result.url:
            parsed = urlparse(result.url)
            if not parsed.hostname:
                return None
            client = self._client_factory(parsed.hostname, port=parsed.port or 80,
                                          timeout=self.default_timeout_ms / 1000)
            try:
                host_status = status_from_body(client.status())
            except ControlError as e:
                logger.warning(f"[health] Could not read bot status from {parsed.hostname}: {e.message}")
                return None
        if host_status is None:
            return None
        return self.desync.check(primary.provider, host_status)
