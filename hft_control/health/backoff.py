# hft_control/health/backoff.py
"""Adaptive polling and debouncing for dashboard-side health consumers."""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from hft_control.core.errors import ControlError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackoffPolicy:
    healthy_interval_s: float = 60
    degraded_interval_s: float = 30
    max_failures: int = 5


class AdaptivePoller:
    """
    Polls ``probe`` every 60 s, every 30 s after a failure, and stops
    entirely after 5 consecutive failures until ``retry()`` is called.
    """

    def __init__(
        self,
        probe: Callable[[], Any],
        policy: BackoffPolicy = BackoffPolicy(),
        clock: Callable[[], float] = time.monotonic,
    ):
        self._probe = probe
        self.policy = policy
        self._clock = clock
        self._lock = threading.Lock()
        self._in_flight = False
        self.consecutive_failures = 0
        self.disabled = False
        self.last_error: Optional[str] = None
        self.last_result: Any = None
        self.next_due = clock()

    @property
    def interval_s(self) -> float:
        if self.consecutive_failures:
            return self.policy.degraded_interval_s
        return self.policy.healthy_interval_s

    def due(self) -> bool:
        return not self.disabled and self._clock() >= self.next_due

    def poll(self) -> Optional[Any]:
        """Probe once unless disabled or already probing; returns the probe result or None."""
        with self._lock:
            if self.disabled or self._in_flight:
                return None
            self._in_flight = True

        try:
            result = self._probe()
        except ControlError as e:
            self._record_failure(e.message)
            return None
        finally:
            with self._lock:
                self._in_flight = False

        self.consecutive_failures = 0
        self.last_error = None
        self.last_result = result
        self.next_due = self._clock() + self.interval_s
        return result

    def tick(self) -> Optional[Any]:
        if not self.due():
            return None
        return self.poll()

    def retry(self) -> Optional[Any]:
        """Operator retry: re-enable probing and probe immediately."""
        logger.info("[backoff] Manual retry, probing re-enabled")
        self.disabled = False
        self.consecutive_failures = 0
        self.next_due = self._clock()
        return self.poll()

    def _record_failure(self, message: str) -> None:
        self.consecutive_failures += 1
        self.last_error = message
        self.next_due = self._clock() + self.interval_s
        if self.consecutive_failures >= self.policy.max_failures:
            self.disabled = True
            logger.error(
                f"[backoff] ❌ {self.consecutive_failures} consecutive failures, "
                f"probing disabled until manual retry ({message})"
            )
        else:
            logger.warning(
                f"[backoff] Probe failed ({self.consecutive_failures}/{self.policy.max_failures}): "
                f"{message}; next in {self.interval_s:.0f}s"
            )


class Debouncer:
    """
    Collapses bursts of calls into one trailing call with the latest
    arguments, ``delay_s`` after the last call.
    """

    def __init__(
        self,
        fn: Callable[..., Any],
        delay_s: float = 0.4,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ):
        self._fn = fn
        self.delay_s = delay_s
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._pending: Optional[tuple] = None

    def __call__(self, *args, **kwargs) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._pending = (args, kwargs)
            self._timer = self._timer_factory(self.delay_s, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        with self._lock:
            pending, self._pending, self._timer = self._pending, None, None
        if pending is not None:
            args, kwargs = pending
            self._fn(*args, **kwargs)

    def flush(self) -> None:
        """Run a pending call now."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
        self._fire()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self._pending = None
