# hft_control/health/failover.py
"""Primary election over the failover table."""

import logging
from typing import List, Optional

from hft_control.core.errors import ConcurrencyError, StateError
from hft_control.core.events import EventEmitter, Notifier, NullNotifier
from hft_control.core.events_model import ControlEvent
from hft_control.core.models import AuditEvent, FailoverEntry, FailoverEvent, HealthStatus
from hft_control.core.repository import ControlStore

logger = logging.getLogger(__name__)


def choose_successor(entries: List[FailoverEntry], incumbent: Optional[str]) -> Optional[FailoverEntry]:
    """Lowest (priority, provider) among enabled entries whose last probe was healthy."""
    candidates = [
        e for e in entries
        if e.is_enabled and e.provider != incumbent and e.last_status == HealthStatus.HEALTHY
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda e: e.election_key())


class FailoverCoordinator:
    """
    Moves the primary flag when the incumbent has failed ``threshold``
    consecutive probes.

    The flip goes through the store's compare-and-swap on the election
    epoch, so two coordinators racing on the same failure produce one
    Failover Event.
    """

    def __init__(
        self,
        store: ControlStore,
        emitter: EventEmitter,
        notifier: Optional[Notifier] = None,
        threshold: int = 3,
    ):
        self._store = store
        self._emitter = emitter
        self._notifier = notifier or NullNotifier()
        self.threshold = threshold

    def evaluate(self) -> Optional[FailoverEvent]:
        """Run one election check; returns the Failover Event when the primary moved."""
        epoch = self._store.election_epoch()
        entries = self._store.list_failover_entries()
        primary = next((e for e in entries if e.is_primary and e.is_enabled), None)

        if primary is None:
            logger.warning("[failover] No enabled primary in failover table")
            return None
        if primary.consecutive_failures < self.threshold:
            return None
        if not primary.auto_failover_enabled:
            logger.warning(
                f"[failover] {primary.provider} failed {primary.consecutive_failures} probes "
                f"but auto-failover is disabled"
            )
            return None

        successor = choose_successor(entries, primary.provider)
        if successor is None:
            logger.error(f"[failover] ❌ {primary.provider} is down and no healthy successor exists")
            return None

        reason = f"{primary.consecutive_failures} consecutive failed probes on {primary.provider}"
        return self._flip(primary.provider, successor.provider, epoch, reason, automatic=True)

    def manual_switch(self, to_provider: str, actor: str = "operator", reason: str = "manual switch") -> FailoverEvent:
        """
        Operator-requested primary change.

        Raises:
            StateError: target unknown, disabled, or already primary
            ConcurrencyError: an election happened concurrently
        """
        epoch = self._store.election_epoch()
        entries = self._store.list_failover_entries()
        target = next((e for e in entries if e.provider == to_provider), None)
        if target is None:
            raise StateError("unknown_provider", f"No failover entry for {to_provider}")
        if not target.is_enabled:
            raise StateError("entry_disabled", f"{to_provider} is disabled")
        if target.is_primary:
            raise StateError("already_primary", f"{to_provider} is already primary")

        incumbent = next((e.provider for e in entries if e.is_primary), None)
        event = self._flip(incumbent, to_provider, epoch, reason, automatic=False)
        if event is None:
            raise ConcurrencyError("Primary changed while switching; retry")
        self._store.append_audit_event(AuditEvent(
            actor=actor,
            action="failover.switch",
            before={"primary": incumbent},
            after={"primary": to_provider},
        ))
        return event

    def _flip(
        self,
        incumbent: Optional[str],
        successor: str,
        epoch: int,
        reason: str,
        automatic: bool,
    ) -> Optional[FailoverEvent]:
        try:
            new_epoch = self._store.flip_primary(incumbent, successor, epoch)
        except ConcurrencyError as e:
            logger.warning(f"[failover] Lost election race: {e}")
            return None

        event = FailoverEvent(
            from_provider=incumbent,
            to_provider=successor,
            reason=reason,
            automatic=automatic,
        )
        self._store.append_failover_event(event)
        self._emitter.emit([ControlEvent.failover(incumbent, successor, reason, automatic)])
        self._notifier.notify(
            "Failover" if automatic else "Primary switched",
            f"{incumbent or 'none'} -> {successor}: {reason}",
        )
        logger.warning(f"[failover] 🔀 Primary {incumbent} -> {successor} (epoch {new_epoch}): {reason}")
        return event
