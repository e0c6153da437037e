#tests\test_backoff.py

"""Test adaptive polling, debouncing and the dashboard health monitor."""

from unittest.mock import MagicMock

import pytest

from hft_control.core.errors import TransientNetworkError
from hft_control.health.backoff import AdaptivePoller, BackoffPolicy, Debouncer
from hft_control.health.edge_client import ControlPlaneClient, HealthMonitor

from tests.fakes import FakeResponse, FakeSession


class ManualClock:

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeTimer:
    """threading.Timer stand-in that only fires when told to."""

    created = []

    def __init__(self, delay, fn):
        self.delay = delay
        self.fn = fn
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True


@pytest.fixture(autouse=True)
def reset_timers():
    FakeTimer.created = []


def failing():
    raise TransientNetworkError("control plane unreachable")


class TestAdaptivePoller:

    def test_intervals(self):
        """Test 60 s between healthy polls and 30 s after a failure."""
        clock = ManualClock()
        outcomes = [failing, lambda: {"ok": True}]
        poller = AdaptivePoller(lambda: outcomes[0](), clock=clock)

        poller.poll()
        assert poller.consecutive_failures == 1
        assert poller.next_due == 30

        outcomes.pop(0)
        clock.now = 30
        assert poller.tick() == {"ok": True}
        assert poller.consecutive_failures == 0
        assert poller.next_due == 90

    def test_not_due_does_not_check(self):
        clock = ManualClock()
        probe = MagicMock(return_value={})
        poller = AdaptivePoller(probe, clock=clock)

        poller.tick()
        clock.now = 59
        poller.tick()

        assert probe.call_count == 1

    def test_disabled_after_five_failures(self):
        """Test probing stops after the fifth consecutive failure."""
        probe = MagicMock(side_effect=TransientNetworkError("down"))
        poller = AdaptivePoller(probe, BackoffPolicy(60, 30, 5), clock=ManualClock())

        for _ in range(7):
            poller.poll()

        assert probe.call_count == 5
        assert poller.disabled is True
        assert poller.due() is False
        assert poller.last_error == "down"

    def test_retry_reenables(self):
        probe = MagicMock(side_effect=TransientNetworkError("down"))
        poller = AdaptivePoller(probe, clock=ManualClock())
        for _ in range(5):
            poller.poll()

        probe.side_effect = None
        probe.return_value = {"ok": True}

        assert poller.retry() == {"ok": True}
        assert poller.disabled is False
        assert poller.consecutive_failures == 0


class TestDebouncer:

    def test_burst_collapses_to_last_call(self):
        fn = MagicMock()
        debounced = Debouncer(fn, delay_s=0.4, timer_factory=FakeTimer)

        debounced(1)
        debounced(2)
        debounced(3)

        assert [t.cancelled for t in FakeTimer.created] == [True, True, False]
        FakeTimer.created[-1].fn()
        fn.assert_called_once_with(3)

    def test_flush_runs_pending_now(self):
        fn = MagicMock()
        debounced = Debouncer(fn, timer_factory=FakeTimer)

        debounced("x")
        debounced.flush()
        debounced.flush()

        fn.assert_called_once_with("x")

    def test_cancel_drops_pending(self):
        fn = MagicMock()
        debounced = Debouncer(fn, timer_factory=FakeTimer)

        debounced("x")
        debounced.cancel()
        FakeTimer.created[-1].fn()

        fn.assert_not_called()


# -------------------------
# Dashboard monitor
# -------------------------

class TestHealthMonitor:

    def make_monitor(self, session, on_report=None, on_change=None):
        client = ControlPlaneClient("http://control", session=session)
        return HealthMonitor(
            client,
            on_report=on_report or MagicMock(),
            on_change=on_change or MagicMock(),
            debounce_s=60,
            clock=ManualClock(),
        )

    def test_report_delivered(self):
        session = FakeSession()
        session.add("POST", "/health-check/run", FakeResponse(200, {"success": True, "results": []}))
        on_report = MagicMock()
        monitor = self.make_monitor(session, on_report=on_report)

        monitor.tick()

        on_report.assert_called_once_with({"success": True, "results": []})

    def test_unreachable_control_plane_disables(self):
        """Test five failed polls stop the monitor until retry."""
        monitor = self.make_monitor(FakeSession())

        for _ in range(5):
            monitor.poller.poll()

        assert monitor.disabled is True

    def test_change_notifications_coalesce(self):
        """Test per-row notifications are delivered once as a set of tables."""
        on_change = MagicMock()
        monitor = self.make_monitor(FakeSession(), on_change=on_change)

        monitor.notify_change(["failover_config"])
        monitor.notify_change(["failover_config", "health_check_results"])
        monitor._debounced.flush()

        on_change.assert_called_once_with({"failover_config", "health_check_results"})
        monitor.close()
