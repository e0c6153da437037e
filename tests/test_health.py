#tests\test_health.py

"""Test probe classification and the health check cycle."""

from unittest.mock import MagicMock

import pytest
import requests

from hft_control.core.models import BotStatus, HealthStatus, HostRecord
from hft_control.health.checker import HealthChecker, get_with_deadline
from hft_control.health.classifier import HealthThresholds, classify, counts_as_failure
from hft_control.health.desync import DesyncDetector
from hft_control.health.failover import FailoverCoordinator

from tests.fakes import FakeResponse

OK = {"status": "ok"}


def make_checker(store, emitter, http_get, **kwargs):
    kwargs.setdefault("clock", lambda: 0.0)
    kwargs.setdefault("client_factory", MagicMock())
    return HealthChecker(
        store,
        emitter,
        FailoverCoordinator(store, emitter),
        DesyncDetector(store, emitter),
        http_get=http_get,
        **kwargs,
    )


class FakeClock:
    """Advances ``step`` seconds per reading."""

    def __init__(self, step: float):
        self.step = step
        self.now = 0.0

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


# -------------------------
# Classifier
# -------------------------

class TestClassifier:

    @pytest.mark.parametrize("latency,expected", [
        (0, HealthStatus.HEALTHY),
        (100, HealthStatus.HEALTHY),
        (101, HealthStatus.WARNING),
        (150, HealthStatus.WARNING),
        (151, HealthStatus.DOWN),
    ])
    def test_latency_bands(self, latency, expected):
        assert classify(200, latency, OK) == expected

    @pytest.mark.parametrize("status,body", [
        (504, OK),
        (301, OK),
        (200, {"status": "degraded"}),
        (200, "ok"),
        (200, None),
        (None, OK),
    ])
    def test_down(self, status, body):
        assert classify(status, 10, body) == HealthStatus.DOWN

    def test_accepted_bodies(self):
        assert classify(200, 10, {"status": "HEALTHY"}) == HealthStatus.HEALTHY
        assert classify(200, 10, {"ok": True}) == HealthStatus.HEALTHY

    def test_custom_thresholds(self):
        thresholds = HealthThresholds(healthy_ms=20, warning_ms=40)
        assert classify(200, 30, OK, thresholds) == HealthStatus.WARNING

    def test_warning_is_not_a_failure(self):
        assert counts_as_failure(HealthStatus.WARNING, 140) is False
        assert counts_as_failure(HealthStatus.DOWN, None) is True


# -------------------------
# Probe
# -------------------------

class TestProbe:

    def test_latency_measured_with_clock(self, two_entries, emitter):
        """Test latency is the clock delta around the request."""
        checker = make_checker(two_entries, emitter, lambda url, timeout: FakeResponse(200, OK),
                               clock=FakeClock(0.12))

        result = checker.probe(two_entries.get_failover_entry("aws"))

        assert result.latency_ms == 120
        assert result.status == HealthStatus.WARNING

    def test_timeout_is_down(self, two_entries, emitter):
        def http_get(url, timeout):
            raise requests.exceptions.ReadTimeout("slow")

        result = make_checker(two_entries, emitter, http_get).probe(two_entries.get_failover_entry("aws"))

        assert result.status == HealthStatus.DOWN
        assert result.latency_ms is None
        assert "aborted" in result.message

    def test_response_past_timeout_is_aborted(self, store, emitter, make_entry):
        """Test a response that only completes after timeout_ms counts as aborted."""
        store.save_failover_entry(make_entry("aws", 1, timeout_ms=1000))
        checker = make_checker(store, emitter, lambda url, timeout: FakeResponse(200, OK),
                               clock=FakeClock(1.5))

        result = checker.probe(store.get_failover_entry("aws"))

        assert result.status == HealthStatus.DOWN
        assert result.latency_ms is None
        assert "aborted" in result.message

    def test_entry_timeout_passed_to_request(self, store, emitter, make_entry):
        store.save_failover_entry(make_entry("aws", 1, timeout_ms=2500))
        seen = {}

        def http_get(url, timeout):
            seen["timeout"] = timeout
            return FakeResponse(200, OK)

        make_checker(store, emitter, http_get).probe(store.get_failover_entry("aws"))

        assert seen["timeout"] == 2.5

    def test_health_url_from_host_ip(self, store, emitter, make_entry):
        """Test an entry without health_url probes its host's public IP."""
        host = HostRecord(provider="aws", region="us-east-1", instance_type="t3.micro",
                          instance_id="i-1", public_ip="198.51.100.7")
        store.create_host(host)
        entry = make_entry("aws", 1, health_url=None, host_id=host.id)

        checker = make_checker(store, emitter, MagicMock())

        assert checker.probe_url(entry) == "http://198.51.100.7/health"
        assert checker.probe_url(make_entry("gcp", 2, health_url=None)) is None


# -------------------------
# Cycle
# -------------------------

class TestCycle:

    def test_cycle_records_result_and_events(self, two_entries, emitter):
        checker = make_checker(two_entries, emitter, lambda url, timeout: FakeResponse(200, OK))

        report = checker.run_cycle()

        assert {r.provider for r in report.results} == {"aws", "vultr"}
        assert len(two_entries.list_health_events()) == 2
        assert len(two_entries.logs["exchange_latency_history"]) == 2
        assert len(emitter.of_type("health.probe")) == 2
        assert two_entries.get_failover_entry("aws").last_health_check is not None

    def test_failure_counter_resets_on_success(self, two_entries, emitter):
        responses = [FakeResponse(504, text="x"), FakeResponse(200, OK)]
        checker = make_checker(two_entries, emitter, lambda url, timeout: responses[0])

        checker.run_cycle()
        assert two_entries.get_failover_entry("aws").consecutive_failures == 1

        responses.pop(0)
        checker.run_cycle()
        assert two_entries.get_failover_entry("aws").consecutive_failures == 0

    def test_disabled_entry_not_checked(self, store, emitter, make_entry):
        store.save_failover_entry(make_entry("aws", 1, is_enabled=False))
        http_get = MagicMock()

        report = make_checker(store, emitter, http_get).run_cycle()

        assert report.results == []
        http_get.assert_not_called()

    def test_overlapping_cycle_is_skipped(self, two_entries, emitter):
        """Test a tick that arrives while a cycle runs is dropped."""
        checker = make_checker(two_entries, emitter, MagicMock())
        checker._cycle_lock.acquire()
        try:
            assert checker.run_cycle() is None
        finally:
            checker._cycle_lock.release()

    def test_interval_shortens_while_degraded(self, two_entries, emitter):
        def http_get(url, timeout):
            if "aws" in url:
                raise requests.exceptions.ConnectionError("refused")
            return FakeResponse(200, OK)

        checker = make_checker(two_entries, emitter, http_get)

        assert checker.next_interval(None) == 30
        assert checker.next_interval(checker.run_cycle()) == 10

    def test_interval_normal_when_primary_healthy(self, two_entries, emitter):
        checker = make_checker(two_entries, emitter, lambda url, timeout: FakeResponse(200, OK))
        assert checker.next_interval(checker.run_cycle()) == 30

    def test_desync_read_from_agent_status(self, two_entries, emitter):
        """Test a plain health body falls back to the agent's /status for the bot state."""
        agent = MagicMock()
        agent.status.return_value = {"bot": {"status": "running"}}
        factory = MagicMock(return_value=agent)
        checker = make_checker(two_entries, emitter, lambda url, timeout: FakeResponse(200, OK),
                               client_factory=factory)

        report = checker.run_cycle()

        factory.assert_called_once_with("aws.example", port=80, timeout=10.0)
        assert report.desync.host_status == BotStatus.RUNNING
        assert two_entries.get_bot_status() == BotStatus.STOPPED


# -------------------------
# Deadline-bounded GET
# -------------------------

class StreamedResponse:
    """Streams ``chunks`` and records whether it was closed."""

    def __init__(self, chunks):
        self.status_code = 200
        self.chunks = chunks
        self.closed = False

    def iter_content(self, chunk_size):
        yield from self.chunks

    def close(self):
        self.closed = True


class TestGetWithDeadline:

    def test_body_collected(self):
        response = StreamedResponse([b'{"sta', b'tus": "ok"}'])
        get = MagicMock(return_value=response)

        result = get_with_deadline("http://h/health", 5.0, get=get, clock=FakeClock(0.1))

        assert result._content == b'{"status": "ok"}'
        assert response.closed is True
        get.assert_called_once_with("http://h/health", timeout=5.0, stream=True)

    def test_slow_drip_body_aborted(self):
        """Test a body trickling past the deadline raises a timeout instead of blocking."""
        response = StreamedResponse([b"x"] * 100)

        with pytest.raises(requests.exceptions.Timeout):
            get_with_deadline("http://h/health", 1.0, get=MagicMock(return_value=response), clock=FakeClock(0.4))

        assert response.closed is True
