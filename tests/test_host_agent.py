#tests\test_host_agent.py

"""Test the host agent: signal-file protocol, control endpoints and exchange proxy."""

import os
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from hft_control.core.errors import AuthError
from hft_control.exchanges.base import OrderResult
from host_agent.client import HostAgentClient
from host_agent.config import AgentSettings
from host_agent.runtime import BotRuntime, ComposeResult
from host_agent.server import create_app
from host_agent.signal_file import SignalFile, render_env, write_env_file

from tests.fakes import FakeResponse, FakeSession

ORDER_BODY = {
    "exchange": "binance",
    "credentials": {"api_key": "k", "api_secret": "s"},
    "symbol": "BTCUSDT",
    "side": "buy",
    "quantity": 0.1,
    "client_order_id": "cid-1",
}


@pytest.fixture
def agent_settings(tmp_path):
    return AgentSettings(bot_dir=str(tmp_path / "bot"), data_dir=str(tmp_path / "data"))


@pytest.fixture
def runtime():
    runtime = MagicMock(spec=BotRuntime)
    runtime.up.return_value = ComposeResult(True, "started")
    runtime.down.return_value = ComposeResult(True, "stopped")
    runtime.containers.return_value = []
    runtime.docker_running.return_value = False
    runtime.logs.return_value = ["line 1", "line 2"]
    return runtime


@pytest.fixture
def adapter():
    adapter = MagicMock()
    adapter.place_order.return_value = OrderResult(
        order_id="ord-9",
        filled_qty=0.1,
        avg_price=42000.0,
        placed_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        filled_at=None,
        api_response_ms=12,
    )
    return adapter


@pytest.fixture
def client(agent_settings, runtime, adapter):
    app = create_app(agent_settings, runtime=runtime, exchange_factory=lambda name: adapter)
    return TestClient(app)


class TestSignalFile:

    def test_create_and_remove(self, tmp_path):
        """Test the signal is confirmed present after create and absent after remove."""
        signal = SignalFile(str(tmp_path / "data" / "START_SIGNAL"))

        assert signal.create(source="test", mode="paper") is True
        assert signal.read()["mode"] == "paper"
        assert signal.age_ms() is not None

        assert signal.remove() is True
        assert signal.exists() is False

    def test_remove_missing_is_ok(self, tmp_path):
        assert SignalFile(str(tmp_path / "nope")).remove() is True

    def test_env_file_rendering(self, tmp_path):
        """Test KEY=value lines, written owner-only."""
        path = tmp_path / ".env.exchanges"
        write_env_file(str(path), {"BINANCE_API_KEY": "k", "TRADE_MODE": "SPOT"})

        assert path.read_text() == "BINANCE_API_KEY=k\nTRADE_MODE=SPOT\n"
        assert oct(os.stat(path).st_mode & 0o777) == "0o600"

    def test_env_rejects_injection(self):
        with pytest.raises(ValueError):
            render_env({"BAD KEY": "x"})
        with pytest.raises(ValueError):
            render_env({"KEY": "x\nEVIL=1"})


class TestControlEndpoints:

    # -------------------------
    # BOOT
    # -------------------------

    def test_boot_does_not_start_bot(self, client, runtime):
        """Test a freshly started agent leaves the bot idle."""
        response = client.get("/signal-check")

        assert response.status_code == 200
        assert response.json()["signal_exists"] is False
        runtime.up.assert_not_called()

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["ok"] is True

    # -------------------------
    # START / STOP
    # -------------------------

    def test_start_writes_env_then_signal_then_compose(self, client, runtime, agent_settings):
        """Test start with env: env file and signal exist before compose up runs."""
        seen = {}

        def up():
            seen["signal"] = os.path.exists(agent_settings.signal_path)
            seen["env"] = os.path.exists(agent_settings.env_path)
            return ComposeResult(True)

        runtime.up.side_effect = up

        response = client.post("/control", json={"action": "start", "env": {"K": "V"}})

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["signal_created"] is True
        assert seen == {"signal": True, "env": True}
        with open(agent_settings.env_path, encoding="utf-8") as handle:
            assert handle.read() == "K=V\n"

        assert client.get("/signal-check").json()["signal_exists"] is True

    def test_compose_failure_reports_signal_state(self, client, runtime):
        """Test a failed compose up returns 500 but says the signal exists."""
        runtime.up.return_value = ComposeResult(False, "no such service")

        response = client.post("/control", json={"action": "start"})

        assert response.status_code == 500
        assert response.json()["success"] is False
        assert response.json()["signal_created"] is True

    def test_stop_removes_signal(self, client, runtime, agent_settings):
        client.post("/control", json={"action": "start"})

        response = client.post("/control", json={"action": "stop"})

        assert response.json()["success"] is True
        assert response.json()["signal_removed"] is True
        assert not os.path.exists(agent_settings.signal_path)
        runtime.down.assert_called_once()

    def test_restart_runs_down_then_up(self, client, runtime):
        response = client.post("/control", json={"action": "restart"})

        assert response.json()["signal_created"] is True
        runtime.down.assert_called_once()
        runtime.up.assert_called_once()

    def test_unknown_action_rejected(self, client):
        response = client.post("/control", json={"action": "rm -rf /"})
        assert response.status_code == 422
        assert response.json()["success"] is False

    # -------------------------
    # STATUS
    # -------------------------

    def test_status_derives_running_from_signal_and_docker(self, client, runtime):
        """Test the bot is running only with a signal file and a running container."""
        runtime.containers.return_value = [{"id": "abc", "name": "hft-bot", "status": "running", "image": "x"}]
        assert client.get("/status").json()["bot"]["status"] == "idle"

        client.post("/control", json={"action": "start"})
        assert client.get("/status").json()["bot"]["status"] == "running"

    def test_logs(self, client):
        assert client.get("/logs?lines=2").json()["logs"] == ["line 1", "line 2"]


class TestPlaceOrder:

    def test_kill_switch_file_refuses(self, client, adapter, agent_settings):
        """Test no order leaves the host while KILL_SWITCH exists."""
        os.makedirs(agent_settings.data_path, exist_ok=True)
        open(agent_settings.kill_switch_path, "w").close()

        response = client.post("/place-order", json=ORDER_BODY)

        assert response.json() == {"success": False, "error": "kill_switch"}
        adapter.place_order.assert_not_called()

    def test_duplicate_client_order_id(self, client, adapter):
        """Test the agent ledger answers a repeated id without resubmitting."""
        first = client.post("/place-order", json=ORDER_BODY).json()
        second = client.post("/place-order", json=ORDER_BODY).json()

        assert first["order_id"] == "ord-9"
        assert second["duplicate"] is True
        assert adapter.place_order.call_count == 1

    def test_upstream_error_kind(self, client, adapter):
        adapter.place_order.side_effect = AuthError("invalid key", provider_code="-2015")

        response = client.post("/place-order", json=ORDER_BODY)

        assert response.status_code == 502
        assert response.json()["reason"] == "auth"
        assert response.json()["provider_code"] == "-2015"


# -------------------------
# Client
# -------------------------

class TestHostAgentClient:

    def test_for_ip_url(self):
        assert HostAgentClient.for_ip("203.0.113.10").base_url == "http://203.0.113.10"
        assert HostAgentClient.for_ip("203.0.113.10", port=8080).base_url == "http://203.0.113.10:8080"

    def test_control_payload(self):
        session = FakeSession()
        session.add("POST", "/control", FakeResponse(200, {"success": True, "signal_created": True}))
        agent = HostAgentClient("http://h", session=session)

        body = agent.control("start", env={"K": "V"}, mode="paper")

        assert body["signal_created"] is True
        assert session.calls[0][2]["json"] == {"action": "start", "mode": "paper", "env": {"K": "V"}}

    def test_error_bodies_returned_not_raised(self):
        """Test agent replies carry success=false on 5xx and are returned as-is."""
        session = FakeSession()
        session.add("POST", "/control", FakeResponse(500, {"success": False, "error": "compose"}))
        body = HostAgentClient("http://h", session=session).control("start")

        assert body["success"] is False
        assert body["signal_created"] is False

    def test_against_agent_app(self, client):
        """Test the client speaks the agent's protocol end to end."""
        agent = HostAgentClient("http://testserver", session=client)

        assert agent.control("start", env={"K": "V"})["success"] is True
        state = agent.signal_check()
        assert state.signal_exists is True
        assert state.signal_data["source"] == "dashboard"
