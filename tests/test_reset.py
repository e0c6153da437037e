#tests\test_reset.py

"""Test the destructive reset: confirmation gate, allowlist, audit trail."""

import pytest
from fastapi.testclient import TestClient

from hft_control.api.main import create_app
from hft_control.container import get_store
from hft_control.control.reset import CONFIRMATION, RESET_ALLOWLIST, reset_trading_data
from hft_control.core.errors import StateError
from hft_control.core.models import (
    AuditEvent,
    BotStatus,
    ExchangeConnection,
    FailoverEvent,
    HealthEvent,
    HealthStatus,
)


def seed(store):
    """History in several tables plus configuration that must survive."""
    store.append_health_event(HealthEvent(provider="aws", status=HealthStatus.DOWN, latency_ms=None))
    store.append_failover_event(FailoverEvent(from_provider="aws", to_provider="vultr", reason="x", automatic=True))
    store.append_audit_event(AuditEvent(actor="alice", action="bot.start"))
    store.append_execution_metric({
        "exchange": "binance", "symbol": "BTCUSDT", "order_type": "market", "execution_time_ms": 12,
    })
    store.append_balance_snapshot(150.0, [{"exchange": "binance", "balance": 150.0}])
    store.save_exchange_connection(ExchangeConnection(
        "binance", credentials={"envelope": "sealed"}, is_connected=True, balance_usdt=150.0,
    ))
    store.save_cloud_credential("aws", "sealed-aws", "fp")
    store.set_bot_status(BotStatus.RUNNING)


@pytest.fixture
def client(store):
    app = create_app()
    app.dependency_overrides[get_store] = lambda: store
    return TestClient(app)


class TestResetTradingData:

    # -------------------------
    # Confirmation gate
    # -------------------------

    @pytest.mark.parametrize("confirm", [None, "", "reset_all_data", "RESET_ALL_DATA "])
    def test_refused_without_exact_sentinel(self, store, confirm):
        """Test nothing is touched unless confirm is the literal sentinel."""
        seed(store)

        with pytest.raises(StateError) as exc_info:
            reset_trading_data(store, confirm)

        assert exc_info.value.reason == "bad_confirmation"
        assert len(store.list_health_events()) == 1
        assert store.get_bot_status() == BotStatus.RUNNING

    # -------------------------
    # Effects
    # -------------------------

    def test_clears_history_keeps_configuration(self, store):
        seed(store)

        result = reset_trading_data(store, CONFIRMATION, actor="alice")

        assert result["success"] is True
        assert store.list_health_events() == []
        assert store.list_failover_events() == []
        assert store.logs["trade_execution_metrics"] == []
        assert store.logs["balance_history"] == []

        connection = store.get_exchange_connection("binance")
        assert connection.credentials == {"envelope": "sealed"}
        assert connection.balance_usdt is None
        assert store.get_cloud_credential("aws") is not None
        assert store.get_bot_status() == BotStatus.STOPPED

    def test_reset_itself_is_audited(self, store):
        seed(store)

        reset_trading_data(store, CONFIRMATION, actor="alice")

        audit = store.list_audit_events()
        assert len(audit) == 1
        assert audit[0].action == "reset_trading_data"
        assert audit[0].actor == "alice"

    def test_summary_counts(self, store):
        result = reset_trading_data(store, CONFIRMATION)

        details = result["details"]
        assert details["health_check_results"] == "cleared"
        assert details["trading_journal"] == "skipped"
        assert details["exchange_connections"] == "balances_reset"
        assert result["summary"]["tables_cleared"] == sum(1 for v in details.values() if v == "cleared")
        assert result["summary"]["tables_reset"] == 4

    def test_allowlist_excludes_configuration(self):
        for table in ("cloud_credentials", "exchange_connections", "failover_config", "secrets"):
            assert table not in RESET_ALLOWLIST

    def test_sql_store(self, sql_store):
        """Test the reset against the relational store."""
        seed(sql_store)

        result = reset_trading_data(sql_store, CONFIRMATION)

        assert result["details"]["health_check_results"] == "cleared"
        assert sql_store.list_health_events() == []
        assert sql_store.get_cloud_credential("aws") is not None
        assert len(sql_store.list_audit_events()) == 1


# -------------------------
# API
# -------------------------

class TestResetRoute:

    def test_bad_confirmation_is_400(self, client, store):
        seed(store)

        response = client.post("/reset-trading-data", json={"confirm": "yes"})

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert response.json()["blocking_reason"] == "bad_confirmation"
        assert len(store.list_health_events()) == 1

    def test_missing_confirmation_is_400(self, client):
        assert client.post("/reset-trading-data", json={}).status_code == 400

    def test_confirmed_reset(self, client, store):
        seed(store)

        response = client.post(
            "/reset-trading-data",
            json={"confirm": "RESET_ALL_DATA"},
            headers={"X-Actor": "alice"},
        )

        assert response.status_code == 200
        assert response.json()["summary"]["tables_cleared"] > 0
        assert store.list_health_events() == []
        assert store.list_audit_events()[0].actor == "alice"
