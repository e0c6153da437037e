#tests\test_sql_store.py

"""Test the SQLAlchemy store against sqlite."""

from datetime import datetime, timezone

import pytest

from hft_control.core.errors import ConcurrencyError, RecordNotFound
from hft_control.core.models import (
    BotDeployment,
    BotStatus,
    ExchangeConnection,
    FailoverEntry,
    HealthEvent,
    HealthStatus,
    HostRecord,
    LifecycleStatus,
    OrderRecord,
    Signal,
    SignalSide,
)


@pytest.fixture
def host():
    return HostRecord(provider="vultr", region="ewr", instance_type="vc2-1c-1gb", instance_id="inst-1")


@pytest.fixture
def entries(sql_store):
    sql_store.save_failover_entry(FailoverEntry("aws", 1, is_primary=True, health_url="http://a/health"))
    sql_store.save_failover_entry(FailoverEntry("vultr", 2, health_url="http://b/health"))
    return sql_store


def order(client_order_id="cid-1", exchange="binance"):
    return OrderRecord(exchange=exchange, client_order_id=client_order_id, symbol="BTCUSDT", side="buy", quantity=0.1)


class TestSqlControlStore:
    """Test store operations."""

    # -------------------------
    # HOSTS
    # -------------------------

    def test_host_round_trip(self, sql_store, host):
        sql_store.create_host(host)

        retrieved = sql_store.get_host(host.id)

        assert retrieved.instance_id == "inst-1"
        assert retrieved.lifecycle_status == LifecycleStatus.PROVISIONING
        assert retrieved.public_ip is None

    def test_duplicate_host_fails(self, sql_store, host):
        sql_store.create_host(host)
        with pytest.raises(ConcurrencyError):
            sql_store.create_host(host)

    def test_update_and_find_by_ip(self, sql_store, host):
        sql_store.create_host(host)
        host.mark_running("203.0.113.5")
        sql_store.update_host(host)

        found = sql_store.find_host_by_ip("203.0.113.5")

        assert found.id == host.id
        assert found.lifecycle_status == LifecycleStatus.RUNNING

    def test_update_missing_host(self, sql_store, host):
        with pytest.raises(RecordNotFound):
            sql_store.update_host(host)

    # -------------------------
    # ELECTION
    # -------------------------

    def test_flip_primary_advances_epoch(self, entries):
        epoch = entries.election_epoch()

        new_epoch = entries.flip_primary("aws", "vultr", epoch)

        assert new_epoch == epoch + 1
        assert [e.provider for e in entries.list_failover_entries() if e.is_primary] == ["vultr"]

    def test_flip_with_stale_epoch(self, entries):
        """Test the compare-and-swap refuses a flip computed from an old epoch."""
        epoch = entries.election_epoch()
        entries.flip_primary("aws", "vultr", epoch)

        with pytest.raises(ConcurrencyError):
            entries.flip_primary("aws", "vultr", epoch)

    def test_second_primary_rejected(self, entries):
        """Test the partial unique index allows one primary row."""
        with pytest.raises(ConcurrencyError):
            entries.save_failover_entry(FailoverEntry("gcp", 3, is_primary=True))

    def test_save_keeps_primary_flag(self, entries):
        entries.save_failover_entry(FailoverEntry("aws", 5, is_primary=False))

        aws = entries.get_failover_entry("aws")
        assert aws.is_primary is True
        assert aws.priority == 5

    def test_record_check(self, entries):
        entry = entries.get_failover_entry("aws")
        entry.consecutive_failures = 2
        entry.last_status = HealthStatus.DOWN
        entry.last_health_check = datetime.now(timezone.utc)
        entries.record_probe(entry)

        stored = entries.get_failover_entry("aws")
        assert stored.consecutive_failures == 2
        assert stored.last_status == HealthStatus.DOWN

    def test_record_check_unknown_entry(self, sql_store):
        with pytest.raises(RecordNotFound):
            sql_store.record_probe(FailoverEntry("nope", 1))

    # -------------------------
    # ORDERS
    # -------------------------

    def test_reserve_order_once(self, sql_store):
        first, created = sql_store.reserve_order(order())
        again, created_again = sql_store.reserve_order(order())

        assert created is True
        assert created_again is False
        assert again.client_order_id == first.client_order_id
        assert len(sql_store.list_orders()) == 1

    def test_update_order(self, sql_store):
        record, _ = sql_store.reserve_order(order())
        record.status = "filled"
        record.order_id = "ord-1"
        sql_store.update_order(record)

        stored, _ = sql_store.reserve_order(order())
        assert stored.status == "filled"
        assert stored.order_id == "ord-1"

    # -------------------------
    # CONFIG / SECRETS
    # -------------------------

    def test_defaults(self, sql_store):
        assert sql_store.kill_switch_enabled() is False
        assert sql_store.get_bot_status() == BotStatus.STOPPED
        assert sql_store.election_epoch() == 0

    def test_kill_switch_and_bot_status(self, sql_store):
        sql_store.set_kill_switch(True)
        sql_store.set_bot_status(BotStatus.RUNNING)

        assert sql_store.kill_switch_enabled() is True
        assert sql_store.get_bot_status() == BotStatus.RUNNING

    def test_cloud_credentials(self, sql_store):
        sql_store.save_cloud_credential("aws", "sealed", "fp")
        assert sql_store.get_cloud_credential("aws")["last_verified_at"] is None

        sql_store.mark_credential_verified("aws")

        row = sql_store.get_cloud_credential("aws")
        assert row["envelope"] == "sealed"
        assert row["last_verified_at"] is not None

    def test_secrets(self, sql_store):
        sql_store.set_secret("ENCRYPTION_KEY", "a")
        sql_store.set_secret("ENCRYPTION_KEY", "b")
        assert sql_store.get_secret("ENCRYPTION_KEY") == "b"
        assert sql_store.get_secret("missing") is None

    # -------------------------
    # MISC
    # -------------------------

    def test_exchange_connection(self, sql_store):
        sql_store.save_exchange_connection(ExchangeConnection("okx", credentials={"envelope": "x"}, is_connected=True))

        connection = sql_store.get_exchange_connection("okx")

        assert connection.credentials == {"envelope": "x"}
        assert [c.exchange_name for c in sql_store.list_exchange_connections()] == ["okx"]

    def test_signal_and_deployment(self, sql_store, host):
        signal = Signal(symbol="BTCUSDT", side=SignalSide.LONG, confidence=75, exchange="binance")
        sql_store.append_signal(signal)
        assert sql_store.get_signal(signal.id).side == SignalSide.LONG

        sql_store.create_host(host)
        sql_store.save_bot_deployment(BotDeployment(host_id=host.id, ip="203.0.113.5", bot_status=BotStatus.RUNNING))
        assert sql_store.get_bot_deployment(host.id).bot_status == BotStatus.RUNNING

    def test_health_events_filtered(self, sql_store):
        sql_store.append_health_event(HealthEvent("aws", HealthStatus.DOWN))
        sql_store.append_health_event(HealthEvent("vultr", HealthStatus.HEALTHY, latency_ms=40))

        assert [e.provider for e in sql_store.list_health_events("vultr")] == ["vultr"]
        assert len(sql_store.list_health_events()) == 2
