# hft_control/infrastructure/memory/store.py

from copy import deepcopy
from datetime import datetime, timezone
from threading import Lock, RLock
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from hft_control.core.errors import ConcurrencyError, RecordNotFound
from hft_control.core.models import (
    AuditEvent,
    BotDeployment,
    BotStatus,
    ExchangeConnection,
    FailoverEntry,
    FailoverEvent,
    HealthEvent,
    HostRecord,
    LatencySample,
    OrderRecord,
    Signal,
)
from hft_control.core.repository import ControlStore


class InMemoryControlStore(ControlStore):
    """Dict-backed store; records are copied in and out like rows."""

    def __init__(self):
        self._lock = RLock()
        self._election_lock = Lock()
        self._hosts: Dict[UUID, HostRecord] = {}
        self._entries: Dict[str, FailoverEntry] = {}
        self._epoch = 0
        self._deployments: Dict[UUID, BotDeployment] = {}
        self._connections: Dict[str, ExchangeConnection] = {}
        self._signals: Dict[UUID, Signal] = {}
        self._orders: Dict[Tuple[str, str], OrderRecord] = {}
        self._credentials: Dict[str, Dict[str, Any]] = {}
        self._secrets: Dict[str, str] = {}
        self._kill_switch = False
        self._bot_status = BotStatus.STOPPED
        self.ai_providers: Dict[str, Dict[str, Any]] = {}
        self.logs: Dict[str, List[Any]] = {
            "health_check_results": [],
            "failover_events": [],
            "audit_logs": [],
            "exchange_latency_history": [],
            "trade_execution_metrics": [],
            "balance_history": [],
        }

    # -------------------------
    # Host records
    # -------------------------

    def create_host(self, host: HostRecord) -> None:
        with self._lock:
            if host.id in self._hosts:
                raise ConcurrencyError(f"Host {host.id} already exists")
            self._hosts[host.id] = deepcopy(host)

    def get_host(self, host_id: UUID) -> Optional[HostRecord]:
        host = self._hosts.get(host_id)
        return deepcopy(host) if host else None

    def find_host_by_ip(self, ip: str) -> Optional[HostRecord]:
        for host in self._hosts.values():
            if host.public_ip == ip:
                return deepcopy(host)
        return None

    def update_host(self, host: HostRecord) -> None:
        with self._lock:
            if host.id not in self._hosts:
                raise RecordNotFound(f"Host {host.id} not found")
            self._hosts[host.id] = deepcopy(host)

    def list_hosts(self) -> List[HostRecord]:
        return [deepcopy(h) for h in self._hosts.values()]

    # -------------------------
    # Failover entries
    # -------------------------

    def list_failover_entries(self) -> List[FailoverEntry]:
        entries = sorted(self._entries.values(), key=lambda e: e.election_key())
        return [deepcopy(e) for e in entries]

    def get_failover_entry(self, provider: str) -> Optional[FailoverEntry]:
        entry = self._entries.get(provider)
        return deepcopy(entry) if entry else None

    def save_failover_entry(self, entry: FailoverEntry) -> None:
        with self._lock:
            existing = self._entries.get(entry.provider)
            stored = deepcopy(entry)
            if existing is not None:
                stored.is_primary = existing.is_primary
            elif entry.is_primary and any(e.is_primary for e in self._entries.values()):
                raise ConcurrencyError("Another entry is already primary")
            self._entries[entry.provider] = stored

    def record_probe(self, entry: FailoverEntry) -> None:
        with self._lock:
            stored = self._entries.get(entry.provider)
            if stored is None:
                raise RecordNotFound(f"Failover entry {entry.provider} not found")
            stored.latency_ms = entry.latency_ms
            stored.consecutive_failures = entry.consecutive_failures
            stored.last_health_check = entry.last_health_check
            stored.last_status = entry.last_status

    def election_epoch(self) -> int:
        return self._epoch

    def flip_primary(
        self,
        incumbent: Optional[str],
        successor: str,
        expected_epoch: int,
    ) -> int:
        with self._election_lock, self._lock:
            if self._epoch != expected_epoch:
                raise ConcurrencyError(
                    f"Election epoch moved ({expected_epoch} -> {self._epoch})"
                )
            if successor not in self._entries:
                raise RecordNotFound(f"Failover entry {successor} not found")

            for entry in self._entries.values():
                entry.is_primary = False
            target = self._entries[successor]
            target.is_primary = True
            target.consecutive_failures = 0

            self._epoch += 1
            return self._epoch

    # -------------------------
    # Bot deployments
    # -------------------------

    def get_bot_deployment(self, host_id: UUID) -> Optional[BotDeployment]:
        deployment = self._deployments.get(host_id)
        return deepcopy(deployment) if deployment else None

    def save_bot_deployment(self, deployment: BotDeployment) -> None:
        with self._lock:
            self._deployments[deployment.host_id] = deepcopy(deployment)

    # -------------------------
    # Append-only logs
    # -------------------------

    def _append(self, table: str, row: Any) -> None:
        with self._lock:
            self.logs[table].append(deepcopy(row))

    def append_health_event(self, event: HealthEvent) -> None:
        self._append("health_check_results", event)

    def append_failover_event(self, event: FailoverEvent) -> None:
        self._append("failover_events", event)

    def append_audit_event(self, event: AuditEvent) -> None:
        self._append("audit_logs", event)

    def append_latency_sample(self, sample: LatencySample) -> None:
        self._append("exchange_latency_history", sample)

    def append_execution_metric(self, metric: Dict[str, Any]) -> None:
        self._append("trade_execution_metrics", metric)

    def append_balance_snapshot(self, total: float, breakdown: List[Dict[str, Any]]) -> None:
        self._append("balance_history", {
            "total_balance": total,
            "exchange_breakdown": breakdown,
            "snapshot_time": datetime.now(timezone.utc),
        })

    def list_health_events(self, provider: Optional[str] = None) -> List[HealthEvent]:
        events = self.logs["health_check_results"]
        if provider:
            events = [e for e in events if e.provider == provider]
        return [deepcopy(e) for e in events]

    def list_failover_events(self) -> List[FailoverEvent]:
        return [deepcopy(e) for e in self.logs["failover_events"]]

    def list_audit_events(self) -> List[AuditEvent]:
        return [deepcopy(e) for e in self.logs["audit_logs"]]

    # -------------------------
    # Exchange connections / signals
    # -------------------------

    def get_exchange_connection(self, exchange_name: str) -> Optional[ExchangeConnection]:
        connection = self._connections.get(exchange_name.lower())
        return deepcopy(connection) if connection else None

    def save_exchange_connection(self, connection: ExchangeConnection) -> None:
        with self._lock:
            self._connections[connection.exchange_name.lower()] = deepcopy(connection)

    def list_exchange_connections(self) -> List[ExchangeConnection]:
        return [deepcopy(c) for c in self._connections.values()]

    def append_signal(self, signal: Signal) -> None:
        with self._lock:
            self._signals[signal.id] = deepcopy(signal)

    def get_signal(self, signal_id: UUID) -> Optional[Signal]:
        signal = self._signals.get(signal_id)
        return deepcopy(signal) if signal else None

    # -------------------------
    # Order ledger
    # -------------------------

    def reserve_order(self, record: OrderRecord) -> Tuple[OrderRecord, bool]:
        key = (record.exchange, record.client_order_id)
        with self._lock:
            existing = self._orders.get(key)
            if existing is not None:
                return deepcopy(existing), False
            self._orders[key] = deepcopy(record)
            return deepcopy(record), True

    def update_order(self, record: OrderRecord) -> None:
        key = (record.exchange, record.client_order_id)
        with self._lock:
            if key not in self._orders:
                raise RecordNotFound(f"Order {key} not found")
            self._orders[key] = deepcopy(record)

    def list_orders(self) -> List[OrderRecord]:
        return [deepcopy(o) for o in self._orders.values()]

    # -------------------------
    # Trading config / secrets
    # -------------------------

    def kill_switch_enabled(self) -> bool:
        return self._kill_switch

    def set_kill_switch(self, enabled: bool) -> None:
        self._kill_switch = enabled

    def get_bot_status(self) -> BotStatus:
        return self._bot_status

    def set_bot_status(self, status: BotStatus) -> None:
        self._bot_status = status

    def get_secret(self, name: str) -> Optional[str]:
        return self._secrets.get(name)

    def set_secret(self, name: str, value: str) -> None:
        self._secrets[name] = value

    def get_cloud_credential(self, provider: str) -> Optional[Dict[str, Any]]:
        row = self._credentials.get(provider)
        return dict(row) if row else None

    def save_cloud_credential(self, provider: str, envelope: str, fingerprint: Optional[str]) -> None:
        with self._lock:
            self._credentials[provider] = {
                "envelope": envelope,
                "fingerprint": fingerprint,
                "last_verified_at": None,
            }

    def mark_credential_verified(self, provider: str) -> None:
        with self._lock:
            if provider in self._credentials:
                self._credentials[provider]["last_verified_at"] = datetime.now(timezone.utc)

    # -------------------------
    # Destructive reset
    # -------------------------

    def reset_trading_data(self, tables: Sequence[str]) -> Dict[str, str]:
        results: Dict[str, str] = {}
        with self._lock:
            for table in tables:
                if table == "orders":
                    self._orders.clear()
                    results[table] = "cleared"
                elif table in self.logs:
                    self.logs[table].clear()
                    results[table] = "cleared"
                else:
                    results[table] = "skipped"

            for counters in self.ai_providers.values():
                for key in ("current_usage", "daily_usage", "error_count", "success_count", "total_latency_ms"):
                    counters[key] = 0
            results["ai_providers"] = "reset"

            self._bot_status = BotStatus.STOPPED
            results["trading_config"] = "reset"
            for deployment in self._deployments.values():
                deployment.bot_status = BotStatus.STOPPED
            results["bot_deployments"] = "bot_status_reset"

            for connection in self._connections.values():
                connection.balance_usdt = None
                connection.balance_updated_at = None
                connection.last_ping_ms = None
            results["exchange_connections"] = "balances_reset"

        return results
