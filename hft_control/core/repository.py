# hft_control/core/repository.py

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

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


class ControlStore(ABC):
    """
    Persistence contract for the control plane.

    The managed database is a collaborator; the core only relies on the
    operations below.
    """

    # -------------------------
    # Host records
    # -------------------------

    @abstractmethod
    def create_host(self, host: HostRecord) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_host(self, host_id: UUID) -> Optional[HostRecord]:
        raise NotImplementedError

    @abstractmethod
    def find_host_by_ip(self, ip: str) -> Optional[HostRecord]:
        raise NotImplementedError

    @abstractmethod
    def update_host(self, host: HostRecord) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_hosts(self) -> List[HostRecord]:
        raise NotImplementedError

    # -------------------------
    # Failover entries
    # -------------------------

    @abstractmethod
    def list_failover_entries(self) -> List[FailoverEntry]:
        """All entries ordered by (priority, provider)."""
        raise NotImplementedError

    @abstractmethod
    def get_failover_entry(self, provider: str) -> Optional[FailoverEntry]:
        raise NotImplementedError

    @abstractmethod
    def save_failover_entry(self, entry: FailoverEntry) -> None:
        """Insert or replace configuration of an entry (never touches is_primary of others)."""
        raise NotImplementedError

    @abstractmethod
    def record_probe(self, entry: FailoverEntry) -> None:
        """
        Persist probe outcome fields only:
        latency_ms, consecutive_failures, last_health_check, last_status.
        """
        raise NotImplementedError

    @abstractmethod
    def election_epoch(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def flip_primary(
        self,
        incumbent: Optional[str],
        successor: str,
        expected_epoch: int,
    ) -> int:
        """
        Atomically move is_primary from incumbent to successor and reset the
        successor's failure counter.

        Must raise ConcurrencyError if the epoch moved since it was read.
        Returns the new epoch.
        """
        raise NotImplementedError

    # -------------------------
    # Bot deployments
    # -------------------------

    @abstractmethod
    def get_bot_deployment(self, host_id: UUID) -> Optional[BotDeployment]:
        raise NotImplementedError

    @abstractmethod
    def save_bot_deployment(self, deployment: BotDeployment) -> None:
        raise NotImplementedError

    # -------------------------
    # Append-only logs
    # -------------------------

    @abstractmethod
    def append_health_event(self, event: HealthEvent) -> None:
        raise NotImplementedError

    @abstractmethod
    def append_failover_event(self, event: FailoverEvent) -> None:
        raise NotImplementedError

    @abstractmethod
    def append_audit_event(self, event: AuditEvent) -> None:
        raise NotImplementedError

    @abstractmethod
    def append_latency_sample(self, sample: LatencySample) -> None:
        raise NotImplementedError

    @abstractmethod
    def append_execution_metric(self, metric: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def append_balance_snapshot(self, total: float, breakdown: List[Dict[str, Any]]) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_health_events(self, provider: Optional[str] = None) -> List[HealthEvent]:
        raise NotImplementedError

    @abstractmethod
    def list_failover_events(self) -> List[FailoverEvent]:
        raise NotImplementedError

    @abstractmethod
    def list_audit_events(self) -> List[AuditEvent]:
        raise NotImplementedError

    # -------------------------
    # Exchange connections / signals
    # -------------------------

    @abstractmethod
    def get_exchange_connection(self, exchange_name: str) -> Optional[ExchangeConnection]:
        raise NotImplementedError

    @abstractmethod
    def save_exchange_connection(self, connection: ExchangeConnection) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_exchange_connections(self) -> List[ExchangeConnection]:
        raise NotImplementedError

    @abstractmethod
    def append_signal(self, signal: Signal) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_signal(self, signal_id: UUID) -> Optional[Signal]:
        raise NotImplementedError

    # -------------------------
    # Order ledger
    # -------------------------

    @abstractmethod
    def reserve_order(self, record: OrderRecord) -> Tuple[OrderRecord, bool]:
        """
        Insert the ledger row unless (exchange, client_order_id) exists.
        Returns (stored_record, created).
        """
        raise NotImplementedError

    @abstractmethod
    def update_order(self, record: OrderRecord) -> None:
        raise NotImplementedError

    # -------------------------
    # Trading config / secrets
    # -------------------------

    @abstractmethod
    def kill_switch_enabled(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def set_kill_switch(self, enabled: bool) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_bot_status(self) -> BotStatus:
        raise NotImplementedError

    @abstractmethod
    def set_bot_status(self, status: BotStatus) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_secret(self, name: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    def get_cloud_credential(self, provider: str) -> Optional[Dict[str, Any]]:
        """Return the stored (encrypted) bundle row: {'envelope': str, 'fingerprint': str|None}."""
        raise NotImplementedError

    @abstractmethod
    def save_cloud_credential(self, provider: str, envelope: str, fingerprint: Optional[str]) -> None:
        raise NotImplementedError

    @abstractmethod
    def mark_credential_verified(self, provider: str) -> None:
        raise NotImplementedError

    # -------------------------
    # Destructive reset
    # -------------------------

    @abstractmethod
    def reset_trading_data(self, tables: Sequence[str]) -> Dict[str, str]:
        """
        Clear the given historical tables, zero AI counters, mark the bot
        stopped everywhere and drop cached exchange balances and pings.

        Returns a per-table outcome map ('cleared', 'skipped', 'reset').
        """
        raise NotImplementedError
