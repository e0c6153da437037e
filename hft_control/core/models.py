"""Core domain models (records shared by every component)."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LifecycleStatus(Enum):
    """Cloud host lifecycle."""
    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPED = "stopped"
    TERMINATED = "terminated"
    ERROR = "error"


class BotStatus(Enum):
    """Trading bot status as reported by the host agent."""
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class HealthStatus(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    DOWN = "down"


class SignalSide(Enum):
    LONG = "long"
    SHORT = "short"


@dataclass
class CloudCredential:
    """Decrypted, request-scoped provider secret bundle."""
    provider: str
    secrets: Dict[str, str] = field(default_factory=dict)
    fingerprint: Optional[str] = None
    last_verified_at: Optional[datetime] = None

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.secrets.get(key, default)

    def require(self, *keys: str) -> List[str]:
        """Return the listed secrets or raise ValueError naming the first missing one."""
        values = []
        for key in keys:
            value = self.secrets.get(key)
            if not value:
                raise ValueError(f"{self.provider} credential missing '{key}'")
            values.append(value)
        return values

    def __repr__(self) -> str:
        return f"CloudCredential(provider={self.provider!r}, keys={sorted(self.secrets)})"


@dataclass
class HostRecord:
    """Cloud instance carrying (or able to carry) the trading bot."""
    provider: str
    region: str
    instance_type: str
    instance_id: str
    id: UUID = field(default_factory=uuid4)
    public_ip: Optional[str] = None
    ssh_key_id: Optional[str] = None
    lifecycle_status: LifecycleStatus = LifecycleStatus.PROVISIONING
    created_at: datetime = field(default_factory=utcnow)

    def mark_running(self, public_ip: Optional[str]) -> None:
        """A host is running only once the provider confirmed it and an IP is assigned."""
        if not public_ip:
            raise ValueError(f"Host {self.instance_id} cannot be running without a public IP")
        self.public_ip = public_ip
        self.lifecycle_status = LifecycleStatus.RUNNING

    def mark_stopped(self) -> None:
        if self.lifecycle_status == LifecycleStatus.TERMINATED:
            raise ValueError(f"Host {self.instance_id} is terminated")
        self.lifecycle_status = LifecycleStatus.STOPPED

    def mark_terminated(self) -> None:
        self.lifecycle_status = LifecycleStatus.TERMINATED


@dataclass
class FailoverEntry:
    """One row per provider in the failover table."""
    provider: str
    priority: int
    is_primary: bool = False
    is_enabled: bool = True
    health_url: Optional[str] = None
    timeout_ms: int = 10000
    region: Optional[str] = None
    host_id: Optional[UUID] = None
    latency_ms: Optional[int] = None
    consecutive_failures: int = 0
    auto_failover_enabled: bool = True
    last_health_check: Optional[datetime] = None
    last_status: Optional[HealthStatus] = None

    def election_key(self):
        return (self.priority, self.provider)


@dataclass
class BotDeployment:
    """Cached projection of the host agent's bot state."""
    host_id: UUID
    ip: str
    id: UUID = field(default_factory=uuid4)
    bot_status: BotStatus = BotStatus.IDLE
    signal_present: bool = False
    docker_up: bool = False
    updated_at: datetime = field(default_factory=utcnow)

    @staticmethod
    def derive_status(signal_present: bool, docker_up: bool) -> BotStatus:
        """The bot runs iff the signal file exists and the container is up."""
        if signal_present and docker_up:
            return BotStatus.RUNNING
        if signal_present:
            return BotStatus.STARTING
        if docker_up:
            return BotStatus.IDLE
        return BotStatus.STOPPED


@dataclass
class ExchangeConnection:
    exchange_name: str
    credentials: Dict[str, str] = field(default_factory=dict, repr=False)
    is_connected: bool = False
    balance_usdt: Optional[float] = None
    balance_updated_at: Optional[datetime] = None
    last_ping_ms: Optional[int] = None


@dataclass
class Signal:
    """Market signal; append-only."""
    symbol: str
    side: SignalSide
    confidence: float
    exchange: str
    id: UUID = field(default_factory=uuid4)
    expected_move_pct: Optional[float] = None
    timeframe_min: Optional[int] = None
    current_price: Optional[float] = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not 0 <= self.confidence <= 100:
            raise ValueError(f"confidence must be within 0-100, got {self.confidence}")


@dataclass
class HealthEvent:
    provider: str
    status: HealthStatus
    latency_ms: Optional[int] = None
    message: Optional[str] = None
    category: str = "probe"
    ts: datetime = field(default_factory=utcnow)


@dataclass
class FailoverEvent:
    from_provider: Optional[str]
    to_provider: str
    reason: str
    automatic: bool
    ts: datetime = field(default_factory=utcnow)


@dataclass
class AuditEvent:
    actor: str
    action: str
    before: Dict[str, Any] = field(default_factory=dict)
    after: Dict[str, Any] = field(default_factory=dict)
    ts: datetime = field(default_factory=utcnow)


@dataclass
class LatencySample:
    source: str
    target: str
    latency_ms: int
    ts: datetime = field(default_factory=utcnow)


@dataclass
class OrderRecord:
    """Idempotency ledger row keyed by (exchange, client_order_id)."""
    exchange: str
    client_order_id: str
    symbol: str
    side: str
    quantity: float
    status: str = "pending"
    order_id: Optional[str] = None
    filled_qty: float = 0.0
    avg_price: Optional[float] = None
    placed_at: Optional[datetime] = None
    filled_at: Optional[datetime] = None
    latency_ms: Optional[int] = None
    error: Optional[str] = None
