#hft_control\infrastructure\postgres\models.py
"""SQLAlchemy ORM models for the control-plane tables."""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    Float,
    Index,
    Integer,
    JSON,
    String,
    Text,
    Uuid,
)

from hft_control.core.models import BotStatus, HealthStatus, LifecycleStatus, SignalSide
from hft_control.infrastructure.postgres.database import Base


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# HOSTS / FAILOVER
# ============================================

class HostRecordORM(Base):
    __tablename__ = "host_records"

    id = Column(Uuid, primary_key=True, default=uuid4)
    provider = Column(String(50), nullable=False, index=True)
    region = Column(String(100), nullable=False)
    instance_type = Column(String(100), nullable=False)
    instance_id = Column(String(255), nullable=False)
    public_ip = Column(String(64), nullable=True, index=True)
    ssh_key_id = Column(String(255), nullable=True)
    lifecycle_status = Column(
        SQLEnum(LifecycleStatus, name="lifecycle_status"),
        nullable=False,
        default=LifecycleStatus.PROVISIONING,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        Index("ix_host_records_provider_instance", "provider", "instance_id"),
    )


class FailoverEntryORM(Base):
    """
    One row per provider.

    The partial unique index keeps at most one primary even if two writers
    bypass the election epoch.
    """

    __tablename__ = "failover_entries"

    provider = Column(String(50), primary_key=True)
    priority = Column(Integer, nullable=False, default=100)
    is_primary = Column(Boolean, nullable=False, default=False)
    is_enabled = Column(Boolean, nullable=False, default=True)
    health_url = Column(String(500), nullable=True)
    timeout_ms = Column(Integer, nullable=False, default=10000)
    region = Column(String(100), nullable=True)
    host_id = Column(Uuid, nullable=True)
    latency_ms = Column(Integer, nullable=True)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    auto_failover_enabled = Column(Boolean, nullable=False, default=True)
    last_health_check = Column(DateTime(timezone=True), nullable=True)
    last_status = Column(SQLEnum(HealthStatus, name="health_status"), nullable=True)

    __table_args__ = (
        Index(
            "uq_failover_entries_single_primary",
            "is_primary",
            unique=True,
            postgresql_where=(is_primary.is_(True)),
            sqlite_where=(is_primary.is_(True)),
        ),
    )


class FailoverElectionORM(Base):
    """Single row carrying the election epoch used for compare-and-swap."""

    __tablename__ = "failover_election"

    id = Column(Integer, primary_key=True, default=1)
    epoch = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class BotDeploymentORM(Base):
    __tablename__ = "bot_deployments"

    id = Column(Uuid, primary_key=True, default=uuid4)
    host_id = Column(Uuid, nullable=False, unique=True)
    ip = Column(String(64), nullable=False)
    bot_status = Column(SQLEnum(BotStatus, name="bot_status"), nullable=False, default=BotStatus.IDLE)
    signal_present = Column(Boolean, nullable=False, default=False)
    docker_up = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)


# ============================================
# APPEND-ONLY LOGS
# ============================================

class HealthEventORM(Base):
    __tablename__ = "health_check_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ts = Column(DateTime(timezone=True), nullable=False, default=_now, index=True)
    provider = Column(String(50), nullable=False, index=True)
    status = Column(SQLEnum(HealthStatus, name="health_status"), nullable=False)
    latency_ms = Column(Integer, nullable=True)
    message = Column(Text, nullable=True)
    category = Column(String(50), nullable=False, default="probe")


class FailoverEventORM(Base):
    __tablename__ = "failover_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ts = Column(DateTime(timezone=True), nullable=False, default=_now, index=True)
    from_provider = Column(String(50), nullable=True)
    to_provider = Column(String(50), nullable=False)
    reason = Column(Text, nullable=False)
    automatic = Column(Boolean, nullable=False, default=True)


class AuditEventORM(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ts = Column(DateTime(timezone=True), nullable=False, default=_now, index=True)
    actor = Column(String(255), nullable=False)
    action = Column(String(255), nullable=False)
    before = Column(JSON, nullable=False, default=dict)
    after = Column(JSON, nullable=False, default=dict)


class LatencySampleORM(Base):
    __tablename__ = "exchange_latency_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ts = Column(DateTime(timezone=True), nullable=False, default=_now, index=True)
    source = Column(String(50), nullable=False)
    target = Column(String(100), nullable=False)
    latency_ms = Column(Integer, nullable=False)


class ExecutionMetricORM(Base):
    __tablename__ = "trade_execution_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    exchange = Column(String(50), nullable=False)
    symbol = Column(String(50), nullable=False)
    order_type = Column(String(20), nullable=False)
    execution_time_ms = Column(Integer, nullable=True)
    api_response_time_ms = Column(Integer, nullable=True)
    order_placed_at = Column(DateTime(timezone=True), nullable=True)
    order_filled_at = Column(DateTime(timezone=True), nullable=True)


class BalanceSnapshotORM(Base):
    __tablename__ = "balance_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    snapshot_time = Column(DateTime(timezone=True), nullable=False, default=_now, index=True)
    total_balance = Column(Float, nullable=False)
    exchange_breakdown = Column(JSON, nullable=False, default=list)


# ============================================
# EXCHANGES / SIGNALS / ORDERS
# ============================================

class ExchangeConnectionORM(Base):
    __tablename__ = "exchange_connections"

    exchange_name = Column(String(50), primary_key=True)
    credentials = Column(JSON, nullable=False, default=dict)
    is_connected = Column(Boolean, nullable=False, default=False)
    balance_usdt = Column(Float, nullable=True)
    balance_updated_at = Column(DateTime(timezone=True), nullable=True)
    last_ping_ms = Column(Integer, nullable=True)


class SignalORM(Base):
    __tablename__ = "signals"

    id = Column(Uuid, primary_key=True, default=uuid4)
    symbol = Column(String(50), nullable=False)
    side = Column(SQLEnum(SignalSide, name="signal_side"), nullable=False)
    confidence = Column(Float, nullable=False)
    exchange = Column(String(50), nullable=False)
    expected_move_pct = Column(Float, nullable=True)
    timeframe_min = Column(Integer, nullable=True)
    current_price = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now, index=True)


class OrderORM(Base):
    """Idempotency ledger; the primary key is (exchange, client_order_id)."""

    __tablename__ = "orders"

    exchange = Column(String(50), primary_key=True)
    client_order_id = Column(String(64), primary_key=True)
    symbol = Column(String(50), nullable=False)
    side = Column(String(10), nullable=False)
    quantity = Column(Float, nullable=False)
    status = Column(String(30), nullable=False, default="pending")
    order_id = Column(String(128), nullable=True)
    filled_qty = Column(Float, nullable=False, default=0.0)
    avg_price = Column(Float, nullable=True)
    placed_at = Column(DateTime(timezone=True), nullable=True)
    filled_at = Column(DateTime(timezone=True), nullable=True)
    latency_ms = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)


# ============================================
# CONFIG / SECRETS
# ============================================

class TradingConfigORM(Base):
    __tablename__ = "trading_config"

    id = Column(Integer, primary_key=True, default=1)
    kill_switch = Column(Boolean, nullable=False, default=False)
    bot_status = Column(SQLEnum(BotStatus, name="bot_status"), nullable=False, default=BotStatus.STOPPED)
    trading_enabled = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class SystemSecretORM(Base):
    __tablename__ = "system_secrets"

    name = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)


class CloudCredentialORM(Base):
    __tablename__ = "cloud_credentials"

    provider = Column(String(50), primary_key=True)
    envelope = Column(Text, nullable=False)
    fingerprint = Column(String(128), nullable=True)
    last_verified_at = Column(DateTime(timezone=True), nullable=True)


class AIProviderORM(Base):
    __tablename__ = "ai_providers"

    name = Column(String(100), primary_key=True)
    current_usage = Column(Integer, nullable=False, default=0)
    daily_usage = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    total_latency_ms = Column(Integer, nullable=False, default=0)
    cooldown_until = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
