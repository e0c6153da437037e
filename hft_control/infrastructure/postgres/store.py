#hft_control\infrastructure\postgres\store.py

"""SQLAlchemy implementation of the control store."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from hft_control.core.errors import ConcurrencyError, RecordNotFound, StoreError
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
from hft_control.infrastructure.postgres.database import Base, SessionLocal
from hft_control.infrastructure.postgres.models import (
    AIProviderORM,
    AuditEventORM,
    BalanceSnapshotORM,
    BotDeploymentORM,
    CloudCredentialORM,
    ExchangeConnectionORM,
    ExecutionMetricORM,
    FailoverElectionORM,
    FailoverEntryORM,
    FailoverEventORM,
    HealthEventORM,
    HostRecordORM,
    LatencySampleORM,
    OrderORM,
    SignalORM,
    SystemSecretORM,
    TradingConfigORM,
)

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """sqlite hands back naive datetimes; everything here is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================
# Mapping Functions
# ============================================

def orm_to_host(orm: HostRecordORM) -> HostRecord:
    return HostRecord(
        id=orm.id,
        provider=orm.provider,
        region=orm.region,
        instance_type=orm.instance_type,
        instance_id=orm.instance_id,
        public_ip=orm.public_ip,
        ssh_key_id=orm.ssh_key_id,
        lifecycle_status=orm.lifecycle_status,
        created_at=_aware(orm.created_at),
    )


def host_to_orm(host: HostRecord, orm: Optional[HostRecordORM] = None) -> HostRecordORM:
    orm = orm or HostRecordORM(id=host.id)
    orm.provider = host.provider
    orm.region = host.region
    orm.instance_type = host.instance_type
    orm.instance_id = host.instance_id
    orm.public_ip = host.public_ip
    orm.ssh_key_id = host.ssh_key_id
    orm.lifecycle_status = host.lifecycle_status
    orm.created_at = host.created_at
    return orm


def orm_to_entry(orm: FailoverEntryORM) -> FailoverEntry:
    return FailoverEntry(
        provider=orm.provider,
        priority=orm.priority,
        is_primary=orm.is_primary,
        is_enabled=orm.is_enabled,
        health_url=orm.health_url,
        timeout_ms=orm.timeout_ms,
        region=orm.region,
        host_id=orm.host_id,
        latency_ms=orm.latency_ms,
        consecutive_failures=orm.consecutive_failures,
        auto_failover_enabled=orm.auto_failover_enabled,
        last_health_check=_aware(orm.last_health_check),
        last_status=orm.last_status,
    )


def orm_to_deployment(orm: BotDeploymentORM) -> BotDeployment:
    return BotDeployment(
        id=orm.id,
        host_id=orm.host_id,
        ip=orm.ip,
        bot_status=orm.bot_status,
        signal_present=orm.signal_present,
        docker_up=orm.docker_up,
        updated_at=_aware(orm.updated_at),
    )


def orm_to_connection(orm: ExchangeConnectionORM) -> ExchangeConnection:
    return ExchangeConnection(
        exchange_name=orm.exchange_name,
        credentials=dict(orm.credentials or {}),
        is_connected=orm.is_connected,
        balance_usdt=orm.balance_usdt,
        balance_updated_at=_aware(orm.balance_updated_at),
        last_ping_ms=orm.last_ping_ms,
    )


def orm_to_signal(orm: SignalORM) -> Signal:
    return Signal(
        id=orm.id,
        symbol=orm.symbol,
        side=orm.side,
        confidence=orm.confidence,
        exchange=orm.exchange,
        expected_move_pct=orm.expected_move_pct,
        timeframe_min=orm.timeframe_min,
        current_price=orm.current_price,
        created_at=_aware(orm.created_at),
    )


def orm_to_order(orm: OrderORM) -> OrderRecord:
    return OrderRecord(
        exchange=orm.exchange,
        client_order_id=orm.client_order_id,
        symbol=orm.symbol,
        side=orm.side,
        quantity=orm.quantity,
        status=orm.status,
        order_id=orm.order_id,
        filled_qty=orm.filled_qty,
        avg_price=orm.avg_price,
        placed_at=_aware(orm.placed_at),
        filled_at=_aware(orm.filled_at),
        latency_ms=orm.latency_ms,
        error=orm.error,
    )


def order_to_orm(record: OrderRecord, orm: Optional[OrderORM] = None) -> OrderORM:
    orm = orm or OrderORM(exchange=record.exchange, client_order_id=record.client_order_id)
    orm.symbol = record.symbol
    orm.side = record.side
    orm.quantity = record.quantity
    orm.status = record.status
    orm.order_id = record.order_id
    orm.filled_qty = record.filled_qty
    orm.avg_price = record.avg_price
    orm.placed_at = record.placed_at
    orm.filled_at = record.filled_at
    orm.latency_ms = record.latency_ms
    orm.error = record.error
    return orm


# ============================================
# Store Implementation
# ============================================

class SqlControlStore(ControlStore):
    """SQLAlchemy store with an injected session factory."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        """
        Args:
            session_factory: SQLAlchemy session factory. If None, uses default production factory.
        """
        self._session_factory = session_factory or SessionLocal

    def _get_session(self) -> Session:
        return self._session_factory()

    def _write(self, label: str, fn) -> Any:
        """Run ``fn(session)`` in its own transaction."""
        session = self._get_session()
        try:
            result = fn(session)
            session.commit()
            return result
        except IntegrityError as e:
            session.rollback()
            raise ConcurrencyError(f"{label}: constraint violated") from e
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"[store] {label} failed: {e}")
            raise StoreError(f"{label} failed") from e
        finally:
            session.close()

    def _read(self, fn) -> Any:
        session = self._get_session()
        try:
            return fn(session)
        finally:
            session.close()

    # -------------------------
    # Host records
    # -------------------------

    def create_host(self, host: HostRecord) -> None:
        self._write(f"create_host {host.id}", lambda s: s.add(host_to_orm(host)))

    def get_host(self, host_id: UUID) -> Optional[HostRecord]:
        def fn(session):
            orm = session.get(HostRecordORM, host_id)
            return orm_to_host(orm) if orm else None
        return self._read(fn)

    def find_host_by_ip(self, ip: str) -> Optional[HostRecord]:
        def fn(session):
            orm = session.query(HostRecordORM).filter(HostRecordORM.public_ip == ip).first()
            return orm_to_host(orm) if orm else None
        return self._read(fn)

    def update_host(self, host: HostRecord) -> None:
        def fn(session):
            orm = session.get(HostRecordORM, host.id)
            if orm is None:
                raise RecordNotFound(f"Host {host.id} not found")
            host_to_orm(host, orm)
        self._write(f"update_host {host.id}", fn)

    def list_hosts(self) -> List[HostRecord]:
        return self._read(lambda s: [
            orm_to_host(o) for o in s.query(HostRecordORM).order_by(HostRecordORM.created_at).all()
        ])

    # -------------------------
    # Failover entries
    # -------------------------

    def list_failover_entries(self) -> List[FailoverEntry]:
        return self._read(lambda s: [
            orm_to_entry(o) for o in s.query(FailoverEntryORM)
            .order_by(FailoverEntryORM.priority, FailoverEntryORM.provider).all()
        ])

    def get_failover_entry(self, provider: str) -> Optional[FailoverEntry]:
        def fn(session):
            orm = session.get(FailoverEntryORM, provider)
            return orm_to_entry(orm) if orm else None
        return self._read(fn)

    def save_failover_entry(self, entry: FailoverEntry) -> None:
        def fn(session):
            orm = session.get(FailoverEntryORM, entry.provider)
            if orm is None:
                orm = FailoverEntryORM(provider=entry.provider, is_primary=entry.is_primary,
                                       consecutive_failures=entry.consecutive_failures)
                session.add(orm)
            orm.priority = entry.priority
            orm.is_enabled = entry.is_enabled
            orm.health_url = entry.health_url
            orm.timeout_ms = entry.timeout_ms
            orm.region = entry.region
            orm.host_id = entry.host_id
            orm.auto_failover_enabled = entry.auto_failover_enabled
        self._write(f"save_failover_entry {entry.provider}", fn)

    def record_probe(self, entry: FailoverEntry) -> None:
        def fn(session):
            result = session.execute(
                update(FailoverEntryORM)
                .where(FailoverEntryORM.provider == entry.provider)
                .values(
                    latency_ms=entry.latency_ms,
                    consecutive_failures=entry.consecutive_failures,
                    last_health_check=entry.last_health_check,
                    last_status=entry.last_status,
                )
            )
            if result.rowcount == 0:
                raise RecordNotFound(f"Failover entry {entry.provider} not found")
        self._write(f"record_probe {entry.provider}", fn)

    def election_epoch(self) -> int:
        def fn(session):
            row = session.get(FailoverElectionORM, 1)
            return row.epoch if row else 0
        return self._read(fn)

    def flip_primary(
        self,
        incumbent: Optional[str],
        successor: str,
        expected_epoch: int,
    ) -> int:
        def fn(session):
            row = session.query(FailoverElectionORM).filter(
                FailoverElectionORM.id == 1
            ).with_for_update().first()
            if row is None:
                row = FailoverElectionORM(id=1, epoch=0)
                session.add(row)
                session.flush()
            if row.epoch != expected_epoch:
                raise ConcurrencyError(f"Election epoch moved ({expected_epoch} -> {row.epoch})")

            target = session.get(FailoverEntryORM, successor)
            if target is None:
                raise RecordNotFound(f"Failover entry {successor} not found")

            # clear first so the single-primary index never sees two rows
            session.execute(update(FailoverEntryORM).values(is_primary=False))
            session.flush()
            target.is_primary = True
            target.consecutive_failures = 0
            row.epoch += 1
            row.updated_at = datetime.now(timezone.utc)
            return row.epoch

        new_epoch = self._write(f"flip_primary {incumbent} -> {successor}", fn)
        logger.info(f"[store] Primary flipped {incumbent} -> {successor} (epoch {new_epoch})")
        return new_epoch

    # -------------------------
    # Bot deployments
    # -------------------------

    def get_bot_deployment(self, host_id: UUID) -> Optional[BotDeployment]:
        def fn(session):
            orm = session.query(BotDeploymentORM).filter(BotDeploymentORM.host_id == host_id).first()
            return orm_to_deployment(orm) if orm else None
        return self._read(fn)

    def save_bot_deployment(self, deployment: BotDeployment) -> None:
        def fn(session):
            orm = session.query(BotDeploymentORM).filter(
                BotDeploymentORM.host_id == deployment.host_id
            ).first()
            if orm is None:
                orm = BotDeploymentORM(id=deployment.id, host_id=deployment.host_id)
                session.add(orm)
            orm.ip = deployment.ip
            orm.bot_status = deployment.bot_status
            orm.signal_present = deployment.signal_present
            orm.docker_up = deployment.docker_up
            orm.updated_at = deployment.updated_at
        self._write(f"save_bot_deployment {deployment.host_id}", fn)

    # -------------------------
    # Append-only logs
    # -------------------------

    def append_health_event(self, event: HealthEvent) -> None:
        self._write("append_health_event", lambda s: s.add(HealthEventORM(
            ts=event.ts,
            provider=event.provider,
            status=event.status,
            latency_ms=event.latency_ms,
            message=event.message,
            category=event.category,
        )))

    def append_failover_event(self, event: FailoverEvent) -> None:
        self._write("append_failover_event", lambda s: s.add(FailoverEventORM(
            ts=event.ts,
            from_provider=event.from_provider,
            to_provider=event.to_provider,
            reason=event.reason,
            automatic=event.automatic,
        )))

    def append_audit_event(self, event: AuditEvent) -> None:
        self._write("append_audit_event", lambda s: s.add(AuditEventORM(
            ts=event.ts,
            actor=event.actor,
            action=event.action,
            before=event.before,
            after=event.after,
        )))

    def append_latency_sample(self, sample: LatencySample) -> None:
        self._write("append_latency_sample", lambda s: s.add(LatencySampleORM(
            ts=sample.ts,
            source=sample.source,
            target=sample.target,
            latency_ms=sample.latency_ms,
        )))

    def append_execution_metric(self, metric: Dict[str, Any]) -> None:
        self._write("append_execution_metric", lambda s: s.add(ExecutionMetricORM(**metric)))

    def append_balance_snapshot(self, total: float, breakdown: List[Dict[str, Any]]) -> None:
        self._write("append_balance_snapshot", lambda s: s.add(BalanceSnapshotORM(
            total_balance=total,
            exchange_breakdown=breakdown,
        )))

    def list_health_events(self, provider: Optional[str] = None) -> List[HealthEvent]:
        def fn(session):
            query = session.query(HealthEventORM)
            if provider:
                query = query.filter(HealthEventORM.provider == provider)
            return [
                HealthEvent(provider=o.provider, status=o.status, latency_ms=o.latency_ms,
                            message=o.message, category=o.category, ts=_aware(o.ts))
                for o in query.order_by(HealthEventORM.id).all()
            ]
        return self._read(fn)

    def list_failover_events(self) -> List[FailoverEvent]:
        return self._read(lambda s: [
            FailoverEvent(from_provider=o.from_provider, to_provider=o.to_provider,
                          reason=o.reason, automatic=o.automatic, ts=_aware(o.ts))
            for o in s.query(FailoverEventORM).order_by(FailoverEventORM.id).all()
        ])

    def list_audit_events(self) -> List[AuditEvent]:
        return self._read(lambda s: [
            AuditEvent(actor=o.actor, action=o.action, before=o.before or {},
                       after=o.after or {}, ts=_aware(o.ts))
            for o in s.query(AuditEventORM).order_by(AuditEventORM.id).all()
        ])

    # -------------------------
    # Exchange connections / signals
    # -------------------------

    def get_exchange_connection(self, exchange_name: str) -> Optional[ExchangeConnection]:
        def fn(session):
            orm = session.get(ExchangeConnectionORM, exchange_name.lower())
            return orm_to_connection(orm) if orm else None
        return self._read(fn)

    def save_exchange_connection(self, connection: ExchangeConnection) -> None:
        def fn(session):
            name = connection.exchange_name.lower()
            orm = session.get(ExchangeConnectionORM, name)
            if orm is None:
                orm = ExchangeConnectionORM(exchange_name=name)
                session.add(orm)
            orm.credentials = dict(connection.credentials)
            orm.is_connected = connection.is_connected
            orm.balance_usdt = connection.balance_usdt
            orm.balance_updated_at = connection.balance_updated_at
            orm.last_ping_ms = connection.last_ping_ms
        self._write(f"save_exchange_connection {connection.exchange_name}", fn)

    def list_exchange_connections(self) -> List[ExchangeConnection]:
        return self._read(lambda s: [
            orm_to_connection(o) for o in s.query(ExchangeConnectionORM)
            .order_by(ExchangeConnectionORM.exchange_name).all()
        ])

    def append_signal(self, signal: Signal) -> None:
        self._write("append_signal", lambda s: s.add(SignalORM(
            id=signal.id,
            symbol=signal.symbol,
            side=signal.side,
            confidence=signal.confidence,
            exchange=signal.exchange,
            expected_move_pct=signal.expected_move_pct,
            timeframe_min=signal.timeframe_min,
            current_price=signal.current_price,
            created_at=signal.created_at,
        )))

    def get_signal(self, signal_id: UUID) -> Optional[Signal]:
        def fn(session):
            orm = session.get(SignalORM, signal_id)
            return orm_to_signal(orm) if orm else None
        return self._read(fn)

    # -------------------------
    # Order ledger
    # -------------------------

    def reserve_order(self, record: OrderRecord) -> Tuple[OrderRecord, bool]:
        session = self._get_session()
        try:
            session.add(order_to_orm(record))
            session.commit()
            return record, True
        except IntegrityError:
            session.rollback()
            existing = session.get(OrderORM, (record.exchange, record.client_order_id))
            if existing is None:
                raise
            return orm_to_order(existing), False
        finally:
            session.close()

    def update_order(self, record: OrderRecord) -> None:
        def fn(session):
            orm = session.get(OrderORM, (record.exchange, record.client_order_id))
            if orm is None:
                raise RecordNotFound(f"Order {record.exchange}/{record.client_order_id} not found")
            order_to_orm(record, orm)
        self._write(f"update_order {record.client_order_id}", fn)

    def list_orders(self) -> List[OrderRecord]:
        return self._read(lambda s: [orm_to_order(o) for o in s.query(OrderORM).all()])

    # -------------------------
    # Trading config / secrets
    # -------------------------

    def _config(self, session: Session) -> TradingConfigORM:
        row = session.get(TradingConfigORM, 1)
        if row is None:
            row = TradingConfigORM(id=1, kill_switch=False, bot_status=BotStatus.STOPPED)
            session.add(row)
            session.flush()
        return row

    def kill_switch_enabled(self) -> bool:
        def fn(session):
            row = session.get(TradingConfigORM, 1)
            return bool(row and row.kill_switch)
        return self._read(fn)

    def set_kill_switch(self, enabled: bool) -> None:
        def fn(session):
            row = self._config(session)
            row.kill_switch = enabled
            row.updated_at = datetime.now(timezone.utc)
        self._write("set_kill_switch", fn)

    def get_bot_status(self) -> BotStatus:
        def fn(session):
            row = session.get(TradingConfigORM, 1)
            return row.bot_status if row else BotStatus.STOPPED
        return self._read(fn)

    def set_bot_status(self, status: BotStatus) -> None:
        def fn(session):
            row = self._config(session)
            row.bot_status = status
            row.trading_enabled = status == BotStatus.RUNNING
            row.updated_at = datetime.now(timezone.utc)
        self._write("set_bot_status", fn)

    def get_secret(self, name: str) -> Optional[str]:
        def fn(session):
            row = session.get(SystemSecretORM, name)
            return row.value if row else None
        return self._read(fn)

    def set_secret(self, name: str, value: str) -> None:
        def fn(session):
            row = session.get(SystemSecretORM, name)
            if row is None:
                session.add(SystemSecretORM(name=name, value=value))
            else:
                row.value = value
        self._write(f"set_secret {name}", fn)

    def get_cloud_credential(self, provider: str) -> Optional[Dict[str, Any]]:
        def fn(session):
            row = session.get(CloudCredentialORM, provider)
            if row is None:
                return None
            return {
                "envelope": row.envelope,
                "fingerprint": row.fingerprint,
                "last_verified_at": _aware(row.last_verified_at),
            }
        return self._read(fn)

    def save_cloud_credential(self, provider: str, envelope: str, fingerprint: Optional[str]) -> None:
        def fn(session):
            row = session.get(CloudCredentialORM, provider)
            if row is None:
                row = CloudCredentialORM(provider=provider)
                session.add(row)
            row.envelope = envelope
            row.fingerprint = fingerprint
            row.last_verified_at = None
        self._write(f"save_cloud_credential {provider}", fn)

    def mark_credential_verified(self, provider: str) -> None:
        self._write(f"mark_credential_verified {provider}", lambda s: s.execute(
            update(CloudCredentialORM)
            .where(CloudCredentialORM.provider == provider)
            .values(last_verified_at=datetime.now(timezone.utc))
        ))

    # -------------------------
    # Destructive reset
    # -------------------------

    def reset_trading_data(self, tables: Sequence[str]) -> Dict[str, str]:
        results: Dict[str, str] = {}
        session = self._get_session()
        try:
            for name in tables:
                table = Base.metadata.tables.get(name)
                if table is None:
                    results[name] = "skipped"
                    continue
                session.execute(delete(table))
                results[name] = "cleared"

            session.execute(update(AIProviderORM).values(
                current_usage=0, daily_usage=0, error_count=0, success_count=0,
                total_latency_ms=0, cooldown_until=None, last_error=None,
            ))
            results["ai_providers"] = "reset"

            config = self._config(session)
            config.bot_status = BotStatus.STOPPED
            config.trading_enabled = False
            config.updated_at = datetime.now(timezone.utc)
            results["trading_config"] = "reset"

            session.execute(update(BotDeploymentORM).values(bot_status=BotStatus.STOPPED))
            results["bot_deployments"] = "bot_status_reset"

            session.execute(update(ExchangeConnectionORM).values(
                balance_usdt=None, balance_updated_at=None, last_ping_ms=None,
            ))
            results["exchange_connections"] = "balances_reset"

            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"[store] reset_trading_data failed: {e}")
            raise StoreError("reset_trading_data failed") from e
        finally:
            session.close()
        return results
