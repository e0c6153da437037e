#hft_control\container.py

"""Dependency injection container - wires all services together."""

from functools import lru_cache

from hft_control.config import settings
from hft_control.control.dispatcher import ControlPlane
from hft_control.control.vault import StoreVault
from hft_control.core.events import LogEventEmitter, LogNotifier, MultiEventEmitter
from hft_control.core.repository import ControlStore
from hft_control.exchanges.balances import BalanceService
from hft_control.exchanges.orders import OrderService
from hft_control.health.checker import HealthChecker
from hft_control.health.classifier import HealthThresholds
from hft_control.health.desync import DesyncDetector
from hft_control.health.failover import FailoverCoordinator
from hft_control.providers.provisioning import ProvisioningService
from hft_control.signing.key_cache import KeyCache


# ============================================
# STORE / SECRETS
# ============================================

@lru_cache(maxsize=None)
def get_store() -> ControlStore:
    from hft_control.infrastructure.postgres.store import SqlControlStore
    return SqlControlStore()


@lru_cache(maxsize=None)
def get_key_cache() -> KeyCache:
    return KeyCache(
        store=get_store(),
        fallback_key=settings.encryption_key,
        ttl_s=settings.key_cache_ttl_s,
    )


@lru_cache(maxsize=None)
def get_vault() -> StoreVault:
    return StoreVault(get_store(), get_key_cache())


# ============================================
# EVENTS
# ============================================

@lru_cache(maxsize=None)
def get_emitter() -> MultiEventEmitter:
    return MultiEventEmitter([
        LogEventEmitter()
    ])


@lru_cache(maxsize=None)
def get_notifier() -> LogNotifier:
    return LogNotifier()


# ============================================
# SERVICES
# ============================================

@lru_cache(maxsize=None)
def get_provisioning() -> ProvisioningService:
    return ProvisioningService(get_store(), get_vault(), get_emitter())


@lru_cache(maxsize=None)
def get_orders() -> OrderService:
    return OrderService(get_store(), get_vault(), get_emitter())


@lru_cache(maxsize=None)
def get_balances() -> BalanceService:
    return BalanceService(
        get_store(),
        get_vault(),
        get_emitter(),
        agent_locator=get_control_plane().primary_agent,
    )


@lru_cache(maxsize=None)
def get_control_plane() -> ControlPlane:
    return ControlPlane(
        store=get_store(),
        vault=get_vault(),
        emitter=get_emitter(),
        orders=get_orders(),
        host_agent_port=settings.host_agent_port,
        host_agent_timeout_s=settings.host_agent_timeout_s,
    )


@lru_cache(maxsize=None)
def get_coordinator() -> FailoverCoordinator:
    return FailoverCoordinator(
        get_store(),
        get_emitter(),
        get_notifier(),
        threshold=settings.failure_threshold,
    )


@lru_cache(maxsize=None)
def get_desync_detector() -> DesyncDetector:
    return DesyncDetector(get_store(), get_emitter())


@lru_cache(maxsize=None)
def get_health_checker() -> HealthChecker:
    return HealthChecker(
        store=get_store(),
        emitter=get_emitter(),
        coordinator=get_coordinator(),
        desync=get_desync_detector(),
        thresholds=HealthThresholds(),
        interval_s=settings.health_interval_s,
        degraded_interval_s=settings.degraded_interval_s,
        default_timeout_ms=settings.probe_timeout_ms,
    )
