# hft_control/control/dispatcher.py
"""
Control plane dispatcher.

Routes dashboard intents to the primary host's agent and to the
exchange order path. The host agent is the source of truth for bot state;
the store's bot_status is a cached projection written only by explicit
operator intents.
"""

import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlparse
from uuid import UUID

from hft_control.control.intents import BotIntent, parse_command
from hft_control.control.vault import CredentialVault
from hft_control.core.errors import ControlError, IntegrityError, ProtocolError, StateError
from hft_control.core.events import EventEmitter
from hft_control.core.events_model import ControlEvent
from hft_control.core.models import (
    AuditEvent,
    BotDeployment,
    FailoverEntry,
    HostRecord,
    SignalSide,
    utcnow,
)
from hft_control.core.repository import ControlStore
from hft_control.exchanges.base import OrderRequest, OrderResult
from hft_control.exchanges.orders import OrderService
from hft_control.exchanges.registry import exchange_names
from host_agent.client import HostAgentClient, error_from_reply

logger = logging.getLogger(__name__)

BASE_ENV = {"STRATEGY_ENABLED": "true", "TRADE_MODE": "SPOT"}


def env_name(exchange: str) -> str:
    return re.sub(r"[^A-Z0-9]", "_", exchange.upper())


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def order_result_from_agent(body: Dict[str, Any]) -> OrderResult:
    """Turn a /place-order reply into an OrderResult or raise the error it carries."""
    if not body.get("success"):
        raise error_from_reply(body, "host agent refused order")

    placed_at = _parse_ts(body.get("placed_at"))
    if not body.get("order_id") or placed_at is None:
        raise ProtocolError("host agent order reply missing order_id or placed_at")
    return OrderResult(
        order_id=str(body["order_id"]),
        filled_qty=float(body.get("filled_qty") or 0.0),
        avg_price=body.get("avg_price"),
        placed_at=placed_at,
        filled_at=_parse_ts(body.get("filled_at")),
        api_response_ms=int(body.get("api_response_ms") or 0),
        status=body.get("status") or "submitted",
    )


class ControlPlane:
    """
    Intent dispatcher.

    Every state-changing intent writes exactly one audit event. Credentials
    are fetched from the vault per call and never included in a response.
    """

    def __init__(
        self,
        store: ControlStore,
        vault: CredentialVault,
        emitter: EventEmitter,
        orders: OrderService,
        client_factory: Callable[..., HostAgentClient] = HostAgentClient.for_ip,
        host_agent_port: int = 80,
        host_agent_timeout_s: float = 10,
    ):
        self._store = store
        self._vault = vault
        self._emitter = emitter
        self._orders = orders
        self._client_factory = client_factory
        self._port = host_agent_port
        self._timeout = host_agent_timeout_s

    def _audit(self, actor: str, action: str, before: Dict[str, Any], after: Dict[str, Any]) -> None:
        self._store.append_audit_event(AuditEvent(actor=actor, action=action, before=before, after=after))

    # -------------------------
    # Primary resolution
    # -------------------------

    def resolve_primary(self) -> Tuple[FailoverEntry, Optional[HostRecord], str]:
        """
        Return (entry, host, ip) of the current primary.

        Raises:
            StateError("no_primary"): no enabled entry is marked primary
            StateError("no_primary_ip"): the primary has no reachable address
        """
        primary = next(
            (e for e in self._store.list_failover_entries() if e.is_primary and e.is_enabled),
            None,
        )
        if primary is None:
            raise StateError("no_primary", "No primary host is configured")

        host = self._store.get_host(primary.host_id) if primary.host_id else None
        ip = host.public_ip if host else None
        if not ip and primary.health_url:
            ip = urlparse(primary.health_url).hostname
        if not ip:
            raise StateError("no_primary_ip", f"Primary {primary.provider} has no IP address")
        return primary, host, ip

    def _client(self, ip: str) -> HostAgentClient:
        return self._client_factory(ip, port=self._port, timeout=self._timeout)

    def primary_agent(self) -> Optional[Tuple[str, HostAgentClient]]:
        """(ip, client) of the primary's agent, or None when no primary is reachable."""
        try:
            _, _, ip = self.resolve_primary()
        except StateError as e:
            logger.debug(f"[control] No primary agent: {e.reason}")
            return None
        return ip, self._client(ip)

    def primary_status(self) -> Dict[str, Any]:
        """Read-only /status of the primary host."""
        entry, _, ip = self.resolve_primary()
        body = self._client(ip).status()
        return {"provider": entry.provider, "ip": ip, **body}

    # -------------------------
    # Bot control
    # -------------------------

    def build_bot_env(self) -> Dict[str, str]:
        """Environment for the trading container from every connected exchange."""
        env = dict(BASE_ENV)
        for connection in self._store.list_exchange_connections():
            if not connection.is_connected:
                continue
            try:
                creds = self._vault.exchange_credentials(connection.exchange_name)
            except StateError:
                logger.warning(f"[control] {connection.exchange_name} has no credentials, not passed to bot")
                continue
            prefix = env_name(connection.exchange_name)
            if creds.get("api_key"):
                env[f"{prefix}_API_KEY"] = creds["api_key"]
            if creds.get("api_secret"):
                env[f"{prefix}_API_SECRET"] = creds["api_secret"]
            if creds.get("passphrase"):
                env[f"{prefix}_PASSPHRASE"] = creds["passphrase"]
        return env

    def bot_control(
        self,
        action: str,
        mode: str = "live",
        actor: str = "operator",
        env: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Forward start/stop/restart to the primary host and verify the signal file.

        Raises:
            StateError: no primary, or unsupported action
            IntegrityError: the agent reported success but the signal file disagrees
        """
        intent = BotIntent(action)
        if not intent.changes_state:
            raise StateError("unsupported_action", f"{action} does not change bot state")

        entry, host, ip = self.resolve_primary()
        client = self._client(ip)
        before = {"bot_status": self._store.get_bot_status().value, "ip": ip}

        if intent != BotIntent.STOP and env is None:
            env = self.build_bot_env()

        logger.info(f"[control] {intent.value} -> {entry.provider} ({ip})")
        reply = client.control(intent.value, env=env if intent != BotIntent.STOP else None, mode=mode)
        state = client.signal_check()

        expected = intent != BotIntent.STOP
        self._emitter.emit([ControlEvent.bot_control(ip, intent.value, state.signal_exists)])

        if not reply.get("success") or state.signal_exists != expected:
            status = BotDeployment.derive_status(state.signal_exists, state.docker_running)
            self._audit(actor, f"bot.{intent.value}", before, {
                "success": False,
                "signal_exists": state.signal_exists,
                "bot_status": status.value,
            })
            logger.error(
                f"[control] ❌ {intent.value} on {ip} failed: agent success={reply.get('success')}, "
                f"signal_exists={state.signal_exists}"
            )
            if expected and not state.signal_exists:
                raise IntegrityError("Signal file not present after start")
            if not expected and state.signal_exists:
                raise IntegrityError("Signal file still present after stop")
            raise IntegrityError(reply.get("error") or f"host agent {intent.value} failed")

        status = BotDeployment.derive_status(state.signal_exists, state.docker_running)
        self._store.set_bot_status(status)
        if host is not None:
            deployment = self._store.get_bot_deployment(host.id) or BotDeployment(host_id=host.id, ip=ip)
            deployment.ip = ip
            deployment.bot_status = status
            deployment.signal_present = state.signal_exists
            deployment.docker_up = state.docker_running
            deployment.updated_at = utcnow()
            self._store.save_bot_deployment(deployment)

        self._audit(actor, f"bot.{intent.value}", before, {"bot_status": status.value, "ip": ip})
        logger.info(f"[control] ✅ {intent.value} on {ip}: bot_status={status.value}")
        return {
            "success": True,
            "action": intent.value,
            "ip": ip,
            "provider": entry.provider,
            "signal_created": state.signal_exists,
            "docker_running": state.docker_running,
            "bot_status": status.value,
        }

    def command(self, text: str, actor: str = "operator") -> Dict[str, Any]:
        """Typed dispatch of a free-text operator command."""
        intent = parse_command(text)
        if intent.changes_state:
            return self.bot_control(intent.value, actor=actor)

        _, _, ip = self.resolve_primary()
        client = self._client(ip)
        if intent == BotIntent.LOGS:
            return {"success": True, "action": "logs", "ip": ip, "logs": client.logs()}
        body = client.status()
        return {"success": True, "action": "status", "ip": ip, "bot": body.get("bot"), "docker": body.get("docker")}

    # -------------------------
    # Trade now
    # -------------------------

    def trade_now(
        self,
        signal_id: UUID,
        quantity: float,
        exchange: Optional[str] = None,
        actor: str = "operator",
        via_host: bool = True,
    ) -> Dict[str, Any]:
        """
        Place a market order for a stored signal.

        The client order id is derived from the signal id, so repeating the
        intent for one signal never places a second order.
        """
        signal = self._store.get_signal(signal_id)
        if signal is None:
            raise StateError("no_signal", f"Signal {signal_id} not found")

        exchange = (exchange or signal.exchange).lower()
        if exchange not in exchange_names():
            raise StateError("unknown_exchange", f"Unsupported exchange: {exchange}")

        order = OrderRequest(
            symbol=signal.symbol,
            side="buy" if signal.side == SignalSide.LONG else "sell",
            quantity=quantity,
            client_order_id=f"sig{signal.id.hex[:28]}",
        )

        submit = None
        if via_host and not self._store.kill_switch_enabled():
            _, _, ip = self.resolve_primary()
            client = self._client(ip)

            def submit(creds: Dict[str, str], request: OrderRequest) -> OrderResult:
                return order_result_from_agent(client.place_order(exchange, creds, {
                    "symbol": request.symbol,
                    "side": request.side,
                    "quantity": request.quantity,
                    "order_type": request.order_type,
                    "price": request.price,
                    "client_order_id": request.client_order_id,
                }))

        try:
            result = self._orders.place(exchange, order, submit=submit)
        except ControlError as e:
            self._audit(actor, "trade_now", {"signal_id": str(signal.id)}, {
                "success": False,
                "reason": e.kind,
                "client_order_id": order.client_order_id,
            })
            raise

        self._audit(actor, "trade_now", {"signal_id": str(signal.id)}, {
            "success": result.get("success", False),
            "client_order_id": order.client_order_id,
            "order_id": result.get("order_id"),
        })
        return {"signal_id": str(signal.id), **result}
