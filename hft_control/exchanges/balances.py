# hft_control/exchanges/balances.py
"""
Balance and ping polling over the configured exchange connections.

Exchange keys are IP-whitelisted to the trading host, so when a primary
is configured the calls go through its agent. Direct calls from the
control plane are the fallback when no primary exists.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from hft_control.control.vault import CredentialVault
from hft_control.core.errors import ControlError, ProtocolError
from hft_control.core.events import EventEmitter
from hft_control.core.events_model import ControlEvent
from hft_control.core.models import LatencySample, utcnow
from hft_control.core.repository import ControlStore
from hft_control.exchanges.base import BalanceResult, ExchangeAdapter, WalletBalance
from hft_control.exchanges.registry import get_exchange
from host_agent.client import HostAgentClient, error_from_reply

logger = logging.getLogger(__name__)

AgentLocator = Callable[[], Optional[Tuple[str, HostAgentClient]]]


def balance_from_agent(exchange: str, body: Dict[str, Any]) -> BalanceResult:
    """Turn a /balance reply into a BalanceResult or raise the error it carries."""
    if not body.get("success"):
        raise error_from_reply(body, "host agent balance failed")

    wallets = body.get("wallets")
    if not isinstance(wallets, dict):
        raise ProtocolError("host agent balance reply missing wallets")
    errors = body.get("wallet_errors") or {}
    return BalanceResult(
        exchange=exchange,
        wallets=[
            WalletBalance(wallet=name, usdt=float(usdt or 0.0), error=errors.get(name))
            for name, usdt in wallets.items()
        ],
        per_asset=body.get("per_asset") or [],
    )


class BalanceService:

    def __init__(
        self,
        store: ControlStore,
        vault: CredentialVault,
        emitter: EventEmitter,
        exchange_factory: Callable[[str], ExchangeAdapter] = get_exchange,
        agent_locator: Optional[AgentLocator] = None,
    ):
        self._store = store
        self._vault = vault
        self._emitter = emitter
        self._exchange_factory = exchange_factory
        self._agent_locator = agent_locator

    def _agent(self) -> Optional[Tuple[str, HostAgentClient]]:
        if self._agent_locator is None:
            return None
        return self._agent_locator()

    def fetch(self, exchange: str, creds: Optional[Dict[str, str]] = None) -> BalanceResult:
        """One exchange; partial sub-wallet failures become warning events."""
        return self._fetch(exchange, creds, self._agent())

    def _fetch(
        self,
        exchange: str,
        creds: Optional[Dict[str, str]],
        agent: Optional[Tuple[str, HostAgentClient]],
    ) -> BalanceResult:
        creds = creds if creds is not None else self._vault.exchange_credentials(exchange)
        if agent is not None:
            ip, client = agent
            logger.debug(f"[balances] {exchange} balance via host {ip}")
            result = balance_from_agent(exchange, client.balance(exchange, creds))
        else:
            logger.info(f"[balances] No primary host, calling {exchange} directly")
            result = self._exchange_factory(exchange).balance(creds)

        failed = result.failed_wallets
        if failed:
            self._emitter.emit([
                ControlEvent.balance_partial(exchange, w.wallet, w.error or "") for w in failed
            ])
        return result

    def poll(self) -> Dict[str, Any]:
        """Refresh every connection's cached balance and append one history snapshot."""
        breakdown: List[Dict[str, Any]] = []
        errors: Dict[str, str] = {}
        agent = self._agent()

        for connection in self._store.list_exchange_connections():
            name = connection.exchange_name.lower()
            try:
                result = self._fetch(name, None, agent)
            except ControlError as e:
                logger.warning(f"[balances] {name} balance failed: {e.kind}: {e.message}")
                errors[name] = e.kind
                connection.is_connected = False
                self._store.save_exchange_connection(connection)
                continue

            connection.balance_usdt = result.total_usdt
            connection.balance_updated_at = utcnow()
            connection.is_connected = True
            self._store.save_exchange_connection(connection)
            breakdown.append({"exchange": name, "balance_usdt": result.total_usdt})

        total = round(sum(row["balance_usdt"] for row in breakdown), 8)
        if breakdown:
            self._store.append_balance_snapshot(total, breakdown)
        logger.info(f"[balances] Total {total} USDT across {len(breakdown)} exchange(s)")
        return {"total_usdt": total, "exchanges": breakdown, "errors": errors}

    def ping_all(self) -> List[Dict[str, Any]]:
        """Ping from the primary host when there is one; latency there is what trading sees."""
        agent = self._agent()
        if agent is not None:
            ip, client = agent
            pings = client.ping_exchanges()
            source = f"host:{ip}"
        else:
            logger.info("[balances] No primary host, pinging exchanges directly")
            pings = [
                self._exchange_factory(c.exchange_name.lower()).ping().to_dict()
                for c in self._store.list_exchange_connections()
            ]
            source = "control"

        by_name = {p.get("exchange"): p for p in pings}
        for connection in self._store.list_exchange_connections():
            name = connection.exchange_name.lower()
            ping = by_name.get(name)
            if ping is None or ping.get("status") != "ok" or ping.get("latency_ms") is None:
                continue
            connection.last_ping_ms = ping["latency_ms"]
            self._store.save_exchange_connection(connection)
            self._store.append_latency_sample(LatencySample(
                source=source, target=name, latency_ms=ping["latency_ms"],
            ))
        return pings
