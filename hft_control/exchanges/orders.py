# hft_control/exchanges/orders.py
"""Order path: kill switch, idempotency ledger, execution-latency telemetry."""

import logging
from typing import Any, Callable, Dict, Optional

from hft_control.control.vault import CredentialVault
from hft_control.core.errors import ControlError, StateError
from hft_control.core.events import EventEmitter
from hft_control.core.events_model import ControlEvent
from hft_control.core.models import OrderRecord
from hft_control.core.repository import ControlStore
from hft_control.exchanges.base import ExchangeAdapter, OrderRequest, OrderResult
from hft_control.exchanges.registry import get_exchange

logger = logging.getLogger(__name__)


def order_summary(record: OrderRecord) -> Dict[str, Any]:
    return {
        "exchange": record.exchange,
        "client_order_id": record.client_order_id,
        "order_id": record.order_id,
        "status": record.status,
        "filled_qty": record.filled_qty,
        "avg_price": record.avg_price,
        "latency_ms": record.latency_ms,
    }


def execution_metric(order: OrderRequest, exchange: str, result: OrderResult) -> Dict[str, Any]:
    """Row for trade_execution_metrics."""
    return {
        "exchange": exchange,
        "symbol": order.symbol,
        "order_type": order.order_type,
        "execution_time_ms": result.latency_ms,
        "order_placed_at": result.placed_at,
        "order_filled_at": result.filled_at,
        "api_response_time_ms": result.api_response_ms,
    }


class OrderService:
    """
    Order placement in a fixed order:
    1. Kill switch (nothing is signed or sent when it is on)
    2. Credentials from the vault
    3. Reserve (exchange, client_order_id) in the ledger; a duplicate returns the stored row
    4. Submit once, record placement and fill timestamps
    """

    def __init__(
        self,
        store: ControlStore,
        vault: Optional[CredentialVault],
        emitter: EventEmitter,
        exchange_factory: Callable[[str], ExchangeAdapter] = get_exchange,
    ):
        self._store = store
        self._vault = vault
        self._emitter = emitter
        self._exchange_factory = exchange_factory

    def place(
        self,
        exchange: str,
        order: OrderRequest,
        creds: Optional[Dict[str, str]] = None,
        submit: Optional[Callable[[Dict[str, str], OrderRequest], OrderResult]] = None,
    ) -> Dict[str, Any]:
        """
        ``submit`` replaces the direct adapter call, e.g. to route the order
        through the whitelisted host agent.
        """
        exchange = exchange.lower()

        if self._store.kill_switch_enabled():
            logger.warning(f"[orders] 🛑 Kill switch on, {order.client_order_id} not sent to {exchange}")
            self._emitter.emit([ControlEvent.kill_switch_blocked(exchange, order.client_order_id)])
            body = StateError("kill_switch", "Kill switch is enabled").to_response()
            body["error"] = "kill_switch"
            return body

        if submit is None:
            submit = self._exchange_factory(exchange).place_order
        if creds is None:
            if self._vault is None:
                raise StateError("no_credentials", f"No credentials available for {exchange}")
            creds = self._vault.exchange_credentials(exchange)

        record, created = self._store.reserve_order(OrderRecord(
            exchange=exchange,
            client_order_id=order.client_order_id,
            symbol=order.symbol,
            side=order.side,
            quantity=order.quantity,
        ))
        if not created:
            logger.info(f"[orders] Duplicate {exchange}/{order.client_order_id}, returning stored order")
            return {"success": record.status not in ("failed", "rejected"), "duplicate": True,
                    **order_summary(record)}

        try:
            result = submit(creds, order)
        except ControlError as e:
            record.status = "failed"
            record.error = e.message[:500]
            self._store.update_order(record)
            logger.error(f"[orders] ❌ {exchange}/{order.client_order_id} failed: {e.kind}: {e.message}")
            raise

        record.order_id = result.order_id
        record.status = result.status
        record.filled_qty = result.filled_qty
        record.avg_price = result.avg_price
        record.placed_at = result.placed_at
        record.filled_at = result.filled_at
        record.latency_ms = result.latency_ms
        self._store.update_order(record)
        self._store.append_execution_metric(execution_metric(order, exchange, result))
        self._mark_connected(exchange)
        self._emitter.emit([ControlEvent.order_placed(record)])

        return {"success": True, "duplicate": False, **order_summary(record),
                "api_response_ms": result.api_response_ms}

    def _mark_connected(self, exchange: str) -> None:
        connection = self._store.get_exchange_connection(exchange)
        if connection is not None and not connection.is_connected:
            connection.is_connected = True
            self._store.save_exchange_connection(connection)
