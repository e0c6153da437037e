# hft_control/exchanges/bybit.py
"""Bybit v5: timestamp + apiKey + recvWindow + (query|body), HMAC-SHA256 hex."""

import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from hft_control.core.errors import AuthError, ControlError, ProtocolError
from hft_control.core.http import classify_status
from hft_control.exchanges.base import (
    BalanceResult,
    ExchangeAdapter,
    OrderRequest,
    OrderResult,
    WalletBalance,
    ms_to_datetime,
    to_float,
)
from hft_control.signing.hmac_signers import hmac_hex

logger = logging.getLogger(__name__)

API_URL = "https://api.bybit.com"
RECV_WINDOW = "5000"
AUTH_CODES = {"10003", "10004", "10005", "10010", "33004"}


class BybitAdapter(ExchangeAdapter):
    name = "bybit"
    ping_url = f"{API_URL}/v5/market/time"

    def sign(self, secret: str, timestamp: str, api_key: str, payload: str) -> str:
        return hmac_hex(secret, f"{timestamp}{api_key}{RECV_WINDOW}{payload}")

    def _signed(self, creds: Dict[str, str], method: str, path: str,
                params: Optional[Dict[str, Any]] = None, payload: Optional[Dict[str, Any]] = None) -> Any:
        api_key, secret = creds.get("api_key"), creds.get("api_secret")
        if not api_key or not secret:
            raise AuthError("bybit credentials need api_key and api_secret")

        query = urlencode(params or {})
        body = json.dumps(payload, separators=(",", ":")) if payload is not None else ""
        timestamp = str(self.now_ms())
        headers = {
            "X-BAPI-API-KEY": api_key,
            "X-BAPI-SIGN": self.sign(secret, timestamp, api_key, body if method == "POST" else query),
            "X-BAPI-TIMESTAMP": timestamp,
            "X-BAPI-RECV-WINDOW": RECV_WINDOW,
            "Content-Type": "application/json",
        }
        url = f"{API_URL}{path}" + (f"?{query}" if query else "")
        data = self.http.json(method, url, headers=headers, data=body or None, code_field="retCode")

        code = str(data.get("retCode", ""))
        if code == "0":
            return data.get("result") or {}
        message = data.get("retMsg") or "bybit error"
        if code in AUTH_CODES:
            raise AuthError(f"bybit: {message}", provider_code=code)
        raise classify_status(400, message, provider_code=code, label="bybit")

    def balance(self, creds: Dict[str, str]) -> BalanceResult:
        try:
            result = self.read(
                lambda: self._signed(creds, "GET", "/v5/account/wallet-balance", {"accountType": "UNIFIED"}),
                "wallet",
            )
        except ControlError as e:
            logger.warning(f"[bybit] ⚠️ unified wallet unavailable, counting 0: {e.message}")
            return BalanceResult(self.name, wallets=[WalletBalance("unified", 0.0, error=e.message)])

        accounts = result.get("list") or []
        total = sum(to_float(a.get("totalEquity")) for a in accounts)
        per_asset = [
            {"asset": coin.get("coin"), "wallet": "unified", "amount": to_float(coin.get("usdValue"))}
            for account in accounts
            for coin in account.get("coin", [])
            if to_float(coin.get("usdValue"))
        ]
        return BalanceResult(self.name, wallets=[WalletBalance("unified", total)], per_asset=per_asset)

    def _submit(self, creds, order: OrderRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "category": "spot",
            "symbol": order.symbol.replace("/", "").replace("-", "").upper(),
            "side": order.side.capitalize(),
            "orderType": order.order_type.capitalize(),
            "qty": str(order.quantity),
            "orderLinkId": order.client_order_id,
        }
        if order.order_type == "market" and order.side == "buy":
            payload["marketUnit"] = "baseCoin"
        if order.price is not None:
            payload["price"] = str(order.price)
        return self._signed(creds, "POST", "/v5/order/create", payload=payload)

    def _fill(self, creds, order: OrderRequest, ack: Dict[str, Any]) -> OrderResult:
        order_id = ack.get("orderId")
        if not order_id:
            raise ProtocolError("bybit order ack has no orderId")

        detail: Dict[str, Any] = {}
        try:
            result = self.read(lambda: self._signed(creds, "GET", "/v5/order/realtime", {
                "category": "spot", "orderId": order_id,
            }), "order_detail")
            rows = result.get("list") or []
            detail = rows[0] if rows else {}
        except ControlError as e:
            logger.warning(f"[bybit] Fill lookup for {order_id} failed: {e.message}")

        status = str(detail.get("orderStatus", "New")).lower()
        return OrderResult(
            order_id=str(order_id),
            filled_qty=to_float(detail.get("cumExecQty")),
            avg_price=to_float(detail.get("avgPrice")) or None,
            placed_at=self.now(),
            filled_at=ms_to_datetime(detail.get("updatedTime")) if status == "filled" else None,
            api_response_ms=0,
            status=status,
        )
