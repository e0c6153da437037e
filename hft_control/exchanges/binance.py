# hft_control/exchanges/binance.py
"""Binance: query string + timestamp, HMAC-SHA256 hex ``signature``."""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from hft_control.core.errors import AuthError, ControlError, ProtocolError
from hft_control.exchanges.base import (
    BalanceResult,
    ExchangeAdapter,
    OrderRequest,
    OrderResult,
    ms_to_datetime,
    to_float,
)
from hft_control.signing.hmac_signers import hmac_hex

logger = logging.getLogger(__name__)

SPOT_URL = "https://api.binance.com"
FUTURES_URL = "https://fapi.binance.com"
RECV_WINDOW = 5000
# -2015: invalid key, IP or permissions
AUTH_CODES = {"-2014", "-2015", "-1022"}


def normalize_symbol(symbol: str) -> str:
    return symbol.replace("/", "").replace("-", "").upper()


class BinanceAdapter(ExchangeAdapter):
    name = "binance"
    ping_url = f"{SPOT_URL}/api/v3/ping"

    def signed_query(self, secret: str, params: Dict[str, Any]) -> str:
        query = urlencode({**params, "timestamp": self.now_ms(), "recvWindow": RECV_WINDOW})
        return f"{query}&signature={hmac_hex(secret, query)}"

    def _signed(self, creds: Dict[str, str], method: str, base: str, path: str,
                params: Optional[Dict[str, Any]] = None) -> Any:
        api_key, secret = creds.get("api_key"), creds.get("api_secret")
        if not api_key or not secret:
            raise AuthError("binance credentials need api_key and api_secret")

        query = self.signed_query(secret, params or {})
        headers = {"X-MBX-APIKEY": api_key}
        try:
            if method == "GET":
                return self.http.json("GET", f"{base}{path}?{query}", headers=headers, code_field="code")
            headers["Content-Type"] = "application/x-www-form-urlencoded"
            return self.http.json(method, f"{base}{path}", headers=headers, data=query, code_field="code")
        except ControlError as e:
            if e.provider_code in AUTH_CODES:
                raise AuthError(e.message, provider_code=e.provider_code) from e
            raise

    # -------------------------
    # Balance
    # -------------------------

    def _spot(self, creds) -> float:
        data = self.read(lambda: self._signed(creds, "GET", SPOT_URL, "/api/v3/account"), "spot")
        for row in data.get("balances", []):
            if row.get("asset") == "USDT":
                return to_float(row.get("free")) + to_float(row.get("locked"))
        return 0.0

    def _funding(self, creds) -> float:
        rows = self.read(
            lambda: self._signed(creds, "POST", SPOT_URL, "/sapi/v1/asset/get-funding-asset", {"asset": "USDT"}),
            "funding",
        )
        if not isinstance(rows, list):
            raise ProtocolError("binance funding response is not a list")
        return sum(
            to_float(r.get("free")) + to_float(r.get("locked")) + to_float(r.get("freeze"))
            for r in rows if r.get("asset") == "USDT"
        )

    def _futures(self, creds) -> float:
        rows = self.read(lambda: self._signed(creds, "GET", FUTURES_URL, "/fapi/v2/balance"), "futures")
        if not isinstance(rows, list):
            raise ProtocolError("binance futures response is not a list")
        return sum(to_float(r.get("balance")) for r in rows if r.get("asset") == "USDT")

    def balance(self, creds: Dict[str, str]) -> BalanceResult:
        wallets = self.gather_wallets({
            "spot": lambda: self._spot(creds),
            "funding": lambda: self._funding(creds),
            "futures": lambda: self._futures(creds),
        })
        per_asset: List[Dict[str, Any]] = [
            {"asset": "USDT", "wallet": w.wallet, "amount": w.usdt} for w in wallets if w.usdt
        ]
        return BalanceResult(self.name, wallets=wallets, per_asset=per_asset)

    # -------------------------
    # Orders
    # -------------------------

    def _submit(self, creds, order: OrderRequest) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "symbol": normalize_symbol(order.symbol),
            "side": order.side.upper(),
            "type": order.order_type.upper(),
            "quantity": order.quantity,
            "newClientOrderId": order.client_order_id,
            "newOrderRespType": "FULL",
        }
        if order.order_type == "limit":
            params["price"] = order.price
            params["timeInForce"] = "GTC"
        return self._signed(creds, "POST", SPOT_URL, "/api/v3/order", params)

    def _fill(self, creds, order: OrderRequest, ack: Dict[str, Any]) -> OrderResult:
        if ack.get("orderId") is None:
            raise ProtocolError(f"binance order ack has no orderId: {ack}")
        filled = to_float(ack.get("executedQty"))
        quote = to_float(ack.get("cummulativeQuoteQty"))
        status = str(ack.get("status", "NEW")).lower()
        filled_at = ms_to_datetime(ack.get("transactTime")) if status == "filled" else None
        return OrderResult(
            order_id=str(ack["orderId"]),
            filled_qty=filled,
            avg_price=(quote / filled) if filled else None,
            placed_at=self.now(),
            filled_at=filled_at,
            api_response_ms=0,
            status=status,
        )
