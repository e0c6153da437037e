# hft_control/exchanges/okx.py
"""OKX: ISO timestamp + method + path + body, HMAC-SHA256 base64 in headers."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from hft_control.core.errors import AuthError, ControlError, ProtocolError
from hft_control.core.http import classify_status
from hft_control.exchanges.base import (
    BalanceResult,
    ExchangeAdapter,
    OrderRequest,
    OrderResult,
    ms_to_datetime,
    to_float,
)
from hft_control.signing.hmac_signers import hmac_base64

logger = logging.getLogger(__name__)

API_URL = "https://www.okx.com"
IP_RESTRICTED = "50111"
AUTH_CODES = {"50111", "50113", "50114", "50119", "50100"}


def inst_id(symbol: str) -> str:
    symbol = symbol.upper().replace("/", "-")
    if "-" not in symbol and symbol.endswith("USDT"):
        symbol = f"{symbol[:-4]}-USDT"
    return symbol


class OKXAdapter(ExchangeAdapter):
    name = "okx"
    ping_url = f"{API_URL}/api/v5/public/time"

    def iso_timestamp(self) -> str:
        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"

    def sign(self, secret: str, timestamp: str, method: str, path: str, body: str = "") -> str:
        return hmac_base64(secret, f"{timestamp}{method.upper()}{path}{body}")

    def _signed(self, creds: Dict[str, str], method: str, path: str,
                params: Optional[Dict[str, Any]] = None, payload: Optional[Dict[str, Any]] = None) -> Any:
        api_key, secret, passphrase = creds.get("api_key"), creds.get("api_secret"), creds.get("passphrase")
        if not (api_key and secret and passphrase):
            raise AuthError("okx credentials need api_key, api_secret and passphrase")

        if params:
            path = f"{path}?{urlencode(params)}"
        body = json.dumps(payload, separators=(",", ":")) if payload is not None else ""
        timestamp = self.iso_timestamp()
        headers = {
            "OK-ACCESS-KEY": api_key,
            "OK-ACCESS-SIGN": self.sign(secret, timestamp, method, path, body),
            "OK-ACCESS-TIMESTAMP": timestamp,
            "OK-ACCESS-PASSPHRASE": passphrase,
            "Content-Type": "application/json",
        }
        data = self.http.json(method, f"{API_URL}{path}", headers=headers, data=body or None, code_field="code")
        return self._unwrap(data)

    def _unwrap(self, data: Dict[str, Any]) -> Any:
        code = str(data.get("code", ""))
        if code == "0":
            return data.get("data") or []
        message = data.get("msg") or "okx error"
        if code == IP_RESTRICTED:
            raise AuthError(f"okx rejected the request (IP not whitelisted?): {message}", provider_code=code)
        if code in AUTH_CODES:
            raise AuthError(f"okx: {message}", provider_code=code)
        error = classify_status(400, message, provider_code=code, label="okx")
        raise error

    # -------------------------
    # Balance
    # -------------------------

    def _trading(self, creds) -> float:
        rows = self.read(lambda: self._signed(creds, "GET", "/api/v5/account/balance", {"ccy": "USDT"}), "trading")
        total = 0.0
        for account in rows:
            for detail in account.get("details", []):
                if detail.get("ccy") == "USDT":
                    total += to_float(detail.get("eq") or detail.get("cashBal"))
        return total

    def _funding(self, creds) -> float:
        rows = self.read(lambda: self._signed(creds, "GET", "/api/v5/asset/balances", {"ccy": "USDT"}), "funding")
        return sum(
            to_float(r.get("availBal")) + to_float(r.get("frozenBal"))
            for r in rows if r.get("ccy") == "USDT"
        )

    def balance(self, creds: Dict[str, str]) -> BalanceResult:
        wallets = self.gather_wallets({
            "trading": lambda: self._trading(creds),
            "funding": lambda: self._funding(creds),
        })
        per_asset = [{"asset": "USDT", "wallet": w.wallet, "amount": w.usdt} for w in wallets if w.usdt]
        return BalanceResult(self.name, wallets=wallets, per_asset=per_asset)

    # -------------------------
    # Orders
    # -------------------------

    def _submit(self, creds, order: OrderRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "instId": inst_id(order.symbol),
            "tdMode": "cash",
            "side": order.side,
            "ordType": order.order_type,
            "sz": str(order.quantity),
            "clOrdId": order.client_order_id,
        }
        if order.order_type == "market" and order.side == "buy":
            payload["tgtCcy"] = "base_ccy"
        if order.price is not None:
            payload["px"] = str(order.price)

        rows = self._signed(creds, "POST", "/api/v5/trade/order", payload=payload)
        if not rows:
            raise ProtocolError("okx order ack is empty")
        ack = rows[0]
        if str(ack.get("sCode", "0")) != "0":
            raise ProtocolError(f"okx rejected order: {ack.get('sMsg')}", provider_code=str(ack.get("sCode")))
        return ack

    def _fill(self, creds, order: OrderRequest, ack: Dict[str, Any]) -> OrderResult:
        order_id = ack.get("ordId")
        if not order_id:
            raise ProtocolError("okx order ack has no ordId")

        detail: Dict[str, Any] = {}
        try:
            rows = self.read(lambda: self._signed(creds, "GET", "/api/v5/trade/order", {
                "instId": inst_id(order.symbol), "ordId": order_id,
            }), "order_detail")
            detail = rows[0] if rows else {}
        except ControlError as e:
            logger.warning(f"[okx] Fill lookup for {order_id} failed: {e.message}")

        state = detail.get("state", "live")
        filled = to_float(detail.get("accFillSz"))
        return OrderResult(
            order_id=str(order_id),
            filled_qty=filled,
            avg_price=to_float(detail.get("avgPx")) or None,
            placed_at=self.now(),
            filled_at=ms_to_datetime(detail.get("fillTime")) if state == "filled" else None,
            api_response_ms=0,
            status=state,
        )
