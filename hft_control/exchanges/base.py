# hft_control/exchanges/base.py
"""Exchange adapter interface: ping, balance, order."""

import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import requests

from hft_control.core.errors import ControlError
from hft_control.core.http import DEFAULT_RETRY, RetryPolicy, UpstreamClient, truncate, with_retry

logger = logging.getLogger(__name__)


# ============================================
# REQUEST / RESULT TYPES
# ============================================

@dataclass
class OrderRequest:
    symbol: str
    side: str
    quantity: float
    client_order_id: str
    order_type: str = "market"
    price: Optional[float] = None

    def __post_init__(self):
        self.side = self.side.lower()
        if self.side not in ("buy", "sell"):
            raise ValueError(f"side must be buy or sell, got {self.side}")
        if self.quantity <= 0:
            raise ValueError("quantity must be positive")
        if self.order_type == "limit" and self.price is None:
            raise ValueError("limit orders need a price")


@dataclass
class OrderResult:
    order_id: str
    filled_qty: float
    avg_price: Optional[float]
    placed_at: datetime
    filled_at: Optional[datetime]
    api_response_ms: int
    status: str = "submitted"

    @property
    def latency_ms(self) -> int:
        """Placement-to-fill time; API round trip when the fill time is unknown."""
        if self.filled_at is None:
            return self.api_response_ms
        return max((self.filled_at - self.placed_at) // timedelta(milliseconds=1), 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "filled_qty": self.filled_qty,
            "avg_price": self.avg_price,
            "latency_ms": self.latency_ms,
            "api_response_ms": self.api_response_ms,
            "placed_at": self.placed_at.isoformat(),
            "filled_at": self.filled_at.isoformat() if self.filled_at else None,
            "status": self.status,
        }


@dataclass
class WalletBalance:
    wallet: str
    usdt: float = 0.0
    error: Optional[str] = None


@dataclass
class BalanceResult:
    exchange: str
    wallets: List[WalletBalance] = field(default_factory=list)
    per_asset: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total_usdt(self) -> float:
        return round(sum(w.usdt for w in self.wallets), 8)

    @property
    def failed_wallets(self) -> List[WalletBalance]:
        return [w for w in self.wallets if w.error]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exchange": self.exchange,
            "total_usdt": self.total_usdt,
            "per_asset": self.per_asset,
            "wallets": {w.wallet: w.usdt for w in self.wallets},
            "warnings": [f"{w.wallet}: {w.error}" for w in self.failed_wallets],
            "wallet_errors": {w.wallet: w.error for w in self.failed_wallets},
        }


@dataclass
class PingResult:
    exchange: str
    latency_ms: Optional[int]
    ok: bool
    error: Optional[str] = None

    @property
    def status(self) -> str:
        return "ok" if self.ok else "error"

    def to_dict(self) -> Dict[str, Any]:
        body = {"exchange": self.exchange, "latency_ms": self.latency_ms, "status": self.status}
        if self.error:
            body["error"] = self.error
        return body


def ms_to_datetime(value: Any) -> Optional[datetime]:
    try:
        millis = int(value)
    except (TypeError, ValueError):
        return None
    if millis <= 0:
        return None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


def to_float(value: Any) -> float:
    try:
        return float(value) if value not in (None, "") else 0.0
    except (TypeError, ValueError):
        return 0.0


# ============================================
# ADAPTER INTERFACE
# ============================================

class ExchangeAdapter(ABC):
    """
    One exchange family.

    Authenticated calls take the credential dict per call; adapters hold no
    secrets between calls.
    """

    name: str
    ping_url: str

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        retry: RetryPolicy = DEFAULT_RETRY,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        timeout: float = 10,
        max_workers: int = 3,
    ):
        self.http = UpstreamClient(self.name, session=session, timeout=timeout)
        self.retry = retry
        self.sleep = sleep
        self.clock = clock
        self.max_workers = max_workers

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def read(self, operation: Callable, label: str):
        """Retry wrapper for idempotent reads. Order submission is never retried here."""
        return with_retry(operation, policy=self.retry, sleep=self.sleep, label=f"{self.name}.{label}")

    # -------------------------
    # Contract
    # -------------------------

    def ping(self) -> PingResult:
        started = time.perf_counter()
        try:
            self.http.json("GET", self.ping_url)
        except ControlError as e:
            logger.warning(f"[{self.name}] Ping failed: {e.message}")
            return PingResult(self.name, None, False, error=truncate(e.message))
        latency = int((time.perf_counter() - started) * 1000)
        return PingResult(self.name, latency, True)

    @abstractmethod
    def balance(self, creds: Dict[str, str]) -> BalanceResult:
        raise NotImplementedError

    @abstractmethod
    def _submit(self, creds: Dict[str, str], order: OrderRequest) -> Dict[str, Any]:
        """Send the order; return the raw acknowledgement."""
        raise NotImplementedError

    @abstractmethod
    def _fill(self, creds: Dict[str, str], order: OrderRequest, ack: Dict[str, Any]) -> OrderResult:
        """Build the result from the acknowledgement (querying fills where needed)."""
        raise NotImplementedError

    def place_order(self, creds: Dict[str, str], order: OrderRequest) -> OrderResult:
        placed_at = self.now()
        started = time.perf_counter()
        ack = self._submit(creds, order)
        api_ms = int((time.perf_counter() - started) * 1000)

        result = self._fill(creds, order, ack)
        result.placed_at = placed_at
        result.api_response_ms = api_ms
        if result.filled_at is not None and result.filled_at < placed_at:
            # exchange clock behind ours
            result.filled_at = placed_at
        logger.info(
            f"[{self.name}] Order {order.client_order_id} -> {result.order_id} "
            f"filled {result.filled_qty} in {result.latency_ms}ms"
        )
        return result

    # -------------------------
    # Helpers
    # -------------------------

    def gather_wallets(self, fetchers: Dict[str, Callable[[], float]]) -> List[WalletBalance]:
        """Fetch sub-wallets concurrently; a failing wallet contributes 0."""
        wallets: List[WalletBalance] = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {name: pool.submit(fetch) for name, fetch in fetchers.items()}
            for name, future in futures.items():
                try:
                    wallets.append(WalletBalance(name, to_float(future.result())))
                except (ControlError, ValueError, KeyError, TypeError) as e:
                    message = e.message if isinstance(e, ControlError) else str(e)
                    logger.warning(f"[{self.name}] ⚠️ {name} wallet unavailable, counting 0: {truncate(message)}")
                    wallets.append(WalletBalance(name, 0.0, error=truncate(message)))
        return wallets
