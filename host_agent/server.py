# host_agent/server.py
"""
Host Agent - runs on the trading host behind the port-80 reverse proxy.
Controls the bot through the signal file and proxies exchange calls
from the whitelisted IP.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Literal, Optional
from uuid import uuid4

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from hft_control.core.errors import ControlError
from hft_control.core.models import BotDeployment
from hft_control.exchanges.base import ExchangeAdapter, OrderRequest
from hft_control.exchanges.registry import exchange_names, get_exchange
from host_agent import system
from host_agent.config import AgentSettings
from host_agent.runtime import BotRuntime
from host_agent.signal_file import SignalFile, write_env_file

logger = logging.getLogger(__name__)

UPSTREAM_KINDS = {"auth", "transient_network", "capacity", "protocol"}


# ============================================
# REQUEST MODELS
# ============================================

class ControlRequest(BaseModel):
    action: Literal["start", "stop", "restart"]
    env: Optional[Dict[str, str]] = None
    mode: str = "live"
    source: str = "dashboard"


class ExchangeCredentials(BaseModel):
    api_key: str
    api_secret: str
    passphrase: Optional[str] = None

    def as_dict(self) -> Dict[str, str]:
        return {k: v for k, v in self.model_dump().items() if v}


class BalanceRequest(BaseModel):
    exchange: str
    credentials: ExchangeCredentials


class PlaceOrderRequest(BaseModel):
    exchange: str
    credentials: ExchangeCredentials
    symbol: str
    side: Literal["buy", "sell"]
    quantity: float = Field(..., gt=0)
    order_type: Literal["market", "limit"] = "market"
    price: Optional[float] = None
    client_order_id: Optional[str] = None


# ============================================
# ORDER LEDGER (agent-local idempotency)
# ============================================

class OrderLedger:
    """Remembers results per (exchange, client_order_id) for this process."""

    def __init__(self):
        self._lock = threading.Lock()
        self._results: Dict[tuple, Dict[str, Any]] = {}
        self._pending: set = set()

    def reserve(self, key: tuple) -> Optional[Dict[str, Any]]:
        """None when the caller may submit; otherwise the stored (or in-flight) outcome."""
        with self._lock:
            if key in self._results:
                return self._results[key]
            if key in self._pending:
                return {"success": False, "error": "order_in_flight"}
            self._pending.add(key)
            return None

    def complete(self, key: tuple, result: Dict[str, Any]) -> None:
        with self._lock:
            self._pending.discard(key)
            self._results[key] = result


# ============================================
# APP FACTORY
# ============================================

def create_app(
    settings: Optional[AgentSettings] = None,
    runtime: Optional[BotRuntime] = None,
    exchange_factory: Callable[[str], ExchangeAdapter] = get_exchange,
) -> FastAPI:
    settings = settings or AgentSettings()
    runtime = runtime or BotRuntime(settings)
    signal = SignalFile(settings.signal_path)
    kill_switch = SignalFile(settings.kill_switch_path)
    ledger = OrderLedger()

    app = FastAPI(
        title="HFT Host Agent",
        description="On-host control agent for the trading bot",
        version=settings.version,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -------------------------
    # Error handlers
    # -------------------------

    @app.exception_handler(ControlError)
    async def control_error_handler(request: Request, exc: ControlError):
        status_code = 502 if exc.kind in UPSTREAM_KINDS else 400
        logger.warning(f"[agent] {request.url.path} failed: {exc.kind}: {exc.message}")
        body = exc.to_response()
        body["error"] = exc.message
        return JSONResponse(status_code=status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=422, content={
            "success": False,
            "error": "invalid_request",
            "details": [{"loc": list(e.get("loc", [])), "msg": e.get("msg")} for e in exc.errors()],
        })

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})

    @app.exception_handler(OSError)
    async def os_error_handler(request: Request, exc: OSError):
        logger.error(f"[agent] Internal fault on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"success": False, "error": "internal_fault"})

    # -------------------------
    # Health / status
    # -------------------------

    @app.get("/health")
    def health():
        return {
            "success": True,
            "ok": True,
            "status": "ok",
            "uptime_s": system.uptime_s(),
            **system.memory_mb(),
            "version": settings.version,
        }

    @app.get("/status")
    def status():
        containers = runtime.containers()
        docker_up = any(c["status"] == "running" for c in containers)
        bot_status = BotDeployment.derive_status(signal.exists(), docker_up)
        return {
            "success": True,
            "bot": {"status": bot_status.value, "running": bot_status.value == "running"},
            "docker": {"containers": containers},
            "system": {**system.load_average(), "disk_pct": system.disk_pct()},
        }

    @app.get("/signal-check")
    def signal_check():
        exists = signal.exists()
        body: Dict[str, Any] = {
            "success": True,
            "signal_exists": exists,
            "docker_running": runtime.docker_running(),
        }
        if exists:
            body["signal_data"] = signal.read()
            body["signal_age_ms"] = signal.age_ms()
        return body

    # -------------------------
    # Control
    # -------------------------

    def _start(request: ControlRequest) -> JSONResponse:
        if request.env:
            write_env_file(settings.env_path, request.env)

        if not signal.create(source=request.source, mode=request.mode):
            return JSONResponse(status_code=500, content={
                "success": False,
                "signal_created": False,
                "error": "signal file not present after write",
            })

        compose = runtime.up()
        if not compose.ok:
            return JSONResponse(status_code=500, content={
                "success": False,
                "signal_created": True,
                "docker_started": False,
                "error": "docker compose up failed",
                "output": compose.output[-500:],
            })
        return JSONResponse(status_code=200, content={
            "success": True,
            "action": request.action,
            "signal_created": True,
            "docker_started": True,
        })

    @app.post("/control")
    def control(request: ControlRequest):
        logger.info(f"[agent] Control: {request.action} (mode={request.mode})")

        if request.action == "stop":
            removed = signal.remove()
            compose = runtime.down()
            if not removed:
                return JSONResponse(status_code=500, content={
                    "success": False,
                    "signal_created": False,
                    "error": "signal file could not be removed",
                })
            return {
                "success": True,
                "action": "stop",
                "signal_created": False,
                "signal_removed": True,
                "docker_stopped": compose.ok,
            }

        if request.action == "restart":
            runtime.down()
        return _start(request)

    @app.get("/logs")
    def logs(lines: int = Query(100, ge=1, le=5000)):
        return {"success": True, "logs": runtime.logs(lines)}

    # -------------------------
    # Exchange proxy
    # -------------------------

    @app.get("/ping-exchanges")
    def ping_exchanges():
        names = exchange_names()
        with ThreadPoolExecutor(max_workers=len(names)) as pool:
            pings: List[Dict[str, Any]] = list(pool.map(lambda n: exchange_factory(n).ping().to_dict(), names))
        return {"success": True, "pings": pings}

    @app.post("/balance")
    def balance(request: BalanceRequest):
        adapter = exchange_factory(request.exchange)
        result = adapter.balance(request.credentials.as_dict())
        return {"success": True, **result.to_dict()}

    @app.post("/place-order")
    def place_order(request: PlaceOrderRequest):
        if kill_switch.exists():
            logger.warning("[agent] 🛑 Kill switch file present, order refused")
            return {"success": False, "error": "kill_switch"}

        adapter = exchange_factory(request.exchange)
        order = OrderRequest(
            symbol=request.symbol,
            side=request.side,
            quantity=request.quantity,
            client_order_id=request.client_order_id or f"hft{uuid4().hex[:24]}",
            order_type=request.order_type,
            price=request.price,
        )
        key = (request.exchange.lower(), order.client_order_id)
        previous = ledger.reserve(key)
        if previous is not None:
            return {**previous, "duplicate": True}

        try:
            result = adapter.place_order(request.credentials.as_dict(), order)
        except ControlError as e:
            ledger.complete(key, {"success": False, "error": e.kind, "client_order_id": order.client_order_id})
            raise
        body = {"success": True, "client_order_id": order.client_order_id, **result.to_dict()}
        ledger.complete(key, body)
        return body

    logger.info(f"[agent] Signal present at boot: {signal.exists()} ({settings.signal_path})")
    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    agent_settings = AgentSettings()
    logger.info("🚀 Starting Host Agent...")
    logger.info(f"📍 Listening on {agent_settings.host}:{agent_settings.port}")

    uvicorn.run(
        create_app(agent_settings),
        host=agent_settings.host,
        port=agent_settings.port,
        log_level="info"
    )
