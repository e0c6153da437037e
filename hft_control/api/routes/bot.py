# hft_control/api/routes/bot.py
"""Bot control, trading and reset API routes."""

from typing import Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field

from hft_control.container import get_balances, get_control_plane, get_store
from hft_control.control.dispatcher import ControlPlane
from hft_control.control.reset import reset_trading_data
from hft_control.core.models import AuditEvent
from hft_control.core.repository import ControlStore
from hft_control.exchanges.balances import BalanceService

router = APIRouter(tags=["bot"])


class BotControlRequest(BaseModel):
    action: Literal["start", "stop", "restart"]
    mode: str = Field(default="live")


class CommandRequest(BaseModel):
    command: str = Field(..., min_length=1, max_length=500)


class TradeNowRequest(BaseModel):
    signal_id: UUID
    quantity: float = Field(..., gt=0)
    exchange: Optional[str] = None
    via_host: bool = True


class ResetRequest(BaseModel):
    confirm: Optional[str] = None


class KillSwitchRequest(BaseModel):
    enabled: bool


@router.post("/bot-control")
def bot_control(
    request: BotControlRequest,
    actor: str = Header("operator", alias="X-Actor"),
    control: ControlPlane = Depends(get_control_plane),
):
    return control.bot_control(request.action, mode=request.mode, actor=actor)


@router.post("/bot-control/command")
def bot_command(
    request: CommandRequest,
    actor: str = Header("operator", alias="X-Actor"),
    control: ControlPlane = Depends(get_control_plane),
):
    """Free-text command mapped to a typed intent; destructive patterns are refused."""
    return control.command(request.command, actor=actor)


@router.post("/trade-now")
def trade_now(
    request: TradeNowRequest,
    actor: str = Header("operator", alias="X-Actor"),
    control: ControlPlane = Depends(get_control_plane),
):
    return control.trade_now(
        request.signal_id,
        request.quantity,
        exchange=request.exchange,
        actor=actor,
        via_host=request.via_host,
    )


@router.post("/kill-switch")
def kill_switch(
    request: KillSwitchRequest,
    actor: str = Header("operator", alias="X-Actor"),
    store: ControlStore = Depends(get_store),
):
    before = store.kill_switch_enabled()
    store.set_kill_switch(request.enabled)
    store.append_audit_event(AuditEvent(
        actor=actor,
        action="kill_switch",
        before={"enabled": before},
        after={"enabled": request.enabled},
    ))
    return {"success": True, "kill_switch": request.enabled}


@router.post("/balances/poll")
def poll_balances(service: BalanceService = Depends(get_balances)):
    return {"success": True, **service.poll()}


@router.post("/exchanges/ping")
def ping_exchanges(service: BalanceService = Depends(get_balances)):
    return {"success": True, "pings": service.ping_all()}


@router.post("/reset-trading-data")
def reset(
    request: ResetRequest,
    actor: str = Header("operator", alias="X-Actor"),
    store: ControlStore = Depends(get_store),
):
    return reset_trading_data(store, request.confirm, actor=actor)
