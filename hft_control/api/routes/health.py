# hft_control/api/routes/health.py
"""Health-check and failover API routes."""

from typing import Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field

from hft_control.container import (
    get_control_plane,
    get_coordinator,
    get_desync_detector,
    get_health_checker,
)
from hft_control.control.dispatcher import ControlPlane
from hft_control.health.checker import HealthChecker
from hft_control.health.desync import DesyncDetector, status_from_body
from hft_control.health.failover import FailoverCoordinator

router = APIRouter(tags=["health"])


class SwitchRequest(BaseModel):
    to_provider: str = Field(..., min_length=1)
    reason: str = Field(default="manual switch", max_length=200)


@router.post("/health-check/run")
def run_health_check(checker: HealthChecker = Depends(get_health_checker)):
    """Trigger one cycle; a cycle already in flight makes this a no-op."""
    report = checker.run_cycle()
    if report is None:
        return {"success": True, "skipped": True}
    return report.to_dict()


@router.get("/health-check/desync")
def desync(
    control: ControlPlane = Depends(get_control_plane),
    detector: DesyncDetector = Depends(get_desync_detector),
):
    """Compare the primary host's bot status with the store; never writes the store."""
    primary = control.primary_status()
    host_status = status_from_body(primary)
    found = detector.check(primary["provider"], host_status) if host_status else None
    return {
        "success": True,
        "provider": primary["provider"],
        "host_status": host_status.value if host_status else None,
        "desync": found is not None,
        "details": found.to_dict() if found else None,
        "open": [d.to_dict() for d in detector.current()],
    }


@router.post("/failover/switch")
def switch_primary(
    request: SwitchRequest,
    actor: str = Header("operator", alias="X-Actor"),
    coordinator: FailoverCoordinator = Depends(get_coordinator),
):
    event = coordinator.manual_switch(request.to_provider, actor=actor, reason=request.reason)
    return {
        "success": True,
        "from_provider": event.from_provider,
        "to_provider": event.to_provider,
        "automatic": event.automatic,
    }
