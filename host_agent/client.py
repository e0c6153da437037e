# host_agent/client.py
"""Host Agent client used by the control plane and the health loop."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from hft_control.core.errors import (
    AuthError,
    CapacityError,
    ControlError,
    ProtocolError,
    StateError,
    TransientNetworkError,
)
from hft_control.core.http import UpstreamClient

logger = logging.getLogger(__name__)

# Agent replies carry {success, error?} on every status code
ANY_STATUS = range(100, 600)

_ERROR_KINDS = {
    "auth": AuthError,
    "transient_network": TransientNetworkError,
    "capacity": CapacityError,
    "protocol": ProtocolError,
}


def error_from_reply(body: Dict[str, Any], default_message: str) -> ControlError:
    """Rebuild the typed error carried by a failed agent reply."""
    reason = body.get("reason") or body.get("error") or "protocol"
    message = body.get("message") or body.get("error") or default_message
    if reason == "kill_switch":
        return StateError("kill_switch", "Kill switch file present on host")
    error_cls = _ERROR_KINDS.get(reason, ProtocolError)
    return error_cls(f"host agent: {message}", provider_code=body.get("provider_code"))


@dataclass
class SignalState:
    """Result of /signal-check."""
    signal_exists: bool
    docker_running: bool
    signal_data: Optional[Dict[str, Any]] = None
    signal_age_ms: Optional[int] = None


class HostAgentClient:
    """Client for communicating with the Host Agent."""

    def __init__(
        self,
        agent_url: str,
        timeout: float = 10,
        session: Optional[requests.Session] = None,
    ):
        """
        Args:
            agent_url: Base URL of the agent (e.g., "http://203.0.113.10")
            timeout: Request timeout in seconds
        """
        self.base_url = agent_url.rstrip('/')
        self.http = UpstreamClient("host-agent", session=session, timeout=timeout)

    @classmethod
    def for_ip(cls, ip: str, port: int = 80, **kwargs) -> "HostAgentClient":
        suffix = "" if port == 80 else f":{port}"
        return cls(f"http://{ip}{suffix}", **kwargs)

    def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        data = self.http.json(method, f"{self.base_url}{path}", ok_statuses=ANY_STATUS, **kwargs)
        if not isinstance(data, dict):
            raise ProtocolError(f"host agent {path} returned a non-object body")
        return data

    def health(self) -> Dict[str, Any]:
        return self._call("GET", "/health")

    def status(self) -> Dict[str, Any]:
        return self._call("GET", "/status")

    def signal_check(self) -> SignalState:
        data = self._call("GET", "/signal-check")
        return SignalState(
            signal_exists=bool(data.get("signal_exists")),
            docker_running=bool(data.get("docker_running")),
            signal_data=data.get("signal_data"),
            signal_age_ms=data.get("signal_age_ms"),
        )

    def control(self, action: str, env: Optional[Dict[str, str]] = None, mode: str = "live") -> Dict[str, Any]:
        """
        Send a control action.

        Returns the agent body as-is; callers check ``success`` and
        ``signal_created``.
        """
        payload: Dict[str, Any] = {"action": action, "mode": mode}
        if env:
            payload["env"] = env
        logger.info(f"[host-agent] {self.base_url} control {action}")
        data = self._call("POST", "/control", json=payload)
        data.setdefault("signal_created", False)
        return data

    def logs(self, lines: int = 100) -> List[str]:
        return self._call("GET", "/logs", params={"lines": lines}).get("logs", [])

    def ping_exchanges(self) -> List[Dict[str, Any]]:
        return self._call("GET", "/ping-exchanges").get("pings", [])

    def balance(self, exchange: str, credentials: Dict[str, str]) -> Dict[str, Any]:
        return self._call("POST", "/balance", json={"exchange": exchange, "credentials": credentials})

    def place_order(self, exchange: str, credentials: Dict[str, str], order: Dict[str, Any]) -> Dict[str, Any]:
        return self._call("POST", "/place-order", json={
            "exchange": exchange,
            "credentials": credentials,
            **order,
        })
