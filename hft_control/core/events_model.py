"""Event models for the control plane."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass
class ControlEvent:
    """Telemetry event fanned out to emitters."""

    event_type: str
    subject: str
    timestamp: datetime
    metadata: Dict[str, Any]

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def deployment_failed(provider: str, error_code: Optional[str], message: str):
        """Provisioning aborted; no running host was recorded."""
        return ControlEvent(
            event_type="deployment.failed",
            subject=provider,
            timestamp=ControlEvent._now(),
            metadata={
                "error_code": error_code,
                "message": message[:200],
            }
        )

    @staticmethod
    def deployment_succeeded(host):
        return ControlEvent(
            event_type="deployment.succeeded",
            subject=host.provider,
            timestamp=ControlEvent._now(),
            metadata={
                "instance_id": host.instance_id,
                "status": host.lifecycle_status.value,
                "public_ip": host.public_ip,
            }
        )

    @staticmethod
    def health_probe(entry, status, latency_ms):
        return ControlEvent(
            event_type="health.probe",
            subject=entry.provider,
            timestamp=ControlEvent._now(),
            metadata={
                "status": status.value,
                "latency_ms": latency_ms,
                "consecutive_failures": entry.consecutive_failures,
            }
        )

    @staticmethod
    def failover(from_provider, to_provider, reason: str, automatic: bool):
        return ControlEvent(
            event_type="failover.switched",
            subject=to_provider,
            timestamp=ControlEvent._now(),
            metadata={
                "from_provider": from_provider,
                "reason": reason,
                "automatic": automatic,
            }
        )

    @staticmethod
    def desync_detected(provider: str, store_status: str, host_status: str):
        return ControlEvent(
            event_type="bot.desync",
            subject=provider,
            timestamp=ControlEvent._now(),
            metadata={
                "store_status": store_status,
                "host_status": host_status,
            }
        )

    @staticmethod
    def bot_control(ip: str, action: str, signal_created: bool):
        return ControlEvent(
            event_type="bot.control",
            subject=ip,
            timestamp=ControlEvent._now(),
            metadata={
                "action": action,
                "signal_created": signal_created,
            }
        )

    @staticmethod
    def order_placed(record):
        return ControlEvent(
            event_type="order.placed",
            subject=record.exchange,
            timestamp=ControlEvent._now(),
            metadata={
                "client_order_id": record.client_order_id,
                "order_id": record.order_id,
                "latency_ms": record.latency_ms,
            }
        )

    @staticmethod
    def kill_switch_blocked(exchange: str, client_order_id: str):
        return ControlEvent(
            event_type="order.blocked",
            subject=exchange,
            timestamp=ControlEvent._now(),
            metadata={
                "client_order_id": client_order_id,
                "reason": "kill_switch",
            }
        )

    @staticmethod
    def balance_partial(exchange: str, wallet: str, error: str):
        """A sub-wallet fetch failed and contributed zero."""
        return ControlEvent(
            event_type="balance.partial",
            subject=exchange,
            timestamp=ControlEvent._now(),
            metadata={
                "wallet": wallet,
                "error": error[:200],
            }
        )
