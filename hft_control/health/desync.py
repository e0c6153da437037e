# hft_control/health/desync.py
"""
Desync detection between the host agent and the store's cached bot_status.

Detection only. The store is never written here; reconciliation is an
operator decision (a bot-control intent).
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from hft_control.core.events import EventEmitter, NullEventEmitter
from hft_control.core.events_model import ControlEvent
from hft_control.core.models import BotStatus, utcnow
from hft_control.core.repository import ControlStore

logger = logging.getLogger(__name__)

# idle and stopped both mean "not trading"
_EQUIVALENT = {BotStatus.IDLE: BotStatus.STOPPED}


def _normalize(status: BotStatus) -> BotStatus:
    return _EQUIVALENT.get(status, status)


def status_from_body(body: Any) -> Optional[BotStatus]:
    """Read a bot status from a health or /status body, if it carries one."""
    if not isinstance(body, dict):
        return None
    raw = body.get("bot_status")
    bot = body.get("bot")
    if raw is None and isinstance(bot, dict):
        raw = bot.get("status")
    if not isinstance(raw, str):
        return None
    try:
        return BotStatus(raw.lower())
    except ValueError:
        return None


@dataclass
class Desync:
    provider: str
    store_status: BotStatus
    host_status: BotStatus
    detected_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "store_status": self.store_status.value,
            "host_status": self.host_status.value,
            "detected_at": self.detected_at.isoformat(),
            "action_required": "operator reconciliation",
        }


class DesyncDetector:

    def __init__(self, store: ControlStore, emitter: Optional[EventEmitter] = None):
        self._store = store
        self._emitter = emitter or NullEventEmitter()
        self._lock = threading.Lock()
        self._open: Dict[str, Desync] = {}

    def check(self, provider: str, host_status: BotStatus) -> Optional[Desync]:
        """Compare the host's report with the store; warn once per distinct discrepancy."""
        store_status = self._store.get_bot_status()
        with self._lock:
            if _normalize(store_status) == _normalize(host_status):
                if self._open.pop(provider, None) is not None:
                    logger.info(f"[desync] {provider} back in sync ({host_status.value})")
                return None

            known = self._open.get(provider)
            if known and known.store_status == store_status and known.host_status == host_status:
                return known

            desync = Desync(provider=provider, store_status=store_status, host_status=host_status)
            self._open[provider] = desync

        logger.warning(
            f"[desync] ⚠️ {provider}: host reports {host_status.value}, store says "
            f"{store_status.value}; store left unchanged, operator must reconcile"
        )
        self._emitter.emit([ControlEvent.desync_detected(provider, store_status.value, host_status.value)])
        return desync

    def current(self) -> List[Desync]:
        with self._lock:
            return list(self._open.values())
