# host_agent/signal_file.py
"""
Signal-file protocol.

The presence of START_SIGNAL is the only instruction to trade. Nothing in
the agent creates it except an explicit ``start``/``restart`` request, so a
rebooted host stays idle until an operator asks otherwise.
"""

import json
import logging
import os
import re
import tempfile
import time
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

ENV_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def atomic_write(path: str, content: str, mode: int = 0o600) -> None:
    """Write to a temp file in the same directory, fsync, then rename over ``path``."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", text=True)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def render_env(env: Mapping[str, Any]) -> str:
    lines = []
    for key, value in env.items():
        if not ENV_KEY.match(key):
            raise ValueError(f"Invalid env key: {key!r}")
        text = "" if value is None else str(value)
        if "\n" in text or "\r" in text:
            raise ValueError(f"Env value for {key} contains a newline")
        lines.append(f"{key}={text}")
    return "\n".join(lines) + "\n"


def write_env_file(path: str, env: Mapping[str, Any]) -> None:
    atomic_write(path, render_env(env))
    # keys only, values are credentials
    logger.info(f"[signal] Wrote {path} ({len(env)} keys: {sorted(env)})")


class SignalFile:

    def __init__(self, path: str):
        self.path = path

    def exists(self) -> bool:
        try:
            os.stat(self.path)
        except FileNotFoundError:
            return False
        return True

    def read(self) -> Optional[Dict[str, Any]]:
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                content = handle.read()
        except FileNotFoundError:
            return None
        try:
            data = json.loads(content)
        except ValueError:
            return {"raw": content[:200]}
        return data if isinstance(data, dict) else {"raw": data}

    def age_ms(self) -> Optional[int]:
        try:
            mtime = os.stat(self.path).st_mtime
        except FileNotFoundError:
            return None
        return max(int((time.time() - mtime) * 1000), 0)

    def create(self, source: str = "dashboard", mode: str = "live") -> bool:
        """Write the signal and confirm it with stat(); returns whether it is present."""
        body = {
            "started_at": datetime.now(timezone.utc).isoformat(),
            "source": source,
            "mode": mode,
        }
        atomic_write(self.path, json.dumps(body), mode=0o644)
        created = self.exists()
        if created:
            logger.info(f"[signal] ✅ Signal file created: {self.path}")
        else:
            logger.error(f"[signal] ❌ Signal file missing after write: {self.path}")
        return created

    def remove(self) -> bool:
        """Best-effort unlink; returns True when no signal file remains."""
        try:
            os.unlink(self.path)
            logger.info(f"[signal] Signal file removed: {self.path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"[signal] Failed to remove signal file: {e}")
        return not self.exists()
