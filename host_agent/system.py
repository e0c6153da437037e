# host_agent/system.py
"""Host metrics for /health and /status."""

import os
import shutil
import time
from typing import Dict, Optional

_STARTED = time.monotonic()


def uptime_s() -> int:
    return int(time.monotonic() - _STARTED)


def memory_mb(meminfo_path: str = "/proc/meminfo") -> Dict[str, Optional[int]]:
    values: Dict[str, int] = {}
    try:
        with open(meminfo_path, "r", encoding="utf-8") as handle:
            for line in handle:
                key, _, rest = line.partition(":")
                parts = rest.split()
                if parts and parts[0].isdigit():
                    values[key] = int(parts[0])
    except OSError:
        return {"mem_used_mb": None, "mem_total_mb": None}

    total_kb = values.get("MemTotal")
    available_kb = values.get("MemAvailable", values.get("MemFree"))
    if total_kb is None or available_kb is None:
        return {"mem_used_mb": None, "mem_total_mb": None}
    return {
        "mem_used_mb": (total_kb - available_kb) // 1024,
        "mem_total_mb": total_kb // 1024,
    }


def load_average() -> Dict[str, Optional[float]]:
    try:
        load1, load5, load15 = os.getloadavg()
    except OSError:
        return {"load1": None, "load5": None, "load15": None}
    return {"load1": round(load1, 2), "load5": round(load5, 2), "load15": round(load15, 2)}


def disk_pct(path: str = "/") -> Optional[float]:
    try:
        usage = shutil.disk_usage(path)
    except OSError:
        return None
    return round(usage.used / usage.total * 100, 1) if usage.total else None
