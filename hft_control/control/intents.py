# hft_control/control/intents.py
"""
Typed bot intents.

Free-text commands from the dashboard are mapped onto a small enum; the
host agent only ever receives one of its distinct endpoints, never a
shell string.
"""

import re
from enum import Enum
from typing import List, Pattern

from hft_control.core.errors import StateError


class BotIntent(Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    STATUS = "status"
    LOGS = "logs"

    @property
    def changes_state(self) -> bool:
        return self in (BotIntent.START, BotIntent.STOP, BotIntent.RESTART)


# rm -rf / family plus the usual disk/host killers
DESTRUCTIVE_PATTERNS: List[Pattern] = [
    re.compile(r"\brm\s+(-[a-z]*\s+)*-[a-z]*[rf][a-z]*\s+(-[a-z]*\s+)*(/|~|\*|/\*)(\s|$)"),
    re.compile(r"\brm\s+(-[a-z]*\s+)*--no-preserve-root"),
    re.compile(r"\bmkfs(\.\w+)?\b"),
    re.compile(r"\bdd\s+.*\bof=/dev/"),
    re.compile(r">\s*/dev/(sd|nvme|vd|xvd)[a-z0-9]*"),
    re.compile(r":\(\)\s*\{\s*:\|:&\s*\}\s*;\s*:"),
    re.compile(r"\bchmod\s+-R\s+0?777\s+/(\s|$)"),
    re.compile(r"\b(shutdown|poweroff|halt)\b"),
    re.compile(r"\bdocker\s+system\s+prune\b"),
]

# Order matters: "restart" must win over "start"
_VERBS = [
    (BotIntent.RESTART, re.compile(r"\brestart\b|\bdocker\s+compose\s+restart\b")),
    (BotIntent.STOP, re.compile(r"\bstop\b|\bdocker\s+compose\s+down\b|\bkill\s+bot\b")),
    (BotIntent.START, re.compile(r"\bstart\b|\bdocker\s+compose\s+up\b|\blaunch\b")),
    (BotIntent.LOGS, re.compile(r"\blogs?\b|\btail\b")),
    (BotIntent.STATUS, re.compile(r"\bstatus\b|\bhealth\b|\bdocker\s+ps\b|\bps\b")),
]


def is_destructive(command: str) -> bool:
    text = command.strip().lower()
    return any(pattern.search(text) for pattern in DESTRUCTIVE_PATTERNS)


def parse_command(command: str) -> BotIntent:
    """
    Translate an operator command into a BotIntent.

    Raises:
        StateError("destructive_command"): command matches a destructive pattern
        StateError("unknown_command"): nothing recognisable in the command
    """
    text = (command or "").strip().lower()
    if not text:
        raise StateError("unknown_command", "Empty command")
    if is_destructive(text):
        raise StateError("destructive_command", "Command refused: destructive pattern")

    try:
        return BotIntent(text)
    except ValueError:
        pass

    for intent, pattern in _VERBS:
        if pattern.search(text):
            return intent
    raise StateError("unknown_command", f"Unrecognised command: {command[:80]}")
