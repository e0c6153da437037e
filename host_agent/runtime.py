# host_agent/runtime.py
"""Trading container runtime: docker compose for lifecycle, docker SDK for inspection."""

import logging
import subprocess
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import docker

from host_agent.config import AgentSettings

logger = logging.getLogger(__name__)


@dataclass
class ComposeResult:
    ok: bool
    output: str = ""


class BotRuntime:
    """
    Wraps ``docker compose`` in the bot directory.

    ``run`` and ``docker_client`` are injectable; the docker client is
    connected lazily so the agent starts even when the daemon is down.
    """

    def __init__(
        self,
        settings: AgentSettings,
        docker_client: Optional[Any] = None,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.settings = settings
        self._docker = docker_client
        self._run = run

    @property
    def docker(self) -> Optional[Any]:
        if self._docker is None:
            try:
                self._docker = docker.from_env()
                logger.info("✅ Connected to Docker daemon")
            except docker.errors.DockerException as e:
                logger.error(f"❌ Failed to connect to Docker: {e}")
                return None
        return self._docker

    # -------------------------
    # Compose
    # -------------------------

    def _compose(self, *args: str) -> ComposeResult:
        command = ["docker", "compose", *args]
        try:
            completed = self._run(
                command,
                cwd=self.settings.bot_dir,
                capture_output=True,
                text=True,
                timeout=self.settings.compose_timeout_s,
            )
        except subprocess.TimeoutExpired:
            logger.error(f"[runtime] {' '.join(command)} timed out after {self.settings.compose_timeout_s}s")
            return ComposeResult(False, "timeout")
        except OSError as e:
            logger.error(f"[runtime] {' '.join(command)} could not run: {e}")
            return ComposeResult(False, str(e))

        output = (completed.stdout or "") + (completed.stderr or "")
        if completed.returncode != 0:
            logger.error(f"[runtime] {' '.join(command)} exited {completed.returncode}: {output[-200:]}")
            return ComposeResult(False, output[-2000:])
        logger.info(f"[runtime] {' '.join(command)} ✅")
        return ComposeResult(True, output[-2000:])

    def up(self) -> ComposeResult:
        return self._compose("up", "-d", "--remove-orphans")

    def down(self) -> ComposeResult:
        return self._compose("down")

    # -------------------------
    # Inspection
    # -------------------------

    def containers(self) -> List[Dict[str, Any]]:
        client = self.docker
        if client is None:
            return []
        try:
            found = client.containers.list(all=True, filters={"name": self.settings.container_filter})
        except docker.errors.APIError as e:
            logger.error(f"[runtime] Docker API error: {e}")
            return []
        return [
            {
                "id": c.id[:12],
                "name": c.name,
                "status": c.status,
                "image": c.attrs.get("Config", {}).get("Image"),
            }
            for c in found
        ]

    def docker_running(self) -> bool:
        return any(c["status"] == "running" for c in self.containers())

    def logs(self, lines: int = 100) -> List[str]:
        client = self.docker
        if client is not None:
            try:
                found = client.containers.list(all=True, filters={"name": self.settings.container_filter})
                if found:
                    raw = found[0].logs(tail=lines, timestamps=True)
                    return raw.decode("utf-8", errors="replace").splitlines()
            except docker.errors.APIError as e:
                logger.error(f"[runtime] Docker API error reading logs: {e}")

        result = self._compose("logs", "--no-color", "--tail", str(lines))
        return result.output.splitlines()[-lines:] if result.ok else []
