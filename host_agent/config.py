#host_agent\config.py

import os
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentSettings(BaseSettings):
    """On-host agent configuration (HFT_AGENT_* environment variables)."""

    model_config = SettingsConfigDict(
        env_prefix="HFT_AGENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    bot_dir: str = "/opt/hft-bot"
    data_dir: Optional[str] = None
    env_file: Optional[str] = None

    # docker name filter for the trading containers
    container_filter: str = "hft"
    compose_timeout_s: int = 120

    version: str = "1.0.0"
    host: str = "127.0.0.1"
    port: int = 8080
    cors_origins: List[str] = ["*"]

    @property
    def data_path(self) -> str:
        return self.data_dir or os.path.join(self.bot_dir, "app", "data")

    @property
    def signal_path(self) -> str:
        return os.path.join(self.data_path, "START_SIGNAL")

    @property
    def kill_switch_path(self) -> str:
        return os.path.join(self.data_path, "KILL_SWITCH")

    @property
    def env_path(self) -> str:
        return self.env_file or os.path.join(self.bot_dir, ".env.exchanges")


settings = AgentSettings()
