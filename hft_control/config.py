#hft_control\config.py

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class ControlSettings(BaseSettings):
    """Control-plane configuration from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Managed backend
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # Fallback for the system_secrets row
    encryption_key: Optional[str] = None
    key_cache_ttl_s: int = 300

    # Store (the managed Postgres behind the backend)
    database_url: str = "sqlite:///./hft_control.db"
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 3600
    echo_sql: bool = False

    # Health loop
    health_interval_s: int = 30
    degraded_interval_s: int = 10
    failure_threshold: int = 3
    probe_timeout_ms: int = 10000

    # Host agent
    host_agent_port: int = 80
    host_agent_timeout_s: int = 10

    @property
    def edge_functions_url(self) -> str:
        return f"{self.supabase_url.rstrip('/')}/functions/v1"


settings = ControlSettings()
