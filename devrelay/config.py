"""devrelay configuration — loaded from .env via pydantic-settings."""

from pathlib import Path

from pydantic_settings import BaseSettings
from pydantic import Field


class DevRelaySettings(BaseSettings):
    """All devrelay configuration. Reads from .env file and environment variables."""

    # --- Heavy compute backend ---
    heavy_backend_url: str = Field(
        default="",
        description="Base URL of the heavy compute backend (empty disables the heavy path)",
    )
    capacity_api_url: str = Field(
        default="",
        description="Scaling API base URL; empty means capacity is probed via the backend /health",
    )
    capacity_wait_seconds: float = Field(default=180.0, description="Ceiling for scale-up polling")
    capacity_poll_initial: float = Field(default=2.0, description="First poll interval while scaling up")
    capacity_poll_max: float = Field(default=15.0, description="Largest poll interval while scaling up")

    # --- Timeouts ---
    light_command_timeout: float = Field(
        default=120.0,
        description="Wall-clock ceiling for sandboxed commands (seconds)",
    )
    heavy_command_timeout: float = Field(
        default=1800.0,
        description="Wall-clock ceiling for heavy backend commands (seconds)",
    )

    # --- Sessions & workspaces ---
    workspace_root: Path = Field(
        default=Path.home() / ".devrelay" / "workspaces",
        description="Directory holding every user workspace",
    )
    storage_quota_mb: int = Field(default=500, description="Storage quota per user workspace (MiB)")
    session_idle_timeout: float = Field(default=1800.0, description="Idle seconds before a session is evicted")
    max_output_chars: int = Field(default=200_000, description="Cap on captured output per stream")

    # --- Preview proxy ---
    public_base_url: str = Field(
        default="http://localhost:8000",
        description="Externally reachable base URL used to build preview links",
    )
    preview_idle_timeout: float = Field(default=1800.0, description="Idle seconds before a preview binding is removed")
    preview_target_host: str = Field(
        default="",
        description="Host to proxy previews to; empty means the heavy backend's host",
    )
    proxy_timeout_seconds: float = Field(default=30.0, description="Timeout for proxied preview requests")
    preview_health_timeout: float = Field(default=5.0, description="Timeout for preview health probes")

    # --- Background sweeps ---
    sweep_interval_seconds: float = Field(default=60.0, description="Session/preview idle sweep interval")
    preview_health_interval_seconds: float = Field(default=120.0, description="Preview health sweep interval")

    # --- Autonomous agent ---
    agent_max_iterations: int = Field(default=10, description="Maximum plan/execute iterations per agent run")
    agent_timeout_seconds: float = Field(default=300.0, description="Wall-clock budget per agent run")

    # --- Text generation (OpenAI-compatible) ---
    inference_url: str = Field(
        default="http://localhost:11434",
        description="OpenAI-compatible inference server base URL",
    )
    inference_model: str = Field(default="current", description="Model identifier sent with each request")
    inference_api_key: str = Field(default="", description="Bearer token for the inference server")

    # --- Compute worker (runs on the heavy backend host) ---
    compute_projects_root: str = Field(default="/tmp/projects", description="Parent dir for repository checkouts")
    compute_default_dir: str = Field(default="/tmp", description="Working dir when no repository is given")
    compute_public_host: str = Field(
        default="",
        description="Host substituted for loopback addresses in reported dev-server URLs",
    )
    dev_server_command: str = Field(
        default="flutter run -d web-server --web-port={port} --web-hostname=0.0.0.0",
        description="Command template used by /dev-server/start when none is given",
    )
    dev_server_startup_seconds: float = Field(default=30.0, description="Wait for a dev server to report readiness")

    # --- Logging & audit ---
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(
        default="console",
        description="Log format: 'console' for dev, 'json' for production",
    )
    activity_dir: Path = Field(
        default=Path.home() / ".devrelay" / "activity",
        description="Where activity traces are persisted as JSONL",
    )

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def storage_quota_bytes(self) -> int:
        return self.storage_quota_mb * 1024 * 1024


# Singleton — import this everywhere
settings = DevRelaySettings()
