"""
Configuration management for Capsule server.

Precedence: env vars > .env file > capsule.yaml > defaults

Config file: $CAPSULE_CONFIG, or ./capsule.yaml when unset.
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


def _resolve_config_path() -> Path:
    """Resolve the YAML config path from env or default."""
    raw = os.environ.get("CAPSULE_CONFIG", "")
    if raw:
        return Path(raw).expanduser().resolve()
    return Path.cwd() / "capsule.yaml"


def _load_yaml_config(config_file: Path) -> dict[str, Any]:
    """Load capsule.yaml, returning an empty dict when absent or malformed."""
    if not config_file.exists():
        return {}
    try:
        with open(config_file) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            logger.warning(f"capsule.yaml is not a dict, ignoring: {config_file}")
            return {}
        return data
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Error loading capsule.yaml: {e}")
        return {}


def save_yaml_config(config_file: Path, data: dict[str, Any]) -> Path:
    """Write config values to a YAML file."""
    config_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config_file, "w") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
    return config_file


class Settings(BaseSettings):
    """Server configuration. Precedence: env vars > .env > capsule.yaml > defaults."""

    # Core settings
    data_dir: Path = Field(
        default=Path("./capsule-data"),
        description="Directory holding the database and other server state",
    )
    port: int = Field(default=3600, description="Server port")
    host: str = Field(default="0.0.0.0", description="Server bind address")
    cors_origins: str = Field(
        default="*",
        description="Comma-separated list of allowed CORS origins, or * for all",
    )

    # Database
    db_path: Optional[Path] = Field(
        default=None,
        description="Path to SQLite database (defaults to data_dir/capsule.db)",
    )

    # Docker
    docker_binary: str = Field(default="docker", description="Docker CLI executable")
    container_prefix: str = Field(
        default="capsule",
        description="Container name prefix; containers are named <prefix>-<sandbox id>",
    )
    default_network: str = Field(
        default="capsule-net",
        description="Bridge network sandboxes are attached to",
    )
    default_image: str = Field(
        default="capsule-sandbox:latest",
        description="Image used when a sandbox config names none",
    )
    docker_command_timeout: float = Field(
        default=60.0,
        description="Timeout in seconds for a single docker CLI call",
    )
    stop_timeout_seconds: int = Field(
        default=10,
        description="Grace period passed to docker stop/restart",
    )

    # Agent runtime
    runtime_port: int = Field(
        default=4096,
        description="Port the agent runtime listens on inside each sandbox",
    )
    runtime_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for agent runtime HTTP requests",
    )

    # Chat sync
    sync_concurrency: int = Field(
        default=4,
        description="Maximum number of sessions synced in parallel",
    )
    sync_reconnect_base_delay: float = Field(
        default=1.0,
        description="Base delay in seconds for live sync reconnect backoff",
    )
    sync_reconnect_max_attempts: int = Field(
        default=10,
        description="Reconnect attempts before live sync gives up",
    )
    live_sync_enabled: bool = Field(
        default=False,
        description="Subscribe to runtime events for running sandboxes at startup",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string",
    )

    # Development
    debug: bool = Field(default=False, description="Enable debug mode")
    reload: bool = Field(default=False, description="Enable auto-reload")

    model_config = {
        "env_prefix": "",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="before")
    @classmethod
    def _inject_yaml_config(cls, data: Any) -> Any:
        """Inject capsule.yaml values as fallbacks below env vars and .env."""
        if not isinstance(data, dict):
            data = {}

        yaml_config = _load_yaml_config(_resolve_config_path())

        for key, value in yaml_config.items():
            if key not in data or data[key] is None:
                env_val = os.environ.get(key.upper()) or os.environ.get(key)
                if env_val is None:
                    data[key] = value

        return data

    @property
    def database_path(self) -> Path:
        """Get the database path, defaulting to data_dir/capsule.db"""
        if self.db_path:
            return self.db_path
        return self.data_dir / "capsule.db"

    @property
    def cors_origins_list(self) -> list[str] | None:
        """Parse CORS origins into a list, or None for wildcard."""
        if self.cors_origins == "*":
            return None
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get the global settings instance."""
    return settings



def reload_settings() -> Settings:
    """Reload settings from environment."""
    global settings
    settings = Settings()
    return settings
