"""Configuration: Pydantic models for agentspawn settings."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

DEFAULT_REGISTRY_PATH = "~/.agentspawn/sessions.json"


class LockConfig(BaseModel):
    """Advisory lock tuning for registry mutations.

    Retry delays grow as ``min_timeout * factor ** attempt`` capped at
    ``max_timeout``. A marker older than ``stale`` seconds is reclaimed.
    """

    retries: int = Field(default=5, ge=0)
    factor: float = Field(default=2.0, ge=1.0)
    min_timeout: float = Field(default=0.1, gt=0)
    max_timeout: float = Field(default=2.0, gt=0)
    stale: float = Field(default=10.0, gt=0)


class WatcherConfig(BaseModel):
    """Registry change notification tuning."""

    debounce: float = Field(default=0.1, ge=0, description="Seconds to collapse write bursts")
    fallback_interval: float = Field(
        default=30.0, gt=0, description="Seconds between mtime polls"
    )
    retry_interval: float = Field(
        default=0.5, ge=0, description="Delay before re-attaching a lost native watch"
    )
    max_retries: int = Field(
        default=10, ge=0, description="Consecutive re-attach failures before polling only"
    )


class AgentSpawnConfig(BaseModel):
    """Top-level agentspawn configuration."""

    registry_path: str = Field(default=DEFAULT_REGISTRY_PATH)
    log_level: str = Field(default="info")
    shutdown_timeout: float = Field(
        default=5.0, gt=0, description="Seconds to wait after SIGTERM before SIGKILL"
    )
    final_margin: float = Field(
        default=3.0,
        ge=0,
        description="Extra seconds after shutdown_timeout before stop() gives up waiting",
    )
    default_command: str = Field(
        default="claude", description="Executable spawned when no target is given"
    )
    lock: LockConfig = Field(default_factory=LockConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)

    @property
    def resolved_registry_path(self) -> Path:
        return Path(self.registry_path).expanduser()

    @classmethod
    def load(cls, config_path: str | None = None) -> AgentSpawnConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            AGENTSPAWN_REGISTRY_PATH     - Registry file location
            AGENTSPAWN_LOG_LEVEL         - debug/info/warning/error
            AGENTSPAWN_SHUTDOWN_TIMEOUT  - Graceful shutdown timeout (seconds)
            AGENTSPAWN_COMMAND           - Default executable for new sessions
        """
        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        env_registry = os.environ.get("AGENTSPAWN_REGISTRY_PATH")
        if env_registry:
            config_data["registry_path"] = env_registry

        env_level = os.environ.get("AGENTSPAWN_LOG_LEVEL")
        if env_level:
            config_data["log_level"] = env_level.lower()

        env_timeout = os.environ.get("AGENTSPAWN_SHUTDOWN_TIMEOUT")
        if env_timeout:
            config_data["shutdown_timeout"] = float(env_timeout)

        env_command = os.environ.get("AGENTSPAWN_COMMAND")
        if env_command:
            config_data["default_command"] = env_command

        return cls.model_validate(config_data)
