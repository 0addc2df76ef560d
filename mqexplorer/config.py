"""App configuration loading helpers."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import tomllib

from pydantic import BaseModel, Field, ValidationError

from .models import ProviderKind

CONFIG_FILE = Path.home() / ".config" / "mqexplorer" / "config.toml"
CONFIG_ENV_VAR = "MQEXPLORER_CONFIG"

LOG = logging.getLogger(__name__)


class TimeoutSettings(BaseModel):
    """Bounds on every network wait, in seconds."""

    browse_wait_seconds: float = Field(default=5.0, gt=0)
    browse_step_seconds: float = Field(default=2.0, gt=0)
    inquiry_seconds: float = Field(default=3.0, gt=0)
    receive_wait_seconds: float = Field(default=2.0, gt=0)
    clear_wait_seconds: float = Field(default=5.0, gt=0)


class ProviderSettings(BaseModel):
    """Behaviour knobs shared by all provider adapters."""

    default_browse_limit: int = Field(default=10, ge=1)
    delete_scan_limit: int = Field(default=100, ge=1)
    visibility_timeout_seconds: int = Field(default=30, ge=0, le=43200)
    verify_depth_after_put: bool = True
    show_system_queues: bool = False
    consumer_group_prefix: str = "mqexplorer"


class ConnectionProfileConfig(BaseModel):
    """Connection profile entry as read from config.toml."""

    id: str
    name: str
    kind: ProviderKind
    params: dict[str, Any] = Field(default_factory=dict)


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    log_level: str = "INFO"
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    providers: ProviderSettings = Field(default_factory=ProviderSettings)
    profiles: list[ConnectionProfileConfig] = Field(default_factory=list)

    def profile(self, profile_id: str) -> ConnectionProfileConfig | None:
        for profile in self.profiles:
            if profile.id == profile_id:
                return profile
        return None


def config_path() -> Path:
    """Location of the config file, honouring the environment override."""

    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return CONFIG_FILE


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    target = path or config_path()
    try:
        data = _read_config_file(target)
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError) as exc:
        LOG.warning("Ignoring unreadable config file", extra={"path": str(target), "error": str(exc)})
        return AppConfig()

    profiles: list[ConnectionProfileConfig] = []
    for entry in data.pop("profiles", []):
        try:
            profiles.append(ConnectionProfileConfig(**entry))
        except ValidationError as exc:
            LOG.warning("Skipping invalid connection profile", extra={"profile": entry.get("id"), "error": str(exc)})

    try:
        return AppConfig(profiles=profiles, **data)
    except ValidationError as exc:
        LOG.warning("Ignoring invalid config settings", extra={"path": str(target), "error": str(exc)})
        return AppConfig(profiles=profiles)


def configure_logging(config: AppConfig) -> None:
    """Install a basic stderr handler at the configured level."""

    level = logging.getLevelName(config.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _read_config_file(path: Path) -> dict[str, Any]:
    with path.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, Any] = {}
    log_level = raw.get("log_level")
    if isinstance(log_level, str):
        data["log_level"] = log_level
    for section in ("timeouts", "providers"):
        values = raw.get(section)
        if isinstance(values, dict):
            data[section] = values
    profiles = raw.get("profiles")
    if isinstance(profiles, list):
        data["profiles"] = [
            profile
            for profile in profiles
            if isinstance(profile, dict) and profile.get("id") and profile.get("kind")
        ]
    return data


__all__ = [
    "AppConfig",
    "CONFIG_ENV_VAR",
    "CONFIG_FILE",
    "ConnectionProfileConfig",
    "ProviderSettings",
    "TimeoutSettings",
    "config_path",
    "configure_logging",
    "load_config",
]
