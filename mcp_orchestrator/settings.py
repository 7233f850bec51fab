#!/usr/bin/env python3
"""
Orchestrator settings loaded from a TOML file.

    [supervisor]
    auto_restart = true
    restart_delay = 5.0

    [token]
    refresh_buffer = 300.0

    [registry]
    data_dir = "~/.mcp-orchestrator"

    [api]
    port = 5859

Every section and key is optional. MCP_ORCHESTRATOR_SETTINGS overrides the
file location.
"""

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import toml

from .errors import ConfigError, ErrorCode

logger = logging.getLogger(__name__)

SETTINGS_ENV_VAR = "MCP_ORCHESTRATOR_SETTINGS"
DEFAULT_SETTINGS_FILE = "settings.toml"


@dataclass
class SupervisorSettings:
    auto_restart: bool = True
    max_restart_attempts: int = 3
    restart_delay: float = 5.0
    restart_backoff_multiplier: float = 2.0
    max_restart_delay: float = 60.0
    health_check_enabled: bool = True
    health_check_interval: float = 30.0
    health_check_timeout: float = 10.0
    restart_unhealthy: bool = False


@dataclass
class TokenSettings:
    callback_scheme: str = "mcp-app"
    redirect_uri: Optional[str] = None
    refresh_buffer: float = 300.0
    flow_timeout: float = 300.0
    client_name: str = "MCP Orchestrator"
    loopback_port: Optional[int] = None


@dataclass
class RegistrySettings:
    data_dir: str = "~/.mcp-orchestrator"
    config_name: str = "mcp_servers.json"
    auto_recover: bool = True
    auto_fetch_capabilities: bool = True
    max_history: int = 50
    watch_interval: float = 1.0


@dataclass
class ServerSettings:
    shutdown_timeout: float = 5.0
    request_timeout: float = 30.0


@dataclass
class ApiSettings:
    host: str = "127.0.0.1"
    port: int = 5859
    log_level: str = "INFO"


def _section(cls, name: str, values: Any):
    if values is None:
        return cls()
    if not isinstance(values, Mapping):
        raise ConfigError(f"Settings section [{name}] must be a table", ErrorCode.INVALID_CONFIG)
    known = {f.name for f in fields(cls)}
    for key in values:
        if key not in known:
            logger.warning(f"Ignoring unknown setting {name}.{key}")
    return cls(**{k: v for k, v in values.items() if k in known})


@dataclass
class Settings:
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    token: TokenSettings = field(default_factory=TokenSettings)
    registry: RegistrySettings = field(default_factory=RegistrySettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    api: ApiSettings = field(default_factory=ApiSettings)
    source: Optional[str] = None

    @property
    def data_dir(self) -> Path:
        return Path(self.registry.data_dir).expanduser()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Settings":
        sections = {
            "supervisor": SupervisorSettings,
            "token": TokenSettings,
            "registry": RegistrySettings,
            "server": ServerSettings,
            "api": ApiSettings,
        }
        for key in data:
            if key not in sections:
                logger.warning(f"Ignoring unknown settings section [{key}]")
        return cls(**{name: _section(section, name, data.get(name)) for name, section in sections.items()})

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Settings":
        path = os.environ.get(SETTINGS_ENV_VAR) or path or DEFAULT_SETTINGS_FILE
        settings_path = Path(path).expanduser()
        if not settings_path.exists():
            logger.debug(f"No settings file at {settings_path}, using defaults")
            return cls()
        try:
            with open(settings_path, "r") as f:
                data = toml.load(f)
        except toml.TomlDecodeError as e:
            raise ConfigError(f"Invalid settings file {settings_path}: {e}", ErrorCode.INVALID_CONFIG, cause=e)
        settings = cls.from_dict(data)
        settings.source = str(settings_path)
        logger.info(f"Loaded settings from {settings_path}")
        return settings

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("source", None)
        return data
