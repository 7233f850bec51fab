#!/usr/bin/env python3
"""
MCP Config Parser
Normalizes the supported configuration shapes into ServerConfig records:

    array       [{"id": ..., "name": ..., "transport": {...}}, ...]
    mcpServers  {"mcpServers": {"name": {"command": ..., "args": [...]}}}
    single      {"name": {"command": ...}} or {"name": {"url": ...}}

Shapes are tried in that order; a document matching none of them is rejected.
"""

import json
import logging
import re
import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .errors import ConfigError, ErrorCode, MCPError
from .models import HttpTransport, ServerConfig, StdioTransport, auth_from_dict
from .state import ServerState

logger = logging.getLogger(__name__)


class ConfigFormat(str, Enum):
    ARRAY = "array"
    MCP_SERVERS = "mcpServers"
    SINGLE = "single"


# Checked in order, first match wins
CATEGORY_PATTERNS: List[Tuple[str, "re.Pattern[str]"]] = [
    ("database", re.compile(r"postgres|mysql|sqlite|database|db")),
    ("filesystem", re.compile(r"filesystem|files?|fs")),
    ("development", re.compile(r"github|gitlab|git")),
    ("communication", re.compile(r"slack|discord|email|teams")),
    ("productivity", re.compile(r"notion|todoist|asana|jira")),
    ("ai", re.compile(r"openai|anthropic|claude|llm|gpt|gemini|ollama|mistral")),
    ("api", re.compile(r"api|stripe|supabase")),
]

Document = Union[str, bytes, Mapping[str, Any], List[Any]]


def generate_server_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"


def infer_category(name: str, raw: Mapping[str, Any]) -> str:
    parts = [name, raw.get("command")] + list(raw.get("args") or []) + [raw.get("description")]
    text = " ".join(str(p) for p in parts if p).lower()
    for category, pattern in CATEGORY_PATTERNS:
        if pattern.search(text):
            return category
    return "other"


def _is_raw_server(value: Any) -> bool:
    return isinstance(value, Mapping) and ("command" in value or "url" in value)


class ConfigParser:
    """Stateless transform from a config document to ServerConfig records."""

    def detect_format(self, document: Any) -> ConfigFormat:
        if isinstance(document, list):
            return ConfigFormat.ARRAY
        if isinstance(document, Mapping):
            if isinstance(document.get("mcpServers"), Mapping):
                return ConfigFormat.MCP_SERVERS
            if len(document) == 1 and _is_raw_server(next(iter(document.values()))):
                return ConfigFormat.SINGLE
        raise ConfigError(
            "Unrecognized config shape: expected an array, an object with 'mcpServers', "
            "or a single named server with 'command' or 'url'",
            ErrorCode.INVALID_CONFIG,
        )

    def parse(self, document: Document) -> List[ServerConfig]:
        data = self._load(document)
        fmt = self.detect_format(data)
        if fmt is ConfigFormat.ARRAY:
            servers = self._parse_array(data)
        elif fmt is ConfigFormat.MCP_SERVERS:
            servers = [self._parse_raw(name, raw) for name, raw in data["mcpServers"].items()]
        else:
            name, raw = next(iter(data.items()))
            servers = [self._parse_raw(name, raw)]
        logger.debug(f"Parsed {len(servers)} server(s) from {fmt.value} config")
        return servers

    def parse_single(self, document: Document) -> Optional[ServerConfig]:
        servers = self.parse(document)
        return servers[0] if servers else None

    def validate(self, text: str) -> Dict[str, Any]:
        """Check a config string without keeping the result."""
        try:
            data = self._load(text)
            fmt = self.detect_format(data)
            servers = self.parse(data)
        except MCPError as e:
            return {"valid": False, "error": e.message, "code": e.code.value}
        return {"valid": True, "format": fmt.value, "count": len(servers)}

    # -------- helpers --------
    def _load(self, document: Document) -> Any:
        if isinstance(document, (str, bytes)):
            try:
                return json.loads(document)
            except json.JSONDecodeError as e:
                raise ConfigError(f"Invalid JSON: {e.msg} (line {e.lineno})",
                                  ErrorCode.INVALID_CONFIG, cause=e)
        return document

    def _parse_array(self, items: List[Any]) -> List[ServerConfig]:
        servers = []
        for index, item in enumerate(items):
            if not isinstance(item, Mapping):
                raise ConfigError(f"Invalid server at index {index}: expected object",
                                  ErrorCode.INVALID_CONFIG)
            if item.get("id") and isinstance(item.get("transport"), Mapping):
                server = ServerConfig.from_dict(item)
                self.validate_server(server)
                servers.append(server)
            else:
                name = item.get("name") or item.get("id") or f"server-{index}"
                servers.append(self._parse_raw(name, item, existing_id=item.get("id")))
        return servers

    def _parse_raw(self, name: str, raw: Any, existing_id: Optional[str] = None) -> ServerConfig:
        if not isinstance(raw, Mapping):
            raise ConfigError(f'Server "{name}": expected an object', ErrorCode.INVALID_CONFIG)

        if raw.get("url") or raw.get("type") in ("http", "streamable-http", "sse"):
            if not raw.get("url"):
                raise ConfigError(f'Server "{name}": URL required for HTTP transport',
                                  ErrorCode.INVALID_CONFIG)
            transport = HttpTransport(url=raw["url"], headers=dict(raw.get("headers") or {}))
        elif raw.get("command"):
            transport = StdioTransport(
                command=raw["command"],
                args=[str(a) for a in raw.get("args") or []],
                env={str(k): str(v) for k, v in (raw.get("env") or {}).items()},
                cwd=raw.get("cwd"),
            )
        else:
            raise ConfigError(f"Server \"{name}\": either 'command' or 'url' is required",
                              ErrorCode.MISSING_TRANSPORT)

        server = ServerConfig(
            id=existing_id or generate_server_id(),
            name=name,
            transport=transport,
            enabled=bool(raw.get("enabled", False)),
            auth=auth_from_dict(raw.get("auth")),
            category=raw.get("category") or infer_category(name, raw),
            description=raw.get("description"),
            status=ServerState.IDLE,
        )
        self.validate_server(server)
        return server

    @staticmethod
    def validate_server(server: ServerConfig):
        if not server.id:
            raise ConfigError("Server ID is required", ErrorCode.MISSING_SERVER_ID)
        if not server.name:
            raise ConfigError("Server name is required", ErrorCode.INVALID_CONFIG, server_id=server.id)
        if isinstance(server.transport, StdioTransport) and not server.transport.command:
            raise ConfigError(f'Server "{server.name}": command is required for stdio transport',
                              ErrorCode.INVALID_CONFIG, server_id=server.id)
        if isinstance(server.transport, HttpTransport) and not server.transport.url:
            raise ConfigError(f'Server "{server.name}": URL is required for HTTP transport',
                              ErrorCode.INVALID_CONFIG, server_id=server.id)
