"""
MCP Orchestrator - lifecycle, supervision and OAuth for MCP tool servers

Keeps a set of stdio and HTTP MCP servers connected, authenticated and
recoverable behind one explicitly constructed Orchestrator object.
"""

try:
    from importlib.metadata import PackageNotFoundError, version
    __version__ = version("mcp-orchestrator")
except PackageNotFoundError:
    # Running from a source checkout without an install
    __version__ = "unknown"

from .errors import (
    AuthError,
    CommunicationError,
    ConfigError,
    ErrorCode,
    InvalidTransitionError,
    MCPError,
    ProcessError,
    StorageError,
)
from .state import ServerState, StateEvent


def __getattr__(name):
    # Orchestrator pulls in aiohttp/httpx, only load it on first use
    if name == "Orchestrator":
        from .orchestrator import Orchestrator
        return Orchestrator
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "AuthError",
    "CommunicationError",
    "ConfigError",
    "ErrorCode",
    "InvalidTransitionError",
    "MCPError",
    "Orchestrator",
    "ProcessError",
    "ServerState",
    "StateEvent",
    "StorageError",
    "__version__",
]
