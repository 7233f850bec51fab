#!/usr/bin/env python3
"""
Error types for the MCP orchestrator

Every error carries a stable code, the server id it relates to (when known)
and the wrapped cause. Codes are grouped by concern:

    MCP_1xx  configuration
    MCP_2xx  process lifecycle
    MCP_3xx  authentication / OAuth
    MCP_4xx  communication (IPC, JSON-RPC, HTTP)
    MCP_5xx  state machine
    MCP_9xx  storage
"""

import time
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    # Configuration
    INVALID_CONFIG = "MCP_100"
    MISSING_TRANSPORT = "MCP_101"
    INVALID_TRANSPORT = "MCP_102"
    MISSING_SERVER_ID = "MCP_103"
    SERVER_NOT_FOUND = "MCP_104"
    DUPLICATE_SERVER = "MCP_105"

    # Process
    PROCESS_START_FAILED = "MCP_200"
    PROCESS_CRASHED = "MCP_201"
    PROCESS_TIMEOUT = "MCP_202"
    PROCESS_NOT_RUNNING = "MCP_203"
    PROCESS_KILL_FAILED = "MCP_204"
    COMMAND_NOT_FOUND = "MCP_205"

    # Auth
    AUTH_REQUIRED = "MCP_300"
    TOKEN_EXPIRED = "MCP_301"
    TOKEN_REFRESH_FAILED = "MCP_302"
    OAUTH_DISCOVERY_FAILED = "MCP_303"
    OAUTH_CALLBACK_INVALID = "MCP_304"
    OAUTH_STATE_INVALID = "MCP_305"
    OAUTH_CODE_EXCHANGE_FAILED = "MCP_306"
    OAUTH_TIMEOUT = "MCP_307"
    CLIENT_REGISTRATION_FAILED = "MCP_308"
    AUTH_FAILED = "MCP_309"

    # Communication
    IPC_TIMEOUT = "MCP_400"
    IPC_ERROR = "MCP_401"
    JSONRPC_ERROR = "MCP_402"
    JSONRPC_PARSE_ERROR = "MCP_403"
    INVALID_RESPONSE = "MCP_404"
    CONNECTION_FAILED = "MCP_405"
    CONNECTION_LOST = "MCP_406"
    CONNECTION_TIMEOUT = "MCP_407"
    CONNECTION_CLOSED = "MCP_408"
    REQUEST_TIMEOUT = "MCP_409"

    # State machine
    INVALID_TRANSITION = "MCP_500"
    TRANSITION_BLOCKED = "MCP_501"
    STATE_MACHINE_ERROR = "MCP_502"

    # Storage
    STORAGE_READ_ERROR = "MCP_900"
    STORAGE_WRITE_ERROR = "MCP_901"
    STORAGE_DELETE_ERROR = "MCP_902"

    UNKNOWN = "MCP_999"


# Codes a supervisor retry can plausibly fix
RECOVERABLE_CODES = frozenset({
    ErrorCode.PROCESS_CRASHED,
    ErrorCode.PROCESS_TIMEOUT,
    ErrorCode.CONNECTION_LOST,
    ErrorCode.CONNECTION_TIMEOUT,
    ErrorCode.CONNECTION_FAILED,
    ErrorCode.IPC_TIMEOUT,
    ErrorCode.REQUEST_TIMEOUT,
    ErrorCode.TOKEN_EXPIRED,
})

AUTH_CODES = frozenset({
    ErrorCode.AUTH_REQUIRED,
    ErrorCode.TOKEN_EXPIRED,
    ErrorCode.TOKEN_REFRESH_FAILED,
    ErrorCode.AUTH_FAILED,
})


class MCPError(Exception):
    """Base error for everything raised by the orchestrator."""

    default_code = ErrorCode.UNKNOWN

    def __init__(self, message: str, code: Optional[ErrorCode] = None,
                 server_id: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.server_id = server_id
        self.cause = cause
        self.timestamp = time.time()
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        prefix = f"[{self.code.value}]"
        if self.server_id:
            prefix += f" {self.server_id}:"
        return f"{prefix} {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code.value,
            "codeName": self.code.name,
            "timestamp": self.timestamp,
        }
        if self.server_id:
            data["serverId"] = self.server_id
        if self.cause is not None:
            data["cause"] = str(self.cause)
        return data

    @classmethod
    def wrap(cls, exc: BaseException, server_id: Optional[str] = None,
             code: Optional[ErrorCode] = None) -> "MCPError":
        """Return exc unchanged if it is already an MCPError, else wrap it."""
        if isinstance(exc, MCPError):
            if server_id and not exc.server_id:
                exc.server_id = server_id
            return exc
        return cls(str(exc) or type(exc).__name__, code or ErrorCode.UNKNOWN,
                   server_id=server_id, cause=exc)


class ConfigError(MCPError):
    default_code = ErrorCode.INVALID_CONFIG


class ProcessError(MCPError):
    default_code = ErrorCode.PROCESS_START_FAILED

    def __init__(self, message: str, code: Optional[ErrorCode] = None,
                 server_id: Optional[str] = None, cause: Optional[BaseException] = None,
                 exit_code: Optional[int] = None):
        super().__init__(message, code, server_id, cause)
        self.exit_code = exit_code

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.exit_code is not None:
            data["exitCode"] = self.exit_code
        return data


class AuthError(MCPError):
    default_code = ErrorCode.AUTH_REQUIRED


class CommunicationError(MCPError):
    default_code = ErrorCode.IPC_ERROR

    def __init__(self, message: str, code: Optional[ErrorCode] = None,
                 server_id: Optional[str] = None, cause: Optional[BaseException] = None,
                 jsonrpc_code: Optional[int] = None):
        super().__init__(message, code, server_id, cause)
        self.jsonrpc_code = jsonrpc_code

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.jsonrpc_code is not None:
            data["jsonrpcCode"] = self.jsonrpc_code
        return data


class InvalidTransitionError(MCPError):
    """Raised when an event has no entry in the transition table for the current state."""

    default_code = ErrorCode.INVALID_TRANSITION

    def __init__(self, message: str, code: Optional[ErrorCode] = None,
                 server_id: Optional[str] = None, cause: Optional[BaseException] = None,
                 from_state: Optional[str] = None, event: Optional[str] = None):
        super().__init__(message, code, server_id, cause)
        self.from_state = from_state
        self.event = event

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["fromState"] = self.from_state
        data["event"] = self.event
        return data


class StorageError(MCPError):
    default_code = ErrorCode.STORAGE_READ_ERROR

    def __init__(self, message: str, code: Optional[ErrorCode] = None,
                 server_id: Optional[str] = None, cause: Optional[BaseException] = None,
                 key: Optional[str] = None):
        super().__init__(message, code, server_id, cause)
        self.key = key


def is_recoverable(error: BaseException) -> bool:
    return isinstance(error, MCPError) and error.code in RECOVERABLE_CODES


def requires_auth(error: BaseException) -> bool:
    return isinstance(error, MCPError) and error.code in AUTH_CODES
