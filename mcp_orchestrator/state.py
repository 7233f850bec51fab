#!/usr/bin/env python3
"""
Server lifecycle states, events and the transition table
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional


class ServerState(str, Enum):
    IDLE = "IDLE"
    VALIDATING = "VALIDATING"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    ERROR = "ERROR"
    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTHENTICATING = "AUTHENTICATING"
    TOKEN_REFRESHING = "TOKEN_REFRESHING"
    CONFIG_ERROR = "CONFIG_ERROR"
    RUNTIME_ERROR = "RUNTIME_ERROR"
    CRASHED = "CRASHED"


class StateEvent(str, Enum):
    VALIDATE = "VALIDATE"
    VALID = "VALID"
    INVALID = "INVALID"
    START = "START"
    STARTED = "STARTED"
    STOP = "STOP"
    STOPPED = "STOPPED"
    ERROR = "ERROR"
    CRASHED = "CRASHED"
    RECOVER = "RECOVER"
    RESET = "RESET"
    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTHENTICATE = "AUTHENTICATE"
    AUTH_SUCCESS = "AUTH_SUCCESS"
    AUTH_FAILED = "AUTH_FAILED"
    REFRESH_TOKEN = "REFRESH_TOKEN"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    TOKEN_FAILED = "TOKEN_FAILED"


S = ServerState
E = StateEvent

# state -> {event -> next state}; a missing pair is an invalid transition
TRANSITIONS: Mapping[ServerState, Mapping[StateEvent, ServerState]] = {
    S.IDLE: {
        E.VALIDATE: S.VALIDATING,
        E.START: S.VALIDATING,
        E.ERROR: S.ERROR,
    },
    S.VALIDATING: {
        E.VALID: S.STARTING,
        E.INVALID: S.CONFIG_ERROR,
        E.AUTH_REQUIRED: S.AUTH_REQUIRED,
        E.ERROR: S.CONFIG_ERROR,
        E.STOP: S.STOPPING,
    },
    S.STARTING: {
        E.STARTED: S.RUNNING,
        E.ERROR: S.ERROR,
        E.CRASHED: S.CRASHED,
        E.STOP: S.STOPPING,
    },
    S.RUNNING: {
        E.STOP: S.STOPPING,
        E.ERROR: S.RUNTIME_ERROR,
        E.CRASHED: S.CRASHED,
        E.REFRESH_TOKEN: S.TOKEN_REFRESHING,
    },
    S.STOPPING: {
        E.STOPPED: S.STOPPED,
        E.ERROR: S.ERROR,
        E.CRASHED: S.CRASHED,
    },
    S.STOPPED: {
        E.START: S.VALIDATING,
        E.RESET: S.IDLE,
    },
    S.ERROR: {
        E.RESET: S.IDLE,
        E.START: S.VALIDATING,
        E.RECOVER: S.VALIDATING,
    },
    S.AUTH_REQUIRED: {
        E.AUTHENTICATE: S.AUTHENTICATING,
        E.RESET: S.IDLE,
        E.START: S.VALIDATING,
    },
    S.AUTHENTICATING: {
        E.AUTH_SUCCESS: S.VALIDATING,
        E.AUTH_FAILED: S.AUTH_REQUIRED,
        E.ERROR: S.AUTH_REQUIRED,
        E.RESET: S.IDLE,
    },
    S.TOKEN_REFRESHING: {
        E.TOKEN_REFRESHED: S.RUNNING,
        E.TOKEN_FAILED: S.AUTH_REQUIRED,
        E.ERROR: S.AUTH_REQUIRED,
        E.CRASHED: S.CRASHED,
    },
    S.CONFIG_ERROR: {
        E.RESET: S.IDLE,
        E.START: S.VALIDATING,
    },
    S.RUNTIME_ERROR: {
        E.RESET: S.IDLE,
        E.START: S.VALIDATING,
        E.RECOVER: S.VALIDATING,
    },
    S.CRASHED: {
        E.RESET: S.IDLE,
        E.START: S.VALIDATING,
        E.RECOVER: S.VALIDATING,
    },
}

REST_STATES: FrozenSet[ServerState] = frozenset({
    S.IDLE, S.RUNNING, S.STOPPED, S.ERROR, S.AUTH_REQUIRED,
    S.CONFIG_ERROR, S.RUNTIME_ERROR, S.CRASHED,
})
TRANSIENT_STATES: FrozenSet[ServerState] = frozenset({
    S.VALIDATING, S.STARTING, S.STOPPING, S.AUTHENTICATING, S.TOKEN_REFRESHING,
})
AUTH_STATES: FrozenSet[ServerState] = frozenset({
    S.AUTH_REQUIRED, S.AUTHENTICATING, S.TOKEN_REFRESHING,
})
ERROR_STATES: FrozenSet[ServerState] = frozenset({
    S.ERROR, S.CONFIG_ERROR, S.RUNTIME_ERROR, S.CRASHED,
})
STARTABLE_STATES: FrozenSet[ServerState] = frozenset({
    S.IDLE, S.STOPPED, S.ERROR, S.AUTH_REQUIRED, S.CONFIG_ERROR, S.RUNTIME_ERROR, S.CRASHED,
})
STOPPABLE_STATES: FrozenSet[ServerState] = frozenset({
    S.RUNNING, S.STARTING, S.VALIDATING,
})
ATTENTION_STATES: FrozenSet[ServerState] = frozenset({
    S.AUTH_REQUIRED, S.CONFIG_ERROR, S.ERROR, S.RUNTIME_ERROR, S.CRASHED,
})

del S, E


def get_next_state(state: ServerState, event: StateEvent) -> Optional[ServerState]:
    return TRANSITIONS.get(state, {}).get(event)


def is_valid_transition(state: ServerState, event: StateEvent) -> bool:
    return get_next_state(state, event) is not None


def can_start(state: ServerState) -> bool:
    return state in STARTABLE_STATES


def can_stop(state: ServerState) -> bool:
    return state in STOPPABLE_STATES


def is_transient_state(state: ServerState) -> bool:
    return state in TRANSIENT_STATES


def is_error_state(state: ServerState) -> bool:
    return state in ERROR_STATES


def requires_attention(state: ServerState) -> bool:
    return state in ATTENTION_STATES


def parse_state(value: Any, default: ServerState = ServerState.IDLE) -> ServerState:
    """Lenient conversion used when reading persisted status values."""
    if isinstance(value, ServerState):
        return value
    try:
        return ServerState(str(value).upper())
    except ValueError:
        return default


@dataclass
class StateMetadata:
    """Metadata attached to the current state, merged on every transition."""
    entered_at: float = field(default_factory=time.time)
    previous_state: Optional[ServerState] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    exit_code: Optional[int] = None
    restart_count: int = 0
    last_restart_at: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    KNOWN_FIELDS = ("entered_at", "previous_state", "error", "error_code",
                    "exit_code", "restart_count", "last_restart_at")

    def merged(self, patch: Mapping[str, Any]) -> "StateMetadata":
        """Return a new metadata object with patch applied on top of this one."""
        values = {name: getattr(self, name) for name in self.KNOWN_FIELDS}
        extra = dict(self.extra)
        for key, value in patch.items():
            if key in self.KNOWN_FIELDS:
                values[key] = value
            else:
                extra[key] = value
        return StateMetadata(extra=extra, **values)

    def copy(self) -> "StateMetadata":
        return self.merged({})

    def to_dict(self) -> Dict[str, Any]:
        data = {name: getattr(self, name) for name in self.KNOWN_FIELDS}
        if self.previous_state is not None:
            data["previous_state"] = self.previous_state.value
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StateMetadata":
        patch = dict(data)
        if patch.get("previous_state") is not None:
            patch["previous_state"] = parse_state(patch["previous_state"])
        return cls().merged(patch)


@dataclass(frozen=True)
class StateHistoryEntry:
    timestamp: float
    state: ServerState
    event: StateEvent
    previous_state: ServerState
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "state": self.state.value,
            "event": self.event.value,
            "previous_state": self.previous_state.value,
            "metadata": dict(self.metadata),
        }
