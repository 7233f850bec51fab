#!/usr/bin/env python3
"""
Per-server finite state machine

Pure and synchronous: no I/O, no awaits. Transitions are looked up in
state.TRANSITIONS; a missing entry raises InvalidTransitionError and leaves
the machine untouched.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional

from .errors import ErrorCode, InvalidTransitionError
from .events import EventEmitter, Unsubscribe
from .state import (
    TRANSITIONS,
    ServerState,
    StateEvent,
    StateHistoryEntry,
    StateMetadata,
    get_next_state,
    parse_state,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_HISTORY = 50

# (from_state, to_state, event, metadata_patch) -> bool; False vetoes
BeforeHook = Callable[[ServerState, ServerState, StateEvent, Mapping[str, Any]], Any]
AfterHook = Callable[[ServerState, ServerState, StateEvent, StateMetadata], None]


@dataclass(frozen=True)
class StateChange:
    """Payload delivered to state machine subscribers."""
    server_id: str
    previous_state: ServerState
    state: ServerState
    event: StateEvent
    metadata: StateMetadata
    forced: bool = False


class StateMachine:

    def __init__(self, server_id: str, initial_state: ServerState = ServerState.IDLE,
                 initial_metadata: Optional[Mapping[str, Any]] = None,
                 max_history: int = DEFAULT_MAX_HISTORY,
                 before_hooks: Iterable[BeforeHook] = (),
                 after_hooks: Iterable[AfterHook] = ()):
        self.server_id = server_id
        self._state = initial_state
        self._metadata = StateMetadata().merged(initial_metadata or {})
        self._history: Deque[StateHistoryEntry] = deque(maxlen=max_history)
        self._before_hooks: List[BeforeHook] = list(before_hooks)
        self._after_hooks: List[AfterHook] = list(after_hooks)
        self._events: EventEmitter[StateChange] = EventEmitter(f"state:{server_id}")

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def metadata(self) -> StateMetadata:
        return self._metadata.copy()

    @property
    def history(self) -> List[StateHistoryEntry]:
        return list(self._history)

    @property
    def max_history(self) -> int:
        return self._history.maxlen or DEFAULT_MAX_HISTORY

    def available_events(self) -> List[StateEvent]:
        return list(TRANSITIONS.get(self._state, {}).keys())

    def can_transition(self, event: StateEvent) -> bool:
        return get_next_state(self._state, event) is not None

    def transition(self, event: StateEvent, **patch: Any) -> bool:
        """Apply event to the current state.

        Returns False when a before-hook vetoed the transition. Raises
        InvalidTransitionError when the table has no entry for the pair.
        """
        from_state = self._state
        to_state = get_next_state(from_state, event)
        if to_state is None:
            raise InvalidTransitionError(
                f"Invalid transition: {from_state.value} + {event.value}",
                ErrorCode.INVALID_TRANSITION,
                server_id=self.server_id,
                from_state=from_state.value,
                event=event.value,
            )

        for hook in self._before_hooks:
            if not hook(from_state, to_state, event, patch):
                logger.debug(f"[{self.server_id}] transition {from_state.value} -> {to_state.value} vetoed")
                return False

        self._apply(from_state, to_state, event, patch, forced=False)

        for hook in list(self._after_hooks):
            try:
                hook(from_state, to_state, event, self.metadata)
            except Exception:
                logger.exception(f"[{self.server_id}] after-hook failed")
        return True

    def force_state(self, state: ServerState, **patch: Any) -> None:
        """Jump to state without consulting the table (recorded as RESET)."""
        from_state = self._state
        logger.info(f"[{self.server_id}] forcing state {from_state.value} -> {state.value}")
        self._apply(from_state, state, StateEvent.RESET, patch, forced=True)

    def reset(self) -> None:
        self.force_state(ServerState.IDLE)

    def _apply(self, from_state: ServerState, to_state: ServerState, event: StateEvent,
               patch: Mapping[str, Any], forced: bool) -> None:
        now = time.time()
        update = dict(patch)
        update["entered_at"] = now
        update["previous_state"] = from_state
        self._state = to_state
        self._metadata = self._metadata.merged(update)
        self._history.append(StateHistoryEntry(
            timestamp=now,
            state=to_state,
            event=event,
            previous_state=from_state,
            metadata=dict(patch),
        ))
        logger.debug(f"[{self.server_id}] {from_state.value} --{event.value}--> {to_state.value}")
        self._events.emit(StateChange(
            server_id=self.server_id,
            previous_state=from_state,
            state=to_state,
            event=event,
            metadata=self.metadata,
            forced=forced,
        ))

    def subscribe(self, listener: Callable[[StateChange], Any]) -> Unsubscribe:
        return self._events.subscribe(listener)

    def add_before_hook(self, hook: BeforeHook) -> Unsubscribe:
        self._before_hooks.append(hook)
        return lambda: self._before_hooks.remove(hook) if hook in self._before_hooks else None

    def add_after_hook(self, hook: AfterHook) -> Unsubscribe:
        self._after_hooks.append(hook)
        return lambda: self._after_hooks.remove(hook) if hook in self._after_hooks else None

    def dispose(self) -> None:
        self._events.clear()
        self._before_hooks.clear()
        self._after_hooks.clear()

    # -------- Serialization --------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "serverId": self.server_id,
            "state": self._state.value,
            "metadata": self._metadata.to_dict(),
            "history": [entry.to_dict() for entry in self._history],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], max_history: int = DEFAULT_MAX_HISTORY) -> "StateMachine":
        machine = cls(data["serverId"], parse_state(data.get("state")), max_history=max_history)
        machine._metadata = StateMetadata.from_dict(data.get("metadata") or {})
        for item in data.get("history") or []:
            try:
                machine._history.append(StateHistoryEntry(
                    timestamp=float(item["timestamp"]),
                    state=ServerState(item["state"]),
                    event=StateEvent(item["event"]),
                    previous_state=ServerState(item["previous_state"]),
                    metadata=dict(item.get("metadata") or {}),
                ))
            except (KeyError, ValueError, TypeError):
                logger.warning(f"[{machine.server_id}] skipping malformed history entry")
        return machine
