"""Event Sourcing for the engine — append-only event log with replay capability."""

from __future__ import annotations

import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from .fsm import EngineState


@dataclass
class EngineEvent:
    """A single engine occurrence: a state transition or a notable step."""

    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)
    session_id: str = ""
    kind: str = ""  # "transition", "tool_call", "tool_result", "stream_aborted", ...
    from_state: str = ""
    to_state: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_transition(self) -> bool:
        return bool(self.to_state)


class EventStore(ABC):
    """Abstract event store for engine events."""

    @abstractmethod
    def append(self, event: EngineEvent) -> None:
        """Append an event to the store."""

    @abstractmethod
    def events(self, session_id: str | None = None) -> list[EngineEvent]:
        """Retrieve events, optionally filtered by session."""

    @abstractmethod
    def replay(self, session_id: str, target_event_id: str | None = None) -> EngineState:
        """Replay a session's transitions up to *target_event_id* and return the final state."""

    @abstractmethod
    def snapshot(self, session_id: str) -> dict[str, Any]:
        """Return a snapshot of the current state for the given session."""

    @abstractmethod
    def clear(self, session_id: str | None = None) -> int:
        """Remove events (optionally for a specific session). Returns count removed."""


class InMemoryEventStore(EventStore):
    """In-memory implementation of :class:`EventStore`."""

    def __init__(self) -> None:
        self._events: list[EngineEvent] = []

    def append(self, event: EngineEvent) -> None:
        self._events.append(event)

    def events(self, session_id: str | None = None) -> list[EngineEvent]:
        if session_id is None:
            return list(self._events)
        return [e for e in self._events if e.session_id == session_id]

    def replay(self, session_id: str, target_event_id: str | None = None) -> EngineState:
        """Walk through the session's events, applying transitions, and return the final state.

        If *target_event_id* is given, stop after that event.
        """
        state = EngineState.IDLE
        for event in self.events(session_id):
            if event.is_transition:
                state = EngineState(event.to_state)
            if target_event_id is not None and event.event_id == target_event_id:
                break
        return state

    def snapshot(self, session_id: str) -> dict[str, Any]:
        session_events = self.events(session_id=session_id)
        if not session_events:
            return {
                "session_id": session_id,
                "current_state": EngineState.IDLE.value,
                "event_count": 0,
                "last_event_timestamp": None,
            }
        return {
            "session_id": session_id,
            "current_state": self.replay(session_id).value,
            "event_count": len(session_events),
            "last_event_timestamp": session_events[-1].timestamp,
        }

    def clear(self, session_id: str | None = None) -> int:
        if session_id is None:
            count = len(self._events)
            self._events.clear()
            return count
        original = len(self._events)
        self._events = [e for e in self._events if e.session_id != session_id]
        return original - len(self._events)
