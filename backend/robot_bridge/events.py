"""Domain events and the listener registry that fans them out."""
from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Deque, Dict, Generic, List, Mapping, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 100


@dataclass(frozen=True)
class ProgressEvent:
    progress: int
    current_sensor: str
    message: str = ""
    source: Optional[str] = None


@dataclass(frozen=True)
class StateEvent:
    state: int
    state_name: str
    source: Optional[str] = None


@dataclass(frozen=True)
class DataEvent:
    payload: Mapping[str, Any]
    source: Optional[str] = None


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    source: Optional[str] = None


DomainEvent = Union[ProgressEvent, StateEvent, DataEvent, ErrorEvent]

_EVENT_TYPES = {
    ProgressEvent: "progress",
    StateEvent: "state",
    DataEvent: "data",
    ErrorEvent: "error",
}


def event_type(event: DomainEvent) -> str:
    return _EVENT_TYPES[type(event)]


def event_to_dict(event: DomainEvent) -> Dict[str, Any]:
    """Serialise an event for JSON consumers (API, CLI)."""

    body = asdict(event)
    if isinstance(event, DataEvent):
        body["payload"] = dict(event.payload)
    body["type"] = event_type(event)
    return body


T = TypeVar("T")


@dataclass
class _Entry(Generic[T]):
    timestamp: float
    item: T


class ListenerRegistry(Generic[T]):
    """Multi-listener fan-out with disposers and a bounded history."""

    def __init__(self, name: str, history_size: int = DEFAULT_HISTORY_SIZE) -> None:
        self._name = name
        self._listeners: List[Callable[[T], None]] = []
        self._history: Deque[_Entry[T]] = deque(maxlen=history_size)

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Register ``listener`` and return a callable that removes it again."""

        self._listeners.append(listener)

        def _dispose() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                return

        return _dispose

    def dispatch(self, item: T) -> None:
        self._history.append(_Entry(timestamp=time.time(), item=item))
        for listener in list(self._listeners):
            try:
                listener(item)
            except Exception:  # noqa: BLE001
                logger.exception("%s listener failed", self._name)

    def recent(self, limit: Optional[int] = None) -> List[tuple[float, T]]:
        entries = [(entry.timestamp, entry.item) for entry in self._history]
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def __len__(self) -> int:
        return len(self._listeners)


@dataclass(frozen=True)
class ChannelChange:
    previous: Optional[str]
    current: Optional[str]
    reason: str = field(default="")


__all__ = [
    "ChannelChange",
    "DataEvent",
    "DomainEvent",
    "ErrorEvent",
    "ListenerRegistry",
    "ProgressEvent",
    "StateEvent",
    "event_to_dict",
    "event_type",
]
