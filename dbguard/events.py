from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Protocol


@dataclass(frozen=True)
class Event:
    """Base class for connection notifications."""


@dataclass(frozen=True)
class QueryEvent(Event):
    query: str
    table: Optional[str]


@dataclass(frozen=True)
class SelectQueryEvent(Event):
    table: str
    where: Any = None
    options: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InsertQueryEvent(Event):
    table: str
    data: Any = None
    options: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InsertedQueryEvent(Event):
    table: str
    id: Optional[int]


@dataclass(frozen=True)
class UpdateQueryEvent(Event):
    table: str
    where: Any = None
    data: Any = None
    options: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeleteQueryEvent(Event):
    table: str
    where: Any = None
    options: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChangedTableEvent(Event):
    table: str


class EventBus(Protocol):
    def emit(self, event: Event) -> None:
        """Deliver an event. Return values are never consumed."""
        ...


class NullEventBus:
    def emit(self, event: Event) -> None:
        return None


class LocalEventBus:
    """
    In-process bus dispatching on the exact event class.

    Usage:
        bus = LocalEventBus()
        bus.subscribe(ChangedTableEvent, lambda e: print(e.table))
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[Callable[[Event], None]]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Callable[[Event], None]) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: type, handler: Callable[[Event], None]) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: Event) -> None:
        for handler in list(self._handlers.get(type(event), ())):
            handler(event)
