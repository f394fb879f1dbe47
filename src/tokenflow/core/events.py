"""Synchronous bus carrying scheduler events (TickCompleted, FormulaFailed, ...) to the CLI."""

from collections import defaultdict
from collections.abc import Callable
from typing import Any, Protocol, TypeVar

T = TypeVar("T")


class EventBusProtocol(Protocol):
    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None: ...

    def emit(self, event: T) -> None: ...


class EventBus:
    """Dispatches on the exact event type, in subscription order, on the emitting thread.

    Handler exceptions propagate into the scheduler call that emitted.
    """

    def __init__(self) -> None:
        self._subscribers: defaultdict[type, list[Callable[[Any], None]]] = defaultdict(list)

    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None:
        self._subscribers[event_type].append(handler)

    def emit(self, event: T) -> None:
        for handler in self._subscribers.get(type(event), ()):
            handler(event)


class NullEventBus:
    """Default bus for a Scheduler nobody observes; subscriptions are discarded."""

    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None:
        pass

    def emit(self, event: T) -> None:
        pass
