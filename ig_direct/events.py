from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, TypeVar, Union

from .models import MessageItem, Thread
from .netlog import LogFn, null_log, preview


@dataclass(frozen=True)
class MessageEvent:
    thread_id: str
    item_id: str
    user_id: str
    text: str
    timestamp: int
    item: MessageItem
    is_from_me: bool = False
    thread: Thread | None = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class TypingEvent:
    thread_id: str
    user_id: str
    is_typing: bool = True


@dataclass(frozen=True)
class PendingRequestEvent:
    count: int
    threads: tuple[Thread, ...] = ()


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    error: BaseException | None = field(default=None, compare=False)


@dataclass(frozen=True)
class PollingStarted:
    interval_ms: int = 0


@dataclass(frozen=True)
class PollingStopped:
    pass


Event = Union[MessageEvent, TypingEvent, PendingRequestEvent, ErrorEvent, PollingStarted, PollingStopped]
EVENT_KINDS: tuple[type, ...] = (
    MessageEvent,
    TypingEvent,
    PendingRequestEvent,
    ErrorEvent,
    PollingStarted,
    PollingStopped,
)

E = TypeVar('E')


class EventBus:
    """Typed publish/subscribe over the closed set of engine events.

    Handlers run synchronously on the publishing thread. A failing handler is
    logged and skipped; it never unwinds into the publisher.
    """

    def __init__(self, *, log: LogFn | None = None) -> None:
        self._log = log or null_log
        self._lock = Lock()
        self._handlers: dict[type, list[Callable[[Any], object]]] = defaultdict(list)

    def subscribe(self, kind: type[E], handler: Callable[[E], object]) -> None:
        if kind not in EVENT_KINDS:
            raise TypeError(f'unknown event kind: {kind!r}')
        with self._lock:
            self._handlers[kind].append(handler)

    def unsubscribe(self, kind: type[E], handler: Callable[[E], object]) -> bool:
        with self._lock:
            handlers = self._handlers.get(kind) or []
            if handler not in handlers:
                return False
            handlers.remove(handler)
            return True

    def handler_count(self, kind: type) -> int:
        with self._lock:
            return len(self._handlers.get(kind) or [])

    def publish(self, event: Event) -> int:
        """Deliver to every handler of the event's kind; returns how many succeeded."""
        with self._lock:
            handlers = list(self._handlers.get(type(event)) or [])
        ok = 0
        for handler in handlers:
            try:
                handler(event)
                ok += 1
            except Exception as e:
                self._log(f'{type(event).__name__} handler failed: {preview(e)}')
        return ok
