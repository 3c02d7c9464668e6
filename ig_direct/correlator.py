from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Protocol

from .models import MessageItem
from .netlog import LogFn, null_log, preview

DEFAULT_REPLY_TIMEOUT_MS = 120_000

ReplyCallback = Callable[[Any], object]


class _Timer(Protocol):
    daemon: bool

    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[..., None], tuple[Any, ...]], _Timer]


def _thread_timer(interval: float, fn: Callable[..., None], args: tuple[Any, ...]) -> _Timer:
    return threading.Timer(interval, fn, args=args)


@dataclass
class _ReplyHandler:
    callback: ReplyCallback
    registered_at: float
    deadline: float
    timer: _Timer | None = field(default=None, repr=False)


class ReplyCorrelator:
    """Maps outbound item ids to callbacks waiting for a reply to that item.

    Every handler has its own expiry timer, so it expires even when polling is
    paused. An expired handler is dropped without calling its callback.
    Registering the same id again replaces the previous handler.
    """

    def __init__(
        self,
        *,
        log: LogFn | None = None,
        clock: Callable[[], float] = time.monotonic,
        timer_factory: TimerFactory = _thread_timer,
    ) -> None:
        self._log = log or null_log
        self._clock = clock
        self._timer_factory = timer_factory
        self._lock = Lock()
        self._handlers: dict[str, _ReplyHandler] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)

    def pending_ids(self) -> list[str]:
        with self._lock:
            return list(self._handlers)

    def register(self, item_id: str, callback: ReplyCallback, timeout_ms: int = DEFAULT_REPLY_TIMEOUT_MS) -> None:
        key = str(item_id or '').strip()
        if not key:
            raise ValueError('item_id is required')
        if not callable(callback):
            raise TypeError('callback must be callable')
        timeout_s = max(0.0, float(timeout_ms or 0) / 1000.0)
        now = self._clock()
        handler = _ReplyHandler(callback=callback, registered_at=now, deadline=now + timeout_s)

        timer = self._timer_factory(timeout_s, self._expire, (key, handler))
        timer.daemon = True
        handler.timer = timer

        with self._lock:
            previous = self._handlers.get(key)
            self._handlers[key] = handler
        if previous is not None:
            self._cancel_timer(previous)
            self._log(f'reply handler for {key} replaced')
        timer.start()

    def _cancel_timer(self, handler: _ReplyHandler) -> None:
        if handler.timer is None:
            return
        try:
            handler.timer.cancel()
        except Exception:
            pass

    def _expire(self, key: str, handler: _ReplyHandler) -> None:
        with self._lock:
            if self._handlers.get(key) is not handler:
                return
            self._handlers.pop(key, None)
        self._log(f'reply handler for {key} expired')

    def resolve(self, item: MessageItem) -> bool:
        """Run the handler waiting on `item.replied_to_item_id`, at most once."""
        key = str(getattr(item, 'replied_to_item_id', None) or '').strip()
        if not key:
            return False
        with self._lock:
            handler = self._handlers.pop(key, None)
        if handler is None:
            return False
        self._cancel_timer(handler)
        if self._clock() > handler.deadline:
            self._log(f'reply handler for {key} expired before reply {item.item_id}')
            return False
        try:
            handler.callback(item)
        except Exception as e:
            self._log(f'reply handler for {key} failed: {preview(e)}')
        return True

    def clear(self, item_id: str) -> bool:
        key = str(item_id or '').strip()
        with self._lock:
            handler = self._handlers.pop(key, None)
        if handler is None:
            return False
        self._cancel_timer(handler)
        return True

    def close(self) -> None:
        with self._lock:
            handlers = list(self._handlers.values())
            self._handlers.clear()
        for handler in handlers:
            self._cancel_timer(handler)
