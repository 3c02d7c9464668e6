from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from .instagram_api import is_restricted_error
from .models import InboxSnapshot
from .netlog import LogFn, null_log, preview


class InboxTransport(Protocol):
    def get_inbox(self, params: dict[str, Any] | None = None) -> dict[str, Any]: ...

    def get_pending_inbox(self) -> dict[str, Any]: ...


@dataclass(frozen=True)
class InboxStrategy:
    name: str
    fetch: Callable[[], InboxSnapshot]


class InboxReader:
    """Reads the thread list, falling back to simpler queries on restriction.

    Order: full query, minimal query, pending inbox, empty snapshot. A step is
    skipped only when the previous one failed with a restricted-endpoint error;
    every other failure propagates to the caller unchanged.
    """

    def __init__(
        self,
        api: InboxTransport,
        *,
        thread_limit: int = 20,
        message_limit: int = 10,
        log: LogFn | None = None,
        fall_through: Callable[[BaseException], bool] = is_restricted_error,
    ) -> None:
        self._api = api
        self.thread_limit = max(1, int(thread_limit))
        self.message_limit = max(1, int(message_limit))
        self._log = log or null_log
        self._fall_through = fall_through
        self.last_source = ''

    def strategies(self) -> list[InboxStrategy]:
        return [
            InboxStrategy('full', self._fetch_full),
            InboxStrategy('simple', self._fetch_simple),
            InboxStrategy('pending', self._fetch_pending_as_inbox),
            InboxStrategy('empty', lambda: InboxSnapshot(source='empty')),
        ]

    def _fetch_full(self) -> InboxSnapshot:
        params = {
            'visual_message_return_type': 'unseen',
            'thread_message_limit': self.message_limit,
            'persistentBadging': 'true',
            'limit': self.thread_limit,
        }
        return InboxSnapshot.from_api(self._api.get_inbox(params), source='full')

    def _fetch_simple(self) -> InboxSnapshot:
        return InboxSnapshot.from_api(self._api.get_inbox(None), source='simple')

    def _fetch_pending_as_inbox(self) -> InboxSnapshot:
        return InboxSnapshot.from_api(self._api.get_pending_inbox(), source='pending', is_pending=True)

    def fetch_inbox(self) -> InboxSnapshot:
        strategies = self.strategies()
        for idx, strategy in enumerate(strategies):
            try:
                snap = strategy.fetch()
            except Exception as e:
                if idx + 1 < len(strategies) and self._fall_through(e):
                    self._log(
                        f'inbox {strategy.name} restricted ({preview(e, 160)}); '
                        f'trying {strategies[idx + 1].name}'
                    )
                    continue
                raise
            if strategy.name != self.last_source and self.last_source:
                self._log(f'inbox source changed: {self.last_source} -> {strategy.name}')
            self.last_source = strategy.name
            return snap
        # The last strategy never raises; keep type checkers happy.
        return InboxSnapshot(source='empty')

    def fetch_pending_inbox(self) -> InboxSnapshot:
        return InboxSnapshot.from_api(self._api.get_pending_inbox(), source='pending', is_pending=True)
