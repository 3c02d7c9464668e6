from __future__ import annotations

from threading import Lock

DEFAULT_MAX_ENTRIES = 10_000


class DedupLedger:
    """Bounded record of item ids already surfaced to subscribers.

    Ids are kept in insertion order. Once the ledger grows past `max_entries`
    a single sweep keeps only the most recently inserted half. Message
    timestamps are not consulted, so an old id can be forgotten and emitted
    again after heavy churn.
    """

    def __init__(self, *, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self.max_entries = max(2, int(max_entries))
        self._lock = Lock()
        self._seen: dict[str, None] = {}
        self.compactions = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def __contains__(self, item_id: object) -> bool:
        key = str(item_id or '').strip()
        with self._lock:
            return bool(key) and key in self._seen

    def should_emit(self, item_id: str) -> bool:
        key = str(item_id or '').strip()
        if not key:
            return False
        with self._lock:
            if key in self._seen:
                return False
            self._seen[key] = None
            if len(self._seen) > self.max_entries:
                self._compact_locked()
            return True

    def _compact_locked(self) -> None:
        keep = self.max_entries // 2
        ids = list(self._seen)
        self._seen = dict.fromkeys(ids[-keep:]) if keep > 0 else {}
        self.compactions += 1

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()
