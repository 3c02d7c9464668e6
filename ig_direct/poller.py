from __future__ import annotations

import threading
from collections.abc import Callable
from threading import Lock

from .correlator import ReplyCorrelator
from .events import ErrorEvent, EventBus, MessageEvent, PendingRequestEvent, PollingStarted, PollingStopped
from .inbox import InboxReader
from .ledger import DedupLedger
from .models import InboxSnapshot, MessageItem, Thread
from .netlog import LogFn, null_log, preview

DEFAULT_INTERVAL_MS = 5000
POLL_MODES = ('dedup', 'latest')


class DirectPoller:
    """Turns periodic inbox reads into message events.

    One loop per instance: starting while running is a no-op, and a cycle lock
    keeps two fetch cycles from overlapping. `stop_polling()` is cooperative;
    a cycle in progress finishes its emissions before the loop exits.

    Modes:
    - dedup: every item of every thread goes through the ledger.
    - latest: only the newest item per thread, skipping own items, emitted
      when its timestamp passes the `last_seq_id` watermark.
    """

    def __init__(
        self,
        *,
        reader: InboxReader,
        ledger: DedupLedger,
        correlator: ReplyCorrelator,
        bus: EventBus,
        self_user_id: str = '',
        mode: str = 'dedup',
        log: LogFn | None = None,
        sleep: Callable[[float], object] | None = None,
    ) -> None:
        if mode not in POLL_MODES:
            raise ValueError(f'unknown poll mode: {mode!r}')
        self._reader = reader
        self._ledger = ledger
        self._correlator = correlator
        self._bus = bus
        self.self_user_id = str(self_user_id or '').strip()
        self.mode = mode
        self._log = log or null_log
        self._sleep_fn = sleep

        self._state_lock = Lock()
        self._cycle_lock = Lock()
        self._stop = threading.Event()
        self._run_id = 0
        self._thread: threading.Thread | None = None

        self.is_polling = False
        self.last_seq_id = 0
        self.cycles = 0

    def _sleep(self, seconds: float) -> None:
        if self._sleep_fn is not None:
            self._sleep_fn(seconds)
            return
        self._stop.wait(timeout=max(0.0, float(seconds)))

    def _running(self, run_id: int) -> bool:
        with self._state_lock:
            return self.is_polling and self._run_id == run_id

    def start_polling(self, interval_ms: int = DEFAULT_INTERVAL_MS) -> None:
        """Run the loop on the calling thread until `stop_polling()`."""
        with self._state_lock:
            if self.is_polling:
                self._log('polling already active')
                return
            self.is_polling = True
            self._run_id += 1
            run_id = self._run_id
            self._stop.clear()

        interval_s = max(0.0, float(interval_ms) / 1000.0)
        self._log(f'polling started (interval {int(interval_ms)}ms, mode {self.mode})')
        self._bus.publish(PollingStarted(interval_ms=int(interval_ms)))
        try:
            while self._running(run_id):
                ok = self.poll_once()
                if not self._running(run_id):
                    break
                # Failed fetches back off for twice the steady interval.
                self._sleep(interval_s if ok else interval_s * 2)
        finally:
            with self._state_lock:
                current = self._run_id == run_id
                if current:
                    self.is_polling = False
            self._log('polling stopped')
            # Only the current run announces its stop.
            if current:
                self._bus.publish(PollingStopped())

    def start_in_background(self, interval_ms: int = DEFAULT_INTERVAL_MS) -> threading.Thread:
        with self._state_lock:
            t = self._thread
            if t is not None and t.is_alive() and not self._stop.is_set():
                return t
        if t is not None and t is not threading.current_thread():
            # Previous loop is winding down after stop_polling(); let it finish first.
            t.join()
        t = threading.Thread(target=self.start_polling, args=(interval_ms,), name='ig-poll', daemon=True)
        self._thread = t
        t.start()
        return t

    def stop_polling(self) -> None:
        with self._state_lock:
            was = self.is_polling
            self.is_polling = False
            self._stop.set()
        if was:
            self._log('stopping polling')

    def join(self, timeout: float | None = None) -> None:
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout)

    # -----------------------------
    # One cycle
    # -----------------------------
    def poll_once(self) -> bool:
        """Fetch, diff, emit and check pending requests once.

        Returns False when the inbox fetch failed (already published as an
        ErrorEvent).
        """
        with self._cycle_lock:
            try:
                snap = self._reader.fetch_inbox()
            except Exception as e:
                self._log(f'inbox fetch failed: {preview(e)}')
                self._bus.publish(ErrorEvent(message=str(e), error=e))
                return False

            if self.mode == 'latest':
                self._emit_latest(snap)
            else:
                self._emit_new(snap)
            self._check_pending()
            self.cycles += 1
            return True

    def message_event(self, thread: Thread, item: MessageItem) -> MessageEvent:
        return MessageEvent(
            thread_id=thread.thread_id,
            item_id=item.item_id,
            user_id=item.user_id,
            text=item.text,
            timestamp=item.timestamp,
            item=item,
            is_from_me=bool(self.self_user_id) and item.user_id == self.self_user_id,
            thread=thread,
        )

    def _emit(self, thread: Thread, item: MessageItem) -> None:
        ev = self.message_event(thread, item)
        # Own items are never replies to our own outbound messages.
        if not ev.is_from_me:
            self._correlator.resolve(item)
        self._bus.publish(ev)

    def _emit_new(self, snap: InboxSnapshot) -> int:
        n = 0
        for thread in snap.threads:
            for item in thread.items:
                if not self._ledger.should_emit(item.item_id):
                    continue
                self._emit(thread, item)
                n += 1
        return n

    def _emit_latest(self, snap: InboxSnapshot) -> int:
        n = 0
        for thread in snap.threads:
            if not thread.items:
                continue
            item = thread.items[0]
            if self.self_user_id and item.user_id == self.self_user_id:
                continue
            if self.last_seq_id and item.timestamp <= self.last_seq_id:
                continue
            self.last_seq_id = item.timestamp
            self._emit(thread, item)
            n += 1
        return n

    def _check_pending(self) -> None:
        try:
            pending = self._reader.fetch_pending_inbox()
        except Exception as e:
            self._log(f'pending inbox fetch failed: {preview(e)}')
            self._bus.publish(ErrorEvent(message=str(e), error=e))
            return
        if pending.threads:
            self._bus.publish(PendingRequestEvent(count=len(pending.threads), threads=pending.threads))
