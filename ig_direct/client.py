from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol, TypeVar

from .config import ClientConfig
from .correlator import DEFAULT_REPLY_TIMEOUT_MS, ReplyCorrelator
from .delivery import DEFAULT_MAX_ATTEMPTS, DeliveryRetrier
from .events import (
    ErrorEvent,
    Event,
    EventBus,
    MessageEvent,
    PendingRequestEvent,
    PollingStarted,
    PollingStopped,
    TypingEvent,
)
from .inbox import InboxReader
from .instagram_api import InstagramAPI
from .ledger import DEFAULT_MAX_ENTRIES, DedupLedger
from .models import InboxSnapshot, SendResult, Thread, UserRef
from .netlog import LogFn, NetLog
from .poller import DEFAULT_INTERVAL_MS, DirectPoller

EventT = TypeVar('EventT')


class DirectTransport(Protocol):
    @property
    def user_id(self) -> str: ...

    def get_inbox(self, params: dict[str, Any] | None = None) -> dict[str, Any]: ...

    def get_pending_inbox(self) -> dict[str, Any]: ...

    def get_thread(self, thread_id: str, *, cursor: str | None = None) -> dict[str, Any]: ...

    def broadcast_text(
        self, *, text: str, thread_id: str | None = None, user_ids: list[str] | None = None
    ) -> dict[str, Any]: ...

    def broadcast_link(self, *, thread_id: str, link_url: str, link_text: str = '') -> dict[str, Any]: ...

    def broadcast_reaction(
        self, *, thread_id: str, item_id: str, emoji: str = '', delete: bool = False
    ) -> dict[str, Any]: ...

    def upload_photo(self, data: bytes, *, upload_id: str | None = None, timeout: int = 60) -> str: ...

    def broadcast_photo(self, *, thread_id: str, upload_id: str) -> dict[str, Any]: ...

    def upload_video(
        self,
        data: bytes,
        *,
        upload_id: str | None = None,
        width: int = 720,
        height: int = 720,
        duration_ms: int = 3000,
        voice: bool = False,
        timeout: int = 120,
    ) -> str: ...

    def upload_finish(self, upload_id: str, *, source_type: str = '2', length_s: float = 3.0) -> dict[str, Any]: ...

    def broadcast_video(self, *, thread_id: str, upload_id: str) -> dict[str, Any]: ...

    def broadcast_voice(
        self, *, thread_id: str, upload_id: str, waveform: list[float] | None = None
    ) -> dict[str, Any]: ...

    def broadcast_sticker(self, *, thread_id: str, sticker_id: str) -> dict[str, Any]: ...

    def indicate_activity(self, *, thread_id: str, is_typing: bool = True) -> dict[str, Any]: ...

    def delete_item(self, *, thread_id: str, item_id: str) -> dict[str, Any]: ...

    def mark_item_seen(self, *, thread_id: str, item_id: str) -> dict[str, Any]: ...

    def approve_thread(self, thread_id: str) -> dict[str, Any]: ...

    def mute_thread(self, thread_id: str) -> dict[str, Any]: ...

    def unmute_thread(self, thread_id: str) -> dict[str, Any]: ...

    def hide_thread(self, thread_id: str) -> dict[str, Any]: ...

    def unhide_thread(self, thread_id: str) -> dict[str, Any]: ...

    def leave_thread(self, thread_id: str) -> dict[str, Any]: ...

    def add_users(self, thread_id: str, user_ids: list[str]) -> dict[str, Any]: ...

    def remove_users(self, thread_id: str, user_ids: list[str]) -> dict[str, Any]: ...

    def update_title(self, thread_id: str, title: str) -> dict[str, Any]: ...

    def search_users(self, query: str, *, count: int = 30) -> dict[str, Any]: ...

    def get_user_info(self, user_id: str) -> dict[str, Any]: ...

    def get_user_by_username(self, username: str) -> dict[str, Any]: ...


class DirectClient:
    """Direct-message client: polling engine, reply correlation and sends.

    All engine state (ledger, reply handlers, polling flag) belongs to this
    instance. A restart starts from an empty ledger, so currently visible
    items are emitted again.
    """

    def __init__(
        self,
        api: DirectTransport,
        *,
        log: LogFn | None = None,
        log_path: Path | None = None,
        poll_interval_ms: int = DEFAULT_INTERVAL_MS,
        poll_mode: str = 'dedup',
        reply_timeout_ms: int = DEFAULT_REPLY_TIMEOUT_MS,
        send_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        ledger_max_entries: int = DEFAULT_MAX_ENTRIES,
        inbox_thread_limit: int = 20,
        inbox_message_limit: int = 10,
        correlator: ReplyCorrelator | None = None,
        retrier: DeliveryRetrier | None = None,
        poll_sleep: Callable[[float], object] | None = None,
    ) -> None:
        self.api = api
        self._log = log or NetLog(log_path=log_path)
        self.poll_interval_ms = int(poll_interval_ms)
        self.reply_timeout_ms = int(reply_timeout_ms)

        self.bus = EventBus(log=self._log)
        self.ledger = DedupLedger(max_entries=ledger_max_entries)
        self.correlator = correlator or ReplyCorrelator(log=self._log)
        self.retrier = retrier or DeliveryRetrier(max_attempts=send_max_attempts, log=self._log)
        self.reader = InboxReader(
            api,
            thread_limit=inbox_thread_limit,
            message_limit=inbox_message_limit,
            log=self._log,
        )
        self.poller = DirectPoller(
            reader=self.reader,
            ledger=self.ledger,
            correlator=self.correlator,
            bus=self.bus,
            self_user_id=str(getattr(api, 'user_id', '') or ''),
            mode=poll_mode,
            log=self._log,
            sleep=poll_sleep,
        )

    @classmethod
    def from_config(cls, cfg: ClientConfig) -> DirectClient:
        api_kw: dict[str, Any] = {
            'cookies': cfg.cookies(),
            'base_url': cfg.api_base_url,
            'app_id': cfg.app_id,
            'device_id': cfg.device_id,
            'timeout': cfg.http_timeout_seconds,
            'log_path': cfg.log_path,
        }
        if cfg.user_agent:
            api_kw['user_agent'] = cfg.user_agent
        api = InstagramAPI(**api_kw)
        return cls(
            api,
            log_path=cfg.log_path,
            poll_interval_ms=cfg.poll_interval_ms,
            poll_mode=cfg.poll_mode,
            reply_timeout_ms=cfg.reply_timeout_ms,
            send_max_attempts=cfg.send_max_attempts,
            ledger_max_entries=cfg.ledger_max_entries,
            inbox_thread_limit=cfg.inbox_thread_limit,
            inbox_message_limit=cfg.inbox_message_limit,
        )

    # -----------------------------
    # Events
    # -----------------------------
    def subscribe(self, kind: type[EventT], handler: Callable[[EventT], object]) -> None:
        self.bus.subscribe(kind, handler)

    def unsubscribe(self, kind: type[EventT], handler: Callable[[EventT], object]) -> bool:
        return self.bus.unsubscribe(kind, handler)

    def on_message(self, handler: Callable[[MessageEvent], object]) -> None:
        self.bus.subscribe(MessageEvent, handler)

    def on_typing(self, handler: Callable[[TypingEvent], object]) -> None:
        self.bus.subscribe(TypingEvent, handler)

    def on_pending_request(self, handler: Callable[[PendingRequestEvent], object]) -> None:
        self.bus.subscribe(PendingRequestEvent, handler)

    def on_error(self, handler: Callable[[ErrorEvent], object]) -> None:
        self.bus.subscribe(ErrorEvent, handler)

    def on_polling_start(self, handler: Callable[[PollingStarted], object]) -> None:
        self.bus.subscribe(PollingStarted, handler)

    def on_polling_stop(self, handler: Callable[[PollingStopped], object]) -> None:
        self.bus.subscribe(PollingStopped, handler)

    def publish(self, event: Event) -> int:
        return self.bus.publish(event)

    # -----------------------------
    # Polling
    # -----------------------------
    @property
    def is_polling(self) -> bool:
        return self.poller.is_polling

    def start_polling(self, interval_ms: int | None = None) -> None:
        self.poller.start_polling(self.poll_interval_ms if interval_ms is None else int(interval_ms))

    def start_in_background(self, interval_ms: int | None = None) -> threading.Thread:
        return self.poller.start_in_background(self.poll_interval_ms if interval_ms is None else int(interval_ms))

    def stop_polling(self) -> None:
        self.poller.stop_polling()

    def close(self) -> None:
        self.poller.stop_polling()
        self.correlator.close()

    # -----------------------------
    # Reply correlation
    # -----------------------------
    def register_reply_handler(
        self, item_id: str, callback: Callable[[Any], object], timeout_ms: int | None = None
    ) -> None:
        self.correlator.register(item_id, callback, self.reply_timeout_ms if timeout_ms is None else int(timeout_ms))

    def clear_reply_handler(self, item_id: str) -> bool:
        return self.correlator.clear(item_id)

    # -----------------------------
    # Reads
    # -----------------------------
    def get_inbox(self) -> InboxSnapshot:
        return self.reader.fetch_inbox()

    def get_pending_inbox(self) -> InboxSnapshot:
        return self.reader.fetch_pending_inbox()

    def get_thread(self, thread_id: str) -> Thread | None:
        obj = self.api.get_thread(thread_id)
        return Thread.from_api(obj.get('thread') if isinstance(obj, dict) else None)

    def get_recent_messages(self, limit: int = 20) -> list[MessageEvent]:
        snap = self.get_inbox()
        out: list[MessageEvent] = []
        for thread in snap.threads:
            for item in thread.items:
                if len(out) >= max(0, int(limit)):
                    return out
                out.append(self.poller.message_event(thread, item))
        return out

    # -----------------------------
    # Sends
    # -----------------------------
    def _send(self, send_once: Callable[[], SendResult], *, retry: bool, label: str) -> SendResult:
        if retry:
            return self.retrier.send_with_retry(send_once, label=label)
        return send_once()

    def send_message(self, thread_id: str, text: str, *, retry: bool = False) -> SendResult:
        def _once() -> SendResult:
            obj = self.api.broadcast_text(thread_id=thread_id, text=text)
            return SendResult.from_api(obj, thread_id=thread_id)

        return self._send(_once, retry=retry, label=f'send_message thread={thread_id}')

    def send_message_to_user(self, user_id: str, text: str, *, retry: bool = False) -> SendResult:
        def _once() -> SendResult:
            return SendResult.from_api(self.api.broadcast_text(user_ids=[str(user_id)], text=text))

        return self._send(_once, retry=retry, label=f'send_message_to_user user={user_id}')

    def send_message_with_reply(
        self,
        thread_id: str,
        text: str,
        on_reply: Callable[[Any], object],
        *,
        timeout_ms: int | None = None,
        retry: bool = True,
    ) -> SendResult:
        result = self.send_message(thread_id, text, retry=retry)
        if not result.item_id:
            self._log(f'send to {thread_id} returned no item_id; reply handler not registered')
            return result
        self.register_reply_handler(result.item_id, on_reply, timeout_ms)
        return result

    @staticmethod
    def _read_media(path: str | Path, what: str) -> bytes:
        p = Path(path).expanduser()
        if not p.exists() or not p.is_file():
            raise FileNotFoundError(f'{what}: file not found: {p}')
        return p.read_bytes()

    def send_photo(self, thread_id: str, photo_path: str | Path, *, retry: bool = True) -> SendResult:
        data = self._read_media(photo_path, 'send_photo')

        def _once() -> SendResult:
            upload_id = self.api.upload_photo(data)
            obj = self.api.broadcast_photo(thread_id=thread_id, upload_id=upload_id)
            return SendResult.from_api(obj, thread_id=thread_id)

        return self._send(_once, retry=retry, label=f'send_photo thread={thread_id}')

    def send_video(
        self,
        thread_id: str,
        video_path: str | Path,
        *,
        width: int = 720,
        height: int = 720,
        duration_ms: int = 3000,
        retry: bool = True,
    ) -> SendResult:
        """Send an already-encoded mp4; no transcoding happens here."""
        data = self._read_media(video_path, 'send_video')

        def _once() -> SendResult:
            upload_id = self.api.upload_video(data, width=width, height=height, duration_ms=duration_ms)
            self.api.upload_finish(upload_id, source_type='2', length_s=duration_ms / 1000.0)
            obj = self.api.broadcast_video(thread_id=thread_id, upload_id=upload_id)
            return SendResult.from_api(obj, thread_id=thread_id)

        return self._send(_once, retry=retry, label=f'send_video thread={thread_id}')

    def send_voice_note(
        self,
        thread_id: str,
        audio_path: str | Path,
        *,
        duration_ms: int = 3000,
        waveform: list[float] | None = None,
        retry: bool = True,
    ) -> SendResult:
        data = self._read_media(audio_path, 'send_voice_note')

        def _once() -> SendResult:
            upload_id = self.api.upload_video(data, duration_ms=duration_ms, voice=True)
            self.api.upload_finish(upload_id, source_type='4', length_s=duration_ms / 1000.0)
            obj = self.api.broadcast_voice(thread_id=thread_id, upload_id=upload_id, waveform=waveform)
            return SendResult.from_api(obj, thread_id=thread_id)

        return self._send(_once, retry=retry, label=f'send_voice_note thread={thread_id}')

    def send_sticker(self, thread_id: str, sticker_id: str, *, retry: bool = False) -> SendResult:
        def _once() -> SendResult:
            obj = self.api.broadcast_sticker(thread_id=thread_id, sticker_id=str(sticker_id))
            return SendResult.from_api(obj, thread_id=thread_id)

        return self._send(_once, retry=retry, label=f'send_sticker thread={thread_id}')

    def send_link(self, thread_id: str, url: str, text: str = '', *, retry: bool = False) -> SendResult:
        def _once() -> SendResult:
            obj = self.api.broadcast_link(thread_id=thread_id, link_url=url, link_text=text)
            return SendResult.from_api(obj, thread_id=thread_id)

        return self._send(_once, retry=retry, label=f'send_link thread={thread_id}')

    def send_reaction(self, thread_id: str, item_id: str, emoji: str) -> None:
        self.api.broadcast_reaction(thread_id=thread_id, item_id=item_id, emoji=emoji)

    def remove_reaction(self, thread_id: str, item_id: str) -> None:
        self.api.broadcast_reaction(thread_id=thread_id, item_id=item_id, delete=True)

    def unsend_message(self, thread_id: str, item_id: str) -> None:
        self.api.delete_item(thread_id=thread_id, item_id=item_id)
        if self.correlator.clear(item_id):
            self._log(f'reply handler for unsent {item_id} cleared')

    # -----------------------------
    # Thread management
    # -----------------------------
    def mark_as_seen(self, thread_id: str, item_id: str) -> None:
        self.api.mark_item_seen(thread_id=thread_id, item_id=item_id)

    def approve_thread(self, thread_id: str) -> None:
        self.api.approve_thread(thread_id)

    def indicate_typing(self, thread_id: str, is_typing: bool = True) -> None:
        self.api.indicate_activity(thread_id=thread_id, is_typing=is_typing)
        self.bus.publish(TypingEvent(thread_id=thread_id, user_id=self.poller.self_user_id, is_typing=is_typing))

    def mute_thread(self, thread_id: str) -> None:
        self.api.mute_thread(thread_id)

    def unmute_thread(self, thread_id: str) -> None:
        self.api.unmute_thread(thread_id)

    def hide_thread(self, thread_id: str) -> None:
        self.api.hide_thread(thread_id)

    def delete_thread(self, thread_id: str) -> None:
        # The private API has no hard delete; hiding removes it from the inbox.
        self.api.hide_thread(thread_id)

    def archive_thread(self, thread_id: str) -> None:
        self.api.hide_thread(thread_id)

    def unarchive_thread(self, thread_id: str) -> None:
        self.api.unhide_thread(thread_id)

    def leave_thread(self, thread_id: str) -> None:
        self.api.leave_thread(thread_id)

    def add_users_to_thread(self, thread_id: str, user_ids: list[str] | str) -> None:
        ids = [user_ids] if isinstance(user_ids, str) else list(user_ids)
        self.api.add_users(thread_id, [str(u) for u in ids])

    def remove_user_from_thread(self, thread_id: str, user_id: str) -> None:
        self.api.remove_users(thread_id, [str(user_id)])

    def update_thread_title(self, thread_id: str, title: str) -> None:
        self.api.update_title(thread_id, title)

    # -----------------------------
    # Users
    # -----------------------------
    def search_users(self, query: str, *, count: int = 30) -> list[UserRef]:
        obj = self.api.search_users(query, count=count)
        out: list[UserRef] = []
        for raw in obj.get('users') or []:
            ref = UserRef.from_api(raw)
            if ref is not None:
                out.append(ref)
        return out

    def get_user_info(self, user_id: str) -> UserRef | None:
        return UserRef.from_api(self.api.get_user_info(str(user_id)).get('user'))

    def get_user_by_username(self, username: str) -> UserRef | None:
        return UserRef.from_api(self.api.get_user_by_username(username).get('user'))
