from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


def _s(v: object) -> str:
    if v is None:
        return ''
    return str(v).strip()


def _i(v: object) -> int:
    try:
        return int(v or 0)  # type: ignore[call-overload]
    except Exception:
        return 0


@dataclass(frozen=True)
class UserRef:
    user_id: str
    username: str = ''
    full_name: str = ''

    @classmethod
    def from_api(cls, raw: object) -> UserRef | None:
        if not isinstance(raw, dict):
            return None
        uid = _s(raw.get('pk') or raw.get('pk_id') or raw.get('id'))
        if not uid:
            return None
        return cls(user_id=uid, username=_s(raw.get('username')), full_name=_s(raw.get('full_name')))


@dataclass(frozen=True)
class MessageItem:
    item_id: str
    user_id: str
    text: str = ''
    timestamp: int = 0
    item_type: str = 'text'
    replied_to_item_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_api(cls, raw: object) -> MessageItem | None:
        if not isinstance(raw, dict):
            return None
        item_id = _s(raw.get('item_id'))
        if not item_id:
            return None

        item_type = _s(raw.get('item_type')) or 'text'
        text = raw.get('text')
        if not isinstance(text, str):
            # Links carry their text in a nested payload.
            link = raw.get('link')
            text = link.get('text') if isinstance(link, dict) else ''
        if not isinstance(text, str):
            text = ''

        replied_to: str | None = None
        rt = raw.get('replied_to_message')
        if isinstance(rt, dict):
            replied_to = _s(rt.get('item_id')) or None

        return cls(
            item_id=item_id,
            user_id=_s(raw.get('user_id')),
            text=text,
            timestamp=_i(raw.get('timestamp')),
            item_type=item_type,
            replied_to_item_id=replied_to,
            raw=dict(raw),
        )


@dataclass(frozen=True)
class Thread:
    thread_id: str
    users: tuple[UserRef, ...] = ()
    items: tuple[MessageItem, ...] = ()
    has_older: bool = False
    title: str = ''
    is_pending: bool = False
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_api(cls, raw: object, *, is_pending: bool = False) -> Thread | None:
        if not isinstance(raw, dict):
            return None
        thread_id = _s(raw.get('thread_id') or raw.get('thread_v2_id'))
        if not thread_id:
            return None

        users: list[UserRef] = []
        for u in raw.get('users') or []:
            ref = UserRef.from_api(u)
            if ref is not None:
                users.append(ref)

        items: list[MessageItem] = []
        raw_items = raw.get('items')
        if not isinstance(raw_items, list) or not raw_items:
            last = raw.get('last_permanent_item')
            raw_items = [last] if isinstance(last, dict) else []
        for it in raw_items:
            item = MessageItem.from_api(it)
            if item is not None:
                items.append(item)

        return cls(
            thread_id=thread_id,
            users=tuple(users),
            items=tuple(items),
            has_older=bool(raw.get('has_older') or False),
            title=_s(raw.get('thread_title')),
            is_pending=bool(is_pending or raw.get('pending') or False),
            raw=dict(raw),
        )


@dataclass(frozen=True)
class InboxSnapshot:
    threads: tuple[Thread, ...] = ()
    has_older: bool = False
    source: str = ''

    @classmethod
    def from_api(cls, obj: object, *, source: str, is_pending: bool = False) -> InboxSnapshot:
        inbox: object = obj.get('inbox') if isinstance(obj, dict) else None
        if not isinstance(inbox, dict):
            inbox = obj if isinstance(obj, dict) else {}
        threads: list[Thread] = []
        for t in inbox.get('threads') or []:  # type: ignore[union-attr]
            th = Thread.from_api(t, is_pending=is_pending)
            if th is not None:
                threads.append(th)
        return cls(
            threads=tuple(threads),
            has_older=bool(inbox.get('has_older') or False),  # type: ignore[union-attr]
            source=source,
        )


@dataclass(frozen=True)
class SendResult:
    thread_id: str
    item_id: str
    client_context: str = ''
    timestamp: int = 0
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_api(cls, obj: object, *, thread_id: str = '') -> SendResult:
        data = obj if isinstance(obj, dict) else {}
        payload = data.get('payload')
        if not isinstance(payload, dict):
            # Some variants answer with a list of payloads (one per thread).
            payloads = data.get('payloads')
            payload = payloads[0] if isinstance(payloads, list) and payloads and isinstance(payloads[0], dict) else {}
        return cls(
            thread_id=_s(payload.get('thread_id')) or _s(thread_id),
            item_id=_s(payload.get('item_id')),
            client_context=_s(payload.get('client_context')),
            timestamp=_i(payload.get('timestamp')),
            raw=dict(data),
        )
