from __future__ import annotations

import json
import random
import re
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from .netlog import LogFn, NetLog, preview

# Application-level error code the private API returns when an endpoint variant
# is not available for the current account/session.
RESTRICTED_ERROR_CODES: frozenset[int] = frozenset({200})


class InstagramError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status: int = 0,
        error_type: str = '',
        code: int | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status = int(status or 0)
        self.error_type = str(error_type or '')
        self.code = code
        self.payload = payload or {}


class BadRequest(InstagramError):
    pass


class Unauthorized(InstagramError):
    pass


class ChallengeRequired(InstagramError):
    pass


class RestrictedEndpoint(InstagramError):
    pass


class RateLimited(InstagramError):
    def __init__(self, message: str, *, retry_after: str = '', **kw: Any) -> None:
        super().__init__(message, **kw)
        self.retry_after = str(retry_after or '')


class ServerError(InstagramError):
    pass


class NetworkError(InstagramError):
    pass


_HTTP_ERR_RE = re.compile(r'Instagram HTTPError\s+(\d+):')
_TRANSIENT_TEXT: tuple[str, ...] = (
    'please wait a few minutes',
    'throttled',
    'temporary failure in name resolution',
    'name or service not known',
    'network is unreachable',
    'connection reset',
    'remote end closed connection without response',
    'timed out',
)


def is_retryable_error(e: BaseException) -> bool:
    """True for errors worth retrying: 5xx, 429, throttling and network failures."""
    if isinstance(e, (ServerError, RateLimited, NetworkError)):
        return True
    if isinstance(e, InstagramError):
        # Typed but not transient (auth, challenge, restricted, 4xx).
        return False
    if isinstance(e, (TimeoutError, ConnectionError)):
        return True
    s = str(e)
    m = _HTTP_ERR_RE.search(s)
    if m:
        try:
            code = int(m.group(1))
        except Exception:
            code = 0
        if code == 429 or (500 <= code <= 599):
            return True
    low = s.lower()
    for needle in _TRANSIENT_TEXT:
        if needle in low:
            return True
    return False


def is_restricted_error(e: BaseException) -> bool:
    if isinstance(e, RestrictedEndpoint):
        return True
    if isinstance(e, InstagramError) and e.code is not None:
        try:
            return int(e.code) in RESTRICTED_ERROR_CODES
        except Exception:
            return False
    return False


def _error_code(obj: dict[str, Any]) -> int | None:
    raw = obj.get('error_code')
    if raw is None:
        err = obj.get('error')
        if isinstance(err, dict):
            raw = err.get('code')
    if raw is None:
        return None
    try:
        return int(raw)
    except Exception:
        return None


def error_from_response(
    *, status: int, obj: dict[str, Any], raw: str = '', retry_after: str = ''
) -> InstagramError:
    """Map an HTTP status plus the decoded body onto the typed error taxonomy."""
    error_type = str(obj.get('error_type') or '').strip()
    message = str(obj.get('message') or '').strip() or preview(raw, 300) or f'status {status}'
    code = _error_code(obj)
    text = f'Instagram HTTPError {int(status)}: {error_type or "error"}: {message}'
    kw: dict[str, Any] = {'status': status, 'error_type': error_type, 'code': code, 'payload': obj}

    if obj.get('challenge') or error_type == 'challenge_required' or message == 'challenge_required':
        return ChallengeRequired(text, **kw)
    if code is not None and code in RESTRICTED_ERROR_CODES:
        return RestrictedEndpoint(text, **kw)
    if status == 401 or error_type == 'login_required' or message == 'login_required':
        return Unauthorized(text, **kw)
    if status == 429 or 'please wait a few minutes' in message.lower():
        return RateLimited(text, retry_after=retry_after, **kw)
    if status >= 500:
        return ServerError(text, **kw)
    return BadRequest(text, **kw)


def client_context() -> str:
    return str(uuid4())


@dataclass(frozen=True)
class InstagramAPI:
    """Thin cookie-authenticated transport for the private mobile API."""

    cookies: dict[str, str]
    base_url: str = 'https://i.instagram.com/api/v1'
    user_agent: str = (
        'Instagram 275.0.0.27.98 Android (28/9; 480dpi; 1080x2148; OnePlus; ONEPLUS A6000; OnePlus6; qcom; en_US; 458229237)'
    )
    app_id: str = '567067343352427'
    device_id: str = ''
    timeout: int = 30
    log_path: Path | None = None

    _log: LogFn = field(init=False, repr=False, compare=False, default=None)  # type: ignore[assignment]

    def __post_init__(self) -> None:
        object.__setattr__(self, 'base_url', (self.base_url or '').strip().rstrip('/'))
        if not self.device_id:
            object.__setattr__(self, 'device_id', 'android-' + uuid4().hex[:16])
        object.__setattr__(self, '_log', NetLog(log_path=self.log_path, prefix='ig-api'))

    @property
    def user_id(self) -> str:
        return str(self.cookies.get('ds_user_id') or '').strip()

    def _headers(self) -> dict[str, str]:
        cookie = '; '.join(f'{k}={v}' for k, v in self.cookies.items() if k and v is not None)
        headers = {
            'User-Agent': self.user_agent,
            'Accept': '*/*',
            'Accept-Language': 'en-US',
            'Cookie': cookie,
            'X-CSRFToken': str(self.cookies.get('csrftoken') or ''),
            'X-IG-App-ID': self.app_id,
            'X-IG-Capabilities': '3brTv10=',
            'X-IG-Connection-Type': 'WIFI',
            'X-Device-ID': self.device_id,
            'X-FB-HTTP-Engine': 'Liger',
            'X-Pigeon-Rawclienttime': f'{time.time():.3f}',
        }
        mid = self.cookies.get('mid')
        if mid:
            headers['X-MID'] = str(mid)
        return headers

    def _url(self, endpoint: str) -> str:
        ep = str(endpoint or '').strip()
        if ep.startswith('http://') or ep.startswith('https://'):
            return ep
        if not ep.startswith('/'):
            ep = '/' + ep
        return self.base_url + ep

    def _send(self, req: urllib.request.Request, *, timeout: int) -> dict[str, Any]:
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                raw = resp.read().decode('utf-8', errors='replace')
        except urllib.error.HTTPError as e:
            try:
                raw = e.read().decode('utf-8', errors='replace')
            except Exception:
                raw = str(e)
            try:
                obj = json.loads(raw or '{}')
            except json.JSONDecodeError:
                obj = {}
            if not isinstance(obj, dict):
                obj = {}
            retry_after = ''
            try:
                retry_after = str(e.headers.get('Retry-After') or '') if e.headers is not None else ''
            except Exception:
                retry_after = ''
            err = error_from_response(status=int(e.code), obj=obj, raw=raw, retry_after=retry_after)
            self._log(f'{req.get_method()} {req.full_url} failed: {preview(err, 300)}')
            raise err from e
        except (urllib.error.URLError, TimeoutError, ConnectionError, OSError) as e:
            raise NetworkError(f'Instagram URLError: {e}') from e

        try:
            obj_raw = json.loads(raw or '{}')
        except json.JSONDecodeError as e:
            raise ServerError(f'Instagram invalid JSON: {raw[:500]}', status=200) from e
        if not isinstance(obj_raw, dict):
            raise ServerError(f'Instagram invalid JSON (not an object): {raw[:500]}', status=200)

        obj: dict[str, Any] = obj_raw
        if str(obj.get('status') or '').strip().lower() == 'fail':
            raise error_from_response(status=200, obj=obj, raw=raw)
        return obj

    def request(
        self,
        endpoint: str,
        *,
        method: str = 'GET',
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        timeout: int | None = None,
    ) -> dict[str, Any]:
        url = self._url(endpoint)
        query = {k: v for k, v in (params or {}).items() if v is not None}
        if query:
            url = url + ('&' if '?' in url else '?') + urllib.parse.urlencode(query)
        headers = self._headers()
        body = None
        m = str(method or 'GET').upper()
        if m == 'POST':
            headers['Content-Type'] = 'application/x-www-form-urlencoded; charset=UTF-8'
            form = {k: v for k, v in (data or {}).items() if v is not None}
            body = urllib.parse.urlencode(form).encode('utf-8')
        req = urllib.request.Request(url, data=body, method=m, headers=headers)
        return self._send(req, timeout=int(timeout or self.timeout))

    # -----------------------------
    # Inbox / threads
    # -----------------------------
    def get_inbox(self, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request('/direct_v2/inbox/', params=params)

    def get_pending_inbox(self) -> dict[str, Any]:
        return self.request('/direct_v2/pending_inbox/')

    def get_thread(self, thread_id: str, *, cursor: str | None = None) -> dict[str, Any]:
        return self.request(f'/direct_v2/threads/{thread_id}/', params={'cursor': cursor})

    # -----------------------------
    # Broadcasts
    # -----------------------------
    def _broadcast_fields(
        self, *, thread_id: str | None = None, user_ids: list[str] | None = None
    ) -> dict[str, Any]:
        ctx = client_context()
        fields: dict[str, Any] = {
            'action': 'send_item',
            'is_shh_mode': '0',
            'send_attribution': 'inbox',
            'client_context': ctx,
            'device_id': self.device_id,
            'mutation_token': ctx,
            'offline_threading_id': ctx,
            '_uuid': self.device_id,
        }
        if thread_id:
            fields['thread_ids'] = json.dumps([str(thread_id)])
            fields['recipient_users'] = '[]'
        elif user_ids:
            fields['recipient_users'] = json.dumps([[str(u) for u in user_ids]])
        else:
            raise BadRequest('broadcast needs a thread_id or user_ids')
        return fields

    def broadcast_text(
        self, *, text: str, thread_id: str | None = None, user_ids: list[str] | None = None
    ) -> dict[str, Any]:
        fields = self._broadcast_fields(thread_id=thread_id, user_ids=user_ids)
        fields['text'] = str(text or '')
        return self.request('/direct_v2/threads/broadcast/text/', method='POST', data=fields)

    def broadcast_link(self, *, thread_id: str, link_url: str, link_text: str = '') -> dict[str, Any]:
        fields = self._broadcast_fields(thread_id=thread_id)
        text = str(link_text or '').strip()
        fields['link_text'] = f'{text} {link_url}'.strip() if text else str(link_url)
        fields['link_urls'] = json.dumps([str(link_url)])
        return self.request('/direct_v2/threads/broadcast/link/', method='POST', data=fields)

    def broadcast_reaction(self, *, thread_id: str, item_id: str, emoji: str = '', delete: bool = False) -> dict[str, Any]:
        fields = self._broadcast_fields(thread_id=thread_id)
        fields.update(
            {
                'item_type': 'reaction',
                'item_id': str(item_id),
                'node_type': 'item',
                'reaction_type': 'like',
                'reaction_status': 'deleted' if delete else 'created',
                'emoji': str(emoji or ''),
            }
        )
        return self.request('/direct_v2/threads/broadcast/reaction/', method='POST', data=fields)

    # -----------------------------
    # Media uploads
    # -----------------------------
    def _rupload(
        self,
        kind: str,
        data: bytes,
        *,
        upload_id: str,
        entity_type: str,
        params: dict[str, Any],
        timeout: int,
    ) -> str:
        name = f'{upload_id}_0_{random.randint(1000000000, 9999999999)}'
        rupload = {
            'retry_context': json.dumps({'num_step_auto_retry': 0, 'num_reupload': 0, 'num_step_manual_retry': 0}),
            'upload_id': upload_id,
            'xsharing_user_ids': '[]',
        }
        rupload.update(params)
        payload = bytes(data or b'')
        headers = self._headers()
        headers.update(
            {
                'X-Entity-Type': entity_type,
                'Offset': '0',
                'X-Instagram-Rupload-Params': json.dumps(rupload),
                'X-Entity-Name': name,
                'X-Entity-Length': str(len(payload)),
                'Content-Type': 'application/octet-stream',
            }
        )
        req = urllib.request.Request(self._url(f'/{kind}/{name}'), data=payload, method='POST', headers=headers)
        obj = self._send(req, timeout=int(timeout))
        return str(obj.get('upload_id') or upload_id)

    def upload_photo(self, data: bytes, *, upload_id: str | None = None, timeout: int = 60) -> str:
        return self._rupload(
            'rupload_igphoto',
            data,
            upload_id=str(upload_id or int(time.time() * 1000)),
            entity_type='image/jpeg',
            params={
                'media_type': '1',
                'image_compression': json.dumps({'lib_name': 'moz', 'lib_version': '3.1.m', 'quality': '80'}),
            },
            timeout=timeout,
        )

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
    ) -> str:
        """Upload an already-encoded mp4 (or an m4a voice clip when `voice`)."""
        params: dict[str, Any] = {
            'media_type': '11' if voice else '2',
            'upload_media_height': str(int(height)),
            'upload_media_width': str(int(width)),
            'upload_media_duration_ms': str(int(duration_ms)),
            'direct_v2': '1',
        }
        if voice:
            params['is_direct_voice'] = '1'
        return self._rupload(
            'rupload_igvideo',
            data,
            upload_id=str(upload_id or int(time.time() * 1000)),
            entity_type='audio/mp4' if voice else 'video/mp4',
            params=params,
            timeout=timeout,
        )

    def upload_finish(self, upload_id: str, *, source_type: str = '2', length_s: float = 3.0) -> dict[str, Any]:
        fields: dict[str, Any] = {
            'timezone_offset': '0',
            '_csrftoken': str(self.cookies.get('csrftoken') or ''),
            'source_type': str(source_type),
            '_uid': self.user_id,
            'device_id': self.device_id,
            '_uuid': self.device_id,
            'upload_id': str(upload_id),
            'device': json.dumps(
                {'manufacturer': 'OnePlus', 'model': 'ONEPLUS A6000', 'android_version': 28, 'android_release': '9.0'}
            ),
        }
        if str(source_type) != '4':
            fields['video'] = json.dumps({'length': float(length_s)})
        return self.request('/media/upload_finish/', method='POST', data=fields, params={'video': '1'})

    def broadcast_photo(self, *, thread_id: str, upload_id: str) -> dict[str, Any]:
        fields = self._broadcast_fields(thread_id=thread_id)
        fields['upload_id'] = str(upload_id)
        fields['allow_full_aspect_ratio'] = 'true'
        return self.request('/direct_v2/threads/broadcast/configure_photo/', method='POST', data=fields)

    def broadcast_video(self, *, thread_id: str, upload_id: str) -> dict[str, Any]:
        fields = self._broadcast_fields(thread_id=thread_id)
        fields['upload_id'] = str(upload_id)
        fields['video_result'] = ''
        fields['sampled'] = 'true'
        return self.request('/direct_v2/threads/broadcast/configure_video/', method='POST', data=fields)

    def broadcast_voice(
        self, *, thread_id: str, upload_id: str, waveform: list[float] | None = None
    ) -> dict[str, Any]:
        fields = self._broadcast_fields(thread_id=thread_id)
        fields['upload_id'] = str(upload_id)
        fields['waveform'] = json.dumps([float(x) for x in (waveform or [])])
        fields['waveform_sampling_frequency_hz'] = '10'
        return self.request('/direct_v2/threads/broadcast/share_voice/', method='POST', data=fields)

    def broadcast_sticker(self, *, thread_id: str, sticker_id: str) -> dict[str, Any]:
        fields = self._broadcast_fields(thread_id=thread_id)
        fields['id'] = str(sticker_id)
        fields['is_sticker'] = 'true'
        return self.request('/direct_v2/threads/broadcast/animated_media/', method='POST', data=fields)

    def indicate_activity(self, *, thread_id: str, is_typing: bool = True) -> dict[str, Any]:
        fields = self._broadcast_fields(thread_id=thread_id)
        fields['activity_status'] = '1' if is_typing else '0'
        return self.request('/direct_v2/threads/broadcast/indicate_activity/', method='POST', data=fields)

    # -----------------------------
    # Item / thread management
    # -----------------------------
    def delete_item(self, *, thread_id: str, item_id: str) -> dict[str, Any]:
        return self.request(
            f'/direct_v2/threads/{thread_id}/items/{item_id}/delete/',
            method='POST',
            data={'_uuid': self.device_id},
        )

    def mark_item_seen(self, *, thread_id: str, item_id: str) -> dict[str, Any]:
        return self.request(
            f'/direct_v2/threads/{thread_id}/items/{item_id}/seen/',
            method='POST',
            data={'action': 'mark_seen', 'thread_id': thread_id, 'item_id': item_id},
        )

    def approve_thread(self, thread_id: str) -> dict[str, Any]:
        return self.request(f'/direct_v2/threads/{thread_id}/approve/', method='POST', data={'filter': 'DEFAULT'})

    def _thread_action(self, thread_id: str, action: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        fields = {'_uuid': self.device_id}
        fields.update(data or {})
        return self.request(f'/direct_v2/threads/{thread_id}/{action}/', method='POST', data=fields)

    def mute_thread(self, thread_id: str) -> dict[str, Any]:
        return self._thread_action(thread_id, 'mute')

    def unmute_thread(self, thread_id: str) -> dict[str, Any]:
        return self._thread_action(thread_id, 'unmute')

    def hide_thread(self, thread_id: str) -> dict[str, Any]:
        return self._thread_action(thread_id, 'hide', {'should_move_future_requests_to_spam': 'false'})

    def unhide_thread(self, thread_id: str) -> dict[str, Any]:
        return self._thread_action(thread_id, 'unhide')

    def leave_thread(self, thread_id: str) -> dict[str, Any]:
        return self._thread_action(thread_id, 'leave')

    def add_users(self, thread_id: str, user_ids: list[str]) -> dict[str, Any]:
        return self._thread_action(thread_id, 'add_user', {'user_ids': json.dumps([str(u) for u in user_ids])})

    def remove_users(self, thread_id: str, user_ids: list[str]) -> dict[str, Any]:
        return self._thread_action(thread_id, 'remove_users', {'user_ids': json.dumps([str(u) for u in user_ids])})

    def update_title(self, thread_id: str, title: str) -> dict[str, Any]:
        return self._thread_action(thread_id, 'update_title', {'title': str(title or '')})

    # -----------------------------
    # Users
    # -----------------------------
    def search_users(self, query: str, *, count: int = 30) -> dict[str, Any]:
        return self.request(
            '/users/search/',
            params={'q': str(query or ''), 'count': int(count), 'rank_token': f'{self.user_id}_{self.device_id}'},
        )

    def get_user_info(self, user_id: str) -> dict[str, Any]:
        return self.request(f'/users/{user_id}/info/')

    def get_user_by_username(self, username: str) -> dict[str, Any]:
        name = urllib.parse.quote(str(username or '').strip().lstrip('@'), safe='')
        return self.request(f'/users/{name}/usernameinfo/')
