import io
import json
import unittest
import urllib.error
import urllib.parse
from typing import Any
from unittest.mock import patch

from ig_direct.instagram_api import (
    BadRequest,
    ChallengeRequired,
    InstagramAPI,
    NetworkError,
    RateLimited,
    RestrictedEndpoint,
    ServerError,
    Unauthorized,
    is_restricted_error,
    is_retryable_error,
)


class _FakeHTTPResponse:
    def __init__(self, payload: bytes) -> None:
        self._payload = payload

    def read(self) -> bytes:
        return self._payload

    def __enter__(self) -> '_FakeHTTPResponse':
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> bool:
        return False


def _http_error(url: str, code: int, body: dict[str, Any], headers: dict[str, str] | None = None) -> urllib.error.HTTPError:
    return urllib.error.HTTPError(
        url, code, 'err', headers or {}, io.BytesIO(json.dumps(body).encode('utf-8'))  # type: ignore[arg-type]
    )


def _api() -> InstagramAPI:
    return InstagramAPI(
        cookies={'sessionid': 's', 'csrftoken': 'c', 'ds_user_id': '1000'},
        base_url='http://ig/api/v1/',
        device_id='android-test',
    )


class TestInstagramAPIErrors(unittest.TestCase):
    def _call_with(self, fake_urlopen: Any) -> None:
        with patch('ig_direct.instagram_api.urllib.request.urlopen', fake_urlopen):
            _api().get_inbox()

    def _raising(self, exc: BaseException) -> Any:
        def fake_urlopen(req: object, timeout: int = 0) -> _FakeHTTPResponse:
            raise exc

        return fake_urlopen

    def test_status_mapping(self) -> None:
        cases: list[tuple[int, dict[str, Any], type]] = [
            (400, {'status': 'fail', 'message': 'bad thread'}, BadRequest),
            (401, {'status': 'fail', 'message': 'login_required'}, Unauthorized),
            (403, {'status': 'fail', 'message': 'login_required', 'error_type': 'login_required'}, Unauthorized),
            (400, {'status': 'fail', 'message': 'challenge_required', 'challenge': {'url': 'x'}}, ChallengeRequired),
            (429, {'status': 'fail', 'message': 'Please wait a few minutes before you try again.'}, RateLimited),
            (502, {}, ServerError),
        ]
        for code, body, kind in cases:
            with self.subTest(code=code, kind=kind.__name__):
                with self.assertRaises(kind) as ctx:
                    self._call_with(self._raising(_http_error('http://ig/api/v1/direct_v2/inbox/', code, body)))
                self.assertEqual(ctx.exception.status, code)
                self.assertIn(f'Instagram HTTPError {code}:', str(ctx.exception))

    def test_restricted_code_maps_to_restricted_endpoint(self) -> None:
        body = {'status': 'fail', 'message': 'not available', 'error_code': 200}
        with self.assertRaises(RestrictedEndpoint) as ctx:
            self._call_with(self._raising(_http_error('http://ig/x', 400, body)))
        self.assertTrue(is_restricted_error(ctx.exception))
        self.assertFalse(is_retryable_error(ctx.exception))

    def test_retry_after_header_is_kept(self) -> None:
        err = _http_error('http://ig/x', 429, {'message': 'slow'}, headers={'Retry-After': '30'})
        with self.assertRaises(RateLimited) as ctx:
            self._call_with(self._raising(err))
        self.assertEqual(ctx.exception.retry_after, '30')

    def test_fail_status_in_200_body_raises(self) -> None:
        payload = json.dumps({'status': 'fail', 'message': 'Transaction failed'}).encode('utf-8')
        with self.assertRaises(BadRequest):
            self._call_with(lambda req, timeout=0: _FakeHTTPResponse(payload))

    def test_invalid_json_is_server_error(self) -> None:
        with self.assertRaises(ServerError):
            self._call_with(lambda req, timeout=0: _FakeHTTPResponse(b'<html>oops</html>'))

    def test_urlerror_becomes_network_error(self) -> None:
        with self.assertRaises(NetworkError) as ctx:
            self._call_with(self._raising(urllib.error.URLError('connection refused')))
        self.assertTrue(is_retryable_error(ctx.exception))
        self.assertIn('connection refused', str(ctx.exception))


class TestRetryableClassification(unittest.TestCase):
    def test_untyped_errors_by_text(self) -> None:
        self.assertTrue(is_retryable_error(RuntimeError('Instagram HTTPError 503: unavailable')))
        self.assertTrue(is_retryable_error(RuntimeError('Instagram HTTPError 429: fail: slow down')))
        self.assertFalse(is_retryable_error(RuntimeError('Instagram HTTPError 404: not found')))
        self.assertTrue(is_retryable_error(RuntimeError('Connection reset by peer')))
        self.assertTrue(is_retryable_error(TimeoutError()))
        self.assertFalse(is_retryable_error(ValueError('bad input')))

    def test_typed_errors(self) -> None:
        self.assertTrue(is_retryable_error(ServerError('x', status=500)))
        self.assertTrue(is_retryable_error(RateLimited('x', status=429)))
        self.assertFalse(is_retryable_error(Unauthorized('Instagram HTTPError 401: x', status=401)))
        self.assertFalse(is_retryable_error(ChallengeRequired('x', status=400)))
        # Typed classification wins over the message text.
        self.assertFalse(is_retryable_error(BadRequest('Instagram HTTPError 500: odd', status=400)))


class TestInstagramAPIRequests(unittest.TestCase):
    def setUp(self) -> None:
        self.requests: list[Any] = []

        def fake_urlopen(req: Any, timeout: int = 0) -> _FakeHTTPResponse:
            self.requests.append(req)
            return _FakeHTTPResponse(
                b'{"status": "ok", "payload": {"thread_id": "t1", "item_id": "i9", "client_context": "c"}}'
            )

        p = patch('ig_direct.instagram_api.urllib.request.urlopen', fake_urlopen)
        p.start()
        self.addCleanup(p.stop)

    def _form(self, req: Any) -> dict[str, str]:
        return dict(urllib.parse.parse_qsl(req.data.decode('utf-8')))

    def test_broadcast_text_to_thread(self) -> None:
        out = _api().broadcast_text(text='hello there', thread_id='t1')
        self.assertEqual(out['payload']['item_id'], 'i9')

        req = self.requests[0]
        self.assertEqual(req.get_method(), 'POST')
        self.assertEqual(req.full_url, 'http://ig/api/v1/direct_v2/threads/broadcast/text/')
        form = self._form(req)
        self.assertEqual(form['text'], 'hello there')
        self.assertEqual(json.loads(form['thread_ids']), ['t1'])
        self.assertEqual(form['action'], 'send_item')
        self.assertEqual(form['client_context'], form['mutation_token'])
        self.assertEqual(req.get_header('X-csrftoken'), 'c')
        self.assertIn('sessionid=s', req.get_header('Cookie'))

    def test_broadcast_text_to_users(self) -> None:
        _api().broadcast_text(text='hi', user_ids=['5', '6'])
        form = self._form(self.requests[0])
        self.assertEqual(json.loads(form['recipient_users']), [['5', '6']])
        self.assertNotIn('thread_ids', form)

    def test_broadcast_needs_a_target(self) -> None:
        with self.assertRaises(BadRequest):
            _api().broadcast_text(text='hi')
        self.assertEqual(self.requests, [])

    def test_inbox_query_string(self) -> None:
        _api().get_inbox({'limit': 5, 'cursor': None})
        url = self.requests[0].full_url
        self.assertTrue(url.startswith('http://ig/api/v1/direct_v2/inbox/?'))
        self.assertIn('limit=5', url)
        self.assertNotIn('cursor', url)

    def test_reaction_fields(self) -> None:
        _api().broadcast_reaction(thread_id='t1', item_id='i1', emoji='x', delete=True)
        form = self._form(self.requests[0])
        self.assertEqual(form['item_id'], 'i1')
        self.assertEqual(form['reaction_status'], 'deleted')

    def test_user_id_from_cookie(self) -> None:
        self.assertEqual(_api().user_id, '1000')

    def test_upload_video_headers(self) -> None:
        upload_id = _api().upload_video(b'mp4data', upload_id='123', width=480, height=640, duration_ms=4500)
        self.assertEqual(upload_id, '123')
        req = self.requests[0]
        self.assertTrue(req.full_url.startswith('http://ig/api/v1/rupload_igvideo/123_0_'))
        self.assertEqual(req.get_header('X-entity-type'), 'video/mp4')
        self.assertEqual(req.get_header('X-entity-length'), '7')
        params = json.loads(req.get_header('X-instagram-rupload-params'))
        self.assertEqual(params['media_type'], '2')
        self.assertEqual(params['upload_media_width'], '480')
        self.assertEqual(params['upload_media_duration_ms'], '4500')
        self.assertEqual(params['direct_v2'], '1')
        self.assertNotIn('is_direct_voice', params)

    def test_upload_voice_params(self) -> None:
        _api().upload_video(b'm4a', upload_id='9', voice=True)
        params = json.loads(self.requests[0].get_header('X-instagram-rupload-params'))
        self.assertEqual(params['media_type'], '11')
        self.assertEqual(params['is_direct_voice'], '1')

    def test_upload_finish_fields(self) -> None:
        _api().upload_finish('123', length_s=4.5)
        req = self.requests[0]
        self.assertTrue(req.full_url.startswith('http://ig/api/v1/media/upload_finish/'))
        form = self._form(req)
        self.assertEqual(form['upload_id'], '123')
        self.assertEqual(form['source_type'], '2')
        self.assertEqual(form['_uid'], '1000')
        self.assertEqual(json.loads(form['video']), {'length': 4.5})

        _api().upload_finish('124', source_type='4')
        self.assertNotIn('video', self._form(self.requests[1]))

    def test_media_broadcast_endpoints(self) -> None:
        api = _api()
        api.broadcast_video(thread_id='t1', upload_id='u1')
        api.broadcast_voice(thread_id='t1', upload_id='u2', waveform=[0.25, 1])
        api.broadcast_sticker(thread_id='t1', sticker_id='777')
        urls = [r.full_url.rsplit('/broadcast/', 1)[1] for r in self.requests]
        self.assertEqual(urls, ['configure_video/', 'share_voice/', 'animated_media/'])
        self.assertEqual(self._form(self.requests[0])['upload_id'], 'u1')
        self.assertEqual(json.loads(self._form(self.requests[1])['waveform']), [0.25, 1.0])
        sticker = self._form(self.requests[2])
        self.assertEqual(sticker['id'], '777')
        self.assertEqual(sticker['is_sticker'], 'true')

    def test_thread_membership_endpoints(self) -> None:
        api = _api()
        api.remove_users('t1', ['5'])
        api.unhide_thread('t1')
        self.assertEqual(self.requests[0].full_url, 'http://ig/api/v1/direct_v2/threads/t1/remove_users/')
        self.assertEqual(json.loads(self._form(self.requests[0])['user_ids']), ['5'])
        self.assertEqual(self.requests[1].full_url, 'http://ig/api/v1/direct_v2/threads/t1/unhide/')

    def test_user_endpoints(self) -> None:
        api = _api()
        api.search_users('ada lovelace', count=5)
        api.get_user_info('42')
        api.get_user_by_username('@ada')
        search = urllib.parse.urlparse(self.requests[0].full_url)
        self.assertEqual(search.path, '/api/v1/users/search/')
        q = dict(urllib.parse.parse_qsl(search.query))
        self.assertEqual(q['q'], 'ada lovelace')
        self.assertEqual(q['count'], '5')
        self.assertEqual(q['rank_token'], '1000_android-test')
        self.assertEqual(self.requests[1].full_url, 'http://ig/api/v1/users/42/info/')
        self.assertEqual(self.requests[2].full_url, 'http://ig/api/v1/users/ada/usernameinfo/')
