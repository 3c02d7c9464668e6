from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _load_dotenv(path: Path) -> None:
    """Best-effort .env loader (no dependencies).

    Supports:
      - KEY=VALUE
      - export KEY=VALUE

    Does not override already-set env vars.
    """
    try:
        if not path.exists():
            return
        content = path.read_text(encoding='utf-8', errors='replace')
    except OSError:
        return

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith('#'):
            continue
        if line.startswith('export '):
            line = line[len('export ') :].strip()
        if '=' not in line:
            continue
        key, value = line.split('=', 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        value = value.strip().strip("'").strip('"')
        os.environ[key] = value


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str = '') -> str:
    return (os.getenv(name) or default).strip()


@dataclass(frozen=True)
class ClientConfig:
    repo_root: Path

    # Session (cookies of an already logged-in account)
    sessionid: str
    csrftoken: str
    ds_user_id: str
    mid: str

    # Transport
    api_base_url: str
    user_agent: str
    app_id: str
    device_id: str
    http_timeout_seconds: int

    # Polling engine
    poll_interval_ms: int
    poll_mode: str  # dedup | latest
    reply_timeout_ms: int
    send_max_attempts: int
    ledger_max_entries: int
    inbox_thread_limit: int
    inbox_message_limit: int

    log_path: Path | None

    def cookies(self) -> dict[str, str]:
        out = {
            'sessionid': self.sessionid,
            'csrftoken': self.csrftoken,
            'ds_user_id': self.ds_user_id,
            'mid': self.mid,
        }
        return {k: v for k, v in out.items() if v}

    @staticmethod
    def default_repo_root() -> Path:
        here = Path(__file__).resolve()
        return Path(os.getenv('IG_REPO_ROOT', str(here.parents[1]))).resolve()

    @classmethod
    def from_env(cls) -> ClientConfig:
        repo_root = cls.default_repo_root()

        # Load optional env files (if present).
        _load_dotenv(repo_root / 'ig_direct' / '.env')
        _load_dotenv(repo_root / '.env.ig_direct')

        sessionid = _env_str('IG_SESSIONID')
        if not sessionid:
            raise RuntimeError('IG_SESSIONID is required')
        csrftoken = _env_str('IG_CSRFTOKEN')
        ds_user_id = _env_str('IG_DS_USER_ID')
        mid = _env_str('IG_MID')

        api_base_url = _env_str('IG_API_BASE_URL', 'https://i.instagram.com/api/v1') or 'https://i.instagram.com/api/v1'
        user_agent = _env_str('IG_USER_AGENT')
        app_id = _env_str('IG_APP_ID', '567067343352427') or '567067343352427'
        device_id = _env_str('IG_DEVICE_ID')
        http_timeout_seconds = max(5, min(300, _env_int('IG_HTTP_TIMEOUT_SECONDS', 30)))

        poll_interval_ms = max(1000, min(600_000, _env_int('IG_POLL_INTERVAL_MS', 5000)))
        poll_mode = _env_str('IG_POLL_MODE', 'dedup').lower()
        if poll_mode in {'watermark', 'last', 'simple'}:
            poll_mode = 'latest'
        if poll_mode not in {'dedup', 'latest'}:
            poll_mode = 'dedup'
        reply_timeout_ms = max(1000, min(24 * 60 * 60 * 1000, _env_int('IG_REPLY_TIMEOUT_MS', 120_000)))
        send_max_attempts = max(1, min(10, _env_int('IG_SEND_MAX_ATTEMPTS', 3)))
        ledger_max_entries = max(100, _env_int('IG_LEDGER_MAX_ENTRIES', 10_000))
        inbox_thread_limit = max(1, min(100, _env_int('IG_INBOX_THREAD_LIMIT', 20)))
        inbox_message_limit = max(1, min(100, _env_int('IG_INBOX_MESSAGE_LIMIT', 10)))

        log_raw = _env_str('IG_LOG_PATH')
        log_path: Path | None = None
        if log_raw:
            p = Path(log_raw)
            log_path = (p if p.is_absolute() else (repo_root / p)).resolve()

        return cls(
            repo_root=repo_root,
            sessionid=sessionid,
            csrftoken=csrftoken,
            ds_user_id=ds_user_id,
            mid=mid,
            api_base_url=api_base_url,
            user_agent=user_agent,
            app_id=app_id,
            device_id=device_id,
            http_timeout_seconds=http_timeout_seconds,
            poll_interval_ms=poll_interval_ms,
            poll_mode=poll_mode,
            reply_timeout_ms=reply_timeout_ms,
            send_max_attempts=send_max_attempts,
            ledger_max_entries=ledger_max_entries,
            inbox_thread_limit=inbox_thread_limit,
            inbox_message_limit=inbox_message_limit,
            log_path=log_path,
        )
