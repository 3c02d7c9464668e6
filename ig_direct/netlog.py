from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path

LogFn = Callable[[str], None]


class NetLog:
    """Best-effort line logger: stdout plus an optional append-only file."""

    def __init__(self, *, log_path: Path | None = None, prefix: str = 'ig-direct', echo: bool = True) -> None:
        self.log_path = log_path
        self.prefix = prefix
        self.echo = bool(echo)

    def __call__(self, msg: str) -> None:
        if not msg:
            return
        line = f'[{self.prefix}] {msg}' if self.prefix else str(msg)
        if self.echo:
            try:
                print(line, flush=True)
            except Exception:
                pass
        if self.log_path is None:
            return
        try:
            ts = time.strftime('%Y-%m-%d %H:%M:%S')
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open('a', encoding='utf-8') as f:
                f.write(f'[{ts}] {line}\n')
        except Exception:
            pass


def null_log(_msg: str) -> None:
    return None


def preview(s: object, max_chars: int = 200) -> str:
    out = str(s or '').replace('\n', ' ').replace('\r', ' ').strip()
    out = ' '.join(out.split())
    if max_chars > 0 and len(out) > max_chars:
        out = out[: max(0, int(max_chars) - 1)] + '…'
    return out
