from __future__ import annotations

import random
import time
from collections.abc import Callable
from typing import TypeVar

from .instagram_api import is_retryable_error
from .netlog import LogFn, null_log, preview

R = TypeVar('R')

DEFAULT_MAX_ATTEMPTS = 3


class DeliveryRetrier:
    """Runs one outbound send with bounded retries on transient failures.

    Only errors classified by `is_retryable_error` (5xx, 429, throttling,
    network) are retried; anything else is raised after the first call.
    """

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        log: LogFn | None = None,
        sleep: Callable[[float], object] | None = None,
        jitter: Callable[[float, float], float] | None = None,
    ) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self._log = log or null_log
        self._sleep = sleep or time.sleep
        self._jitter = jitter or random.uniform

    def backoff_ms(self, attempt: int) -> float:
        # Delay before attempt n (n >= 2): 2^n seconds plus up to 1s of jitter.
        n = max(2, int(attempt))
        return float(2**n) * 1000.0 + float(self._jitter(0.0, 1000.0))

    def send_with_retry(
        self,
        send_once: Callable[[], R],
        *,
        max_attempts: int | None = None,
        label: str = '',
    ) -> R:
        attempts = self.max_attempts if max_attempts is None else max(1, int(max_attempts))
        what = label or getattr(send_once, '__name__', '') or 'send'
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                delay_ms = self.backoff_ms(attempt)
                self._log(
                    f'[retry] {what} attempt {attempt}/{attempts} in {delay_ms:.0f}ms '
                    f'after error: {preview(last_error, 200)}'
                )
                self._sleep(delay_ms / 1000.0)
            try:
                return send_once()
            except Exception as e:
                last_error = e
                if not is_retryable_error(e):
                    raise
        assert last_error is not None
        self._log(f'[retry] {what} gave up after {attempts} attempts: {preview(last_error, 200)}')
        raise last_error
