from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

from vibephoto.errors import ProviderError
from vibephoto.utils.logging import get_logger


logger = get_logger('retry')

T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed interval with bounded attempts; transient errors double the wait up to a cap."""

    interval: float
    max_attempts: int
    max_backoff: float = 30.0

    def delay(self, consecutive_errors: int = 0) -> float:
        if consecutive_errors <= 0:
            return self.interval
        return min(self.max_backoff, self.interval * (2 ** consecutive_errors))

    @property
    def budget_seconds(self) -> float:
        return self.interval * self.max_attempts


# (provider, kind) -> attempts; `None` kind is the provider default.
POLL_ATTEMPTS = {
    ('astria', 'training'): 1080,
    ('astria', None): 60,
    ('replicate', 'training'): 1200,
    ('replicate', None): 100,
}


def poll_policy(provider: str, kind: str, interval: float, max_backoff: float = 30.0) -> RetryPolicy:
    attempts = POLL_ATTEMPTS.get((provider, kind)) or POLL_ATTEMPTS.get((provider, None)) or 100
    return RetryPolicy(interval=interval, max_attempts=attempts, max_backoff=max_backoff)


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, ProviderError):
        return exc.transient
    return isinstance(exc, (httpx.TransportError, httpx.TimeoutException))


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    retries: int,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    label: str = '',
) -> T:
    attempt = 0
    while True:
        try:
            return await fn()
        except (ProviderError, httpx.HTTPError) as exc:
            if not is_transient(exc) or attempt >= retries:
                raise
            wait_s = min(max_delay, base_delay * (2 ** attempt))
            attempt += 1
            logger.warning('transient_error_retry', call=label, attempt=attempt, wait=wait_s, error=str(exc))
            await asyncio.sleep(wait_s)
