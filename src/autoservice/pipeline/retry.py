"""Rate-limit-aware retry for provider calls.

Provider quotas are counted per minute, so backing off for a second or two
just burns attempts. Delays are measured in tens of seconds, and a longer
``Retry-After`` from the provider always wins.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

import httpx
import openai

from ..errors import ProviderUnavailable, RateLimited
from ..logging import get_logger

LOG = get_logger("retry")

T = TypeVar("T")

_QUOTA_PATTERN = re.compile(r"rate.?limit|quota|too many requests|capacity exceeded", re.IGNORECASE)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    delays: Tuple[float, ...] = (20.0, 40.0, 60.0)

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Pause before retry number ``attempt`` (1-based)."""
        if not self.delays:
            base = 0.0
        else:
            base = self.delays[min(attempt - 1, len(self.delays) - 1)]
        if retry_after is not None and retry_after > base:
            return float(retry_after)
        return base


def _retry_after(headers: Optional[httpx.Headers]) -> Optional[float]:
    if headers is None:
        return None
    raw = headers.get("retry-after")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def classify_error(exc: BaseException) -> BaseException:
    """Map provider exceptions onto RateLimited / ProviderUnavailable.

    Anything not recognized as a provider failure is returned unchanged.
    """
    if isinstance(exc, (RateLimited, ProviderUnavailable)):
        return exc
    if isinstance(exc, openai.RateLimitError):
        return RateLimited(str(exc), retry_after=_retry_after(exc.response.headers))
    if isinstance(exc, (openai.APIConnectionError, openai.APITimeoutError)):
        return ProviderUnavailable(str(exc))
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code == 429 or _QUOTA_PATTERN.search(str(exc)):
            return RateLimited(str(exc), retry_after=_retry_after(exc.response.headers))
        if exc.status_code >= 500:
            return ProviderUnavailable(f"HTTP {exc.status_code}: {exc}")
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429:
            return RateLimited(f"HTTP 429 from {exc.request.url}", retry_after=_retry_after(exc.response.headers))
        if status >= 500:
            return ProviderUnavailable(f"HTTP {status} from {exc.request.url}")
        return exc
    if isinstance(exc, (httpx.TransportError, httpx.TimeoutException)):
        return ProviderUnavailable(str(exc) or exc.__class__.__name__)
    return exc


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "provider call",
) -> T:
    """Await ``fn()``; retry only rate limits, up to ``policy.max_attempts``."""
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as raw:
            exc = classify_error(raw)
            if not isinstance(exc, RateLimited):
                if exc is raw:
                    raise
                raise exc from raw
            if attempt >= policy.max_attempts:
                LOG.error(f"{label}: rate limited after {attempt} attempt(s); giving up")
                if exc is raw:
                    raise
                raise exc from raw
            delay = policy.delay_for(attempt, exc.retry_after)
            LOG.warning(f"{label}: rate limited (attempt {attempt}/{policy.max_attempts}); retrying in {delay:.0f}s")
            await sleep(delay)
            attempt += 1
