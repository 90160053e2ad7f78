import asyncio

import httpx
import openai
import pytest

from autoservice.errors import ProviderUnavailable, RateLimited
from autoservice.pipeline.retry import RetryPolicy, classify_error, with_retry


class _Sleeper:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def _flaky(failures, exc_factory, result="ok"):
    state = {"calls": 0}

    async def fn():
        state["calls"] += 1
        if state["calls"] <= failures:
            raise exc_factory()
        return result

    return fn, state


def _response(status, headers=None):
    return httpx.Response(status, headers=headers or {}, request=httpx.Request("POST", "https://api.example/v1/chat"))


def test_rate_limit_is_retried_with_long_delays():
    sleeper = _Sleeper()
    fn, state = _flaky(2, lambda: RateLimited("slow down"))
    assert asyncio.run(with_retry(fn, RetryPolicy(), sleep=sleeper)) == "ok"
    assert state["calls"] == 3
    assert sleeper.delays == [20.0, 40.0]


def test_gives_up_after_max_attempts():
    sleeper = _Sleeper()
    fn, state = _flaky(10, lambda: RateLimited("slow down"))
    with pytest.raises(RateLimited):
        asyncio.run(with_retry(fn, RetryPolicy(max_attempts=4), sleep=sleeper))
    assert state["calls"] == 4
    assert sleeper.delays == [20.0, 40.0, 60.0]


def test_longer_retry_after_wins():
    policy = RetryPolicy()
    assert policy.delay_for(1, retry_after=90) == 90
    assert policy.delay_for(1, retry_after=5) == 20
    assert policy.delay_for(7) == 60


def test_other_failures_are_not_retried():
    sleeper = _Sleeper()
    fn, state = _flaky(1, lambda: ProviderUnavailable("down"))
    with pytest.raises(ProviderUnavailable):
        asyncio.run(with_retry(fn, sleep=sleeper))
    assert state["calls"] == 1
    assert sleeper.delays == []


def test_openai_rate_limit_error_is_classified_with_retry_after():
    err = openai.RateLimitError("Rate limit reached", response=_response(429, {"retry-after": "75"}), body=None)
    mapped = classify_error(err)
    assert isinstance(mapped, RateLimited)
    assert mapped.retry_after == 75.0


def test_httpx_status_errors_are_classified():
    request = httpx.Request("POST", "https://api.mistral.ai/v1/ocr")
    too_many = httpx.HTTPStatusError("429", request=request, response=httpx.Response(429, request=request))
    broken = httpx.HTTPStatusError("502", request=request, response=httpx.Response(502, request=request))
    bad = httpx.HTTPStatusError("400", request=request, response=httpx.Response(400, request=request))
    assert isinstance(classify_error(too_many), RateLimited)
    assert isinstance(classify_error(broken), ProviderUnavailable)
    assert classify_error(bad) is bad
    assert isinstance(classify_error(httpx.ConnectError("refused")), ProviderUnavailable)


def test_unrelated_exceptions_pass_through_unchanged():
    exc = KeyError("x")
    assert classify_error(exc) is exc
