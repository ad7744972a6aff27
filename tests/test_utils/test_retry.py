"""Tests for provider call retries."""

from types import SimpleNamespace

import pytest

from contextforge.utils import retry as retry_module
from contextforge.utils.retry import (
    backoff_wait,
    is_retryable_exception,
    make_provider_retry,
)


@pytest.fixture
def no_backoff(monkeypatch):
    monkeypatch.setattr(retry_module, "calculate_retry_delay", lambda attempt: 0)


class TestIsRetryable:
    def test_transient_errors(self):
        assert is_retryable_exception(RuntimeError("503 Service Unavailable"))
        assert is_retryable_exception(RuntimeError("429 rate limit exceeded"))
        assert is_retryable_exception(RuntimeError("Request timed out"))

    def test_permanent_errors(self):
        assert not is_retryable_exception(RuntimeError("401 Unauthorized"))
        assert not is_retryable_exception(RuntimeError("maximum context length"))
        assert not is_retryable_exception(ValueError("something odd"))


def test_backoff_wait_uses_attempt_number(monkeypatch):
    monkeypatch.setattr("contextforge.api.errors.random.uniform", lambda a, b: 0.0)
    assert backoff_wait(SimpleNamespace(attempt_number=1)) == 1.0
    assert backoff_wait(SimpleNamespace(attempt_number=3)) == 4.0


@pytest.mark.asyncio
async def test_retries_transient_then_succeeds(no_backoff):
    calls = []

    @make_provider_retry(3)
    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise RuntimeError("503 Service Unavailable")
        return "ok"

    assert await flaky() == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_does_not_retry_permanent_error(no_backoff):
    calls = []

    @make_provider_retry(3)
    async def bad_key():
        calls.append(1)
        raise RuntimeError("401 Unauthorized")

    with pytest.raises(RuntimeError, match="401"):
        await bad_key()
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_reraises_after_last_attempt(no_backoff):
    calls = []

    @make_provider_retry(2)
    async def always_down():
        calls.append(1)
        raise RuntimeError("500 Internal Server Error")

    with pytest.raises(RuntimeError, match="500"):
        await always_down()
    assert len(calls) == 2
