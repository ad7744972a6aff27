"""Retry utilities for LLM provider calls."""

from tenacity import retry, retry_if_exception, stop_after_attempt

from contextforge.api.errors import (
    calculate_retry_delay,
    handle_api_error,
    is_retryable_error,
)


def is_retryable_exception(exc: BaseException) -> bool:
    """Whether a provider exception classifies as transient."""
    # Classification does not depend on the provider name.
    return is_retryable_error(handle_api_error(exc, "anthropic"))


def backoff_wait(retry_state) -> float:
    return calculate_retry_delay(retry_state.attempt_number)


def make_provider_retry(max_attempts: int = 3):
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=backoff_wait,
        retry=retry_if_exception(is_retryable_exception),
        reraise=True,
    )


provider_retry = make_provider_retry()
