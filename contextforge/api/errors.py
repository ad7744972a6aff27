"""Classification of upstream LLM provider failures into API errors."""

from __future__ import annotations

import random
import re
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

ProviderName = Literal["anthropic", "openai"]

API_KEY_ENV_VARS: dict[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}

INVALID_KEY_FIELDS: dict[str, str] = {
    "anthropic": "anthropicKey",
    "openai": "openaiKey",
}

PROVIDER_DISPLAY_NAMES: dict[str, str] = {
    "anthropic": "Anthropic",
    "openai": "OpenAI",
}

DEFAULT_RETRY_AFTER = 60
MAX_RETRY_DELAY = 30.0

_RETRY_AFTER_PATTERN = re.compile(r"retry[_\s]after[:\s]+(\d+)", re.IGNORECASE)


@dataclass
class ApiError:
    status: int
    message: str
    code: str
    provider: Optional[str] = None
    invalid_key: Optional[str] = None
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Error body returned to callers; serializes with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    error: str
    code: Optional[str] = None
    provider: Optional[str] = None
    invalid_key: Optional[str] = None
    retry_after: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def _contains(text: str, *needles: str) -> bool:
    return any(n in text for n in needles)


def handle_api_error(
    error: BaseException | str,
    provider: str,
    admin_mode: bool = False,
) -> ApiError:
    """Classify a provider failure by sniffing its message.

    ``admin_mode`` points invalid-key messages at the server's environment
    variable instead of the user's own settings.
    """
    message = str(error)
    lower = message.lower()
    display = PROVIDER_DISPLAY_NAMES.get(provider, provider.capitalize())
    env_var = API_KEY_ENV_VARS.get(provider, f"{provider.upper()}_API_KEY")
    key_field = INVALID_KEY_FIELDS.get(provider)

    if _contains(lower, "401", "unauthorized", "authentication", "invalid api key"):
        if admin_mode:
            text = (
                f"Invalid {display} API key. The {env_var} environment "
                f"variable may be incorrect or expired."
            )
        else:
            text = (
                f"Invalid {display} API key. Please check your {display} "
                f"API key in Settings."
            )
        return ApiError(
            status=401,
            message=text,
            code="INVALID_API_KEY",
            provider=provider,
            invalid_key=key_field,
        )

    if _contains(lower, "404", "not found"):
        causes = ", ".join([
            f"Your {display} API key may lack permissions to access the "
            f"requested model",
            "The AI service endpoint may be temporarily unavailable",
            "There may be a configuration issue with your API key or account",
        ])
        where = (
            f"your {env_var} environment variable"
            if admin_mode
            else f"your {display} API key in Settings"
        )
        return ApiError(
            status=404,
            message=(
                f"API key or model not found (404). {causes}. "
                f"Please verify {where}."
            ),
            code="MODEL_NOT_FOUND",
            provider=provider,
            invalid_key=key_field,
        )

    if _contains(lower, "429", "rate limit"):
        retry_after = DEFAULT_RETRY_AFTER
        match = _RETRY_AFTER_PATTERN.search(message)
        if match:
            retry_after = int(match.group(1))
        return ApiError(
            status=429,
            message=(
                f"Rate limit exceeded for {display}. "
                f"Please try again in {retry_after} seconds."
            ),
            code="RATE_LIMIT_EXCEEDED",
            provider=provider,
            retryable=True,
            details={"retry_after": retry_after},
        )

    if _contains(lower, "500", "internal server error"):
        return ApiError(
            status=500,
            message=(
                f"{display} service is experiencing issues. "
                f"Please try again later."
            ),
            code="PROVIDER_ERROR",
            provider=provider,
            retryable=True,
        )

    if _contains(lower, "503", "service unavailable"):
        return ApiError(
            status=503,
            message=(
                f"{display} service is temporarily unavailable. "
                f"Please try again later."
            ),
            code="SERVICE_UNAVAILABLE",
            provider=provider,
            retryable=True,
        )

    if _contains(lower, "timeout", "timed out", "504", "etimedout"):
        return ApiError(
            status=504,
            message=(
                "Request timed out. Please try again with a shorter message "
                "or fewer entities."
            ),
            code="TIMEOUT",
            provider=provider,
            retryable=True,
        )

    if _contains(lower, "enotfound", "network", "econnrefused", "connection error"):
        return ApiError(
            status=503,
            message=(
                "Network error. Please check your internet connection and "
                "try again."
            ),
            code="NETWORK_ERROR",
            provider=provider,
            retryable=True,
        )

    if _contains(lower, "context length", "token limit", "maximum context"):
        return ApiError(
            status=400,
            message=(
                "Message is too long or includes too much context. Please "
                "reduce the message length or unpin some entities."
            ),
            code="CONTEXT_LENGTH_EXCEEDED",
            provider=provider,
        )

    return ApiError(
        status=500,
        message=f"AI Error: {message}",
        code="UNKNOWN_ERROR",
        provider=provider,
    )


def to_error_response(api_error: ApiError) -> ErrorResponse:
    return ErrorResponse(
        error=api_error.message,
        code=api_error.code,
        provider=api_error.provider,
        invalid_key=api_error.invalid_key,
        retry_after=api_error.details.get("retry_after"),
    )


def is_retryable_error(api_error: ApiError) -> bool:
    return api_error.retryable


def calculate_retry_delay(attempt: int, base_delay: float = 1.0) -> float:
    """Exponential backoff in seconds: base * 2^(attempt-1) plus up to 0.5s
    of jitter, capped at 30s."""
    delay = base_delay * (2 ** (attempt - 1))
    jitter = random.uniform(0, 0.5)
    return min(delay + jitter, MAX_RETRY_DELAY)
