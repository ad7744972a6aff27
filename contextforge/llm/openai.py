"""OpenAI chat completions backend."""

from __future__ import annotations

import logging
from typing import Optional

from openai import AsyncOpenAI

from contextforge.api.rate_limiter import RateLimitConfig, RateLimiter
from contextforge.llm.base import LLMBackend, LLMConfig, LLMResponse

logger = logging.getLogger(__name__)


class OpenAIBackend(LLMBackend):
    """Backend for OpenAI chat models. System messages are passed through as-is."""

    def __init__(self, config: LLMConfig) -> None:
        super().__init__(config)
        client_kwargs: dict = {}
        if config.api_key:
            client_kwargs["api_key"] = config.api_key
        if config.base_url:
            client_kwargs["base_url"] = config.base_url
        self._client = AsyncOpenAI(**client_kwargs)
        rpm = config.requests_per_minute
        self._limiter = RateLimiter(
            RateLimitConfig(max_tokens=rpm, refill_rate=rpm / 60.0)
        )

    async def generate(
        self,
        messages: list[dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        stop_sequences: Optional[list[str]] = None,
    ) -> LLMResponse:
        await self._limiter.acquire(self.config.model)

        request: dict = {
            "model": self.config.model,
            "messages": messages,
            "temperature": (
                self.config.default_temperature
                if temperature is None
                else temperature
            ),
            "max_tokens": max_tokens or self.config.max_tokens,
        }
        if stop_sequences:
            request["stop"] = stop_sequences

        completion = await self._client.chat.completions.create(**request)
        choice = completion.choices[0]
        usage = completion.usage
        logger.debug(
            "%s finished with %s", completion.model, choice.finish_reason
        )

        return LLMResponse(
            content=choice.message.content or "",
            model=completion.model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            finish_reason=choice.finish_reason or "stop",
            raw_response=completion,
        )

    async def health_check(self) -> bool:
        try:
            await self._client.models.retrieve(self.config.model)
            return True
        except Exception:
            logger.exception("OpenAI health check failed")
            return False

    async def aclose(self) -> None:
        await self._client.close()
