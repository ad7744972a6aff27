"""Anthropic Claude backend."""

from __future__ import annotations

import logging
from typing import Optional

from anthropic import AsyncAnthropic

from contextforge.api.rate_limiter import RateLimitConfig, RateLimiter
from contextforge.llm.base import (
    LLMBackend,
    LLMConfig,
    LLMResponse,
    split_system_messages,
)

logger = logging.getLogger(__name__)


class AnthropicBackend(LLMBackend):
    """Backend for Anthropic Claude models.

    System content is sent through the ``system`` parameter; only user and
    assistant turns go in ``messages``.
    """

    def __init__(self, config: LLMConfig) -> None:
        super().__init__(config)
        self._client = AsyncAnthropic(api_key=config.api_key)
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

        system_msg, chat_messages = split_system_messages(messages)
        kwargs: dict = {
            "model": self.config.model,
            "messages": chat_messages,
            "temperature": (
                temperature
                if temperature is not None
                else self.config.default_temperature
            ),
            "max_tokens": max_tokens or self.config.max_tokens,
        }
        if system_msg:
            kwargs["system"] = system_msg
        if stop_sequences:
            kwargs["stop_sequences"] = stop_sequences

        response = await self._client.messages.create(**kwargs)
        text = "".join(
            block.text for block in response.content
            if getattr(block, "type", "text") == "text"
        )
        logger.debug(
            "%s replied with %d output tokens (%s)",
            response.model, response.usage.output_tokens, response.stop_reason,
        )

        return LLMResponse(
            content=text,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            finish_reason=response.stop_reason or "end_turn",
            raw_response=response,
        )

    async def health_check(self) -> bool:
        try:
            await self._client.messages.create(
                model=self.config.model,
                messages=[{"role": "user", "content": "ping"}],
                max_tokens=1,
            )
            return True
        except Exception:
            logger.exception("Anthropic health check failed")
            return False

    async def aclose(self) -> None:
        await self._client.close()
