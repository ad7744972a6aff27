"""Abstract LLM backend interface and shared types."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class LLMResponse:
    """Standardized response from any LLM backend."""

    content: str
    model: str
    input_tokens: int
    output_tokens: int
    finish_reason: str
    raw_response: Optional[Any] = None


@dataclass
class LLMConfig:
    """Configuration for an LLM backend instance."""

    provider: str
    model: str
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    max_tokens: int = 4096
    default_temperature: float = 0.7
    requests_per_minute: int = 60
    context_window: int = 200000


class LLMBackend(ABC):
    """Abstract interface for all LLM providers."""

    def __init__(self, config: LLMConfig) -> None:
        self.config = config

    @abstractmethod
    async def generate(
        self,
        messages: list[dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        stop_sequences: Optional[list[str]] = None,
    ) -> LLMResponse:
        """Send messages and receive a complete response."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Verify the backend is reachable and the model is available."""
        ...

    async def aclose(self) -> None:
        """Release the provider client's connections."""

    @property
    def context_window(self) -> int:
        return self.config.context_window


def split_system_messages(
    messages: list[dict[str, str]],
) -> tuple[str, list[dict[str, str]]]:
    """Separate system content from the chat turns.

    Multiple system messages are joined with blank lines.
    """
    system_parts: list[str] = []
    chat_messages: list[dict[str, str]] = []
    for msg in messages:
        if msg["role"] == "system":
            system_parts.append(msg["content"])
        else:
            chat_messages.append(msg)
    return "\n\n".join(system_parts), chat_messages
