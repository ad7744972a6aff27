"""LLM backend factory: creates backends from configuration."""

from __future__ import annotations

from typing import Type

from contextforge.llm.base import LLMBackend, LLMConfig


class LLMFactory:
    """Creates LLM backend instances by provider name."""

    _providers: dict[str, Type[LLMBackend]] = {}
    _defaults_loaded = False

    @classmethod
    def _ensure_defaults(cls) -> None:
        if cls._defaults_loaded:
            return
        from contextforge.llm.anthropic import AnthropicBackend
        from contextforge.llm.openai import OpenAIBackend

        cls._providers.setdefault("anthropic", AnthropicBackend)
        cls._providers.setdefault("openai", OpenAIBackend)
        cls._defaults_loaded = True

    @classmethod
    def register_provider(
        cls, name: str, backend_class: Type[LLMBackend]
    ) -> None:
        """Register a custom LLM provider."""
        cls._providers[name] = backend_class

    @classmethod
    def available_providers(cls) -> list[str]:
        cls._ensure_defaults()
        return list(cls._providers)

    @classmethod
    def create(cls, config: LLMConfig) -> LLMBackend:
        """Instantiate the appropriate backend from config."""
        cls._ensure_defaults()
        provider_cls = cls._providers.get(config.provider)
        if provider_cls is None:
            raise ValueError(
                f"Unknown LLM provider: {config.provider}. "
                f"Available: {list(cls._providers.keys())}"
            )
        return provider_cls(config)
