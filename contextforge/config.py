"""Configuration loading and validation for contextforge deployments."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

from contextforge.api.rate_limiter import RateLimitConfig
from contextforge.entities.store import EntityStore
from contextforge.llm.base import LLMConfig

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "contextforge.yaml"


class ProviderConfig(BaseModel):
    """Configuration for a single LLM provider."""

    provider: str  # "anthropic" or "openai"
    model: str  # e.g. "claude-3-5-haiku-20241022", "gpt-4o"
    api_key_env: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    max_tokens: int = 4096
    context_window: int = 200000
    requests_per_minute: int = 60
    default_temperature: float = 0.7

    @model_validator(mode="after")
    def resolve_api_key(self) -> "ProviderConfig":
        if self.api_key is None and self.api_key_env:
            self.api_key = os.environ.get(self.api_key_env)
            if self.api_key is None:
                logger.warning(
                    "Environment variable %s is not set for provider %s/%s",
                    self.api_key_env, self.provider, self.model,
                )
        return self

    def to_llm_config(self, api_key: Optional[str] = None) -> LLMConfig:
        """Backend config, optionally with a per-request API key."""
        return LLMConfig(
            provider=self.provider,
            model=self.model,
            base_url=self.base_url,
            api_key=api_key or self.api_key,
            max_tokens=self.max_tokens,
            default_temperature=self.default_temperature,
            requests_per_minute=self.requests_per_minute,
            context_window=self.context_window,
        )


class ContextSettings(BaseModel):
    """Budgets for entity context and full prompt composition."""

    token_budget: int = 3000
    """Entity context budget handed to the injection assembler."""

    prompt_budget: Optional[int] = None
    """Full prompt budget; defaults to 70% of the model's context window."""

    response_buffer: int = 1000
    history_window: int = 20
    """Most recent turns sent as messages; older ones are folded into the prompt."""

    include_stubs: bool = True
    create_stubs: bool = True
    """Create a character stub for an ``@Name`` that matches no entity."""

    enrich_links: bool = True
    max_attempts: int = 3


class RateLimitSettings(BaseModel):
    max_tokens: int = 20
    refill_per_minute: float = 20
    window_seconds: float = 60
    cleanup_interval: float = 600
    max_idle: float = 3600

    def to_config(self) -> RateLimitConfig:
        return RateLimitConfig(
            max_tokens=self.max_tokens,
            refill_rate=self.refill_per_minute / 60.0,
            window_seconds=self.window_seconds,
        )


def _default_providers() -> dict[str, ProviderConfig]:
    return {
        "anthropic": ProviderConfig(
            provider="anthropic", model="claude-3-5-haiku-20241022"
        ),
        "openai": ProviderConfig(provider="openai", model="gpt-4o"),
    }


class AppConfig(BaseModel):
    """Root configuration model."""

    providers: dict[str, ProviderConfig] = Field(
        default_factory=_default_providers
    )
    default_provider: str = "anthropic"
    context: ContextSettings = Field(default_factory=ContextSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    prompt_dir: Optional[str] = None
    entities_file: Optional[str] = None

    @model_validator(mode="after")
    def check_default_provider(self) -> "AppConfig":
        if self.default_provider not in self.providers:
            raise ValueError(
                f"default_provider {self.default_provider!r} is not one of "
                f"the configured providers: {list(self.providers)}"
            )
        return self

    def provider_config(self, name: Optional[str] = None) -> ProviderConfig:
        name = name or self.default_provider
        if name not in self.providers:
            raise ValueError(
                f"Unknown provider: {name}. Available: {list(self.providers)}"
            )
        return self.providers[name]


def load_config(config_dir: Path) -> AppConfig:
    """Load and validate ``contextforge.yaml`` from a directory."""
    config_path = config_dir / CONFIG_FILENAME
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    return AppConfig(**raw)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict."""
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    with open(path) as f:
        return yaml.safe_load(f) or {}


def load_entity_store(path: Path) -> EntityStore:
    """Build an :class:`EntityStore` from a YAML or JSON entities file."""
    if path.suffix == ".json":
        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")
        with open(path) as f:
            data = json.load(f)
    else:
        data = load_yaml_file(path)

    store = EntityStore()
    store.load_from_dict(data)
    logger.debug(
        "Loaded %d characters, %d worlds, %d projects from %s",
        len(store.characters), len(store.worlds), len(store.projects), path,
    )
    return store
