"""Chat request pipeline: from a raw request body to an enriched reply.

Steps: validate → rate limit → check provider and API key → resolve
referenced entities → assemble entity context for the mode → compose the
full system prompt within the model's budget → call the provider → enrich
the reply. Nothing is written to the entity store before the key check.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from jinja2 import ChoiceLoader, DictLoader, Environment, FileSystemLoader
from pydantic import ValidationError

from contextforge.api.enrichment import (
    DetectedFact,
    EntityReference,
    detect_canonical_fact_updates,
    enrich_response_with_links,
    extract_entity_references,
    format_entity_references_summary,
    parse_entity_mentions,
)
from contextforge.api.errors import (
    API_KEY_ENV_VARS,
    PROVIDER_DISPLAY_NAMES,
    ErrorResponse,
    handle_api_error,
    to_error_response,
)
from contextforge.api.rate_limiter import RateLimiter, RateLimitResult
from contextforge.api.validation import (
    ChatRequest,
    validate_chat_request,
    validate_request_size,
)
from contextforge.config import AppConfig
from contextforge.context.budget import (
    ComposedContext,
    ContextPriority,
    build_context_sections,
    compose_context,
    create_section,
    get_recommended_budget,
)
from contextforge.context.injection import (
    AssembledContext,
    LinkedEntities,
    assemble_context_for_prompt,
)
from contextforge.context.modes import ChatMode, get_mode_context_config
from contextforge.entities.ids import EntityKind, is_valid_entity_id
from contextforge.entities.models import (
    MODEL_FOR_KIND,
    Character,
    Entity,
    Project,
    World,
)
from contextforge.entities.resolver import (
    FetchedEntities,
    combine_entity_ids,
    create_context_summary,
    fetch_entities_by_ids,
    filter_stub_entities,
    find_best_match,
)
from contextforge.entities.store import EntityStore
from contextforge.llm.base import LLMBackend, LLMConfig
from contextforge.llm.factory import LLMFactory
from contextforge.utils.retry import make_provider_retry

logger = logging.getLogger(__name__)

SYSTEM_TEMPLATE_NAME = "system.jinja2"

DEFAULT_SYSTEM_TEMPLATE = """\
You are a creative writing assistant helping a writer develop characters, \
worlds and story projects.
{% if mode %}

Current mode: **{{ mode }}**. {{ mode_description }}.
{% endif %}
{% if entity_names %}

The writer is working with: {{ entity_names | join(", ") }}. Stay consistent \
with the established details provided below and do not contradict canonical \
facts.
{% endif %}

Entity IDs use a sigil prefix: `#` for characters, `@` for worlds and `$` \
for story projects (for example `#ELARA_902`, `@VIRELITH_501`, `$OBSIDIAN_01`).
"""

ENTITY_CONTEXT_SECTION = "entity-context"
PLAIN_MENTION_MIN_SCORE = 0.7

BackendFactory = Callable[[LLMConfig], LLMBackend]


@dataclass
class ChatOutcome:
    """Result of one chat request, success or failure."""

    status: int
    text: Optional[str] = None
    error: Optional[ErrorResponse] = None
    entity_references: list[EntityReference] = field(default_factory=list)
    detected_facts: list[DetectedFact] = field(default_factory=list)
    rate_limit: Optional[RateLimitResult] = None
    composed: Optional[ComposedContext] = None
    assembled: Optional[AssembledContext] = None
    missing_entity_ids: list[str] = field(default_factory=list)
    created_stub_ids: list[str] = field(default_factory=list)
    debug: Optional[dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.status == 200

    @classmethod
    def failure(
        cls, status: int, error: ErrorResponse, **kwargs: Any
    ) -> "ChatOutcome":
        return cls(status=status, error=error, **kwargs)


class ChatPipeline:
    """Handles chat requests against one entity store and rate limiter."""

    def __init__(
        self,
        store: EntityStore,
        rate_limiter: RateLimiter,
        backend_factory: BackendFactory = LLMFactory.create,
        config: Optional[AppConfig] = None,
        prompt_dir: Optional[Path] = None,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter
        self.backend_factory = backend_factory
        self.config = config or AppConfig()
        if prompt_dir is None and self.config.prompt_dir:
            prompt_dir = Path(self.config.prompt_dir)

        loaders: list = []
        if prompt_dir and prompt_dir.exists():
            loaders.append(FileSystemLoader(str(prompt_dir)))
        loaders.append(DictLoader({SYSTEM_TEMPLATE_NAME: DEFAULT_SYSTEM_TEMPLATE}))
        self._jinja_env = Environment(
            loader=ChoiceLoader(loaders),
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._cleanup_task: Optional[asyncio.Task] = None
        self._backends: dict[tuple[str, str], LLMBackend] = {}

    # -- lifecycle ---------------------------------------------------------

    def start_cleanup(self) -> asyncio.Task:
        """Start the periodic idle-bucket sweep on the running loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            settings = self.config.rate_limit
            self._cleanup_task = asyncio.create_task(
                self.rate_limiter.run_cleanup(
                    settings.cleanup_interval, settings.max_idle
                )
            )
        return self._cleanup_task

    async def aclose(self) -> None:
        """Stop the bucket sweep and close every cached backend."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        backends = list(self._backends.values())
        self._backends.clear()
        for backend in backends:
            await backend.aclose()

    # -- request handling --------------------------------------------------

    async def handle(
        self, body: Any, identifier: str = "anonymous"
    ) -> ChatOutcome:
        size = validate_request_size(body)
        if not size.valid:
            return ChatOutcome.failure(413, ErrorResponse(error=size.error))

        validation = validate_chat_request(body)
        if not validation.valid:
            return ChatOutcome.failure(
                400, ErrorResponse(error=", ".join(validation.errors))
            )
        request = validation.sanitized

        rate_limit = self.rate_limiter.check(identifier)
        if not rate_limit.allowed:
            retry_after = max(
                1, math.ceil(rate_limit.reset_at - self.rate_limiter.now())
            )
            return ChatOutcome.failure(
                429,
                ErrorResponse(
                    error="Rate limit exceeded. Please try again later.",
                    code="RATE_LIMIT_EXCEEDED",
                    retry_after=retry_after,
                ),
                rate_limit=rate_limit,
            )

        if request.provider not in self.config.providers:
            return ChatOutcome.failure(
                400,
                ErrorResponse(
                    error=f"Provider {request.provider} is not configured."
                ),
                rate_limit=rate_limit,
            )
        provider_config = self.config.provider_config(request.provider)
        api_key = self._api_key_for(request)
        if not api_key:
            return ChatOutcome.failure(
                400,
                ErrorResponse(error=_missing_key_message(request)),
                rate_limit=rate_limit,
            )

        outcome = ChatOutcome(status=200, rate_limit=rate_limit)
        mode = request.mode or ChatMode.CHAT

        fetched, inline = self._resolve_entities(request, outcome)
        outcome.missing_entity_ids = list(fetched.missing)
        linked = self._linked_entities(fetched, inline)

        last_user = _last_user_message(request)
        outcome.assembled = assemble_context_for_prompt(
            mode,
            linked,
            user_message=last_user,
            token_budget=self.config.context.token_budget,
        )

        model_id = provider_config.model
        prompt_budget = (
            self.config.context.prompt_budget or get_recommended_budget(model_id)
        )
        history, recent = _split_history(
            request, self.config.context.history_window
        )
        sections = build_context_sections(
            system_prompt=self._render_system_prompt(mode, linked),
            mode_instruction=request.mode_instruction,
            session_setup=_as_text(request.session_setup),
            conversation_history=history,
        )
        if outcome.assembled.context_string:
            sections.append(create_section(
                ENTITY_CONTEXT_SECTION,
                outcome.assembled.context_string,
                ContextPriority.LINKED_ENTITY,
                truncatable=True,
                min_tokens=300,
                label="Pinned/Mentioned Entities",
            ))
        outcome.composed = compose_context(
            sections,
            max_tokens=prompt_budget,
            response_buffer=self.config.context.response_buffer,
        )
        logger.info(
            "Composed prompt: %d tokens, included=%s truncated=%s dropped=%s",
            outcome.composed.total_tokens,
            outcome.composed.included_sections,
            outcome.composed.truncated_sections,
            outcome.composed.dropped_sections,
        )

        messages = [{"role": "system", "content": outcome.composed.content}]
        messages.extend(recent)

        try:
            backend = self._backend_for(request.provider, api_key)
            call = make_provider_retry(self.config.context.max_attempts)(
                backend.generate
            )
            response = await call(messages)
        except Exception as exc:
            logger.error("Provider %s call failed: %s", request.provider, exc)
            api_error = handle_api_error(
                exc, request.provider, request.is_admin_mode
            )
            return ChatOutcome.failure(
                api_error.status,
                to_error_response(api_error),
                rate_limit=rate_limit,
                composed=outcome.composed,
                assembled=outcome.assembled,
                missing_entity_ids=outcome.missing_entity_ids,
                created_stub_ids=outcome.created_stub_ids,
            )

        known = _dedupe_entities([*self.store.all_entities, *inline])
        context_entities = _dedupe_entities(
            [*linked.characters, *linked.worlds, *linked.projects]
        )
        outcome.entity_references = extract_entity_references(
            response.content, known
        )
        outcome.detected_facts = detect_canonical_fact_updates(
            response.content, context_entities, mode.value
        )
        outcome.text = (
            enrich_response_with_links(response.content, known)
            if self.config.context.enrich_links
            else response.content
        )
        logger.debug(
            "Reply references: %s",
            format_entity_references_summary(outcome.entity_references),
        )

        if request.is_admin_mode:
            outcome.debug = {
                "context": {
                    "total_tokens": outcome.composed.total_tokens,
                    "included_sections": outcome.composed.included_sections,
                    "truncated_sections": outcome.composed.truncated_sections,
                    "dropped_sections": outcome.composed.dropped_sections,
                    "token_budget": prompt_budget,
                    "entity_tokens": outcome.assembled.token_count,
                },
                "entities": {
                    "summary": create_context_summary(fetched),
                    "missing": fetched.missing,
                    "references": len(outcome.entity_references),
                    "facts": len(outcome.detected_facts),
                },
                "provider": request.provider,
                "model": response.model,
                "usage": {
                    "input_tokens": response.input_tokens,
                    "output_tokens": response.output_tokens,
                },
                "rate_limit": {
                    "remaining": rate_limit.remaining,
                    "reset_at": rate_limit.reset_at,
                },
            }
        return outcome

    # -- helpers -----------------------------------------------------------

    def _resolve_entities(
        self, request: ChatRequest, outcome: ChatOutcome
    ) -> tuple[FetchedEntities, list[Entity]]:
        """Collect every referenced entity: pinned, mentioned and linked."""
        parsed_ids: list[str] = []
        last_user = _last_user_message(request)
        for mention in parse_entity_mentions(last_user):
            if mention.id:
                parsed_ids.append(mention.id)
                continue
            entity_id = self._resolve_plain_mention(mention.name, outcome)
            if entity_id:
                parsed_ids.append(entity_id)

        inline: list[Entity] = []
        linked_ids: list[str] = []
        for kind, value in (
            (EntityKind.CHARACTER, request.linked_character),
            (EntityKind.WORLD, request.linked_world),
            (EntityKind.PROJECT, request.linked_project),
        ):
            if isinstance(value, str) and is_valid_entity_id(value):
                linked_ids.append(value)
            elif isinstance(value, dict):
                try:
                    inline.append(MODEL_FOR_KIND[kind].model_validate(value))
                except ValidationError as exc:
                    logger.warning(
                        "Ignoring malformed linked %s: %s",
                        kind.value,
                        exc.errors()[0]["msg"],
                    )

        all_ids = combine_entity_ids(
            [*linked_ids, *request.pinned_entity_ids],
            [*request.mentioned_entity_ids, *parsed_ids],
        )
        fetched = fetch_entities_by_ids(all_ids, self.store)
        logger.debug(
            "Resolved %d entity IDs: %s", len(all_ids), create_context_summary(fetched)
        )
        return fetched, inline

    def _resolve_plain_mention(
        self, name: str, outcome: ChatOutcome
    ) -> Optional[str]:
        """Find an entity for a bare ``@Name``, creating a stub if allowed."""
        query = name.replace("_", " ")
        match = find_best_match(
            self.store.all_entities, query, min_score=PLAIN_MENTION_MIN_SCORE
        )
        if match is not None:
            return match.id
        if not self.config.context.create_stubs:
            return None
        entity_id = self.store.create_character_stub(query)
        outcome.created_stub_ids.append(entity_id)
        return entity_id

    def _linked_entities(
        self, fetched: FetchedEntities, inline: list[Entity]
    ) -> LinkedEntities:
        include = self.config.context.include_stubs
        characters = [*fetched.characters]
        worlds = [*fetched.worlds]
        projects = [*fetched.projects]
        for entity in inline:
            if isinstance(entity, Character):
                characters.append(entity)
            elif isinstance(entity, World):
                worlds.append(entity)
            elif isinstance(entity, Project):
                projects.append(entity)
        return LinkedEntities(
            characters=filter_stub_entities(_dedupe_entities(characters), include),
            worlds=filter_stub_entities(_dedupe_entities(worlds), include),
            projects=filter_stub_entities(_dedupe_entities(projects), include),
        )

    def _backend_for(self, provider: str, api_key: str) -> LLMBackend:
        """One backend per provider and key, so its request limit holds across calls."""
        key = (provider, api_key)
        backend = self._backends.get(key)
        if backend is None:
            provider_config = self.config.provider_config(provider)
            backend = self.backend_factory(provider_config.to_llm_config(api_key))
            self._backends[key] = backend
        return backend

    def _api_key_for(self, request: ChatRequest) -> Optional[str]:
        """Server key in admin mode when one is set, else the caller's key."""
        if request.is_admin_mode:
            server_key = os.environ.get(API_KEY_ENV_VARS[request.provider], "")
            if server_key.strip():
                return server_key
            configured = self.config.provider_config(request.provider).api_key
            if configured:
                return configured
        return request.api_key

    def _render_system_prompt(self, mode: ChatMode, linked: LinkedEntities) -> str:
        mode_config = get_mode_context_config(mode)
        template = self._jinja_env.get_template(SYSTEM_TEMPLATE_NAME)
        names = [
            e.name for e in [*linked.characters, *linked.worlds, *linked.projects]
        ]
        return template.render(
            mode=mode.value,
            mode_description=mode_config.description,
            format_hint=mode_config.format_hint,
            entity_names=names,
        ).strip()


def _last_user_message(request: ChatRequest) -> str:
    if request.messages and request.messages[-1].role == "user":
        return request.messages[-1].content
    return ""


def _split_history(
    request: ChatRequest, window: int
) -> tuple[Optional[str], list[dict[str, str]]]:
    """Keep the last ``window`` turns as messages; fold the rest into text."""
    turns = [m for m in request.messages if m.role != "system"]
    system_extra = [
        {"role": "system", "content": m.content}
        for m in request.messages
        if m.role == "system"
    ]
    if window <= 0 or len(turns) <= window:
        earlier, recent = [], turns
    else:
        earlier, recent = turns[:-window], turns[-window:]
    history = None
    if earlier:
        history = "\n\n".join(f"{m.role.upper()}: {m.content}" for m in earlier)
    return history, [
        *system_extra,
        *({"role": m.role, "content": m.content} for m in recent),
    ]


def _as_text(value: Any) -> Optional[str]:
    if value is None or value == "" or value == {}:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, indent=2, ensure_ascii=False)


def _dedupe_entities(entities: list[Entity]) -> list[Entity]:
    seen: dict[str, Entity] = {}
    for entity in entities:
        seen.setdefault(entity.id, entity)
    return list(seen.values())


def _missing_key_message(request: ChatRequest) -> str:
    display = PROVIDER_DISPLAY_NAMES[request.provider]
    if request.is_admin_mode:
        return (
            f"Admin mode is active but {API_KEY_ENV_VARS[request.provider]} "
            f"is not configured."
        )
    return f"API key is required. Please add your {display} API key in Settings."
