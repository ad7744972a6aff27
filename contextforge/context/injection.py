"""Just-in-time context injection: assemble entity context for a chat mode."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from contextforge.context.field_filter import (
    FilteredEntity,
    filter_entity_fields,
    format_entity_context,
)
from contextforge.context.modes import (
    ChatMode,
    EntityBudgets,
    FieldConfig,
    FieldPriority,
    calculate_entity_budgets,
    get_mode_context_config,
)
from contextforge.entities.ids import EntityKind, entity_kind_of
from contextforge.entities.models import Character, Entity, Project, World
from contextforge.utils.tokens import estimate_tokens

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_BUDGET = 3000
CONTEXT_HEADER = "## Context for this conversation"
ENTITY_SEPARATOR = "\n---\n\n"


@dataclass
class LinkedEntities:
    """Entities linked to a chat session."""

    characters: list[Character] = field(default_factory=list)
    worlds: list[World] = field(default_factory=list)
    projects: list[Project] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.characters or self.worlds or self.projects)


@dataclass
class ContextDebugInfo:
    mode: ChatMode
    token_budget: int
    entity_budgets: EntityBudgets
    filtered_entities: list[FilteredEntity]


@dataclass
class AssembledContext:
    """Final entity context plus bookkeeping about what went in."""

    context_string: str
    token_count: int
    fields_included: dict[str, list[str]]
    entities_included: dict[str, list[str]]
    truncated_fields: list[str]
    debug_info: Optional[ContextDebugInfo] = None


def assemble_context_for_prompt(
    mode: Union[ChatMode, str],
    linked: LinkedEntities,
    user_message: str = "",
    token_budget: int = DEFAULT_TOKEN_BUDGET,
    include_debug_info: bool = False,
) -> AssembledContext:
    """Build the entity context section for a prompt.

    Each entity kind gets its mode-configured share of ``token_budget``,
    split evenly (floor division) across the linked entities of that kind.
    The returned token count is re-estimated from the final string, so it
    includes formatting overhead.

    ``user_message`` is accepted for relevance scoring by callers; the
    assembly itself does not use it.
    """
    mode = ChatMode(mode)
    config = get_mode_context_config(mode)
    budgets = calculate_entity_budgets(mode, token_budget)

    filtered_entities: list[FilteredEntity] = []
    fields_included: dict[str, list[str]] = {
        kind.value: [] for kind in EntityKind
    }
    entities_included: dict[str, list[str]] = {
        "characters": [],
        "worlds": [],
        "projects": [],
    }
    truncated: list[str] = []
    parts: list[str] = []

    groups: list[tuple[EntityKind, list[Entity], list[FieldConfig], int, str]] = [
        (
            EntityKind.CHARACTER,
            linked.characters,
            config.character_fields,
            budgets.character,
            "characters",
        ),
        (
            EntityKind.WORLD,
            linked.worlds,
            config.world_fields,
            budgets.world,
            "worlds",
        ),
        (
            EntityKind.PROJECT,
            linked.projects,
            config.project_fields,
            budgets.project,
            "projects",
        ),
    ]

    for kind, entities, field_configs, kind_budget, plural in groups:
        if not entities:
            continue
        per_entity = kind_budget // len(entities)
        logger.debug(
            "%s: %d entities, %d tokens each (mode=%s)",
            kind.value,
            len(entities),
            per_entity,
            mode.value,
        )
        for entity in entities:
            filtered = filter_entity_fields(entity, field_configs, per_entity)
            filtered_entities.append(filtered)
            fields_included[kind.value].extend(filtered.included_fields)
            truncated.extend(f"{kind.value}.{f}" for f in filtered.truncated_fields)
            entities_included[plural].append(entity.name)
            parts.append(format_entity_context(filtered, include_debug_info))

    for kind_name, names in fields_included.items():
        fields_included[kind_name] = list(dict.fromkeys(names))

    context_string = ""
    if parts:
        context_string = f"{CONTEXT_HEADER}\n\n{ENTITY_SEPARATOR.join(parts)}"

    result = AssembledContext(
        context_string=context_string,
        token_count=estimate_tokens(context_string),
        fields_included=fields_included,
        entities_included=entities_included,
        truncated_fields=truncated,
    )
    if include_debug_info:
        result.debug_info = ContextDebugInfo(
            mode=mode,
            token_budget=token_budget,
            entity_budgets=budgets,
            filtered_entities=filtered_entities,
        )
    return result


def allocate_field_budgets(
    field_configs: list[FieldConfig], total_budget: int
) -> dict[str, int]:
    """Split a budget 60/30/10 across priority tiers, evenly within a tier."""
    shares = {
        FieldPriority.HIGH: int(total_budget * 0.6),
        FieldPriority.MEDIUM: int(total_budget * 0.3),
        FieldPriority.LOW: int(total_budget * 0.1),
    }
    allocation: dict[str, int] = {}
    for priority, share in shares.items():
        tier = [c for c in field_configs if c.priority is priority]
        if not tier:
            continue
        per_field = share // len(tier)
        for config in tier:
            allocation[config.field] = per_field
    return allocation


def get_minimal_entity_context(entity: Entity) -> str:
    """Header plus one-line summary, for when full context will not fit."""
    kind = entity_kind_of(entity)
    if isinstance(entity, Character):
        summary = entity.core_concept
    elif isinstance(entity, World):
        summary = entity.tagline
    else:
        summary = entity.summary

    line = f"### {kind.icon} {kind.value.upper()}: {entity.name} ({entity.id})"
    if summary:
        line += f"\n- {summary}"
    return line + "\n"


@dataclass
class BudgetCheck:
    fits: bool
    overage_tokens: int
    recommendation: str


def validate_context_budget(
    assembled: AssembledContext, max_budget: int
) -> BudgetCheck:
    """Check an assembled context against a budget and suggest a remedy."""
    fits = assembled.token_count <= max_budget
    overage = max(0, assembled.token_count - max_budget)

    if fits:
        utilization = (
            assembled.token_count / max_budget * 100 if max_budget else 0.0
        )
        recommendation = (
            f"Context fits within budget ({utilization:.1f}% utilization)."
        )
    elif assembled.truncated_fields:
        recommendation = (
            f"Context exceeds budget by {overage} tokens. Some fields were "
            f"already truncated. Consider unlinking entities or using a "
            f"minimal mode."
        )
    else:
        recommendation = (
            f"Context exceeds budget by {overage} tokens. Consider removing "
            f"low-priority fields or switching to a mode with smaller context."
        )
    return BudgetCheck(fits=fits, overage_tokens=overage, recommendation=recommendation)
