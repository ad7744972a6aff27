"""Resolve referenced entity IDs and prepare entities for prompts."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Generic, Iterable, Optional, Protocol, TypeVar

from contextforge.entities.ids import EntityKind, entity_kind_of
from contextforge.entities.models import Character, Entity, Project, World

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EntityLookup(Protocol):
    """The slice of the entity store the resolver depends on."""

    characters: list[Character]
    worlds: list[World]
    projects: list[Project]

    def get_character(self, entity_id: str) -> Optional[Character]: ...

    def get_world(self, entity_id: str) -> Optional[World]: ...

    def get_project(self, entity_id: str) -> Optional[Project]: ...


@dataclass
class FetchedEntities:
    """Entities found for a list of IDs, grouped by kind."""

    characters: list[Character] = field(default_factory=list)
    worlds: list[World] = field(default_factory=list)
    projects: list[Project] = field(default_factory=list)
    all: list[Entity] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)


def fetch_entities_by_ids(
    entity_ids: Iterable[str], store: EntityLookup
) -> FetchedEntities:
    """Look up each ID in the store. Unknown or malformed IDs go to ``missing``."""
    result = FetchedEntities()
    for entity_id in entity_ids:
        entity: Optional[Entity] = None
        sigil = entity_id[:1]
        if sigil == EntityKind.CHARACTER.sigil:
            entity = store.get_character(entity_id)
            if entity is not None:
                result.characters.append(entity)
        elif sigil == EntityKind.WORLD.sigil:
            entity = store.get_world(entity_id)
            if entity is not None:
                result.worlds.append(entity)
        elif sigil == EntityKind.PROJECT.sigil:
            entity = store.get_project(entity_id)
            if entity is not None:
                result.projects.append(entity)

        if entity is None:
            result.missing.append(entity_id)
        else:
            result.all.append(entity)

    log_missing_entities(result.missing)
    return result


def combine_entity_ids(
    pinned_ids: Optional[Iterable[str]] = None,
    mentioned_ids: Optional[Iterable[str]] = None,
) -> list[str]:
    """Merge pinned and mentioned IDs, dropping duplicates, keeping order."""
    combined = [*(pinned_ids or []), *(mentioned_ids or [])]
    return list(dict.fromkeys(combined))


def serialize_entity_for_context(
    entity: Entity,
    include_relationships: bool = True,
    include_canonical_facts: bool = True,
    include_voice_profile: bool = True,
    max_length: Optional[int] = None,
) -> str:
    """Pretty JSON of the fields relevant to prompting, per entity kind."""
    values = entity.field_values()
    filtered: dict[str, Any] = {
        "id": entity.id,
        "name": entity.name,
        "aliases": entity.aliases,
    }

    kind = entity_kind_of(entity)
    if kind is EntityKind.CHARACTER:
        keys = [
            "role",
            "genre",
            "core_concept",
            "motivations",
            "flaws",
            "personality_prose",
            "backstory_prose",
        ]
        if include_voice_profile and values.get("voice_profile"):
            keys.append("voice_profile")
        if include_canonical_facts and values.get("canonical_facts"):
            keys.append("canonical_facts")
        if include_relationships:
            keys.extend(["allies", "enemies", "relationships_prose"])
    elif kind is EntityKind.WORLD:
        keys = [
            "genre",
            "description",
            "tone",
            "rules",
            "overview_prose",
            "history_prose",
        ]
        if include_canonical_facts and values.get("canonical_facts"):
            keys.append("canonical_facts")
    else:
        keys = ["genre", "description"]

    for key in keys:
        if values.get(key) is not None:
            filtered[key] = values[key]

    serialized = json.dumps(filtered, indent=2, ensure_ascii=False)
    if max_length and len(serialized) > max_length:
        serialized = (
            serialized[:max_length] + "\n... [Truncated for context limits]"
        )
    return serialized


def format_entity_block(entity: Entity) -> str:
    """Header line plus serialized JSON for one entity."""
    kind = entity_kind_of(entity)
    return (
        f"### {kind.value.upper()}: {entity.name} ({entity.id})\n"
        f"{serialize_entity_for_context(entity)}"
    )


def format_multiple_entities_context(entities: list[Entity]) -> str:
    if not entities:
        return ""
    sections = "\n\n---\n\n".join(format_entity_block(e) for e in entities)
    return f"### REFERENCED ENTITIES ({len(entities)})\n\n{sections}"


def log_missing_entities(missing_ids: list[str]) -> None:
    if missing_ids:
        logger.warning(
            "Referenced entities not found in store (possibly deleted): %s",
            ", ".join(missing_ids),
        )


def is_entity_stub(entity: Entity) -> bool:
    return "stub" in entity.tags or "needs-development" in entity.tags


def filter_stub_entities(
    entities: list[Entity], include_stubs: bool = True
) -> list[Entity]:
    if include_stubs:
        return entities
    return [e for e in entities if not is_entity_stub(e)]


def get_entity_display_name(entity: Entity) -> str:
    if entity.aliases:
        return f"{entity.name} (aka {', '.join(entity.aliases)})"
    return entity.name


def create_context_summary(entities: FetchedEntities) -> str:
    """One-line human summary, e.g. ``2 character(s), 1 missing``."""
    parts: list[str] = []
    if entities.characters:
        parts.append(f"{len(entities.characters)} character(s)")
    if entities.worlds:
        parts.append(f"{len(entities.worlds)} world(s)")
    if entities.projects:
        parts.append(f"{len(entities.projects)} project(s)")
    if entities.missing:
        parts.append(f"{len(entities.missing)} missing")
    return ", ".join(parts) if parts else "No entities"


# -- fuzzy name matching ----------------------------------------------------


@dataclass
class FuzzyMatch(Generic[T]):
    item: T
    score: float
    matched_fields: list[str] = field(default_factory=list)


def levenshtein_distance(a: str, b: str) -> int:
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(
                min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost)
            )
        previous = current
    return previous[-1]


def similarity_score(a: str, b: str) -> float:
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1 - levenshtein_distance(a.lower(), b.lower()) / longest


def _word_overlap(query: str, target: str) -> float:
    words = query.lower().split()
    if not words:
        return 0.0
    target_lower = target.lower()
    return sum(1 for w in words if w in target_lower) / len(words)


def fuzzy_match_by_name(
    items: list[T],
    query: str,
    min_score: float = 0.3,
    max_results: int = 10,
) -> list[FuzzyMatch[T]]:
    """Rank items with a ``name`` attribute against a free-text query."""
    if not query or not query.strip():
        return [FuzzyMatch(item, 1.0, ["name"]) for item in items[:max_results]]

    query_lower = query.lower().strip()
    results: list[FuzzyMatch[T]] = []
    for item in items:
        name = getattr(item, "name", "") or ""
        name_lower = name.lower()
        if name_lower == query_lower:
            score = 1.0
        elif name_lower.startswith(query_lower):
            score = 0.9
        elif query_lower in name_lower:
            score = 0.7
        else:
            overlap = _word_overlap(query, name)
            if overlap > 0:
                score = 0.5 + overlap * 0.2
            else:
                similarity = similarity_score(query, name)
                score = similarity * 0.6 if similarity > min_score else 0.0

        if score >= min_score and score > 0:
            results.append(FuzzyMatch(item, score, ["name"]))

    results.sort(key=lambda m: m.score, reverse=True)
    return results[:max_results]


def find_best_match(
    items: list[T], query: str, min_score: float = 0.5
) -> Optional[T]:
    matches = fuzzy_match_by_name(items, query, min_score=min_score, max_results=1)
    return matches[0].item if matches else None
