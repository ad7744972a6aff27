"""Entity field filter: keep only the configured fields that fit a budget."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from contextforge.context.modes import FieldAccessor, FieldConfig, FieldPriority
from contextforge.entities.ids import EntityKind, entity_kind_of
from contextforge.entities.models import Entity
from contextforge.utils.tokens import estimate_tokens

# High priority fields are truncated only while at least this many tokens remain.
TRUNCATION_FLOOR_TOKENS = 50

# Keys kept first when a dict value has to be cut down.
PRIORITY_OBJECT_KEYS = ("name", "id", "type", "description", "content")


@dataclass
class FilteredEntity:
    """Result of filtering one entity against its field configs."""

    entity_kind: EntityKind
    entity_id: str
    entity_name: str
    fields: dict[str, Any] = field(default_factory=dict)
    token_count: int = 0
    included_fields: list[str] = field(default_factory=list)
    truncated_fields: list[str] = field(default_factory=list)


def to_compact_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def value_tokens(value: Any) -> int:
    """Token cost of a field value, measured on its compact JSON form."""
    return estimate_tokens(to_compact_json(value))


def extract_field_value(values: dict[str, Any], config: FieldConfig) -> Any:
    """Read a field value from an entity's JSON view, applying ``max_items``."""
    if config.accessor is FieldAccessor.NESTED:
        parent = values.get(config.path[0])
        value = parent.get(config.path[1]) if isinstance(parent, dict) else None
    else:
        value = values.get(config.source_key)

    if (
        isinstance(value, list)
        and config.max_items is not None
        and len(value) > config.max_items
    ):
        value = value[: config.max_items]
    return value


def filter_entity_fields(
    entity: Entity,
    field_configs: list[FieldConfig],
    token_budget: int,
) -> FilteredEntity:
    """Select configured fields of ``entity`` in priority order within a budget.

    Fields are visited high → medium → low (stable within a tier). A field
    that fits is included whole. A high priority field that does not fit is
    truncated while at least :data:`TRUNCATION_FLOOR_TOKENS` tokens remain.
    Anything else that does not fit is skipped.
    """
    result = FilteredEntity(
        entity_kind=entity_kind_of(entity),
        entity_id=entity.id,
        entity_name=entity.name,
    )
    values = entity.field_values()
    ordered = sorted(field_configs, key=lambda c: c.priority.rank)

    for config in ordered:
        if result.token_count >= token_budget:
            break

        value = extract_field_value(values, config)
        if value is None:
            continue

        cost = value_tokens(value)
        remaining = token_budget - result.token_count
        if cost <= remaining:
            result.fields[config.field] = value
            result.included_fields.append(config.field)
            result.token_count += cost
        elif (
            config.priority is FieldPriority.HIGH
            and remaining >= TRUNCATION_FLOOR_TOKENS
        ):
            truncated = truncate_field_value(value, remaining)
            if truncated is not None:
                result.fields[config.field] = truncated
                result.included_fields.append(config.field)
                result.truncated_fields.append(config.field)
                result.token_count += value_tokens(truncated)

    return result


def truncate_field_value(value: Any, token_budget: int) -> Optional[Any]:
    """Cut a string, list or dict down to roughly ``token_budget`` tokens.

    Returns ``None`` when nothing meaningful is left (e.g. a number).
    """
    if isinstance(value, str):
        return truncate_string(value, token_budget)
    if isinstance(value, list):
        return _truncate_list(value, token_budget)
    if isinstance(value, dict):
        return _truncate_dict(value, token_budget)
    return None


def _serialized_prefix_length(text: str, max_chars: int) -> int:
    """Longest prefix of ``text`` whose JSON-escaped form fits ``max_chars``."""
    used = 0
    for index, char in enumerate(text):
        # Quotes, backslashes and control characters take two or more chars.
        used += len(json.dumps(char, ensure_ascii=False)) - 2
        if used > max_chars:
            return index
    return len(text)


def truncate_string(text: str, token_budget: int) -> str:
    """Cut at a sentence boundary, else a word boundary, else hard.

    The cut is sized on the escaped JSON form, which is what
    :func:`value_tokens` charges, so quote- and newline-heavy prose does
    not overshoot ``token_budget``.
    """
    max_chars = _serialized_prefix_length(text, token_budget * 4)
    if max_chars >= len(text):
        return text

    cut = text[:max_chars]
    last_sentence = max(cut.rfind(". "), cut.rfind("! "), cut.rfind("? "))
    if last_sentence > max_chars * 0.6:
        return cut[: last_sentence + 1] + " [...]"

    last_space = cut.rfind(" ")
    if last_space > max_chars * 0.6:
        return cut[:last_space] + "..."

    return cut + "..."


def _truncate_list(items: list[Any], token_budget: int) -> Optional[list[Any]]:
    kept: list[Any] = []
    used = 0
    for item in items:
        cost = value_tokens(item)
        if used + cost > token_budget:
            break
        kept.append(item)
        used += cost

    if not kept and items:
        # First item alone is too large: keep a cut-down copy of it.
        first = truncate_field_value(items[0], token_budget)
        if first is not None:
            kept.append(first)
    return kept or None


def _truncate_dict(
    obj: dict[str, Any], token_budget: int
) -> Optional[dict[str, Any]]:
    keys = [k for k in PRIORITY_OBJECT_KEYS if k in obj]
    keys += [k for k in obj if k not in PRIORITY_OBJECT_KEYS]

    kept: dict[str, Any] = {}
    used = 0
    for key in keys:
        cost = value_tokens({key: obj[key]})
        if used + cost > token_budget:
            break
        kept[key] = obj[key]
        used += cost

    if not kept and keys:
        key = keys[0]
        inner = truncate_field_value(
            obj[key], token_budget - estimate_tokens(to_compact_json(key)) - 1
        )
        if inner is not None:
            kept[key] = inner
    return kept or None


def format_field_label(field_name: str) -> str:
    """``core_concept`` → ``Core Concept``."""
    return " ".join(part.capitalize() for part in field_name.split("_") if part)


def format_entity_context(filtered: FilteredEntity, show_debug: bool = False) -> str:
    """Render a filtered entity as a markdown section."""
    kind = filtered.entity_kind
    lines = [
        f"### {kind.icon} {kind.value.upper()}: "
        f"{filtered.entity_name} ({filtered.entity_id})",
        "",
    ]

    for key, value in filtered.fields.items():
        was_truncated = key in filtered.truncated_fields
        label = format_field_label(key)

        if isinstance(value, list):
            lines.append(f"**{label}:**")
            for item in value:
                if isinstance(item, str):
                    lines.append(f"- {item}")
                else:
                    lines.append(f"- {to_compact_json(item)}")
            if was_truncated:
                lines.append("  _(truncated)_")
        elif isinstance(value, dict):
            lines.append(f"**{label}:**")
            lines.append("```json")
            lines.append(json.dumps(value, indent=2, ensure_ascii=False))
            lines.append("```")
            if was_truncated:
                lines.append("_(truncated)_")
        else:
            marker = " _(truncated)_" if was_truncated else ""
            lines.append(f"**{label}:** {value}{marker}")
        lines.append("")

    if show_debug:
        lines.append(
            f"_Debug: {len(filtered.included_fields)} fields included, "
            f"{filtered.token_count} tokens_"
        )
        lines.append("")

    return "\n".join(lines) + "\n"
