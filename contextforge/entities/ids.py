"""Entity identifiers: a single sigil prefix decides the entity kind."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

ENTITY_ID_PATTERN = re.compile(r"^[#@$][A-Z0-9_]+$")


class InvalidEntityIdError(ValueError):
    """Raised when a string is not a well-formed entity identifier."""


class EntityKind(str, Enum):
    """The three kinds of entity, each bound to one identifier sigil."""

    CHARACTER = "character"
    WORLD = "world"
    PROJECT = "project"

    @property
    def sigil(self) -> str:
        return _SIGILS[self]

    @property
    def icon(self) -> str:
        return _ICONS[self]

    @classmethod
    def from_sigil(cls, sigil: str) -> "EntityKind":
        for kind, value in _SIGILS.items():
            if value == sigil:
                return kind
        raise InvalidEntityIdError(f"Unknown entity sigil: {sigil!r}")


_SIGILS = {
    EntityKind.CHARACTER: "#",
    EntityKind.WORLD: "@",
    EntityKind.PROJECT: "$",
}

_ICONS = {
    EntityKind.CHARACTER: "👤",
    EntityKind.WORLD: "🌍",
    EntityKind.PROJECT: "📁",
}


@dataclass(frozen=True)
class EntityRef:
    """A parsed identifier. The kind is decided once, here."""

    kind: EntityKind
    raw: str

    def __str__(self) -> str:
        return self.raw


def is_valid_entity_id(value: Any) -> bool:
    """Check the ``#ABC_1`` / ``@ABC_1`` / ``$ABC_1`` format without raising."""
    return isinstance(value, str) and ENTITY_ID_PATTERN.match(value) is not None


def parse_entity_id(raw: str) -> EntityRef:
    """Parse a raw identifier into an :class:`EntityRef`."""
    if not is_valid_entity_id(raw):
        raise InvalidEntityIdError(f"Invalid entity ID format: {raw!r}")
    return EntityRef(kind=EntityKind.from_sigil(raw[0]), raw=raw)


def entity_kind_of(entity: Any) -> EntityKind:
    """Kind of an entity object, derived from its identifier sigil only.

    Stored entities may carry legacy identifiers whose body does not match
    :data:`ENTITY_ID_PATTERN`; only the sigil is checked here.
    """
    return EntityKind.from_sigil(entity.id[:1])
