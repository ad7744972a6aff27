"""Entity records, identifiers, the in-memory store and resolution helpers."""

from contextforge.entities.ids import (
    ENTITY_ID_PATTERN,
    EntityKind,
    EntityRef,
    InvalidEntityIdError,
    entity_kind_of,
    is_valid_entity_id,
    parse_entity_id,
)
from contextforge.entities.models import (
    CanonicalFact,
    Character,
    Entity,
    Faction,
    Location,
    Project,
    TimelineEvent,
    VoiceProfile,
    World,
)
from contextforge.entities.store import (
    DevelopmentQueueItem,
    EntityStore,
)
from contextforge.entities.resolver import (
    FetchedEntities,
    combine_entity_ids,
    fetch_entities_by_ids,
)

__all__ = [
    # Identifiers
    "ENTITY_ID_PATTERN",
    "EntityKind",
    "EntityRef",
    "InvalidEntityIdError",
    "entity_kind_of",
    "is_valid_entity_id",
    "parse_entity_id",
    # Records
    "CanonicalFact",
    "Character",
    "Entity",
    "Faction",
    "Location",
    "Project",
    "TimelineEvent",
    "VoiceProfile",
    "World",
    # Store
    "DevelopmentQueueItem",
    "EntityStore",
    # Resolution
    "FetchedEntities",
    "combine_entity_ids",
    "fetch_entities_by_ids",
]
