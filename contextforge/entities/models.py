"""Character, world and project records as held by the entity store."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from contextforge.entities.ids import EntityKind, entity_kind_of

FactCategory = Literal[
    "physical",
    "personality",
    "history",
    "relationship",
    "ability",
    "possession",
    "other",
]
FactConfidence = Literal["definite", "implied", "tentative"]
CharacterPhase = Literal[
    "Foundation", "Personality", "Backstory", "Relationships", "Arc"
]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base for stored records: accepts snake_case or camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        validate_assignment=True,
    )


class VoiceProfile(RecordModel):
    """How a character speaks."""

    sample_dialogue: list[str] = Field(default_factory=list)
    speech_patterns: list[str] = Field(default_factory=list)
    vocabulary_level: Literal["simple", "moderate", "complex", "archaic"] = (
        "moderate"
    )
    tone: str = ""
    dialect: Optional[str] = None
    catchphrases: list[str] = Field(default_factory=list)
    avoids: list[str] = Field(default_factory=list)


class CanonicalFact(RecordModel):
    """A piece of established in-world truth about an entity."""

    id: str
    category: FactCategory = "other"
    fact: str
    established_in: str = ""
    established_at: datetime = Field(default_factory=_now)
    confidence: FactConfidence = "definite"


class TimelineEvent(RecordModel):
    id: str = ""
    title: str = ""
    description: str = ""
    chapter: Optional[str] = None
    order: int = 0


class Faction(RecordModel):
    name: str
    description: str = ""
    alignment: Optional[str] = None


class Location(RecordModel):
    name: str
    description: str = ""


class EntityRecord(RecordModel):
    """Fields shared by every entity kind."""

    id: str
    name: str
    aliases: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    genre: str = ""
    progress: int = 0
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def kind(self) -> EntityKind:
        return entity_kind_of(self)

    def field_values(self) -> dict:
        """JSON-compatible view of the record, keyed by attribute name."""
        return self.model_dump(mode="json")


class Character(EntityRecord):
    role: str = ""
    phase: CharacterPhase = "Foundation"
    project_id: Optional[str] = None
    world_id: Optional[str] = None
    # Foundation
    core_concept: Optional[str] = None
    motivation: Optional[str] = None
    archetype: Optional[str] = None
    # Personality
    motivations: Optional[list[str]] = None
    flaws: Optional[list[str]] = None
    fears: Optional[list[str]] = None
    internal_conflict: Optional[str] = None
    external_conflict: Optional[str] = None
    # Backstory
    origin: Optional[str] = None
    ghost: Optional[str] = None
    # Relationships
    allies: Optional[list[str]] = None
    enemies: Optional[list[str]] = None
    # Arc
    arc_type: Optional[str] = None
    climax: Optional[str] = None
    personality_prose: Optional[str] = None
    backstory_prose: Optional[str] = None
    relationships_prose: Optional[str] = None
    arc_prose: Optional[str] = None
    tagline: Optional[str] = None
    timeline: Optional[list[dict[str, str]]] = None
    voice_profile: Optional[VoiceProfile] = None
    canonical_facts: Optional[list[CanonicalFact]] = None


class World(EntityRecord):
    description: str = ""
    project_id: Optional[str] = None
    tone: Optional[str] = None
    tagline: Optional[str] = None
    rules: Optional[list[str]] = None
    history: Optional[str] = None
    geography: Optional[str] = None
    societies: Optional[list[str]] = None
    factions: Optional[list[Faction]] = None
    locations: Optional[list[Location]] = None
    magic_system: Optional[str] = None
    technology: Optional[str] = None
    overview_prose: Optional[str] = None
    history_prose: Optional[str] = None
    factions_prose: Optional[str] = None
    geography_prose: Optional[str] = None
    canonical_facts: Optional[list[CanonicalFact]] = None
    character_ids: list[str] = Field(default_factory=list)


class Project(EntityRecord):
    summary: str = ""
    description: Optional[str] = None
    character_ids: list[str] = Field(default_factory=list)
    world_ids: list[str] = Field(default_factory=list)
    timeline: Optional[list[TimelineEvent]] = None


Entity = Union[Character, World, Project]

MODEL_FOR_KIND: dict[EntityKind, type[EntityRecord]] = {
    EntityKind.CHARACTER: Character,
    EntityKind.WORLD: World,
    EntityKind.PROJECT: Project,
}
