"""In-memory entity store with stub creation and a development queue."""

from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from contextforge.entities.ids import EntityKind, entity_kind_of
from contextforge.entities.models import (
    MODEL_FOR_KIND,
    Character,
    Entity,
    Project,
    World,
)

logger = logging.getLogger(__name__)

STUB_TAGS = ["stub", "needs-development"]
STUB_PLACEHOLDER = "Auto-created from @mention. Needs development."


@dataclass
class DevelopmentQueueItem:
    """A stub entity waiting for the user to flesh it out."""

    entity_id: str
    entity_kind: EntityKind
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


@dataclass
class TrashedEntity:
    entity: Entity
    deleted_at: datetime


def make_stub_id(kind: EntityKind, name: str) -> str:
    """Build ``<sigil><NAME>_<3 digits>`` from a display name."""
    words = re.sub(r"[^A-Za-z0-9\s]", "", name).split()
    body = "_".join(words).upper() or "ENTITY"
    return f"{kind.sigil}{body}_{random.randint(100, 999)}"


class EntityStore:
    """Best-effort, process-local store of characters, worlds and projects."""

    def __init__(self) -> None:
        self.characters: list[Character] = []
        self.worlds: list[World] = []
        self.projects: list[Project] = []
        self.development_queue: list[DevelopmentQueueItem] = []
        self.trash: list[TrashedEntity] = []

    # -- lookup ------------------------------------------------------------

    def _collection(self, kind: EntityKind) -> list:
        if kind is EntityKind.CHARACTER:
            return self.characters
        if kind is EntityKind.WORLD:
            return self.worlds
        return self.projects

    def _find(self, kind: EntityKind, entity_id: str) -> Optional[Entity]:
        for entity in self._collection(kind):
            if entity.id == entity_id:
                return entity
        return None

    def get_character(self, entity_id: str) -> Optional[Character]:
        return self._find(EntityKind.CHARACTER, entity_id)

    def get_world(self, entity_id: str) -> Optional[World]:
        return self._find(EntityKind.WORLD, entity_id)

    def get_project(self, entity_id: str) -> Optional[Project]:
        return self._find(EntityKind.PROJECT, entity_id)

    def get(self, entity_id: str) -> Optional[Entity]:
        """Look up any entity by identifier; ``None`` if absent or malformed."""
        if not entity_id:
            return None
        try:
            kind = EntityKind.from_sigil(entity_id[0])
        except ValueError:
            return None
        return self._find(kind, entity_id)

    @property
    def all_entities(self) -> list[Entity]:
        return [*self.characters, *self.worlds, *self.projects]

    # -- mutation ----------------------------------------------------------

    def add(self, entity: Entity) -> Entity:
        """Insert or replace an entity, keyed by identifier."""
        collection = self._collection(entity_kind_of(entity))
        for index, existing in enumerate(collection):
            if existing.id == entity.id:
                collection[index] = entity
                return entity
        collection.append(entity)
        return entity

    def _update(self, kind: EntityKind, entity_id: str, changes: dict) -> Entity:
        entity = self._find(kind, entity_id)
        if entity is None:
            raise KeyError(f"{kind.value} not found: {entity_id}")
        for key, value in changes.items():
            setattr(entity, key, value)
        entity.updated_at = datetime.now(timezone.utc)
        return entity

    def update_character(self, entity_id: str, **changes: Any) -> Character:
        return self._update(EntityKind.CHARACTER, entity_id, changes)

    def update_world(self, entity_id: str, **changes: Any) -> World:
        return self._update(EntityKind.WORLD, entity_id, changes)

    def update_project(self, entity_id: str, **changes: Any) -> Project:
        return self._update(EntityKind.PROJECT, entity_id, changes)

    def delete(self, entity_id: str) -> Optional[Entity]:
        """Soft-delete into the trash list."""
        entity = self.get(entity_id)
        if entity is None:
            return None
        self._collection(entity_kind_of(entity)).remove(entity)
        self.trash.append(
            TrashedEntity(entity=entity, deleted_at=datetime.now(timezone.utc))
        )
        self.remove_from_development_queue(entity_id)
        return entity

    def restore(self, entity_id: str) -> Optional[Entity]:
        for item in self.trash:
            if item.entity.id == entity_id:
                self.trash.remove(item)
                return self.add(item.entity)
        return None

    # -- stubs -------------------------------------------------------------

    def _create_stub(self, kind: EntityKind, name: str, **fields: Any) -> str:
        entity_id = make_stub_id(kind, name)
        while self.get(entity_id) is not None:
            entity_id = make_stub_id(kind, name)
        model = MODEL_FOR_KIND[kind]
        self.add(
            model(
                id=entity_id,
                name=name,
                tags=list(STUB_TAGS),
                **fields,
            )
        )
        self.add_to_development_queue(entity_id, kind)
        logger.info("Created %s stub %s for '%s'", kind.value, entity_id, name)
        return entity_id

    def create_character_stub(self, name: str) -> str:
        return self._create_stub(
            EntityKind.CHARACTER,
            name,
            role="supporting",
            phase="Foundation",
            progress=5,
            core_concept=STUB_PLACEHOLDER,
        )

    def create_world_stub(self, name: str) -> str:
        return self._create_stub(
            EntityKind.WORLD,
            name,
            description=STUB_PLACEHOLDER,
            rules=[],
            history="",
        )

    def create_project_stub(self, name: str) -> str:
        return self._create_stub(
            EntityKind.PROJECT,
            name,
            description=STUB_PLACEHOLDER,
        )

    def add_to_development_queue(self, entity_id: str, kind: EntityKind) -> None:
        if any(item.entity_id == entity_id for item in self.development_queue):
            return
        self.development_queue.append(
            DevelopmentQueueItem(entity_id=entity_id, entity_kind=kind)
        )

    def remove_from_development_queue(self, entity_id: str) -> None:
        self.development_queue = [
            item for item in self.development_queue if item.entity_id != entity_id
        ]

    # -- bulk loading ------------------------------------------------------

    def load_from_dict(self, data: dict[str, Any]) -> None:
        """Load ``characters``/``worlds``/``projects`` lists of raw records."""
        for key, kind in (
            ("characters", EntityKind.CHARACTER),
            ("worlds", EntityKind.WORLD),
            ("projects", EntityKind.PROJECT),
        ):
            model = MODEL_FOR_KIND[kind]
            for raw in data.get(key) or []:
                self.add(model.model_validate(raw))
