"""Per-mode context configuration: which entity fields matter, and how much.

Each chat mode gets only the fields it needs. High priority fields are always
attempted (and truncated if necessary); medium and low priority fields are
included only while the token budget allows.
"""

from __future__ import annotations

from dataclasses import dataclass, field as dataclass_field
from enum import Enum
from typing import Optional, Union


class ChatMode(str, Enum):
    """Named chat behaviour profiles."""

    CHAT = "chat"
    CHARACTER = "character"
    WORLD = "world"
    PROJECT = "project"
    LORE = "lore"
    SCENE = "scene"
    WORKSHOP = "workshop"
    CHAT_WITH = "chat_with"
    SCRIPT = "script"


class FieldPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort key: high first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    FieldPriority.HIGH: 0,
    FieldPriority.MEDIUM: 1,
    FieldPriority.LOW: 2,
}


class FieldAccessor(str, Enum):
    """How a field value is read from an entity."""

    DIRECT = "direct"
    NESTED = "nested"


@dataclass(frozen=True)
class FieldConfig:
    """Declarative inclusion rule for one entity field."""

    field: str
    priority: FieldPriority
    path: Optional[tuple[str, ...]] = None
    """Override location, e.g. ``("voice_profile", "sample_dialogue")``."""

    max_items: Optional[int] = None
    """Cap applied to list values before measuring."""

    accessor: FieldAccessor = dataclass_field(init=False)

    def __post_init__(self) -> None:
        if self.path is None or len(self.path) == 1:
            accessor = FieldAccessor.DIRECT
        elif len(self.path) == 2:
            accessor = FieldAccessor.NESTED
        else:
            raise ValueError(
                f"Field path for '{self.field}' may be at most one level "
                f"deep: {'.'.join(self.path)}"
            )
        object.__setattr__(self, "priority", FieldPriority(self.priority))
        object.__setattr__(self, "accessor", accessor)

    @property
    def source_key(self) -> str:
        """Top-level key the value is read from."""
        return self.path[0] if self.path else self.field


@dataclass(frozen=True)
class BudgetPercentages:
    """Independent fractions of one total budget; need not sum to 100."""

    character: int
    world: int
    project: int


@dataclass(frozen=True)
class EntityBudgets:
    character: int
    world: int
    project: int


@dataclass(frozen=True)
class ModeContextConfig:
    mode: ChatMode
    description: str
    character_fields: list[FieldConfig]
    world_fields: list[FieldConfig]
    project_fields: list[FieldConfig]
    budget_percentages: BudgetPercentages
    format_hint: str = "standard"
    """'minimal', 'standard' or 'detailed'."""


def _f(
    name: str,
    priority: str,
    max_items: Optional[int] = None,
    path: Optional[tuple[str, ...]] = None,
) -> FieldConfig:
    return FieldConfig(
        field=name,
        priority=FieldPriority(priority),
        path=path,
        max_items=max_items,
    )


_VOICE = ("voice_profile",)

MODE_CONTEXT_CONFIGS: dict[ChatMode, ModeContextConfig] = {
    ChatMode.CHAT: ModeContextConfig(
        mode=ChatMode.CHAT,
        description="General freeform conversation with minimal entity context",
        character_fields=[
            _f("name", "high"),
            _f("role", "high"),
            _f("core_concept", "high"),
        ],
        world_fields=[
            _f("name", "high"),
            _f("genre", "high"),
            _f("tagline", "medium"),
        ],
        project_fields=[
            _f("name", "high"),
            _f("genre", "high"),
            _f("summary", "high"),
        ],
        budget_percentages=BudgetPercentages(20, 20, 20),
        format_hint="minimal",
    ),
    ChatMode.CHARACTER: ModeContextConfig(
        mode=ChatMode.CHARACTER,
        description="Character creation and development - all character fields",
        character_fields=[
            _f("name", "high"),
            _f("role", "high"),
            _f("phase", "high"),
            _f("progress", "high"),
            _f("core_concept", "high"),
            _f("archetype", "high"),
            _f("motivations", "high", 5),
            _f("flaws", "high", 5),
            _f("fears", "medium", 3),
            _f("origin", "medium"),
            _f("ghost", "medium"),
            _f("allies", "medium", 5),
            _f("enemies", "medium", 5),
            _f("arc_type", "medium"),
            _f("climax", "medium"),
            _f("personality_prose", "low"),
            _f("backstory_prose", "low"),
            _f("relationships_prose", "low"),
            _f("arc_prose", "low"),
        ],
        world_fields=[
            _f("name", "medium"),
            _f("genre", "medium"),
            _f("tone", "medium"),
            _f("rules", "low", 3),
        ],
        project_fields=[
            _f("name", "medium"),
            _f("genre", "medium"),
            _f("summary", "low"),
        ],
        budget_percentages=BudgetPercentages(70, 15, 15),
        format_hint="detailed",
    ),
    ChatMode.WORLD: ModeContextConfig(
        mode=ChatMode.WORLD,
        description="World-building - all world fields plus linked characters",
        character_fields=[
            _f("name", "medium"),
            _f("role", "medium"),
            _f("core_concept", "medium"),
            _f("origin", "low"),
        ],
        world_fields=[
            _f("name", "high"),
            _f("genre", "high"),
            _f("tone", "high"),
            _f("tagline", "high"),
            _f("description", "high"),
            _f("rules", "high", 10),
            _f("history", "medium"),
            _f("geography", "medium"),
            _f("societies", "medium", 5),
            _f("factions", "medium", 5),
            _f("locations", "medium", 5),
            _f("magic_system", "medium"),
            _f("technology", "medium"),
            _f("overview_prose", "low"),
            _f("history_prose", "low"),
            _f("factions_prose", "low"),
            _f("geography_prose", "low"),
        ],
        project_fields=[
            _f("name", "medium"),
            _f("genre", "medium"),
            _f("summary", "low"),
        ],
        budget_percentages=BudgetPercentages(15, 70, 15),
        format_hint="detailed",
    ),
    ChatMode.PROJECT: ModeContextConfig(
        mode=ChatMode.PROJECT,
        description="Project management - project fields plus all linked entities",
        character_fields=[
            _f("name", "high"),
            _f("role", "high"),
            _f("core_concept", "high"),
            _f("arc_type", "medium"),
            _f("progress", "medium"),
        ],
        world_fields=[
            _f("name", "high"),
            _f("genre", "high"),
            _f("tone", "medium"),
            _f("tagline", "medium"),
        ],
        project_fields=[
            _f("name", "high"),
            _f("genre", "high"),
            _f("summary", "high"),
            _f("description", "medium"),
            _f("timeline", "medium", 10),
            _f("tags", "low", 5),
        ],
        budget_percentages=BudgetPercentages(35, 25, 40),
        format_hint="standard",
    ),
    ChatMode.LORE: ModeContextConfig(
        mode=ChatMode.LORE,
        description="Lore exploration - world history, culture and magic systems",
        character_fields=[
            _f("name", "medium"),
            _f("role", "medium"),
            _f("origin", "medium"),
            _f("ghost", "low"),
        ],
        world_fields=[
            _f("name", "high"),
            _f("genre", "high"),
            _f("tone", "high"),
            _f("history", "high"),
            _f("history_prose", "high"),
            _f("rules", "high", 10),
            _f("magic_system", "high"),
            _f("technology", "high"),
            _f("factions", "medium", 8),
            _f("factions_prose", "medium"),
            _f("societies", "medium", 5),
            _f("geography", "low"),
            _f("locations", "low", 5),
        ],
        project_fields=[
            _f("name", "medium"),
            _f("genre", "medium"),
            _f("timeline", "medium", 10),
        ],
        budget_percentages=BudgetPercentages(15, 75, 10),
        format_hint="detailed",
    ),
    ChatMode.SCENE: ModeContextConfig(
        mode=ChatMode.SCENE,
        description="Scene writing - voice profiles, personalities, relationships",
        character_fields=[
            _f("name", "high"),
            _f("role", "high"),
            _f("core_concept", "high"),
            _f("voice_profile", "high", path=_VOICE),
            _f("motivations", "high", 5),
            _f("flaws", "high", 5),
            _f("fears", "medium", 3),
            _f("personality_prose", "medium"),
            _f("allies", "medium", 5),
            _f("enemies", "medium", 5),
            _f("relationships_prose", "medium"),
            _f("origin", "low"),
            _f("ghost", "low"),
        ],
        world_fields=[
            _f("name", "medium"),
            _f("genre", "medium"),
            _f("tone", "high"),
            _f("rules", "medium", 5),
        ],
        project_fields=[
            _f("name", "low"),
            _f("summary", "low"),
        ],
        budget_percentages=BudgetPercentages(70, 20, 10),
        format_hint="detailed",
    ),
    ChatMode.WORKSHOP: ModeContextConfig(
        mode=ChatMode.WORKSHOP,
        description="Workshop mode - deep-dive into character sections",
        character_fields=[
            _f("name", "high"),
            _f("role", "high"),
            _f("phase", "high"),
            _f("core_concept", "high"),
            _f("motivations", "high", 10),
            _f("flaws", "high", 10),
            _f("fears", "high", 10),
            _f("arc_type", "high"),
            _f("climax", "high"),
            _f("origin", "medium"),
            _f("ghost", "medium"),
            _f("allies", "medium", 5),
            _f("enemies", "medium", 5),
            _f("personality_prose", "medium"),
            _f("backstory_prose", "medium"),
            _f("relationships_prose", "medium"),
            _f("arc_prose", "high"),
        ],
        world_fields=[
            _f("name", "low"),
            _f("genre", "low"),
            _f("tone", "low"),
        ],
        project_fields=[
            _f("name", "low"),
            _f("summary", "low"),
        ],
        budget_percentages=BudgetPercentages(80, 10, 10),
        format_hint="detailed",
    ),
    ChatMode.CHAT_WITH: ModeContextConfig(
        mode=ChatMode.CHAT_WITH,
        description="Character roleplay - voice profile, personality, speech patterns",
        character_fields=[
            _f("name", "high"),
            _f("role", "high"),
            _f("core_concept", "high"),
            _f("voice_profile", "high", path=_VOICE),
            _f("motivations", "high", 5),
            _f("flaws", "high", 5),
            _f("fears", "high", 3),
            _f("personality_prose", "high"),
            _f("origin", "medium"),
            _f("ghost", "medium"),
            _f("backstory_prose", "medium"),
            _f("allies", "low", 3),
            _f("enemies", "low", 3),
        ],
        world_fields=[
            _f("name", "medium"),
            _f("genre", "medium"),
            _f("tone", "high"),
            _f("rules", "low", 3),
        ],
        project_fields=[
            _f("name", "low"),
        ],
        budget_percentages=BudgetPercentages(80, 15, 5),
        format_hint="detailed",
    ),
    ChatMode.SCRIPT: ModeContextConfig(
        mode=ChatMode.SCRIPT,
        description="Script creation - dialogue samples, voice profiles, scene context",
        character_fields=[
            _f("name", "high"),
            _f("role", "high"),
            _f("core_concept", "high"),
            _f("voice_profile", "high", path=_VOICE),
            _f("motivations", "high", 5),
            _f("flaws", "high", 5),
            _f("personality_prose", "medium"),
            _f("allies", "medium", 5),
            _f("enemies", "medium", 5),
            _f("relationships_prose", "medium"),
        ],
        world_fields=[
            _f("name", "medium"),
            _f("genre", "medium"),
            _f("tone", "high"),
            _f("rules", "medium", 5),
            _f("societies", "low", 3),
        ],
        project_fields=[
            _f("name", "medium"),
            _f("summary", "low"),
            _f("timeline", "low", 5),
        ],
        budget_percentages=BudgetPercentages(65, 25, 10),
        format_hint="detailed",
    ),
}


def get_mode_context_config(mode: Union[ChatMode, str]) -> ModeContextConfig:
    """Look up the configuration for a mode."""
    return MODE_CONTEXT_CONFIGS[ChatMode(mode)]


def calculate_entity_budgets(
    mode: Union[ChatMode, str], total_budget: int
) -> EntityBudgets:
    """Split a total token budget into per-kind budgets, each floored."""
    pct = get_mode_context_config(mode).budget_percentages
    return EntityBudgets(
        character=int(total_budget * pct.character // 100),
        world=int(total_budget * pct.world // 100),
        project=int(total_budget * pct.project // 100),
    )


def get_fields_by_priority(
    fields: list[FieldConfig], priority: Union[FieldPriority, str]
) -> list[FieldConfig]:
    wanted = FieldPriority(priority)
    return [f for f in fields if f.priority is wanted]
