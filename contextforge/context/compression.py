"""Fixed-length compression of entities for the simple context path.

This path ignores mode field configs and priorities entirely: every known
prose field is cut to a fixed length and lists keep their first few items.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union

from contextforge.entities.models import Character, Project, World


@dataclass
class CompressedCharacter:
    id: str
    name: str
    genre: Optional[str] = None
    role: Optional[str] = None
    archetype: Optional[str] = None
    core_concept: Optional[str] = None
    personality_summary: Optional[str] = None
    backstory_summary: Optional[str] = None
    arc_summary: Optional[str] = None
    key_motivations: list[str] = field(default_factory=list)
    key_flaws: list[str] = field(default_factory=list)
    key_fears: list[str] = field(default_factory=list)


@dataclass
class CompressedWorld:
    id: str
    name: str
    genre: Optional[str] = None
    tone: Optional[str] = None
    overview_summary: Optional[str] = None
    history_summary: Optional[str] = None
    magic_system: Optional[str] = None
    faction_summary: list[str] = field(default_factory=list)


@dataclass
class CompressedProject:
    id: str
    name: str
    genre: Optional[str] = None
    synopsis_summary: Optional[str] = None
    key_themes: list[str] = field(default_factory=list)


def truncate_text(text: Optional[str], max_length: int) -> Optional[str]:
    """Cut to ``max_length``, ending on a sentence if one ends past 60%."""
    if not text:
        return None
    if len(text) <= max_length:
        return text

    cut = text[:max_length]
    last_end = max(cut.rfind("."), cut.rfind("!"), cut.rfind("?"))
    if last_end > max_length * 0.6:
        return cut[: last_end + 1]
    return cut + "..."


def _first(items: Optional[list], n: int) -> list:
    return list(items[:n]) if items else []


def compress_character_context(char: Character) -> CompressedCharacter:
    return CompressedCharacter(
        id=char.id,
        name=char.name,
        genre=char.genre or None,
        role=char.role or None,
        archetype=char.archetype,
        core_concept=truncate_text(char.core_concept, 200),
        personality_summary=truncate_text(char.personality_prose, 400),
        backstory_summary=truncate_text(char.backstory_prose, 500),
        arc_summary=truncate_text(char.arc_prose, 300),
        key_motivations=_first(char.motivations, 3),
        key_flaws=_first(char.flaws, 3),
        key_fears=_first(char.fears, 3),
    )


def compress_world_context(world: World) -> CompressedWorld:
    factions = [
        f"{f.name}: {truncate_text(f.description, 100) or 'No description'}"
        for f in _first(world.factions, 4)
    ]
    return CompressedWorld(
        id=world.id,
        name=world.name,
        genre=world.genre or None,
        tone=world.tone,
        overview_summary=truncate_text(world.overview_prose, 500),
        history_summary=truncate_text(world.history_prose, 300),
        magic_system=truncate_text(world.magic_system, 200),
        faction_summary=factions,
    )


def compress_project_context(project: Project) -> CompressedProject:
    return CompressedProject(
        id=project.id,
        name=project.name,
        genre=project.genre or None,
        synopsis_summary=truncate_text(project.summary, 400),
        key_themes=_first(project.tags, 4),
    )


def _render(lines: list[Optional[str]]) -> str:
    return "\n".join(line for line in lines if line)


def format_character_context(
    char: Union[Character, CompressedCharacter],
) -> str:
    c = char if isinstance(char, CompressedCharacter) else compress_character_context(char)
    return _render([
        f"## CHARACTER: {c.name}",
        c.genre and f"**Genre:** {c.genre}",
        c.role and f"**Role:** {c.role}",
        c.archetype and f"**Archetype:** {c.archetype}",
        c.core_concept and f"**Core Concept:** {c.core_concept}",
        c.personality_summary and f"**Personality:** {c.personality_summary}",
        c.backstory_summary and f"**Backstory:** {c.backstory_summary}",
        c.arc_summary and f"**Character Arc:** {c.arc_summary}",
        c.key_motivations and f"**Motivations:** {', '.join(c.key_motivations)}",
        c.key_flaws and f"**Flaws:** {', '.join(c.key_flaws)}",
        c.key_fears and f"**Fears:** {', '.join(c.key_fears)}",
    ])


def format_world_context(world: Union[World, CompressedWorld]) -> str:
    w = world if isinstance(world, CompressedWorld) else compress_world_context(world)
    factions = "\n".join(f"- {f}" for f in w.faction_summary)
    return _render([
        f"## WORLD: {w.name}",
        w.genre and f"**Genre:** {w.genre}",
        w.tone and f"**Tone:** {w.tone}",
        w.overview_summary and f"**Overview:** {w.overview_summary}",
        w.history_summary and f"**History:** {w.history_summary}",
        w.magic_system and f"**Magic/Tech System:** {w.magic_system}",
        factions and f"**Key Factions:**\n{factions}",
    ])


def format_project_context(project: Union[Project, CompressedProject]) -> str:
    p = (
        project
        if isinstance(project, CompressedProject)
        else compress_project_context(project)
    )
    return _render([
        f"## PROJECT: {p.name}",
        p.genre and f"**Genre:** {p.genre}",
        p.synopsis_summary and f"**Synopsis:** {p.synopsis_summary}",
        p.key_themes and f"**Themes:** {', '.join(p.key_themes)}",
    ])
