"""Priority-based prompt composition within a token budget.

Sections are generic labelled text: higher priority sections are packed
first, lower ones are truncated or dropped once the budget runs out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Optional

from contextforge.utils.tokens import estimate_tokens

logger = logging.getLogger(__name__)

DEFAULT_RESPONSE_BUFFER = 1000
DEFAULT_SEPARATOR = "\n\n---\n\n"
DEFAULT_MIN_TOKENS = 100

PARAGRAPH_MARKER = "\n\n[Truncated for context limits]"
SENTENCE_MARKER = " [Truncated]"
HARD_CUT_MARKER = "... [Truncated]"


class ContextPriority(IntEnum):
    """Higher value = included first."""

    SYSTEM_PROMPT = 100
    MODE_INSTRUCTION = 90
    LINKED_ENTITY = 80
    SESSION_SETUP = 75
    SECONDARY_ENTITY = 70
    RAG_KNOWLEDGE = 70
    SESSION_SUMMARY = 30
    CONVERSATION_HISTORY = 20


@dataclass
class ContextSection:
    """One piece of prompt text competing for budget."""

    id: str
    content: str
    priority: int
    truncatable: bool = False
    min_tokens: Optional[int] = None
    """Smallest remaining space worth truncating into (default 100)."""

    label: str = ""


@dataclass
class ComposedContext:
    content: str
    total_tokens: int
    included_sections: list[str] = field(default_factory=list)
    truncated_sections: list[str] = field(default_factory=list)
    dropped_sections: list[str] = field(default_factory=list)


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Cut text so its estimate stays within ``max_tokens``.

    Prefers a paragraph break, then a sentence end, past 60% of the kept
    length. Room for the truncation marker is reserved up front.
    """
    max_chars = max(max_tokens, 0) * 4
    if len(text) <= max_chars:
        return text
    if max_chars <= len(PARAGRAPH_MARKER):
        return text[:max_chars]

    keep = max_chars - len(PARAGRAPH_MARKER)
    cut = text[:keep]

    last_paragraph = cut.rfind("\n\n")
    if last_paragraph > keep * 0.6:
        return cut[:last_paragraph] + PARAGRAPH_MARKER

    last_sentence = max(cut.rfind(". "), cut.rfind("! "), cut.rfind("? "))
    if last_sentence > keep * 0.6:
        return cut[: last_sentence + 1] + SENTENCE_MARKER

    return cut + HARD_CUT_MARKER


class ContextComposer:
    """Packs prioritized sections into a single prompt string."""

    def __init__(
        self,
        token_counter: Callable[[str], int] = estimate_tokens,
    ) -> None:
        self._count = token_counter

    def compose(
        self,
        sections: list[ContextSection],
        max_tokens: int,
        response_buffer: int = DEFAULT_RESPONSE_BUFFER,
        separator: str = DEFAULT_SEPARATOR,
    ) -> ComposedContext:
        """Greedily pack sections by descending priority.

        A section that does not fit whole is truncated into the remaining
        space if it is truncatable and at least its ``min_tokens`` remain;
        otherwise it is dropped.
        """
        effective_max = max_tokens - response_buffer
        separator_tokens = self._count(separator)
        ordered = sorted(sections, key=lambda s: s.priority, reverse=True)

        result = ComposedContext(content="", total_tokens=0)
        pieces: list[str] = []
        used = 0

        for section in ordered:
            join_cost = separator_tokens if pieces else 0
            cost = self._count(section.content) + join_cost

            if used + cost <= effective_max:
                pieces.append(section.content)
                used += cost
                result.included_sections.append(section.id)
                continue

            if section.truncatable:
                available = effective_max - used - join_cost
                min_tokens = section.min_tokens or DEFAULT_MIN_TOKENS
                if available > 0 and available >= min_tokens:
                    truncated = truncate_to_tokens(section.content, available)
                    pieces.append(truncated)
                    used += self._count(truncated) + join_cost
                    result.truncated_sections.append(section.id)
                    continue

            logger.info(
                "Dropped context section %s (%d tokens, budget %d, used %d)",
                section.id,
                cost,
                effective_max,
                used,
            )
            result.dropped_sections.append(section.id)

        result.content = separator.join(pieces)
        result.total_tokens = used
        return result


def compose_context(
    sections: list[ContextSection],
    max_tokens: int,
    response_buffer: int = DEFAULT_RESPONSE_BUFFER,
    separator: str = DEFAULT_SEPARATOR,
) -> ComposedContext:
    """Compose with the default chars/4 token estimate."""
    return ContextComposer().compose(
        sections,
        max_tokens=max_tokens,
        response_buffer=response_buffer,
        separator=separator,
    )


def create_section(
    id: str,
    content: str,
    priority: int,
    truncatable: bool = False,
    min_tokens: Optional[int] = None,
    label: str = "",
) -> ContextSection:
    return ContextSection(
        id=id,
        content=content,
        priority=priority,
        truncatable=truncatable,
        min_tokens=min_tokens,
        label=label,
    )


MODEL_CONTEXT_LIMITS: dict[str, int] = {
    "claude-3-haiku-20240307": 200000,
    "claude-3-5-sonnet-20241022": 200000,
    "claude-3-opus-20240229": 200000,
    "claude-sonnet-4-20250514": 200000,
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
    "gpt-4-turbo": 128000,
    "gpt-3.5-turbo": 16000,
}


def get_recommended_budget(model: str) -> int:
    """70% of a known model's context window, else a conservative 10000."""
    limit = MODEL_CONTEXT_LIMITS.get(model)
    if limit:
        return int(limit * 0.7)
    return 10000


def build_context_sections(
    system_prompt: str,
    mode_instruction: Optional[str] = None,
    linked_character: Optional[str] = None,
    linked_world: Optional[str] = None,
    linked_project: Optional[str] = None,
    secondary_entities: Optional[list[str]] = None,
    session_setup: Optional[str] = None,
    rag_context: Optional[str] = None,
    session_summary: Optional[str] = None,
    conversation_history: Optional[str] = None,
) -> list[ContextSection]:
    """Standard section list for a chat prompt; absent parts are skipped."""
    sections = [
        create_section(
            "system-prompt",
            system_prompt,
            ContextPriority.SYSTEM_PROMPT,
            label="Base System Prompt",
        )
    ]

    if mode_instruction:
        sections.append(create_section(
            "mode-instruction",
            f"### MODE INSTRUCTIONS\n{mode_instruction}",
            ContextPriority.MODE_INSTRUCTION,
            label="Mode Instructions",
        ))

    for section_id, heading, content, min_tokens in (
        ("linked-character", "LINKED CHARACTER", linked_character, 200),
        ("linked-world", "LINKED WORLD", linked_world, 200),
        ("linked-project", "LINKED PROJECT", linked_project, 150),
    ):
        if content:
            sections.append(create_section(
                section_id,
                f"### {heading}\n{content}",
                ContextPriority.LINKED_ENTITY,
                truncatable=True,
                min_tokens=min_tokens,
                label=heading.title(),
            ))

    if session_setup:
        sections.append(create_section(
            "session-setup",
            f"### SESSION SETUP\n{session_setup}",
            ContextPriority.SESSION_SETUP,
            truncatable=True,
            min_tokens=50,
            label="Session Setup",
        ))

    for index, entity in enumerate(secondary_entities or []):
        sections.append(create_section(
            f"secondary-entity-{index}",
            entity,
            ContextPriority.SECONDARY_ENTITY,
            truncatable=True,
            min_tokens=100,
            label=f"Secondary Entity {index + 1}",
        ))

    if rag_context:
        sections.append(create_section(
            "rag-knowledge",
            f"### RELEVANT KNOWLEDGE BANK EXTRACTS\n{rag_context}",
            ContextPriority.RAG_KNOWLEDGE,
            truncatable=True,
            min_tokens=100,
            label="Knowledge",
        ))

    if session_summary:
        sections.append(create_section(
            "session-summary",
            f"### SESSION SUMMARY\n{session_summary}",
            ContextPriority.SESSION_SUMMARY,
            truncatable=True,
            min_tokens=50,
            label="Session Summary",
        ))

    if conversation_history:
        sections.append(create_section(
            "conversation-history",
            f"### EARLIER CONVERSATION\n{conversation_history}",
            ContextPriority.CONVERSATION_HISTORY,
            truncatable=True,
            min_tokens=100,
            label="Conversation History",
        ))

    return sections
