"""Post-processing of model replies: entity references, links and facts.

Everything here is regex heuristics. False positives are expected and
tolerated; none of these functions raise on arbitrary text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional

from contextforge.entities.ids import EntityKind, entity_kind_of
from contextforge.entities.models import Entity, FactCategory

# Existing mention links, ``[@Name](kind:ID)``.
LINK_SPAN_PATTERN = re.compile(r"\[@[^\]]*\]\([^)]*\)")

MARKDOWN_MENTION_PATTERN = re.compile(
    r"\[@([^\]]+)\]\((character|world|project):([#@$][A-Z0-9_]+)\)"
)
PLAIN_MENTION_PATTERN = re.compile(r"@([A-Za-z0-9_]+)")

SENTENCE_SPLIT_PATTERN = re.compile(r"[.!?]+")

DEFINITE_FACT_PATTERNS = [
    re.compile(r"(?:has|have|is|are|was|were)\s+([^.!?]+)", re.IGNORECASE),
    re.compile(r"(?:named|called)\s+([^.!?]+)", re.IGNORECASE),
    re.compile(r"(?:born|died|created)\s+([^.!?]+)", re.IGNORECASE),
]

PHYSICAL_FACT_PATTERNS = [
    re.compile(
        r"(?:has|have|with)\s+"
        r"(blue|green|brown|hazel|gray|red|black|white|golden|silver)\s+"
        r"(eyes|hair|skin)",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?:is|are)\s+(\d+)\s+"
        r"(feet|ft|inches|in|meters|m|centimeters|cm)\s+tall",
        re.IGNORECASE,
    ),
    re.compile(r"(?:wears|dressed in|clothed in)\s+([^.!?]+)", re.IGNORECASE),
]

_CATEGORY_KEYWORDS: list[tuple[FactCategory, re.Pattern]] = [
    ("physical", re.compile(
        r"\b(eyes|hair|skin|tall|height|weight|appearance|looks?|face)\b"
    )),
    ("personality", re.compile(
        r"\b(personality|trait|behavior|always|never|tends to)\b"
    )),
    ("history", re.compile(
        r"\b(born|childhood|past|history|used to|ago|before)\b"
    )),
    ("relationship", re.compile(
        r"\b(friend|enemy|ally|rival|family|parent|sibling|child|spouse)\b"
    )),
    ("ability", re.compile(r"\b(ability|power|skill|talent|can|able to)\b")),
    ("possession", re.compile(
        r"\b(owns|has|carries|wears|weapon|item|possession)\b"
    )),
]


@dataclass
class EntityReference:
    name: str
    kind: EntityKind
    id: str
    confidence: float


@dataclass
class DetectedFact:
    entity_id: str
    entity_kind: EntityKind
    category: FactCategory
    fact: str
    quote: str
    confidence: str = "definite"


@dataclass
class EntityMention:
    """An ``@`` mention found in user text; ``id`` is unset for plain mentions."""

    name: str
    id: Optional[str] = None
    kind: Optional[EntityKind] = None


@dataclass
class EnrichedResponse:
    text: str
    entity_references: list[EntityReference] = field(default_factory=list)
    detected_facts: list[DetectedFact] = field(default_factory=list)


def _names_of(entity: Entity) -> list[str]:
    return [n for n in [entity.name, *entity.aliases] if n]


def _name_pattern(name: str) -> re.Pattern:
    return re.compile(rf"\b{re.escape(name)}\b", re.IGNORECASE)


def _reference_confidence(matches: list[str]) -> float:
    confidence = 0.5 + min(len(matches) * 0.1, 0.3)
    capitalized = sum(1 for m in matches if m[:1] == m[:1].upper())
    confidence += capitalized / len(matches) * 0.2
    return min(confidence, 1.0)


def extract_entity_references(
    text: str, entities: list[Entity]
) -> list[EntityReference]:
    """Find which known entities a reply talks about.

    The first of an entity's names (canonical name, then aliases) that
    matches decides its confidence; the canonical name is always reported.
    Results are sorted by descending confidence.
    """
    references: list[EntityReference] = []
    for entity in entities:
        for name in _names_of(entity):
            matches = _name_pattern(name).findall(text)
            if matches:
                references.append(EntityReference(
                    name=entity.name,
                    kind=entity_kind_of(entity),
                    id=entity.id,
                    confidence=_reference_confidence(matches),
                ))
                break

    references.sort(key=lambda r: r.confidence, reverse=True)
    return references


def _link_spans(text: str) -> list[tuple[int, int]]:
    return [m.span() for m in LINK_SPAN_PATTERN.finditer(text)]


def enrich_response_with_links(text: str, entities: list[Entity]) -> str:
    """Wrap bare entity names as ``[@Name](kind:ID)`` links.

    Longer names are linked first so a short name never splits a longer
    one. Occurrences already inside a link are left alone, so applying
    this twice gives the same text as applying it once.
    """
    enriched = text
    ordered = sorted(entities, key=lambda e: len(e.name), reverse=True)

    for entity in ordered:
        kind = entity_kind_of(entity)
        for name in _names_of(entity):
            pattern = re.compile(
                rf"(?<!\[)\b({re.escape(name)})\b(?!\]\()", re.IGNORECASE
            )
            spans = _link_spans(enriched)

            def _link(match: re.Match) -> str:
                start = match.start()
                if any(lo <= start < hi for lo, hi in spans):
                    return match.group(0)
                return f"[@{match.group(1)}]({kind.value}:{entity.id})"

            enriched = pattern.sub(_link, enriched)

    return enriched


def categorize_fact(fact: str) -> FactCategory:
    """Bucket a fact by the first keyword group it mentions."""
    lower = fact.lower()
    for category, pattern in _CATEGORY_KEYWORDS:
        if pattern.search(lower):
            return category
    return "other"


def detect_canonical_fact_updates(
    text: str, entities: list[Entity], mode: Optional[str] = None
) -> list[DetectedFact]:
    """Pull candidate canonical facts out of sentences naming an entity.

    Physical description patterns are tagged ``physical``; the generic
    has/is/was patterns are categorized by keyword. Every fact is marked
    ``definite``. A sentence can yield several overlapping facts.
    """
    facts: list[DetectedFact] = []
    sentences = SENTENCE_SPLIT_PATTERN.split(text)

    for entity in entities:
        kind = entity_kind_of(entity)
        needle = entity.name.lower()
        if not needle:
            continue
        for sentence in sentences:
            if needle not in sentence.lower():
                continue
            quote = sentence.strip()

            for pattern in PHYSICAL_FACT_PATTERNS:
                for match in pattern.finditer(sentence):
                    facts.append(DetectedFact(
                        entity_id=entity.id,
                        entity_kind=kind,
                        category="physical",
                        fact=match.group(0).strip(),
                        quote=quote,
                    ))

            for pattern in DEFINITE_FACT_PATTERNS:
                for match in pattern.finditer(sentence):
                    fact = match.group(0).strip()
                    facts.append(DetectedFact(
                        entity_id=entity.id,
                        entity_kind=kind,
                        category=categorize_fact(fact),
                        fact=fact,
                        quote=quote,
                    ))

    return facts


def enrich_response(
    text: str, entities: list[Entity], mode: Optional[str] = None
) -> EnrichedResponse:
    """Links, references and detected facts for one reply."""
    return EnrichedResponse(
        text=enrich_response_with_links(text, entities),
        entity_references=extract_entity_references(text, entities),
        detected_facts=detect_canonical_fact_updates(text, entities, mode),
    )


def format_entity_references_summary(references: list[EntityReference]) -> str:
    if not references:
        return "No entity references detected."

    by_kind: dict[EntityKind, list[str]] = {}
    for ref in references:
        by_kind.setdefault(ref.kind, []).append(ref.name)

    labels = {
        EntityKind.CHARACTER: "Characters",
        EntityKind.WORLD: "Worlds",
        EntityKind.PROJECT: "Projects",
    }
    parts = [
        f"{labels[kind]}: {', '.join(by_kind[kind])}"
        for kind in EntityKind
        if kind in by_kind
    ]
    return " | ".join(parts)


def parse_entity_mentions(content: str) -> list[EntityMention]:
    """Collect ``[@Name](kind:ID)`` links, then bare ``@Name`` tokens.

    Bare tokens are only scanned outside of links and are skipped when a
    link with the same name was already found.
    """
    mentions: list[EntityMention] = []
    for match in MARKDOWN_MENTION_PATTERN.finditer(content):
        mentions.append(EntityMention(
            name=match.group(1),
            kind=EntityKind(match.group(2)),
            id=match.group(3),
        ))

    remainder = MARKDOWN_MENTION_PATTERN.sub(" ", content)
    for match in PLAIN_MENTION_PATTERN.finditer(remainder):
        name = match.group(1)
        if not any(m.name == name for m in mentions):
            mentions.append(EntityMention(name=name))

    return mentions
