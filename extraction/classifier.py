# extraction/classifier.py
"""
Pattern sets and pure classifiers used by the NVQ evaluator.

Nothing in here touches the database or keeps state between calls.
"""
import re
from typing import Iterable, List, Optional, Sequence

from extraction.nvq_types import ClassifiedConnection, FunctionalTag

# ---------------------------------------------------------------------------
# Purpose statement
# ---------------------------------------------------------------------------

FIRST_PERSON = re.compile(
    r"I am keeping this because|I need this|This helps me|I'm keeping this|I want to remember",
    re.IGNORECASE,
)

ACTIONABLE = re.compile(
    r"(will help|enables|allows|supports|crucial for|vital for|important for|essential for"
    r"|necessary for|so that I can|in order to|helps me)",
    re.IGNORECASE,
)

# ---------------------------------------------------------------------------
# Metadata / project links
# ---------------------------------------------------------------------------

PROJECT_WIKILINK = re.compile(r"\[\[Project[/:]([^\]]+)\]\]", re.IGNORECASE)
PROJECT_INLINE = re.compile(r"project:\s*([^\n,]+)", re.IGNORECASE)
PROJECT_REFERENCE = re.compile(r"for (the |my )?([A-Z][a-zA-Z\s]+) project", re.IGNORECASE)

# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------

TAG_ACTION = re.compile(r"^(task|decision|action)/")
TAG_SKILL = re.compile(r"^skill/")
TAG_EVOLUTION = re.compile(r"^(insight|evolution)/")
TAG_PROJECT = re.compile(r"^(ui|project)/", re.IGNORECASE)

TOPIC_TAGS = frozenset({
    "accessibility", "ai", "api", "architecture", "authentication", "backend",
    "bug", "code", "database", "design", "development", "documentation",
    "feature", "frontend", "idea", "improvement", "infrastructure",
    "integration", "javascript", "journaling", "learning", "meeting", "note",
    "performance", "planning", "productivity", "programming", "react",
    "reference", "research", "security", "speech", "testing", "typescript",
    "ui", "ux", "writing",
})

# ---------------------------------------------------------------------------
# Links
# ---------------------------------------------------------------------------

WIKILINK = re.compile(r"\[\[([^\]]+)\]\]")
MOC_LINK = re.compile(r"\[\[(MOC|Map of Content)[/:]?([^\]]*)\]\]", re.IGNORECASE)
PROJECT_LINK = re.compile(r"\[\[Project[/:]([^\]]+)\]\]", re.IGNORECASE)
MOC_WORD = re.compile(r"\bmoc\b", re.IGNORECASE)

# ---------------------------------------------------------------------------
# Originality
# ---------------------------------------------------------------------------

ORIGINAL_INSIGHT = [
    re.compile(r"I (think|believe|realized|discovered|noticed|found|learned)", re.IGNORECASE),
    re.compile(r"my (interpretation|understanding|take|view|insight|conclusion)", re.IGNORECASE),
    re.compile(r"this (suggests|implies|means|tells me|indicates|reveals)", re.IGNORECASE),
    re.compile(r"the key (insight|takeaway|lesson|point) is", re.IGNORECASE),
    re.compile(r"for (my|our) (use case|project|context|situation)", re.IGNORECASE),
    re.compile(r"(decision|lesson learned|takeaway|conclusion):", re.IGNORECASE),
    re.compile(r"I (decided|chose|concluded|determined)", re.IGNORECASE),
    re.compile(r"what this means for", re.IGNORECASE),
    re.compile(r"in my experience", re.IGNORECASE),
    re.compile(r"I've (noticed|observed|seen)", re.IGNORECASE),
]

WIKIPEDIA_FACT = [
    re.compile(r"according to (wikipedia|the documentation|the official)", re.IGNORECASE),
    re.compile(r"is defined as", re.IGNORECASE),
    re.compile(r"was (invented|created|founded|developed) in \d{4}", re.IGNORECASE),
    re.compile(r"\bis a\b.*\bthat\b", re.IGNORECASE),
    re.compile(r"^(The|A|An) [A-Z][a-z]+ is", re.IGNORECASE),
    re.compile(r"officially (released|announced|launched)", re.IGNORECASE),
]

QUOTATION = [
    re.compile(r'"[^"]{20,}"'),
    re.compile(r">[^\n]{20,}"),
    re.compile(r"```[\s\S]*?```"),
]

SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def count_pattern_matches(text: str, patterns: Sequence[re.Pattern]) -> int:
    """Number of distinct patterns that match somewhere in text."""
    return sum(1 for p in patterns if p.search(text))


def normalize_title(title: str) -> str:
    """'[[MOC/Languages]]' -> 'moc/languages'"""
    t = (title or "").strip()
    if t.startswith("[[") and t.endswith("]]"):
        t = t[2:-2]
    return t.strip().lower()


def extract_wikilinks(text: str) -> List[str]:
    return [m.group(1).strip() for m in WIKILINK.finditer(text or "") if m.group(1).strip()]


def extract_project_name(text: str) -> Optional[str]:
    if not text:
        return None
    m = PROJECT_WIKILINK.search(text)
    if m:
        return m.group(1).strip()
    m = PROJECT_INLINE.search(text)
    if m:
        return m.group(1).strip()
    m = PROJECT_REFERENCE.search(text)
    if m:
        return m.group(2).strip()
    return None


def is_topic_tag(tag: str) -> bool:
    normalized = re.sub(r"[-_]", "", tag.lower().lstrip("#"))
    return normalized in TOPIC_TAGS


def classify_tag(tag: str) -> FunctionalTag:
    """
    Functional tags carry a namespace ('skill/spanish'); bare words are topic tags.
    """
    normalized = tag.strip().lower().lstrip("#")

    if TAG_ACTION.match(normalized):
        parts = normalized.split("/")
        return FunctionalTag(tag, "action", parts[1] or None, False)

    if TAG_SKILL.match(normalized):
        return FunctionalTag(tag, "skill", TAG_SKILL.sub("", normalized) or None, False)

    if TAG_EVOLUTION.match(normalized):
        return FunctionalTag(tag, "evolution", TAG_EVOLUTION.sub("", normalized) or None, False)

    if TAG_PROJECT.match(normalized):
        parts = normalized.split("/")
        return FunctionalTag(tag, "project", parts[1] or None, False)

    namespaced = "/" in normalized.strip("/")
    return FunctionalTag(tag, None, None, is_topic_tag(tag) or not namespaced)


def _name_pattern(name: str) -> re.Pattern:
    return re.compile(r"\[\[.*" + re.escape(name) + r".*\]\]", re.IGNORECASE)


def _matches_known_name(target_title: str, names: Iterable[str], prefix: str) -> bool:
    normalized = normalize_title(target_title)
    for name in names:
        if not name:
            continue
        if _name_pattern(name).search(target_title):
            return True
        lowered = name.strip().lower()
        if normalized in (lowered, f"{prefix}/{lowered}"):
            return True
    return False


def classify_connection(
    target_title: str,
    original_type: str,
    moc_names: Iterable[str] = (),
    project_names: Iterable[str] = (),
) -> ClassifiedConnection:
    target = target_title.lower()

    is_to_moc = (
        _matches_known_name(target_title, moc_names, "moc")
        or bool(MOC_WORD.search(target))
        or "map of content" in target
        or bool(MOC_LINK.search(target_title))
    )
    is_to_project = (
        _matches_known_name(target_title, project_names, "project")
        or "project/" in target
        or bool(PROJECT_LINK.search(target_title))
    )

    if is_to_moc or is_to_project:
        direction = "upward"
    elif (original_type or "").lower() == "example_of":
        direction = "downward"
    else:
        direction = "sideways"

    return ClassifiedConnection(
        target_title=target_title,
        original_type=original_type,
        direction=direction,
        is_to_moc=is_to_moc,
        is_to_project=is_to_project,
    )


def _strip_quotations(text: str) -> str:
    for p in QUOTATION:
        text = p.sub(" ", text)
    return text


def synthesis_ratio(text: str) -> float:
    """
    Share of the note's own (unquoted) sentences that read as personal
    synthesis. Quotes, blockquotes and code blocks do not count as the
    author's sentences.
    """
    own = _strip_quotations(text or "")
    sentences = [s.strip() for s in SENTENCE_SPLIT.split(own) if s and s.strip()]
    if not sentences:
        return 0.0
    synthesized = sum(1 for s in sentences if count_pattern_matches(s, ORIGINAL_INSIGHT) > 0)
    return synthesized / len(sentences)
