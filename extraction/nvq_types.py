# extraction/nvq_types.py
"""
Shapes flowing through the NVQ pipeline.

NoteCandidate is what the generator proposes (validated with pydantic, so the
camelCase keys the prompt asks for and the snake_case keys both load). The
score records are plain dataclasses produced by the evaluator.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


NOTE_STATUSES = ("Seed", "Sapling", "Evergreen")
NOTE_TYPES = ("Logic", "Technical", "Reflection")
COMPONENTS = ("why", "metadata", "taxonomy", "connectivity", "originality")


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

@dataclass
class ContextNote:
    id: str
    title: str
    content: str


@dataclass
class GoalRef:
    title: str
    why_root: str = ""


@dataclass
class ExtractionContext:
    related_notes: List[ContextNote] = field(default_factory=list)
    common_tags: List[str] = field(default_factory=list)
    goals: List[GoalRef] = field(default_factory=list)
    moc_names: List[str] = field(default_factory=list)
    project_names: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------

def _blank_to_none(value):
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return str(value)


class CandidateConnection(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    target_title: str = Field(validation_alias=AliasChoices("targetTitle", "target_title", "target"))
    type: str = "related"
    strength: float = 0.5

    @field_validator("target_title")
    @classmethod
    def _strip_title(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("connection target is empty")
        return v

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v):
        v = _blank_to_none(v)
        return v.lower() if v else "related"

    @field_validator("strength", mode="before")
    @classmethod
    def _clamp_strength(cls, v):
        try:
            v = float(v)
        except (TypeError, ValueError):
            return 0.5
        return min(1.0, max(0.0, v))


class NoteCandidate(BaseModel):
    """A generator's proposed note. Only title and content are required."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str
    content: str
    purpose_statement: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("purposeStatement", "purpose_statement", "purpose"),
    )
    status: Optional[str] = None
    note_type: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("noteType", "note_type", "type"),
    )
    stakeholder: Optional[str] = None
    project: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("projectLink", "project_link", "project"),
    )
    tags: List[str] = Field(default_factory=list)
    connections: List[CandidateConnection] = Field(default_factory=list)
    consolidate_with: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("consolidate_with", "consolidateWith"),
    )
    merged_content: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("merged_content", "mergedContent"),
    )

    @field_validator("title", "content")
    @classmethod
    def _required_text(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator(
        "purpose_statement", "status", "note_type", "stakeholder",
        "project", "consolidate_with", "merged_content",
        mode="before",
    )
    @classmethod
    def _optional_text(cls, v):
        return _blank_to_none(v)

    @field_validator("tags", mode="before")
    @classmethod
    def _clean_tags(cls, v):
        if not v:
            return []
        if isinstance(v, str):
            v = v.split(",")
        return [str(t).strip() for t in v if t is not None and str(t).strip()]

    @field_validator("connections", mode="before")
    @classmethod
    def _drop_unusable_connections(cls, v):
        if not v:
            return []
        kept = []
        for c in v:
            if not isinstance(c, dict):
                continue
            target = c.get("targetTitle") or c.get("target_title") or c.get("target")
            if isinstance(target, str) and target.strip():
                kept.append(c)
        return kept

    @property
    def will_consolidate(self) -> bool:
        return bool(self.consolidate_with and self.merged_content)

    def merged_with(self, refined: "NoteCandidate") -> "NoteCandidate":
        """
        Overlays the non-empty fields the refinement returned. The merge target
        of the original stays as it was.
        """
        update = {
            name: getattr(refined, name)
            for name in refined.model_fields_set
            if name not in ("consolidate_with", "merged_content")
            and getattr(refined, name) not in (None, [])
        }
        return self.model_copy(update=update, deep=True)


# ---------------------------------------------------------------------------
# Classification records
# ---------------------------------------------------------------------------

@dataclass
class FunctionalTag:
    raw: str
    category: Optional[str]
    action: Optional[str]
    is_topic_tag: bool


@dataclass
class ClassifiedConnection:
    target_title: str
    original_type: str
    direction: str
    is_to_moc: bool
    is_to_project: bool


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------

@dataclass
class WhyScore:
    score: int
    has_first_person: bool
    links_to_personal_goal: bool
    is_actionable: bool
    raw_statement: Optional[str]


@dataclass
class MetadataScore:
    score: int
    has_project: bool
    project_link: Optional[str]
    has_status: bool
    status: Optional[str]
    has_type: bool
    type: Optional[str]
    has_stakeholder: bool
    stakeholder: Optional[str]
    fields_present: int


@dataclass
class TaxonomyScore:
    score: int
    total_tags: int
    functional_tags: int
    topic_tags: int
    tag_breakdown: List[FunctionalTag]
    has_action_tag: bool
    has_skill_tag: bool
    has_evolution_tag: bool
    has_project_tag: bool
    exceeds_limit: bool


@dataclass
class ConnectivityScore:
    score: int
    has_upward_link: bool
    upward_links: List[ClassifiedConnection]
    has_sideways_link: bool
    sideways_links: List[ClassifiedConnection]
    downward_links: List[ClassifiedConnection]
    total_connections: int
    meets_minimum: bool


@dataclass
class OriginalityScore:
    score: int
    synthesis_ratio: float
    synthesis_matches: int
    fact_matches: int
    has_original_insight: bool
    is_wikipedia_fact: bool
    reasoning_provided: str


@dataclass
class NVQBreakdown:
    why: WhyScore
    metadata: MetadataScore
    taxonomy: TaxonomyScore
    connectivity: ConnectivityScore
    originality: OriginalityScore


@dataclass
class NVQScore:
    total: int
    breakdown: NVQBreakdown
    passing: bool
    failing_components: List[str]

    def component_scores(self) -> Dict[str, int]:
        return {name: getattr(self.breakdown, name).score for name in COMPONENTS}

    def to_storable_breakdown(self) -> Dict[str, Any]:
        """What goes into atomic_notes.nvq_breakdown."""
        b = self.breakdown
        return {
            **self.component_scores(),
            "total": self.total,
            "passing": self.passing,
            "failing_components": list(self.failing_components),
            "why_detail": {
                "has_first_person": b.why.has_first_person,
                "links_to_personal_goal": b.why.links_to_personal_goal,
                "is_actionable": b.why.is_actionable,
            },
            "metadata_fields_present": b.metadata.fields_present,
            "tags": {
                "functional": b.taxonomy.functional_tags,
                "topic": b.taxonomy.topic_tags,
                "exceeds_limit": b.taxonomy.exceeds_limit,
            },
            "links": {
                "upward": len(b.connectivity.upward_links),
                "sideways": len(b.connectivity.sideways_links),
                "downward": len(b.connectivity.downward_links),
            },
            "originality": b.originality.reasoning_provided,
        }


@dataclass
class NVQEvaluationResult:
    note_title: str
    note_content: str
    nvq_score: NVQScore
    issues: List[str]


@dataclass
class TopFailure:
    component: str
    issue: str
    count: int


@dataclass
class NVQAggregateMetrics:
    mean_nvq: float = 0.0
    median_nvq: float = 0.0
    min_nvq: float = 0.0
    max_nvq: float = 0.0
    passing_rate: float = 0.0

    why_failure_rate: float = 0.0
    metadata_failure_rate: float = 0.0
    taxonomy_failure_rate: float = 0.0
    connectivity_failure_rate: float = 0.0
    originality_failure_rate: float = 0.0

    total_notes_evaluated: int = 0
    notes_with_purpose: int = 0
    notes_with_complete_metadata: int = 0
    notes_with_functional_tags: int = 0
    notes_with_two_links: int = 0
    notes_that_are_synthesis: int = 0

    top_failures: List[TopFailure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ScoredCandidate:
    """A candidate with its latest score, as handed to the committer."""
    candidate: NoteCandidate
    score: NVQScore
    issues: List[str]
    refinement_attempts: int = 0

    @property
    def quality_status(self) -> str:
        return "passing" if self.score.passing else "needs_review"
