"""
NVQ scoring engine.

Scores a note candidate against the 10-point Note Vitality Quotient:
- Why (0-3): purpose statement, goal link, actionability
- Metadata (0-2): project, status, type, stakeholder
- Taxonomy (0-2): functional vs topic tags
- Connectivity (0-2): upward + sideways links
- Originality (0-1): synthesis vs raw facts

Deterministic: same candidate + same context always gives the same score.
"""
from collections import Counter
from typing import Iterable, List, Optional, Sequence, Tuple

from extraction import classifier
from extraction.nvq_types import (
    NOTE_STATUSES,
    NOTE_TYPES,
    ConnectivityScore,
    ExtractionContext,
    GoalRef,
    MetadataScore,
    NoteCandidate,
    NVQAggregateMetrics,
    NVQBreakdown,
    NVQEvaluationResult,
    NVQScore,
    OriginalityScore,
    TaxonomyScore,
    TopFailure,
    WhyScore,
)

MAX_TAGS = 5


class NVQEvaluator:
    def __init__(
        self,
        goals: Iterable[GoalRef] = (),
        moc_names: Iterable[str] = (),
        project_names: Iterable[str] = (),
        passing_threshold: int = 7,
    ):
        self.goals = list(goals)
        self.moc_names = list(moc_names)
        self.project_names = list(project_names)
        self.passing_threshold = passing_threshold

    @classmethod
    def for_context(cls, context: ExtractionContext, passing_threshold: int = 7) -> "NVQEvaluator":
        return cls(
            goals=context.goals,
            moc_names=context.moc_names,
            project_names=context.project_names,
            passing_threshold=passing_threshold,
        )

    # ------------------------------------------------------------------
    # Single note
    # ------------------------------------------------------------------

    def evaluate_note(self, note: NoteCandidate) -> NVQScore:
        breakdown = NVQBreakdown(
            why=self.score_why(note),
            metadata=self.score_metadata(note),
            taxonomy=self.score_taxonomy(note),
            connectivity=self.score_connectivity(note),
            originality=self.score_originality(note),
        )
        total = (
            breakdown.why.score
            + breakdown.metadata.score
            + breakdown.taxonomy.score
            + breakdown.connectivity.score
            + breakdown.originality.score
        )
        failing = [
            name for name in ("why", "metadata", "taxonomy", "connectivity", "originality")
            if getattr(breakdown, name).score == 0
        ]
        return NVQScore(
            total=total,
            breakdown=breakdown,
            passing=total >= self.passing_threshold,
            failing_components=failing,
        )

    def score_why(self, note: NoteCandidate) -> WhyScore:
        purpose = note.purpose_statement or ""
        combined = f"{note.title} {note.content} {purpose}"

        has_first_person = bool(classifier.FIRST_PERSON.search(purpose) or classifier.FIRST_PERSON.search(combined))
        links_to_goal = self._links_to_goal(combined)
        is_actionable = bool(classifier.ACTIONABLE.search(purpose) or classifier.ACTIONABLE.search(combined))

        return WhyScore(
            score=int(has_first_person) + int(links_to_goal) + int(is_actionable),
            has_first_person=has_first_person,
            links_to_personal_goal=links_to_goal,
            is_actionable=is_actionable,
            raw_statement=note.purpose_statement,
        )

    def _links_to_goal(self, text: str) -> bool:
        lowered = text.lower()
        for goal in self.goals:
            title = (goal.title or "").strip().lower()
            why_root = (goal.why_root or "").strip().lower()
            if title and title in lowered:
                return True
            if why_root and why_root in lowered:
                return True
        return False

    def score_metadata(self, note: NoteCandidate) -> MetadataScore:
        project_link = note.project or classifier.extract_project_name(note.content)
        has_project = bool(project_link)
        has_status = note.status in NOTE_STATUSES
        has_type = note.note_type in NOTE_TYPES
        has_stakeholder = bool(note.stakeholder)

        fields_present = sum((has_project, has_status, has_type, has_stakeholder))
        if fields_present >= 3:
            score = 2
        elif fields_present == 2:
            score = 1
        else:
            score = 0

        return MetadataScore(
            score=score,
            has_project=has_project,
            project_link=project_link,
            has_status=has_status,
            status=note.status,
            has_type=has_type,
            type=note.note_type,
            has_stakeholder=has_stakeholder,
            stakeholder=note.stakeholder,
            fields_present=fields_present,
        )

    def score_taxonomy(self, note: NoteCandidate) -> TaxonomyScore:
        breakdown = [classifier.classify_tag(t) for t in note.tags]
        functional = [t for t in breakdown if not t.is_topic_tag]
        topic = [t for t in breakdown if t.is_topic_tag]
        exceeds_limit = len(note.tags) > MAX_TAGS

        score = 0
        if functional and not topic:
            score = 2
        elif functional:
            score = 1
        if exceeds_limit:
            score = max(0, score - 1)

        categories = {t.category for t in breakdown}
        return TaxonomyScore(
            score=score,
            total_tags=len(note.tags),
            functional_tags=len(functional),
            topic_tags=len(topic),
            tag_breakdown=breakdown,
            has_action_tag="action" in categories,
            has_skill_tag="skill" in categories,
            has_evolution_tag="evolution" in categories,
            has_project_tag="project" in categories,
            exceeds_limit=exceeds_limit,
        )

    def score_connectivity(self, note: NoteCandidate) -> ConnectivityScore:
        targets: List[Tuple[str, str]] = [(c.target_title, c.type) for c in note.connections]
        # [[links]] written into the body count as plain references
        targets += [(link, "reference") for link in classifier.extract_wikilinks(note.content)]

        classified = [
            classifier.classify_connection(title, kind, self.moc_names, self.project_names)
            for title, kind in targets
        ]
        upward = [c for c in classified if c.direction == "upward"]
        sideways = [c for c in classified if c.direction == "sideways"]
        downward = [c for c in classified if c.direction == "downward"]

        meets_minimum = bool(upward) and bool(sideways)
        if meets_minimum:
            score = 2
        elif upward or sideways:
            score = 1
        else:
            score = 0

        return ConnectivityScore(
            score=score,
            has_upward_link=bool(upward),
            upward_links=upward,
            has_sideways_link=bool(sideways),
            sideways_links=sideways,
            downward_links=downward,
            total_connections=len(note.connections),
            meets_minimum=meets_minimum,
        )

    def score_originality(self, note: NoteCandidate) -> OriginalityScore:
        text = f"{note.title} {note.content}"

        synthesis_matches = classifier.count_pattern_matches(text, classifier.ORIGINAL_INSIGHT)
        fact_matches = classifier.count_pattern_matches(text, classifier.WIKIPEDIA_FACT)
        is_wikipedia_fact = fact_matches > 0 and synthesis_matches < 2
        ratio = classifier.synthesis_ratio(text)
        has_insight = synthesis_matches >= 2 or ratio > 0.7

        if is_wikipedia_fact:
            reasoning = "Contains primarily factual/encyclopedic content"
        elif has_insight:
            reasoning = "Contains original interpretation and synthesis"
        else:
            reasoning = "Mostly factual, lacks personal synthesis"

        return OriginalityScore(
            score=1 if has_insight and not is_wikipedia_fact else 0,
            synthesis_ratio=ratio,
            synthesis_matches=synthesis_matches,
            fact_matches=fact_matches,
            has_original_insight=has_insight,
            is_wikipedia_fact=is_wikipedia_fact,
            reasoning_provided=reasoning,
        )

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def identify_issues(self, score: NVQScore) -> List[str]:
        b = score.breakdown
        issues: List[str] = []

        if b.why.score == 0:
            issues.append('Missing purpose statement ("I am keeping this because...")')
        elif not b.why.links_to_personal_goal:
            issues.append("Purpose statement does not link to a personal goal")

        if b.metadata.fields_present < 2:
            issues.append("Missing metadata fields (Status, Type, Stakeholder)")

        if b.taxonomy.topic_tags > b.taxonomy.functional_tags:
            issues.append("Too many topic tags, not enough functional tags")

        if b.taxonomy.exceeds_limit:
            issues.append("Exceeds 5 tag limit - note may need to be split")

        if not b.connectivity.meets_minimum:
            if not b.connectivity.has_upward_link:
                issues.append("Missing upward link to MOC or Project")
            if not b.connectivity.has_sideways_link:
                issues.append("Missing sideways link to related concept")

        if b.originality.is_wikipedia_fact:
            issues.append("Content is too factual - add personal interpretation")

        return issues

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def evaluate_notes(
        self,
        notes: Sequence[NoteCandidate],
        top_n: int = 5,
    ) -> Tuple[List[NVQEvaluationResult], NVQAggregateMetrics]:
        results = []
        for note in notes:
            score = self.evaluate_note(note)
            results.append(NVQEvaluationResult(
                note_title=note.title,
                note_content=note.content,
                nvq_score=score,
                issues=self.identify_issues(score),
            ))
        return results, aggregate_metrics(results, top_n=top_n)


def aggregate_metrics(results: Sequence[NVQEvaluationResult], top_n: int = 5) -> NVQAggregateMetrics:
    """
    Batch reporting numbers. Median is the upper middle value for even
    counts (sorted[n // 2]).
    """
    if not results:
        return NVQAggregateMetrics()

    n = len(results)
    scores = sorted(r.nvq_score.total for r in results)
    failures = Counter()
    issue_counter: Counter = Counter()

    with_purpose = with_metadata = with_functional = with_two_links = with_synthesis = 0
    for r in results:
        b = r.nvq_score.breakdown
        for name in r.nvq_score.failing_components:
            failures[name] += 1

        if b.why.raw_statement:
            with_purpose += 1
        if b.metadata.fields_present >= 3:
            with_metadata += 1
        if b.taxonomy.functional_tags > 0:
            with_functional += 1
        if b.connectivity.meets_minimum:
            with_two_links += 1
        if b.originality.has_original_insight:
            with_synthesis += 1

        component = r.nvq_score.failing_components[0] if r.nvq_score.failing_components else "general"
        for issue in r.issues:
            issue_counter[(component, issue)] += 1

    top: List[TopFailure] = [
        TopFailure(component=component, issue=issue, count=count)
        for (component, issue), count in issue_counter.most_common(top_n)
    ]

    return NVQAggregateMetrics(
        mean_nvq=sum(scores) / n,
        median_nvq=scores[n // 2],
        min_nvq=scores[0],
        max_nvq=scores[-1],
        passing_rate=sum(1 for r in results if r.nvq_score.passing) / n,
        why_failure_rate=failures["why"] / n,
        metadata_failure_rate=failures["metadata"] / n,
        taxonomy_failure_rate=failures["taxonomy"] / n,
        connectivity_failure_rate=failures["connectivity"] / n,
        originality_failure_rate=failures["originality"] / n,
        total_notes_evaluated=n,
        notes_with_purpose=with_purpose,
        notes_with_complete_metadata=with_metadata,
        notes_with_functional_tags=with_functional,
        notes_with_two_links=with_two_links,
        notes_that_are_synthesis=with_synthesis,
        top_failures=top,
    )


def quick_evaluate_note(note: NoteCandidate, passing_threshold: Optional[int] = None) -> NVQScore:
    """Scores a note with no goals, MOCs or projects known."""
    return NVQEvaluator(passing_threshold=7 if passing_threshold is None else passing_threshold).evaluate_note(note)
