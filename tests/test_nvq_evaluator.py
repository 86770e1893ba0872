import pytest

from extraction.nvq_evaluator import NVQEvaluator, aggregate_metrics, quick_evaluate_note
from extraction.nvq_types import GoalRef, NoteCandidate

from conftest import failing_note, passing_note


@pytest.fixture
def evaluator():
    return NVQEvaluator(
        goals=[GoalRef(title="Learning Spanish", why_root="talk to my grandmother in her language")],
        moc_names=["Languages"],
        project_names=["Journal App"],
    )


def test_reference_note_scores_ten(evaluator):
    score = evaluator.evaluate_note(NoteCandidate.model_validate(passing_note()))

    assert score.component_scores() == {
        "why": 3,
        "metadata": 2,
        "taxonomy": 2,
        "connectivity": 2,
        "originality": 1,
    }
    assert score.total == 10
    assert score.passing is True
    assert score.failing_components == []
    assert evaluator.identify_issues(score) == []


def test_scoring_is_deterministic(evaluator):
    note = NoteCandidate.model_validate(passing_note(tags=["#skill/language", "grammar"]))
    first = evaluator.evaluate_note(note)
    second = evaluator.evaluate_note(note)
    assert first == second


def test_bare_note_fails_every_component(evaluator):
    score = evaluator.evaluate_note(NoteCandidate.model_validate(failing_note()))

    assert score.total == 0
    assert score.passing is False
    assert score.failing_components == ["why", "metadata", "taxonomy", "connectivity", "originality"]
    issues = evaluator.identify_issues(score)
    assert 'Missing purpose statement ("I am keeping this because...")' in issues
    assert "Content is too factual - add personal interpretation" in issues
    assert "Missing upward link to MOC or Project" in issues


def test_tag_limit_costs_one_taxonomy_point(evaluator):
    two = NoteCandidate.model_validate(passing_note(tags=["#skill/language", "#task/practice"]))
    six = NoteCandidate.model_validate(passing_note(tags=[
        "#skill/language", "#task/practice", "#insight/memory",
        "#skill/listening", "#task/review", "#project/journal-app",
    ]))

    two_score = evaluator.score_taxonomy(two)
    six_score = evaluator.score_taxonomy(six)

    assert two_score.score == 2
    assert six_score.exceeds_limit is True
    assert six_score.score == two_score.score - 1


def test_mixed_tags_score_one(evaluator):
    score = evaluator.score_taxonomy(NoteCandidate.model_validate(passing_note(tags=["#skill/language", "learning"])))
    assert score.score == 1
    assert score.functional_tags == 1
    assert score.topic_tags == 1


def test_goal_link_via_why_root(evaluator):
    note = NoteCandidate.model_validate(passing_note(
        purposeStatement="I am keeping this because I want to talk to my grandmother in her language",
    ))
    why = evaluator.score_why(note)
    assert why.links_to_personal_goal is True


def test_project_found_in_content_counts_as_metadata(evaluator):
    note = NoteCandidate.model_validate(passing_note(
        content="I realized this fits [[Project/Journal App]]. This suggests a daily prompt.",
        stakeholder=None,
    ))
    metadata = evaluator.score_metadata(note)
    assert metadata.has_project is True
    assert metadata.project_link == "Journal App"
    assert metadata.fields_present == 3
    assert metadata.score == 2


def test_unknown_status_is_not_metadata(evaluator):
    note = NoteCandidate.model_validate(passing_note(status="Draft", noteType="Essay"))
    metadata = evaluator.score_metadata(note)
    assert metadata.fields_present == 1
    assert metadata.score == 0


def test_body_wikilinks_count_towards_connectivity(evaluator):
    note = NoteCandidate.model_validate(passing_note(
        connections=[],
        content="I realized [[MOC/Languages]] and [[Memory consolidation]] connect. This suggests more.",
    ))
    connectivity = evaluator.score_connectivity(note)
    assert connectivity.has_upward_link
    assert connectivity.has_sideways_link
    assert connectivity.score == 2
    assert connectivity.total_connections == 0


def test_one_sided_links_score_one(evaluator):
    note = NoteCandidate.model_validate(passing_note(connections=[{"targetTitle": "MOC/Languages"}]))
    connectivity = evaluator.score_connectivity(note)
    assert connectivity.score == 1
    assert connectivity.meets_minimum is False


def test_threshold_is_configurable():
    note = NoteCandidate.model_validate(passing_note(purposeStatement=None))
    score = quick_evaluate_note(note)
    # no goals known and no purpose statement
    assert score.breakdown.why.score == 0
    assert score.total == 7
    strict = NVQEvaluator(passing_threshold=10).evaluate_note(NoteCandidate.model_validate(passing_note()))
    assert strict.total == 9
    assert strict.passing is False


def test_aggregate_metrics(evaluator):
    results, metrics = evaluator.evaluate_notes([
        NoteCandidate.model_validate(passing_note()),
        NoteCandidate.model_validate(failing_note()),
    ])

    assert len(results) == 2
    assert metrics.total_notes_evaluated == 2
    assert metrics.mean_nvq == 5.0
    assert metrics.median_nvq == 10
    assert metrics.min_nvq == 0
    assert metrics.max_nvq == 10
    assert metrics.passing_rate == 0.5
    assert metrics.why_failure_rate == 0.5
    assert metrics.originality_failure_rate == 0.5
    assert metrics.notes_with_purpose == 1
    assert metrics.notes_with_complete_metadata == 1
    assert metrics.notes_with_functional_tags == 1
    assert metrics.notes_with_two_links == 1
    assert metrics.notes_that_are_synthesis == 1

    assert len(metrics.top_failures) == 5
    assert all(f.component == "why" and f.count == 1 for f in metrics.top_failures)


def test_aggregate_metrics_of_nothing():
    metrics = aggregate_metrics([])
    assert metrics.total_notes_evaluated == 0
    assert metrics.mean_nvq == 0.0
    assert metrics.top_failures == []
