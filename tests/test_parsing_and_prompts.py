from extraction.nvq_evaluator import NVQEvaluator
from extraction.nvq_types import ContextNote, ExtractionContext, GoalRef, NoteCandidate
from extraction.prompt_builder import PromptBuilder
from extraction.utils import Utils

from conftest import failing_note, passing_note


def test_reply_with_prose_around_the_object():
    raw = 'Sure! Here are the notes:\n{"notes": []}\nLet me know if you need more {details}.'
    assert Utils().parse_generator_object(raw) == {"notes": []}


def test_reply_in_code_fence_with_trailing_commas():
    raw = '```json\n{"notes": [{"title": "Short reviews", "content": "Daily beats weekly.",},],}\n```'
    data = Utils().parse_generator_object(raw)
    assert data["notes"][0]["title"] == "Short reviews"


def test_braces_inside_strings_do_not_end_the_object():
    raw = '{"notes": [{"title": "Uses {braces}", "content": "a } inside"}]} trailing }'
    data = Utils().parse_generator_object(raw)
    assert data["notes"][0]["content"] == "a } inside"


def test_reply_without_object():
    assert Utils().parse_generator_object("I could not find anything worth keeping.") is None
    assert Utils().parse_generator_object("") is None


def test_candidate_accepts_both_key_styles():
    camel = NoteCandidate.model_validate({
        "title": "T", "content": "C", "purposeStatement": "P", "noteType": "Logic",
        "projectLink": "Journal App", "connections": [{"targetTitle": "X", "strength": 4}],
    })
    snake = NoteCandidate.model_validate({
        "title": "T", "content": "C", "purpose_statement": "P", "note_type": "Logic",
        "project": "Journal App", "connections": [{"target_title": "X", "strength": 4}],
    })
    assert camel == snake
    assert camel.connections[0].strength == 1.0
    assert camel.connections[0].type == "related"


def test_candidate_drops_connections_without_target():
    note = NoteCandidate.model_validate({
        "title": "T", "content": "C",
        "connections": [{"type": "related"}, {"targetTitle": "  "}, {"targetTitle": "Kept", "type": "SUPPORTS"}],
        "tags": "a, b ,",
    })
    assert [(c.target_title, c.type) for c in note.connections] == [("Kept", "supports")]
    assert note.tags == ["a", "b"]


def test_merge_keeps_fields_the_refinement_left_out():
    original = NoteCandidate.model_validate(passing_note(consolidate_with="Other", merged_content="m"))
    refined = NoteCandidate.model_validate({"title": original.title, "content": "New body", "tags": []})
    merged = original.merged_with(refined)

    assert merged.content == "New body"
    assert merged.tags == original.tags
    assert merged.purpose_statement == original.purpose_statement
    assert merged.consolidate_with == "Other"


def test_extraction_prompt_lists_context():
    context = ExtractionContext(
        related_notes=[ContextNote(id="n1", title="Memory consolidation", content="x" * 150)],
        common_tags=["skill/language", "spanish"],
        goals=[GoalRef(title="Learning Spanish", why_root="")],
        moc_names=["Languages"],
        project_names=["Journal App"],
    )
    prompt = PromptBuilder().build_extraction_prompt(context, threshold=8)

    assert '- "Learning Spanish": No why-root defined' in prompt
    assert "[[MOC/Languages]]" in prompt
    assert "[[Project/Journal App]]" in prompt
    assert '- "Memory consolidation": ' + "x" * 100 + "..." in prompt
    assert "skill/language" in prompt
    assert "{context_sections}" not in prompt
    assert "{threshold}" not in prompt


def test_refinement_prompt_reports_score_and_fixes():
    note = NoteCandidate.model_validate(failing_note())
    evaluator = NVQEvaluator()
    score = evaluator.evaluate_note(note)
    prompt = PromptBuilder().build_refinement_prompt(
        note, score, evaluator.identify_issues(score), ExtractionContext(), threshold=7,
    )

    assert "Vocabulary retention" in prompt
    assert "MISSING - This is required!" in prompt
    assert "NONE - At least 2 required!" in prompt
    assert "| **TOTAL**    | **0** | **10** | FAILING |" in prompt
    assert "Add Original Synthesis" in prompt
    assert "No additional context available." in prompt
