import pytest

from extraction.entities import ExtractionQueueItem
from extraction.producers import ExtractionProducers, format_coaching_transcript

LONG_DOC = " ".join(f"word{i}" for i in range(60))


@pytest.fixture
def producers(SessionFactory):
    return ExtractionProducers(SessionFactory)


def _rows(SessionFactory):
    session = SessionFactory()
    try:
        rows = session.query(ExtractionQueueItem).order_by(ExtractionQueueItem.created_at).all()
        session.expunge_all()
        return rows
    finally:
        session.close()


def test_short_document_is_not_queued(producers, SessionFactory, user_id):
    result = producers.queue_document(user_id, "doc-1", "too short to be worth it")
    assert result == {"queued": False, "job_id": None, "reason": "too_short"}
    assert _rows(SessionFactory) == []


def test_document_edits_collapse_into_pending_job(producers, SessionFactory, user_id):
    first = producers.queue_document(user_id, "doc-1", LONG_DOC)
    assert first["queued"] is True
    assert first["refreshed"] is False

    second = producers.queue_document(user_id, "doc-1", LONG_DOC + " and one more thought")
    assert second["refreshed"] is True
    assert second["job_id"] == first["job_id"]

    rows = _rows(SessionFactory)
    assert len(rows) == 1
    assert rows[0].content_snapshot.endswith("one more thought")
    assert rows[0].priority == 0


def test_document_edit_after_claim_is_a_new_job(producers, store, SessionFactory, user_id):
    first = producers.queue_document(user_id, "doc-1", LONG_DOC)
    store.claim()

    second = producers.queue_document(user_id, "doc-1", LONG_DOC + " revised")
    assert second["queued"] is True
    assert second["job_id"] != first["job_id"]
    assert len(_rows(SessionFactory)) == 2


def test_unchanged_document_after_processing_is_a_duplicate(producers, store, user_id):
    producers.queue_document(user_id, "doc-1", LONG_DOC)
    job = store.claim()
    store.complete(job, 1, {})

    result = producers.queue_document(user_id, "doc-1", LONG_DOC)
    assert result == {"queued": False, "job_id": None, "reason": "duplicate"}


def test_coaching_session_needs_enough_messages(producers, user_id):
    messages = [{"role": "user", "content": "hi"}] * 3
    result = producers.queue_coaching_session(user_id, "s-1", messages)
    assert result["queued"] is False
    assert result["reason"] == "too_few_messages"


def test_coaching_session_transcript_and_priority(producers, SessionFactory, user_id):
    messages = [
        {"role": "user", "content": "I keep skipping my Spanish practice."},
        {"role": "assistant", "content": "What gets in the way?"},
        {"role": "user", "content": "Evenings are packed."},
        {"role": "assistant", "content": "Could mornings work?"},
    ]
    result = producers.queue_coaching_session(user_id, "s-1", messages)
    assert result["queued"] is True

    row = _rows(SessionFactory)[0]
    assert row.source_type == "coaching_session"
    assert row.priority == -1
    assert row.content_snapshot == (
        "user: I keep skipping my Spanish practice.\n\n"
        "assistant: What gets in the way?\n\n"
        "user: Evenings are packed.\n\n"
        "assistant: Could mornings work?"
    )


def test_transcript_skips_empty_messages():
    text = format_coaching_transcript([{"role": "user", "content": "  "}, {"role": "assistant", "content": "ok"}])
    assert text == "assistant: ok"


def test_manual_note(producers, SessionFactory, user_id):
    assert producers.queue_manual_note(user_id, "n-1", "   ")["reason"] == "empty"
    result = producers.queue_manual_note(user_id, "n-1", "A thought worth keeping.")
    assert result["queued"] is True
    row = _rows(SessionFactory)[0]
    assert row.source_type == "manual_note"
    assert row.priority == 0
