import threading
from datetime import timedelta

import pytest

from extraction.entities import ExtractionQueueItem, utcnow
from extraction.queue_store import STUCK_MESSAGE, ClaimLostError, assert_claim_held, compute_content_hash


def _row(SessionFactory, job_id):
    session = SessionFactory()
    try:
        return session.get(ExtractionQueueItem, job_id)
    finally:
        session.close()


def _count(SessionFactory):
    session = SessionFactory()
    try:
        return session.query(ExtractionQueueItem).count()
    finally:
        session.close()


def _age_claim(SessionFactory, job_id, minutes):
    session = SessionFactory()
    try:
        session.query(ExtractionQueueItem).filter(ExtractionQueueItem.id == job_id).update(
            {"started_at": utcnow() - timedelta(minutes=minutes)},
            synchronize_session=False,
        )
        session.commit()
    finally:
        session.close()


def test_enqueue_dedups_identical_content(store, SessionFactory, user_id):
    first = store.enqueue(user_id, "document", "doc-1", "same words")
    second = store.enqueue(user_id, "document", "doc-1", "same words")

    assert first is not None
    assert second is None
    assert _count(SessionFactory) == 1

    row = _row(SessionFactory, first)
    assert row.status == "pending"
    assert row.attempts == 0
    assert row.max_attempts == 3
    assert row.content_hash == compute_content_hash("same words")


def test_enqueue_new_content_is_a_new_job(store, SessionFactory, user_id):
    assert store.enqueue(user_id, "document", "doc-1", "version one")
    assert store.enqueue(user_id, "document", "doc-1", "version two")
    assert _count(SessionFactory) == 2


def test_enqueue_rejects_unknown_source_type(store, user_id):
    with pytest.raises(ValueError, match="email"):
        store.enqueue(user_id, "email", "m-1", "hello")


def test_claim_on_empty_queue(store):
    assert store.claim() is None


def test_claim_prefers_priority_then_age(store, user_id):
    coaching = store.enqueue(user_id, "coaching_session", "s-1", "coach: hi", priority=-1)
    older_doc = store.enqueue(user_id, "document", "doc-1", "first document")
    newer_doc = store.enqueue(user_id, "document", "doc-2", "second document")

    claimed = [store.claim().id for _ in range(3)]
    assert claimed == [older_doc, newer_doc, coaching]
    assert store.claim() is None


def test_claim_marks_processing(store, SessionFactory, user_id):
    job_id = store.enqueue(user_id, "manual_note", "n-1", "some text")
    job = store.claim()

    assert job.id == job_id
    assert job.attempts == 1
    assert job.content_snapshot == "some text"
    assert job.claim_token

    row = _row(SessionFactory, job_id)
    assert row.status == "processing"
    assert row.started_at is not None
    assert row.claimed_by == job.claim_token


def test_claim_by_id(store, user_id):
    first = store.enqueue(user_id, "document", "doc-1", "first")
    second = store.enqueue(user_id, "document", "doc-2", "second")

    assert store.claim(second).id == second
    # already processing
    assert store.claim(second) is None
    assert store.claim("no-such-job") is None
    assert store.claim().id == first


def test_concurrent_claimers_get_one_job(store, user_id):
    store.enqueue(user_id, "document", "doc-1", "contended")
    workers = 8
    barrier = threading.Barrier(workers)
    results = []
    errors = []
    lock = threading.Lock()

    def claim():
        barrier.wait()
        try:
            job = store.claim()
        except Exception as e:
            with lock:
                errors.append(e)
            return
        with lock:
            results.append(job)

    threads = [threading.Thread(target=claim) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    winners = [j for j in results if j is not None]
    assert len(winners) == 1


def test_complete_records_metrics(store, SessionFactory, user_id):
    job_id = store.enqueue(user_id, "document", "doc-1", "text")
    job = store.claim()

    assert store.complete(job, 3, {"mean_nvq": 8.5, "passing_rate": 1.0}) is True

    row = _row(SessionFactory, job_id)
    assert row.status == "completed"
    assert row.notes_created == 3
    assert row.nvq_metrics["mean_nvq"] == 8.5
    assert row.completed_at is not None
    assert row.claimed_by is None


def test_skip_is_terminal(store, SessionFactory, user_id):
    job_id = store.enqueue(user_id, "document", "doc-1", "text")
    job = store.claim()

    assert store.skip(job, "nothing here") is True
    row = _row(SessionFactory, job_id)
    assert row.status == "skipped"
    assert row.notes_created == 0
    assert row.error_message == "nothing here"
    assert store.claim() is None


def test_fail_retries_until_max_attempts(store, SessionFactory, user_id):
    job_id = store.enqueue(user_id, "document", "doc-1", "text", max_attempts=3)

    outcomes = []
    for _ in range(3):
        job = store.claim()
        assert job is not None
        outcomes.append(store.fail(job, "generator down"))

    assert outcomes == ["pending", "pending", "failed"]
    row = _row(SessionFactory, job_id)
    assert row.status == "failed"
    assert row.attempts == 3
    assert row.error_message == "generator down"
    assert row.completed_at is not None
    assert store.claim() is None


def test_stuck_job_goes_back_to_pending(store, SessionFactory, user_id):
    job_id = store.enqueue(user_id, "document", "doc-1", "text")
    stale = store.claim()
    _age_claim(SessionFactory, job_id, minutes=10)

    swept = store.reset_stuck_jobs()

    assert swept == [{"id": job_id, "status": "pending"}]
    row = _row(SessionFactory, job_id)
    assert row.status == "pending"
    assert row.error_message == STUCK_MESSAGE
    assert row.started_at is None
    # the sweep leaves attempts alone; the next claim counts
    assert row.attempts == 1

    # the original worker finishing late must not overwrite anything
    assert store.complete(stale, 5, {}) is False
    assert store.fail(stale, "late failure") is None
    assert _row(SessionFactory, job_id).status == "pending"

    fresh = store.claim()
    assert fresh.id == job_id
    assert fresh.attempts == 2
    assert fresh.claim_token != stale.claim_token


def test_recent_claims_are_not_stuck(store, user_id):
    store.enqueue(user_id, "document", "doc-1", "text")
    store.claim()
    assert store.reset_stuck_jobs() == []


def test_stuck_job_out_of_attempts_fails(store, SessionFactory, user_id):
    job_id = store.enqueue(user_id, "document", "doc-1", "text", max_attempts=1)
    store.claim()
    _age_claim(SessionFactory, job_id, minutes=10)

    assert store.reset_stuck_jobs() == [{"id": job_id, "status": "failed"}]
    assert _row(SessionFactory, job_id).status == "failed"


def test_refresh_pending_rewrites_snapshot(store, SessionFactory, user_id):
    job_id = store.enqueue(user_id, "document", "doc-1", "draft one")

    assert store.refresh_pending(user_id, "document", "doc-1", "draft two") == job_id
    row = _row(SessionFactory, job_id)
    assert row.content_snapshot == "draft two"
    assert row.content_hash == compute_content_hash("draft two")

    store.claim()
    # nothing pending any more
    assert store.refresh_pending(user_id, "document", "doc-1", "draft three") is None


def test_queue_status(store, user_id):
    store.enqueue(user_id, "document", "doc-1", "x" * 300)
    store.enqueue(user_id, "document", "doc-2", "short")
    store.enqueue("someone-else", "document", "doc-3", "other")
    store.claim()

    status = store.queue_status(user_id=user_id)
    assert status["total"] == 2
    assert status["counts"]["processing"] == 1
    assert status["counts"]["pending"] == 1
    assert status["counts"]["failed"] == 0
    assert len(status["recent"]) == 2
    previews = {r["source_id"]: r["content_preview"] for r in status["recent"]}
    assert previews["doc-1"] == "x" * 200 + "..."
    assert previews["doc-2"] == "short"

    assert store.queue_status()["total"] == 3


def test_still_holds_follows_the_claim(store, user_id):
    store.enqueue(user_id, "document", "doc-1", "text")
    stale = store.claim()
    assert store.still_holds(stale) is True

    store.reset_stuck_jobs(older_than_minutes=-1)
    assert store.still_holds(stale) is False

    fresh = store.claim()
    assert store.still_holds(fresh) is True
    assert store.still_holds(stale) is False

    store.complete(fresh, 0, {})
    assert store.still_holds(fresh) is False


def test_claim_check_inside_a_transaction(store, SessionFactory, user_id):
    store.enqueue(user_id, "document", "doc-1", "text")
    job = store.claim()

    session = SessionFactory()
    try:
        assert_claim_held(session, job)
        session.rollback()

        store.reset_stuck_jobs(older_than_minutes=-1)
        with pytest.raises(ClaimLostError, match=job.id):
            assert_claim_held(session, job)
    finally:
        session.close()
