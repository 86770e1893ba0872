import pytest
from fastapi.testclient import TestClient

import server

LONG_DOC = " ".join(f"word{i}" for i in range(60))


@pytest.fixture
def client(SessionFactory):
    server.app.dependency_overrides[server.get_session_factory] = lambda: SessionFactory
    try:
        yield TestClient(server.app)
    finally:
        server.app.dependency_overrides.clear()


def test_process_with_empty_queue(client):
    resp = client.post("/extraction/process")
    assert resp.status_code == 200
    assert resp.json()["status"] == "idle"


def test_queue_then_status(client, user_id):
    resp = client.post("/extraction/queue", json={
        "user_id": user_id,
        "source_type": "document",
        "source_id": "doc-1",
        "content": LONG_DOC,
    })
    assert resp.status_code == 200
    body = resp.json()
    assert body["queued"] is True

    status = client.get("/extraction/status", params={"user_id": user_id}).json()
    assert status["counts"]["pending"] == 1
    assert status["recent"][0]["id"] == body["job_id"]


def test_queue_coaching_session(client, user_id):
    messages = [{"role": "user", "content": f"message {i}"} for i in range(4)]
    resp = client.post("/extraction/queue", json={
        "user_id": user_id,
        "source_type": "coaching_session",
        "source_id": "s-1",
        "messages": messages,
    })
    assert resp.status_code == 200
    assert resp.json()["queued"] is True


def test_queue_unknown_source_type(client, user_id):
    resp = client.post("/extraction/queue", json={
        "user_id": user_id,
        "source_type": "email",
        "source_id": "m-1",
        "content": "hello",
    })
    assert resp.status_code == 400


def test_reset_stuck(client, store, user_id):
    store.enqueue(user_id, "document", "doc-1", LONG_DOC)
    store.claim()

    resp = client.post("/extraction/reset-stuck", json={"older_than_minutes": -1})
    assert resp.status_code == 200
    assert resp.json()["reset"] == 1

    resp = client.post("/extraction/reset-stuck")
    assert resp.json()["reset"] == 0
