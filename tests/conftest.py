"""
Shared fixtures: a throwaway SQLite database per test and scripted generators.
"""
import json

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from extraction.entities import Base
from extraction.queue_store import QueueStore

USER_ID = "user-1"


@pytest.fixture
def engine(tmp_path):
    db_path = tmp_path / "extraction.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        future=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def SessionFactory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def store(SessionFactory):
    return QueueStore(SessionFactory)


@pytest.fixture
def user_id():
    return USER_ID


class ScriptedGenerator:
    """
    Fake generate(prompt, user_text). Replies are consumed in order; an
    Exception instance in the script is raised instead of returned. The last
    reply repeats once the script runs out.
    """

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def __call__(self, prompt, user_text):
        self.calls.append((prompt, user_text))
        index = min(len(self.calls) - 1, len(self.replies) - 1)
        reply = self.replies[index]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, (dict, list)):
            return json.dumps(reply)
        return reply


@pytest.fixture
def scripted():
    return ScriptedGenerator


def passing_note(**overrides):
    """A candidate that scores 10/10 when the user has a 'Learning Spanish' goal."""
    note = {
        "title": "Spaced repetition beats cramming for vocabulary",
        "content": (
            "I realized that reviewing words right before I forget them sticks far better "
            "than long evening sessions. This suggests I should keep daily reviews short."
        ),
        "purposeStatement": "I am keeping this because it helps me with my goal of learning Spanish",
        "status": "Seed",
        "noteType": "Technical",
        "stakeholder": "Self",
        "tags": ["#skill/language"],
        "connections": [
            {"targetTitle": "MOC/Languages", "type": "related", "strength": 0.8},
            {"targetTitle": "Memory consolidation", "type": "supports", "strength": 0.6},
        ],
    }
    note.update(overrides)
    return note


def failing_note(**overrides):
    """Topic tags only, no purpose, no metadata, no links, encyclopedic body."""
    note = {
        "title": "Vocabulary retention",
        "content": "Spaced repetition is a learning technique that schedules reviews at growing intervals.",
        "tags": ["learning"],
    }
    note.update(overrides)
    return note


@pytest.fixture
def make_passing_note():
    return passing_note


@pytest.fixture
def make_failing_note():
    return failing_note
