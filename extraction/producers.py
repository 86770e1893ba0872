import logging
from typing import Any, Callable, Dict, Iterable, Mapping

from sqlalchemy.orm import Session

from extraction import settings
from extraction.queue_store import QueueStore
from extraction.utils import Utils

logger = logging.getLogger("nvq_extraction")

DOCUMENT_PRIORITY = 0
COACHING_PRIORITY = -1
MANUAL_NOTE_PRIORITY = 0


def format_coaching_transcript(messages: Iterable[Mapping[str, Any]]) -> str:
    blocks = []
    for m in messages:
        role = str(m.get("role") or "unknown").strip()
        content = str(m.get("content") or "").strip()
        if content:
            blocks.append(f"{role}: {content}")
    return "\n\n".join(blocks)


class ExtractionProducers(Utils):
    """
    Enqueue helpers called when a source is saved. Edits to a source that is
    still waiting in the queue rewrite that job instead of adding another.
    """

    def __init__(self, SessionFactory: Callable[[], Session]):
        self.store = QueueStore(SessionFactory)

    def _queue(self, user_id, source_type, source_id, content, priority) -> Dict[str, Any]:
        refreshed = self.store.refresh_pending(user_id, source_type, source_id, content)
        if refreshed:
            return {"queued": True, "job_id": refreshed, "refreshed": True}

        job_id = self.store.enqueue(user_id, source_type, source_id, content, priority=priority)
        if job_id is None:
            return {"queued": False, "job_id": None, "reason": "duplicate"}
        return {"queued": True, "job_id": job_id, "refreshed": False}

    def queue_document(self, user_id: str, document_id: str, content: str) -> Dict[str, Any]:
        words = len((content or "").split())
        if words < settings.MIN_DOCUMENT_WORDS:
            logger.debug("queue_document: %s has %d words, not queued", document_id, words)
            return {"queued": False, "job_id": None, "reason": "too_short"}
        return self._queue(user_id, "document", document_id, content, DOCUMENT_PRIORITY)

    def queue_coaching_session(self, user_id: str, session_id: str, messages: list) -> Dict[str, Any]:
        messages = list(messages or [])
        if len(messages) < settings.MIN_COACHING_MESSAGES:
            return {"queued": False, "job_id": None, "reason": "too_few_messages"}
        transcript = format_coaching_transcript(messages)
        if not transcript:
            return {"queued": False, "job_id": None, "reason": "empty"}
        return self._queue(user_id, "coaching_session", session_id, transcript, COACHING_PRIORITY)

    def queue_manual_note(self, user_id: str, note_id: str, content: str) -> Dict[str, Any]:
        if not (content or "").strip():
            return {"queued": False, "job_id": None, "reason": "empty"}
        return self._queue(user_id, "manual_note", note_id, content, MANUAL_NOTE_PRIORITY)
