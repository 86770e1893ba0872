import logging
import re
from collections import Counter
from typing import Callable, List

from sqlalchemy import or_
from sqlalchemy.orm import Session

from extraction import settings
from extraction.entities import AtomicNote, Goal, Project, Tag
from extraction.nvq_types import ContextNote, ExtractionContext, GoalRef
from extraction.utils import Utils

logger = logging.getLogger("nvq_extraction")

STOP_WORDS = frozenset({
    'the', 'a', 'an', 'is', 'are', 'was', 'were', 'be', 'been', 'being',
    'have', 'has', 'had', 'do', 'does', 'did', 'will', 'would', 'could',
    'should', 'may', 'might', 'must', 'shall', 'can', 'need', 'dare',
    'ought', 'used', 'to', 'of', 'in', 'for', 'on', 'with', 'at', 'by',
    'from', 'as', 'into', 'through', 'during', 'before', 'after', 'above',
    'below', 'between', 'under', 'again', 'further', 'then', 'once', 'here',
    'there', 'when', 'where', 'why', 'how', 'all', 'each', 'few', 'more',
    'most', 'other', 'some', 'such', 'no', 'nor', 'not', 'only', 'own',
    'same', 'so', 'than', 'too', 'very', 'just', 'and', 'but', 'if', 'or',
    'because', 'until', 'while', 'about', 'against', 'this', 'that', 'these',
    'those', 'what', 'which', 'who', 'whom', 'its', 'itself', 'they', 'them',
    'their', 'theirs', 'themselves', 'you', 'your', 'yours', 'yourself', 'yourselves',
    'really', 'think', 'feel', 'like', 'want', 'going', 'know', 'make', 'getting',
})

MOC_PREFIX = "moc/"


class ContextBuildError(Exception):
    pass


def extract_keywords(text: str, limit: int = 8) -> List[str]:
    """
    Most frequent non-stopword words longer than 3 characters. Ties keep
    first-seen order.
    """
    cleaned = re.sub(r"[^\w\s]", "", (text or "").lower())
    words = [w for w in cleaned.split() if len(w) > 3 and w not in STOP_WORDS]
    return [word for word, _ in Counter(words).most_common(limit)]


def rank_related_notes(notes, keywords: List[str], limit: int) -> List[ContextNote]:
    """Title hit = 2 points, body hit = 1 point per keyword; zero scores are dropped."""
    scored = []
    for note in notes:
        title = (note.title or "").lower()
        content = (note.content or "").lower()
        score = 0
        for kw in keywords:
            if kw in title:
                score += 2
            if kw in content:
                score += 1
        if score > 0:
            scored.append((score, note))
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [ContextNote(id=n.id, title=n.title, content=n.content) for _, n in scored[:limit]]


class ContextBuilder(Utils):
    def __init__(self, SessionFactory: Callable[[], Session]):
        self.SessionFactory = SessionFactory

    def build(self, user_id: str, content: str) -> ExtractionContext:
        keywords = extract_keywords(content, settings.KEYWORD_LIMIT)
        session = self.SessionFactory()
        try:
            context = ExtractionContext(
                related_notes=self._related_notes(session, user_id, keywords),
                common_tags=self._common_tags(session, user_id),
                goals=self._active_goals(session, user_id),
                moc_names=self._moc_names(session, user_id),
                project_names=self._project_names(session, user_id),
                keywords=keywords,
            )
        except Exception as e:
            raise ContextBuildError(f"Could not build extraction context for user {user_id}: {e}") from e
        finally:
            session.close()

        logger.info(
            "context: %d related notes, %d tags, %d goals, %d MOCs, %d projects (keywords=%s)",
            len(context.related_notes), len(context.common_tags), len(context.goals),
            len(context.moc_names), len(context.project_names), ", ".join(keywords),
        )
        return context

    def _related_notes(self, session: Session, user_id: str, keywords: List[str]) -> List[ContextNote]:
        if not keywords:
            return []
        matchers = []
        for kw in keywords:
            pattern = f"%{kw}%"
            matchers.append(AtomicNote.title.ilike(pattern))
            matchers.append(AtomicNote.content.ilike(pattern))
        rows = (
            session.query(AtomicNote.id, AtomicNote.title, AtomicNote.content)
            .filter(AtomicNote.user_id == str(user_id), or_(*matchers))
            .order_by(AtomicNote.updated_at.desc())
            .all()
        )
        return rank_related_notes(rows, keywords, settings.RELATED_NOTES_LIMIT)

    def _common_tags(self, session: Session, user_id: str) -> List[str]:
        rows = (
            session.query(Tag.name)
            .filter(Tag.user_id == str(user_id))
            .order_by(Tag.name.asc())
            .limit(settings.COMMON_TAGS_LIMIT)
            .all()
        )
        return [r.name for r in rows]

    def _active_goals(self, session: Session, user_id: str) -> List[GoalRef]:
        rows = (
            session.query(Goal.title, Goal.why_root)
            .filter(Goal.user_id == str(user_id), Goal.status == "active")
            .order_by(Goal.created_at.asc())
            .all()
        )
        return [GoalRef(title=r.title, why_root=r.why_root or "") for r in rows]

    def _moc_names(self, session: Session, user_id: str) -> List[str]:
        rows = (
            session.query(AtomicNote.title)
            .filter(
                AtomicNote.user_id == str(user_id),
                or_(AtomicNote.note_type == "moc", AtomicNote.title.ilike("moc/%")),
            )
            .order_by(AtomicNote.title.asc())
            .all()
        )
        names = []
        for r in rows:
            title = r.title.strip()
            if title.lower().startswith(MOC_PREFIX):
                title = title[len(MOC_PREFIX):].strip()
            if title and title not in names:
                names.append(title)
        return names

    def _project_names(self, session: Session, user_id: str) -> List[str]:
        rows = (
            session.query(Project.name)
            .filter(Project.user_id == str(user_id), Project.deleted.is_(False))
            .order_by(Project.name.asc())
            .all()
        )
        return [r.name for r in rows if r.name]
