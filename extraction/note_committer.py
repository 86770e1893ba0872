import logging
import traceback
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from extraction.classifier import normalize_title
from extraction.db_connection import insert_or_ignore
from extraction.entities import AtomicNote, NoteConnection, NoteHistory, NoteSource, NoteTag, Tag, utcnow
from extraction.nvq_types import ContextNote, ExtractionContext, ScoredCandidate
from extraction.queue_store import ClaimLostError, ClaimedJob, assert_claim_held
from extraction.utils import Utils

logger = logging.getLogger("nvq_extraction")


@dataclass
class CommitReport:
    created: List[ContextNote] = field(default_factory=list)
    consolidated: int = 0
    intra_batch_connections: int = 0
    cross_note_connections: int = 0
    failed_candidates: int = 0

    @property
    def notes_touched(self) -> int:
        return len(self.created) + self.consolidated

    def to_dict(self) -> Dict[str, int]:
        return {
            "notes_created": len(self.created),
            "notes_consolidated": self.consolidated,
            "intra_batch_connections": self.intra_batch_connections,
            "cross_note_connections": self.cross_note_connections,
            "failed_candidates": self.failed_candidates,
        }


def normalize_tag_name(tag: str) -> str:
    return (tag or "").strip().lstrip("#").strip().lower()


class NoteCommitter(Utils):
    """
    Writes one job's accepted candidates into the note store, sequentially and
    in generator order. Each candidate is its own transaction, and each one
    re-checks the job claim under a row lock; a lost claim abandons the batch.
    """

    def __init__(self, SessionFactory: Callable[[], Session]):
        self.SessionFactory = SessionFactory

    def commit_batch(
        self,
        job: ClaimedJob,
        scored: List[ScoredCandidate],
        context: ExtractionContext,
    ) -> CommitReport:
        report = CommitReport()
        created_pairs: List[Tuple[ScoredCandidate, ContextNote]] = []

        for item in scored:
            try:
                if item.candidate.will_consolidate and self._consolidate(job, item, context):
                    report.consolidated += 1
                    continue
                note = self._create(job, item)
                report.created.append(note)
                created_pairs.append((item, note))
            except ClaimLostError:
                raise
            except Exception as e:
                report.failed_candidates += 1
                logger.error(
                    "commit: candidate '%s' of job %s failed: %s\n%s",
                    item.candidate.title, job.id, e, traceback.format_exc(),
                )

        # links go in once every note of the batch exists, so forward references resolve
        for item, note in created_pairs:
            try:
                intra, cross = self._connect(job, item, note, report.created, context)
                report.intra_batch_connections += intra
                report.cross_note_connections += cross
            except ClaimLostError:
                raise
            except Exception as e:
                logger.error(
                    "commit: connections of '%s' (job %s) failed: %s\n%s",
                    note.title, job.id, e, traceback.format_exc(),
                )

        logger.info(
            "commit: job %s created %d, consolidated %d, links intra=%d cross=%d, failed=%d",
            job.id, len(report.created), report.consolidated,
            report.intra_batch_connections, report.cross_note_connections, report.failed_candidates,
        )
        return report

    # -----------------------
    # Consolidation
    # -----------------------

    def _find_merge_target(self, session: Session, job: ClaimedJob, title: str, context: ExtractionContext) -> Optional[str]:
        wanted = normalize_title(title)
        for note in context.related_notes:
            if normalize_title(note.title) == wanted:
                return note.id
        row = (
            session.query(AtomicNote.id)
            .filter(AtomicNote.user_id == job.user_id, func.lower(AtomicNote.title) == wanted)
            .order_by(AtomicNote.created_at.asc())
            .first()
        )
        return row.id if row else None

    def _consolidate(self, job: ClaimedJob, item: ScoredCandidate, context: ExtractionContext) -> bool:
        """
        Archives the target's current title/content and overwrites its content.
        False when the target does not exist (caller creates a new note instead).
        """
        candidate = item.candidate
        session = self.SessionFactory()
        try:
            assert_claim_held(session, job)
            target_id = self._find_merge_target(session, job, candidate.consolidate_with, context)
            if target_id is None:
                session.rollback()
                logger.info(
                    "commit: merge target '%s' not found, creating '%s' instead",
                    candidate.consolidate_with, candidate.title,
                )
                return False

            existing = (
                session.query(AtomicNote)
                .filter(AtomicNote.id == target_id)
                .with_for_update()
                .one()
            )
            session.add(NoteHistory(
                note_id=existing.id,
                title=existing.title,
                content=existing.content,
                changed_by="consolidation",
                source_id=job.source_id,
            ))
            existing.content = candidate.merged_content
            existing.updated_at = utcnow()
            insert_or_ignore(
                session,
                NoteSource,
                {"note_id": existing.id, "source_type": job.source_type, "source_id": job.source_id},
                ["note_id", "source_type", "source_id"],
            )
            merged_title = existing.title
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        # later candidates of this batch see the merged text
        for note in context.related_notes:
            if note.id == target_id:
                note.content = candidate.merged_content
                break
        else:
            context.related_notes.append(ContextNote(id=target_id, title=merged_title, content=candidate.merged_content))

        self.color_print(f"Consolidated into: \"{merged_title}\"", color="cyan")
        return True

    # -----------------------
    # Creation
    # -----------------------

    def _create(self, job: ClaimedJob, item: ScoredCandidate) -> ContextNote:
        candidate = item.candidate
        session = self.SessionFactory()
        try:
            assert_claim_held(session, job)
            note = AtomicNote(
                user_id=job.user_id,
                source_document_id=job.source_id if job.source_type == "document" else None,
                title=candidate.title,
                content=candidate.content,
                note_type="permanent",
                ai_generated=True,
                nvq_score=item.score.total,
                nvq_breakdown=item.score.to_storable_breakdown(),
                nvq_evaluated_at=utcnow(),
                quality_status=item.quality_status,
                refinement_attempts=item.refinement_attempts,
                purpose_statement=candidate.purpose_statement,
                maturity_status=candidate.status,
                content_type=candidate.note_type,
                stakeholder=candidate.stakeholder,
                project_link=candidate.project,
            )
            session.add(note)
            session.flush()

            insert_or_ignore(
                session,
                NoteSource,
                {"note_id": note.id, "source_type": job.source_type, "source_id": job.source_id},
                ["note_id", "source_type", "source_id"],
            )
            for tag_id in self._upsert_tags(session, job.user_id, candidate.tags):
                insert_or_ignore(session, NoteTag, {"note_id": note.id, "tag_id": tag_id}, ["note_id", "tag_id"])

            created = ContextNote(id=note.id, title=note.title, content=note.content)
            session.commit()
            return created
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _upsert_tags(self, session: Session, user_id: str, tags: List[str]) -> List[str]:
        """insert-or-get by normalized name; concurrent inserts of the same tag are fine"""
        ids: List[str] = []
        seen = set()
        for raw in tags:
            name = normalize_tag_name(raw)
            if not name or name in seen:
                continue
            seen.add(name)
            insert_or_ignore(session, Tag, {"user_id": user_id, "name": name}, ["user_id", "name"])
            tag_id = (
                session.query(Tag.id)
                .filter(Tag.user_id == user_id, Tag.name == name)
                .scalar()
            )
            if tag_id:
                ids.append(tag_id)
        return ids

    # -----------------------
    # Connections
    # -----------------------

    def _connect(
        self,
        job: ClaimedJob,
        item: ScoredCandidate,
        note: ContextNote,
        batch_notes: List[ContextNote],
        context: ExtractionContext,
    ) -> Tuple[int, int]:
        batch_index = {normalize_title(n.title): n.id for n in batch_notes}
        context_index = {}
        for n in context.related_notes:
            context_index.setdefault(normalize_title(n.title), n.id)

        intra = cross = 0
        linked = set()
        session = self.SessionFactory()
        try:
            assert_claim_held(session, job)
            for conn in item.candidate.connections:
                key = normalize_title(conn.target_title)
                target_id = batch_index.get(key)
                is_cross = False
                if target_id is None:
                    target_id = context_index.get(key)
                    is_cross = target_id is not None
                if target_id is None:
                    logger.debug("commit: dropping link '%s' -> '%s' (no such note)", note.title, conn.target_title)
                    continue
                if target_id == note.id or target_id in linked:
                    continue
                linked.add(target_id)

                inserted = insert_or_ignore(
                    session,
                    NoteConnection,
                    {
                        "user_id": job.user_id,
                        "source_note_id": note.id,
                        "target_note_id": target_id,
                        "connection_type": conn.type,
                        "strength": conn.strength,
                        "ai_generated": True,
                    },
                    ["source_note_id", "target_note_id"],
                )
                if inserted:
                    if is_cross:
                        cross += 1
                    else:
                        intra += 1
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        return intra, cross
