import hashlib
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from extraction import settings
from extraction.db_connection import insert_or_ignore
from extraction.entities import ExtractionQueueItem, utcnow
from extraction.utils import Utils

logger = logging.getLogger("nvq_extraction")

SOURCE_TYPES = ("document", "coaching_session", "manual_note")
STATUSES = ("pending", "processing", "completed", "failed", "skipped")

# lost compare-and-set races before a claimer gives up for this round
CLAIM_RACE_RETRIES = 5

STUCK_MESSAGE = "stuck in processing beyond liveness window"


class ClaimLostError(Exception):
    """The job was swept or re-claimed while this worker still held it."""


def compute_content_hash(content: str) -> str:
    return hashlib.sha256((content or "").encode("utf-8")).hexdigest()


@dataclass
class ClaimedJob:
    """Detached copy of a claimed queue row plus the claim token."""
    id: str
    user_id: str
    source_type: str
    source_id: str
    content_snapshot: str
    priority: int
    attempts: int
    max_attempts: int
    claim_token: str


class QueueStore(Utils):
    def __init__(self, SessionFactory: Callable[[], Session]):
        self.SessionFactory = SessionFactory

    # -----------------------
    # Enqueue
    # -----------------------

    def enqueue(
        self,
        user_id: str,
        source_type: str,
        source_id: str,
        content_snapshot: str,
        priority: int = 0,
        max_attempts: Optional[int] = None,
    ) -> Optional[str]:
        """
        Inserts a pending job unless the same (user, source, content) is already
        queued or processed. Returns the new job id, or None for a duplicate.
        """
        if source_type not in SOURCE_TYPES:
            raise ValueError(f"enqueue: unknown source_type '{source_type}'")

        job_id = str(uuid4())
        session = self.SessionFactory()
        try:
            inserted = insert_or_ignore(
                session,
                ExtractionQueueItem,
                {
                    "id": job_id,
                    "user_id": str(user_id),
                    "source_type": source_type,
                    "source_id": str(source_id),
                    "content_snapshot": content_snapshot,
                    "content_hash": compute_content_hash(content_snapshot),
                    "status": "pending",
                    "priority": priority,
                    "attempts": 0,
                    "max_attempts": max_attempts or settings.EXTRACTION_MAX_ATTEMPTS,
                },
                ["user_id", "source_type", "source_id", "content_hash"],
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if not inserted:
            logger.debug("enqueue: %s %s already queued with identical content", source_type, source_id)
            return None
        logger.info("enqueue: job %s (%s %s, priority=%d)", job_id, source_type, source_id, priority)
        return job_id

    def refresh_pending(self, user_id: str, source_type: str, source_id: str, content_snapshot: str) -> Optional[str]:
        """
        Rewrites the snapshot of a job for this source that has not been
        claimed yet. Returns its id, or None when there is no pending job.
        """
        new_hash = compute_content_hash(content_snapshot)
        session = self.SessionFactory()
        try:
            row = (
                session.query(ExtractionQueueItem)
                .filter(
                    ExtractionQueueItem.user_id == str(user_id),
                    ExtractionQueueItem.source_type == source_type,
                    ExtractionQueueItem.source_id == str(source_id),
                    ExtractionQueueItem.status == "pending",
                )
                .order_by(ExtractionQueueItem.created_at.desc())
                .with_for_update(skip_locked=True)
                .first()
            )
            if row is None:
                return None
            job_id = row.id
            if row.content_hash == new_hash:
                return job_id

            updated = (
                session.query(ExtractionQueueItem)
                .filter(ExtractionQueueItem.id == job_id, ExtractionQueueItem.status == "pending")
                .update(
                    {"content_snapshot": content_snapshot, "content_hash": new_hash},
                    synchronize_session=False,
                )
            )
            session.commit()
            return job_id if updated else None
        except IntegrityError:
            # this exact content already has its own row
            session.rollback()
            logger.debug("refresh_pending: content for %s %s already queued", source_type, source_id)
            return None
        finally:
            session.close()

    # -----------------------
    # Claim
    # -----------------------

    def claim(self, target_id: Optional[str] = None) -> Optional[ClaimedJob]:
        """
        Locks one pending job (skip-locked) and moves it to processing.
        With target_id only that job is considered. None when nothing is claimable.
        """
        for _ in range(CLAIM_RACE_RETRIES):
            session = self.SessionFactory()
            try:
                query = session.query(ExtractionQueueItem.id).filter(ExtractionQueueItem.status == "pending")
                if target_id is not None:
                    query = query.filter(ExtractionQueueItem.id == str(target_id))
                else:
                    query = query.order_by(
                        ExtractionQueueItem.priority.desc(),
                        ExtractionQueueItem.created_at.asc(),
                    )
                candidate = query.with_for_update(skip_locked=True).first()
                if candidate is None:
                    session.rollback()
                    return None

                token = str(uuid4())
                # guarded by status so stores without row locks still claim once
                claimed = (
                    session.query(ExtractionQueueItem)
                    .filter(
                        ExtractionQueueItem.id == candidate.id,
                        ExtractionQueueItem.status == "pending",
                    )
                    .update(
                        {
                            "status": "processing",
                            "started_at": utcnow(),
                            "attempts": ExtractionQueueItem.attempts + 1,
                            "claimed_by": token,
                        },
                        synchronize_session=False,
                    )
                )
                if claimed != 1:
                    session.rollback()
                    if target_id is not None:
                        return None
                    continue

                row = session.get(ExtractionQueueItem, candidate.id)
                job = ClaimedJob(
                    id=row.id,
                    user_id=row.user_id,
                    source_type=row.source_type,
                    source_id=row.source_id,
                    content_snapshot=row.content_snapshot,
                    priority=row.priority,
                    attempts=row.attempts,
                    max_attempts=row.max_attempts,
                    claim_token=token,
                )
                session.commit()
                logger.info("claim: job %s attempt %d/%d", job.id, job.attempts, job.max_attempts)
                return job
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()
        logger.debug("claim: gave up after %d lost races", CLAIM_RACE_RETRIES)
        return None

    # -----------------------
    # Claim ownership
    # -----------------------

    def still_holds(self, job: ClaimedJob) -> bool:
        session = self.SessionFactory()
        try:
            return _held_row(session, job, lock=False) is not None
        finally:
            session.close()

    # -----------------------
    # Complete
    # -----------------------

    def _finish(self, job: ClaimedJob, decide: Callable[[ExtractionQueueItem], Dict[str, Any]]) -> bool:
        session = self.SessionFactory()
        try:
            row = _held_row(session, job)
            if row is None:
                session.rollback()
                logger.warning("complete: job %s is no longer held by this claim; leaving it alone", job.id)
                return False

            values = decide(row)
            updated = (
                session.query(ExtractionQueueItem)
                .filter(
                    ExtractionQueueItem.id == job.id,
                    ExtractionQueueItem.status == "processing",
                    ExtractionQueueItem.claimed_by == job.claim_token,
                )
                .update(values, synchronize_session=False)
            )
            session.commit()
            return updated == 1
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def complete(
        self,
        job: ClaimedJob,
        notes_created: int,
        nvq_metrics: Optional[Dict[str, Any]] = None,
    ) -> bool:
        ok = self._finish(job, lambda row: {
            "status": "completed",
            "notes_created": notes_created,
            "nvq_metrics": nvq_metrics,
            "error_message": None,
            "completed_at": utcnow(),
            "claimed_by": None,
        })
        if ok:
            logger.info("complete: job %s completed with %d notes", job.id, notes_created)
        return ok

    def skip(self, job: ClaimedJob, reason: Optional[str] = None) -> bool:
        ok = self._finish(job, lambda row: {
            "status": "skipped",
            "notes_created": 0,
            "error_message": reason,
            "completed_at": utcnow(),
            "claimed_by": None,
        })
        if ok:
            logger.info("complete: job %s skipped (%s)", job.id, reason or "nothing extractable")
        return ok

    def fail(self, job: ClaimedJob, error_message: str) -> Optional[str]:
        """
        Back to pending while attempts remain, terminal failed otherwise.
        Returns the status written, None when the claim was lost.
        """
        outcome = {}

        def decide(row: ExtractionQueueItem) -> Dict[str, Any]:
            values = _retry_transition(row, error_message)
            outcome.update(values)
            return values

        if not self._finish(job, decide):
            return None
        logger.warning("complete: job %s -> %s: %s", job.id, outcome["status"], error_message)
        return outcome["status"]

    # -----------------------
    # Stuck jobs
    # -----------------------

    def reset_stuck_jobs(self, older_than_minutes: Optional[float] = None) -> List[Dict[str, str]]:
        """
        Moves processing jobs whose claim is older than the liveness window back
        to pending (or failed when attempts are used up). Attempts are not
        touched here; the next claim increments them.
        """
        minutes = settings.STUCK_JOB_MINUTES if older_than_minutes is None else older_than_minutes
        cutoff = utcnow() - timedelta(minutes=minutes)

        session = self.SessionFactory()
        swept: List[Dict[str, str]] = []
        try:
            rows = (
                session.query(ExtractionQueueItem)
                .filter(
                    ExtractionQueueItem.status == "processing",
                    ExtractionQueueItem.started_at < cutoff,
                )
                .with_for_update(skip_locked=True)
                .all()
            )
            for row in rows:
                values = _retry_transition(row, STUCK_MESSAGE)
                updated = (
                    session.query(ExtractionQueueItem)
                    .filter(
                        ExtractionQueueItem.id == row.id,
                        ExtractionQueueItem.status == "processing",
                        ExtractionQueueItem.claimed_by == row.claimed_by,
                    )
                    .update(values, synchronize_session=False)
                )
                if updated:
                    swept.append({"id": row.id, "status": values["status"]})
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if swept:
            self.color_print(f"reset_stuck_jobs: swept {len(swept)} job(s) older than {minutes} min", color="yellow")
        return swept

    # -----------------------
    # Status
    # -----------------------

    def queue_status(self, user_id: Optional[str] = None, limit: int = 10) -> Dict[str, Any]:
        session = self.SessionFactory()
        try:
            count_q = session.query(ExtractionQueueItem.status, func.count(ExtractionQueueItem.id))
            recent_q = session.query(ExtractionQueueItem)
            if user_id:
                count_q = count_q.filter(ExtractionQueueItem.user_id == str(user_id))
                recent_q = recent_q.filter(ExtractionQueueItem.user_id == str(user_id))

            counts = {status: 0 for status in STATUSES}
            for status, n in count_q.group_by(ExtractionQueueItem.status).all():
                counts[status] = n

            recent = (
                recent_q.order_by(ExtractionQueueItem.created_at.desc())
                .limit(limit)
                .all()
            )
            return {
                "counts": counts,
                "total": sum(counts.values()),
                "recent": [_job_summary(r) for r in recent],
            }
        finally:
            session.close()


def _retry_transition(row: ExtractionQueueItem, error_message: str) -> Dict[str, Any]:
    if row.attempts >= row.max_attempts:
        return {
            "status": "failed",
            "error_message": error_message,
            "completed_at": utcnow(),
            "claimed_by": None,
        }
    return {
        "status": "pending",
        "error_message": error_message,
        "started_at": None,
        "claimed_by": None,
    }


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _job_summary(row: ExtractionQueueItem) -> Dict[str, Any]:
    snapshot = row.content_snapshot or ""
    metrics = row.nvq_metrics or {}
    return {
        "id": row.id,
        "user_id": row.user_id,
        "source_type": row.source_type,
        "source_id": row.source_id,
        "status": row.status,
        "priority": row.priority,
        "attempts": row.attempts,
        "max_attempts": row.max_attempts,
        "error_message": row.error_message,
        "notes_created": row.notes_created,
        "mean_nvq": metrics.get("mean_nvq"),
        "passing_rate": metrics.get("passing_rate"),
        "content_preview": snapshot[:200] + ("..." if len(snapshot) > 200 else ""),
        "created_at": _iso(row.created_at),
        "started_at": _iso(row.started_at),
        "completed_at": _iso(row.completed_at),
    }


def _held_row(session: Session, job: ClaimedJob, lock: bool = True) -> Optional[ExtractionQueueItem]:
    query = session.query(ExtractionQueueItem).filter(
        ExtractionQueueItem.id == job.id,
        ExtractionQueueItem.status == "processing",
        ExtractionQueueItem.claimed_by == job.claim_token,
    )
    if lock:
        query = query.with_for_update()
    return query.first()


def assert_claim_held(session: Session, job: ClaimedJob) -> None:
    """
    Locks the job's queue row inside the caller's transaction so a sweep cannot
    hand the job to another worker before that transaction commits.
    Raises ClaimLostError when the row is no longer ours.
    """
    if _held_row(session, job) is None:
        raise ClaimLostError(f"job {job.id} is no longer held by claim {job.claim_token}")
