import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from extraction.extraction_worker import ExtractionWorker, Generate
from extraction.queue_store import QueueStore
from extraction.utils import Utils

logger = logging.getLogger("nvq_extraction")


class ExtractionService(Utils):
    """Operational surface over the queue: process one job, sweep, report."""

    def __init__(
        self,
        SessionFactory: Callable[[], Session],
        generate: Optional[Generate] = None,
        worker: Optional[ExtractionWorker] = None,
    ):
        self.SessionFactory = SessionFactory
        self.store = QueueStore(SessionFactory)
        self.worker = worker or ExtractionWorker(SessionFactory, generate)

    def process_now(self, target_id: Optional[str] = None) -> Dict[str, Any]:
        try:
            job = self.store.claim(target_id)
        except Exception as e:
            self.color_print(f"process_now(): DB error -> {e}", color="red")
            return {"job_id": target_id, "status": "error", "message": f"Error claiming job: {e}"}

        if job is None:
            if target_id is not None:
                return {"job_id": target_id, "status": "not_claimable", "message": "Job is not pending"}
            return {"job_id": None, "status": "idle", "message": "No pending jobs"}

        return self.worker.run(job)

    def reset_stuck_jobs(self, older_than_minutes: Optional[float] = None) -> Dict[str, Any]:
        try:
            swept = self.store.reset_stuck_jobs(older_than_minutes)
        except Exception as e:
            self.color_print(f"reset_stuck_jobs(): DB error -> {e}", color="red")
            return {"status": "error", "message": str(e), "reset": 0, "failed": 0, "jobs": []}

        return {
            "status": "ok",
            "reset": sum(1 for j in swept if j["status"] == "pending"),
            "failed": sum(1 for j in swept if j["status"] == "failed"),
            "jobs": swept,
        }

    def queue_status(self, user_id: Optional[str] = None, limit: int = 10) -> Dict[str, Any]:
        try:
            return {"status": "ok", **self.store.queue_status(user_id, limit)}
        except Exception as e:
            self.color_print(f"queue_status(): DB error -> {e}", color="red")
            return {"status": "error", "message": str(e)}
