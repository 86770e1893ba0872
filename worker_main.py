# worker_main.py
"""
Extraction queue worker.

Any number of these processes can run against the same database. They never
talk to each other: coordination happens only through QueueStore.claim(),
which hands a pending job to exactly one claimer.

Inside one process AsyncGuard keeps up to CONCURRENT_INSTANCES jobs in
flight, each on its own thread (asyncio.to_thread) with its own DB sessions.
Every SWEEP_INTERVAL_SECONDS the host sweeps jobs left in processing by a
crashed worker back to pending (or failed once their attempts are used up).
"""

import asyncio
import logging
import time
import traceback
from typing import Callable, Optional, Set

from sqlalchemy.orm import Session

from extraction import settings
from extraction.db_connection import DbConnection
from extraction.extraction_worker import ExtractionWorker
from extraction.queue_store import ClaimedJob, QueueStore

logger = logging.getLogger("nvq_worker")


class WorkerHost:
    def __init__(
        self,
        SessionFactory: Callable[[], Session],
        worker: Optional[ExtractionWorker] = None,
        sweep_interval: float = settings.SWEEP_INTERVAL_SECONDS,
    ):
        self.SessionFactory = SessionFactory
        self.store = QueueStore(SessionFactory)
        self.worker = worker or ExtractionWorker(SessionFactory)
        self.sweep_interval = sweep_interval
        self._last_sweep: Optional[float] = None

    def sweep(self) -> None:
        now = time.monotonic()
        if self._last_sweep is not None and now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        try:
            swept = self.store.reset_stuck_jobs()
            if swept:
                logger.info("stuck-job sweep: %s", swept)
        except Exception as e:
            logger.error("stuck-job sweep failed: %s", e)

    def claim(self) -> Optional[ClaimedJob]:
        return self.store.claim()

    def process(self, job: ClaimedJob) -> None:
        try:
            result = self.worker.run(job)
            logger.info("job %s finished: %s", job.id, result)
        except Exception as e:
            logger.info("Error processing job id=%s: %s", job.id, e)
            traceback.print_exc()


class AsyncGuard:
    def __init__(
        self,
        host: WorkerHost,
        poll_interval: float = 1.0,
        max_concurrent: int = 4,
    ):
        self.host = host
        self.poll_interval = poll_interval
        self.max_concurrent = max_concurrent
        self._in_flight: Set[str] = set()

    async def _run_job(self, job: ClaimedJob) -> None:
        try:
            await asyncio.to_thread(self.host.process, job)
        finally:
            self._in_flight.discard(job.id)

    async def _claim(self) -> Optional[ClaimedJob]:
        try:
            return await asyncio.to_thread(self.host.claim)
        except Exception as e:
            logger.error("claim failed: %s", e)
            return None

    async def run(self) -> None:
        logger.info("AsyncGuard running (max_concurrent=%d)", self.max_concurrent)

        while True:
            await asyncio.to_thread(self.host.sweep)

            available_slots = self.max_concurrent - len(self._in_flight)
            if available_slots <= 0:
                await asyncio.sleep(self.poll_interval)
                continue

            claimed = 0
            for _ in range(available_slots):
                job = await self._claim()
                if job is None:
                    break
                claimed += 1
                self._in_flight.add(job.id)
                asyncio.create_task(self._run_job(job))

            if not claimed:
                await asyncio.sleep(self.poll_interval)


def main() -> None:
    db = DbConnection()
    db.init_schema()
    host = WorkerHost(db.build_db_session_factory())
    guard = AsyncGuard(
        host=host,
        poll_interval=settings.POLL_INTERVAL_SECONDS,
        max_concurrent=settings.CONCURRENT_INSTANCES,
    )
    asyncio.run(guard.run())


if __name__ == "__main__":
    main()
