"""Background embedding worker.

Runs `worker_count` asyncio pollers that claim jobs from the JobQueue and
process them, plus a reaper task that returns stale processing jobs to the
queue. The queue's conditional updates are the only coordination between
pollers, reaper and other processes using the same database.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from dreamvec.core.embedding_providers import EmbeddingProvider
from dreamvec.core.job_queue import EmbeddingJob, JobQueue, JobStatus
from dreamvec.core.narrative_embedding import Outcome, process_narrative
from dreamvec.core.settings import Settings

if TYPE_CHECKING:
    from dreamvec.core.storage import DB

logger = logging.getLogger(__name__)

JOB_TIMEOUT_ERROR = "job timeout"


class EmbeddingWorker:
    """Pool of pollers plus a stale-job reaper."""

    def __init__(
        self,
        db: DB,
        queue: JobQueue,
        provider: EmbeddingProvider,
        settings: Settings | None = None,
    ) -> None:
        self._db = db
        self._queue = queue
        self._provider = provider
        self._settings = settings or Settings.from_env()
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._active: set[int] = set()

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        """Start pollers and the reaper on the running event loop."""
        if self.running:
            logger.warning("Embedding worker already running")
            return
        self._stop = asyncio.Event()
        n = max(1, self._settings.worker_count)
        self._tasks = [asyncio.create_task(self._poll_loop(i), name=f"embed-poller-{i}") for i in range(n)]
        self._tasks.append(asyncio.create_task(self._reap_loop(), name="embed-reaper"))
        logger.info(f"Embedding worker started: {n} poller(s), provider={self._provider.name}/{self._provider.model_id}")

    async def stop(self) -> None:
        """Stop claiming; in-flight jobs finish (bounded by the job timeout)."""
        self._stop.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Embedding worker stopped")

    async def _sleep(self, seconds: float) -> None:
        """Sleep unless stop is requested first."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _poll_loop(self, poller_id: int) -> None:
        while not self._stop.is_set():
            try:
                handled = await self.process_once()
            except Exception:
                logger.exception(f"Poller {poller_id} failed, backing off")
                handled = False
            if not handled:
                await self._sleep(self._settings.poll_interval_seconds)

    async def _reap_loop(self) -> None:
        while not self._stop.is_set():
            await self._sleep(self._settings.reaper_interval_seconds)
            if self._stop.is_set():
                break
            try:
                self._queue.reap_stale(self._settings.stale_job_timeout_seconds)
            except Exception:
                logger.exception("Stale job reaper failed")

    async def process_once(self) -> bool:
        """Claim and run at most one job. Returns True if a job was claimed."""
        jobs = self._queue.claim(1)
        if not jobs:
            return False
        await self.run_job(jobs[0])
        return True

    async def run_job(self, job: EmbeddingJob) -> JobStatus | None:
        """Process a claimed job and record the outcome in the queue.

        Returns:
            Status the job ended up in, or None if it was no longer processing
        """
        self._active.add(job.id)
        try:
            try:
                result = await asyncio.wait_for(
                    process_narrative(self._db, self._provider, job.narrative_id, self._settings),
                    timeout=self._settings.job_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Job {job.id} exceeded {self._settings.job_timeout_seconds}s")
                return self._queue.fail(job.id, JOB_TIMEOUT_ERROR, permanent=False, started_at=job.started_at)
            except Exception as e:
                logger.exception(f"Unexpected error processing job {job.id}")
                return self._queue.fail(job.id, f"{type(e).__name__}: {e}", permanent=False, started_at=job.started_at)

            if result.outcome is Outcome.COMPLETED:
                return JobStatus.COMPLETED if self._queue.complete(job.id, started_at=job.started_at) else None
            if result.outcome is Outcome.SKIPPED:
                skipped = self._queue.skip(job.id, result.reason or "ineligible", started_at=job.started_at)
                return JobStatus.SKIPPED if skipped else None
            return self._queue.fail(
                job.id,
                result.reason or "unknown error",
                permanent=not result.retriable,
                started_at=job.started_at,
            )
        finally:
            self._active.discard(job.id)

    def get_status(self) -> dict[str, Any]:
        counts = self._queue.counts()
        return {
            "running": self.running,
            "pollers": sum(1 for t in self._tasks if not t.done() and t.get_name().startswith("embed-poller")),
            "active_jobs": len(self._active),
            "max_concurrent_jobs": max(1, self._settings.worker_count),
            "pending_count": counts[JobStatus.PENDING.value],
            "processing_count": counts[JobStatus.PROCESSING.value],
        }


# Global worker instance
_worker: EmbeddingWorker | None = None


def init_worker(
    db: DB,
    queue: JobQueue,
    provider: EmbeddingProvider,
    settings: Settings | None = None,
) -> EmbeddingWorker:
    global _worker
    _worker = EmbeddingWorker(db, queue, provider, settings)
    return _worker


def get_worker() -> EmbeddingWorker:
    """Get the global EmbeddingWorker. Must call init_worker first."""
    if _worker is None:
        raise RuntimeError("EmbeddingWorker not initialized. Call init_worker first.")
    return _worker
