"""Embedding job queue.

Provides:
- EmbeddingJob and JobStatus for job state
- RetryPolicy for attempt limits and exponential backoff
- JobQueue, the persistent state machine driven by conditional UPDATEs

Every transition is a single UPDATE guarded by the expected current status
(and, for a worker reporting back, the started_at of its claim), so
concurrent workers (threads or processes sharing the database file) never
both win the same job.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from dreamvec.core.settings import Settings
from dreamvec.core.storage import iso, parse_iso, utc_now

logger = logging.getLogger(__name__)

STALE_JOB_ERROR = "processing timeout"


class JobStatus(str, Enum):
    """Status of an embedding job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.SKIPPED)


@dataclass
class EmbeddingJob:
    """One embedding job per narrative."""

    id: int
    narrative_id: str
    status: JobStatus
    priority: int = 0
    attempts: int = 0
    max_attempts: int = 3
    scheduled_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "narrative_id": self.narrative_id,
            "status": self.status.value,
            "priority": self.priority,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "scheduled_at": iso(self.scheduled_at),
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
            "last_error": self.last_error,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> EmbeddingJob:
        """Create EmbeddingJob from database row."""
        return cls(
            id=row["id"],
            narrative_id=row["narrative_id"],
            status=JobStatus(row["status"]),
            priority=row["priority"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            scheduled_at=parse_iso(row["scheduled_at"]),
            started_at=parse_iso(row["started_at"]),
            completed_at=parse_iso(row["completed_at"]),
            last_error=row["last_error"],
        )


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base_seconds: float = 60.0
    backoff_max_seconds: float = 3600.0

    def backoff(self, attempts: int) -> timedelta:
        """Delay before the next attempt: base * 2^attempts, capped."""
        seconds = min(self.backoff_base_seconds * (2**attempts), self.backoff_max_seconds)
        return timedelta(seconds=seconds)

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            backoff_base_seconds=settings.backoff_base_seconds,
            backoff_max_seconds=settings.backoff_max_seconds,
        )


_JOB_COLUMNS = """
    id, narrative_id, status, priority, attempts, max_attempts,
    scheduled_at, started_at, completed_at, last_error
"""


class JobQueue:
    """Persistent embedding job queue. Thread-safe."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._conn = conn
        self._policy = policy or RetryPolicy()
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def enqueue(self, narrative_id: str, priority: int = 0) -> EmbeddingJob | None:
        """Create a pending job for a narrative unless one already exists.

        An existing skipped job is reset to a fresh pending job, so a
        narrative whose text was ineligible is picked up again once it is
        re-enqueued. Jobs in any other status are left untouched.

        Never raises. Storage errors are logged and reported as None.
        """
        now = iso(self._clock())
        try:
            with self._lock:
                self._conn.execute(
                    """
                    INSERT INTO embedding_jobs (narrative_id, status, priority, attempts, max_attempts, scheduled_at)
                    VALUES (?, 'pending', ?, 0, ?, ?)
                    ON CONFLICT(narrative_id) DO UPDATE SET
                        status = 'pending', priority = excluded.priority, attempts = 0,
                        max_attempts = excluded.max_attempts, scheduled_at = excluded.scheduled_at,
                        started_at = NULL, completed_at = NULL, last_error = NULL
                    WHERE embedding_jobs.status = 'skipped'
                    """,
                    (narrative_id, priority, self._policy.max_attempts, now),
                )
                self._conn.execute(
                    """
                    UPDATE narratives
                    SET embedding_status = 'pending', embedding_error = NULL, embedding_attempts = 0
                    WHERE id = ? AND (embedding_status IS NULL OR embedding_status = 'skipped')
                    """,
                    (narrative_id,),
                )
                self._conn.commit()
            return self.get_for_narrative(narrative_id)
        except sqlite3.Error as e:
            logger.error(f"Failed to enqueue narrative {narrative_id}: {e}")
            try:
                self._conn.rollback()
            except sqlite3.Error:
                logger.exception("Rollback after failed enqueue also failed")
            return None

    def claim(self, max_n: int = 1) -> list[EmbeddingJob]:
        """Atomically move up to max_n due pending jobs to processing.

        Returns:
            Claimed jobs ordered by priority DESC, scheduled_at ASC
        """
        if max_n <= 0:
            return []
        now = iso(self._clock())
        with self._lock:
            try:
                cur = self._conn.execute(
                    f"""
                    UPDATE embedding_jobs
                    SET status = 'processing', started_at = ?
                    WHERE id IN (
                        SELECT id FROM embedding_jobs
                        WHERE status = 'pending'
                          AND attempts < max_attempts
                          AND scheduled_at <= ?
                        ORDER BY priority DESC, scheduled_at ASC, id ASC
                        LIMIT ?
                    )
                    AND status = 'pending'
                    RETURNING {_JOB_COLUMNS}
                    """,
                    (now, now, max_n),
                )
                jobs = [EmbeddingJob.from_row(row) for row in cur.fetchall()]
                for job in jobs:
                    self._conn.execute(
                        """
                        UPDATE narratives
                        SET embedding_status = 'processing', embedding_started_at = ?
                        WHERE id = ?
                        """,
                        (now, job.narrative_id),
                    )
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

        jobs.sort(key=lambda j: (-j.priority, j.scheduled_at, j.id))
        if jobs:
            logger.debug(f"Claimed {len(jobs)} job(s): {[j.id for j in jobs]}")
        return jobs

    def complete(self, job_id: int, started_at: datetime | None = None) -> bool:
        """processing -> completed.

        With started_at, only the claim that started at that instant may
        complete the job.

        Returns:
            False if the job was not processing (or was claimed again)
        """
        now = iso(self._clock())
        token = iso(started_at)
        with self._lock:
            try:
                cur = self._conn.execute(
                    """
                    UPDATE embedding_jobs
                    SET status = 'completed', completed_at = ?, last_error = NULL
                    WHERE id = ? AND status = 'processing' AND (? IS NULL OR started_at = ?)
                    RETURNING narrative_id, attempts
                    """,
                    (now, job_id, token, token),
                )
                row = cur.fetchone()
                if row:
                    self._conn.execute(
                        """
                        UPDATE narratives
                        SET embedding_status = 'completed', embedding_processed_at = ?,
                            embedding_error = NULL, embedding_attempts = ?
                        WHERE id = ?
                        """,
                        (now, row["attempts"], row["narrative_id"]),
                    )
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        return row is not None

    def fail(
        self,
        job_id: int,
        error: str,
        permanent: bool = False,
        started_at: datetime | None = None,
    ) -> JobStatus | None:
        """Record a failed attempt.

        The job goes back to pending with backoff while attempts remain,
        otherwise (or when permanent) it becomes failed. With started_at,
        a report from an earlier claim of the job is ignored.

        Returns:
            The new status, or None if the job was not processing
        """
        with self._lock:
            try:
                status = self._fail_locked(job_id, error, permanent, expected_started_at=iso(started_at))
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        if status is JobStatus.FAILED:
            logger.warning(f"Job {job_id} failed permanently: {error}")
        elif status is JobStatus.PENDING:
            logger.info(f"Job {job_id} scheduled for retry: {error}")
        return status

    def _fail_locked(
        self,
        job_id: int,
        error: str,
        permanent: bool,
        expected_started_at: str | None,
    ) -> JobStatus | None:
        """Failure transition. Must be called within lock; caller commits."""
        now_dt = self._clock()
        now = iso(now_dt)
        cur = self._conn.execute(
            "SELECT narrative_id, attempts, max_attempts, started_at FROM embedding_jobs WHERE id = ? AND status = 'processing'",
            (job_id,),
        )
        row = cur.fetchone()
        if not row:
            return None
        if expected_started_at is not None and row["started_at"] != expected_started_at:
            return None

        attempts = min(row["attempts"] + 1, row["max_attempts"])
        if not permanent and attempts < row["max_attempts"]:
            new_status = JobStatus.PENDING
            cur = self._conn.execute(
                """
                UPDATE embedding_jobs
                SET status = 'pending', attempts = ?, last_error = ?,
                    scheduled_at = ?, started_at = NULL
                WHERE id = ? AND status = 'processing' AND started_at = ?
                """,
                (attempts, error, iso(now_dt + self._policy.backoff(attempts)), job_id, row["started_at"]),
            )
        else:
            new_status = JobStatus.FAILED
            cur = self._conn.execute(
                """
                UPDATE embedding_jobs
                SET status = 'failed', attempts = ?, last_error = ?, completed_at = ?
                WHERE id = ? AND status = 'processing' AND started_at = ?
                """,
                (attempts, error, now, job_id, row["started_at"]),
            )
        if cur.rowcount == 0:
            return None

        self._conn.execute(
            """
            UPDATE narratives
            SET embedding_status = ?, embedding_error = ?, embedding_attempts = ?,
                embedding_processed_at = CASE WHEN ? = 'failed' THEN ? ELSE embedding_processed_at END
            WHERE id = ?
            """,
            (new_status.value, error, attempts, new_status.value, now, row["narrative_id"]),
        )
        return new_status

    def skip(self, job_id: int, reason: str, started_at: datetime | None = None) -> bool:
        """processing -> skipped. Ineligible input is not an error."""
        now = iso(self._clock())
        token = iso(started_at)
        with self._lock:
            try:
                cur = self._conn.execute(
                    """
                    UPDATE embedding_jobs
                    SET status = 'skipped', completed_at = ?, last_error = ?
                    WHERE id = ? AND status = 'processing' AND (? IS NULL OR started_at = ?)
                    RETURNING narrative_id
                    """,
                    (now, reason, job_id, token, token),
                )
                row = cur.fetchone()
                if row:
                    self._conn.execute(
                        """
                        UPDATE narratives
                        SET embedding_status = 'skipped', embedding_error = ?, embedding_processed_at = ?
                        WHERE id = ?
                        """,
                        (reason, now, row["narrative_id"]),
                    )
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        if row:
            logger.info(f"Job {job_id} skipped: {reason}")
        return row is not None

    def reap_stale(self, timeout: timedelta | float) -> int:
        """Fail processing jobs whose started_at is older than now - timeout.

        Uses the same pending/failed transition as fail(). A job that was
        re-claimed after it was observed here is left alone.

        Returns:
            Number of jobs reaped
        """
        if not isinstance(timeout, timedelta):
            timeout = timedelta(seconds=timeout)
        cutoff = iso(self._clock() - timeout)
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT id, started_at FROM embedding_jobs
                WHERE status = 'processing' AND started_at < ?
                ORDER BY started_at
                """,
                (cutoff,),
            )
            stale = [(row["id"], row["started_at"]) for row in cur.fetchall()]

        reaped = 0
        for job_id, started_at in stale:
            with self._lock:
                try:
                    status = self._fail_locked(job_id, STALE_JOB_ERROR, False, expected_started_at=started_at)
                    self._conn.commit()
                except Exception:
                    self._conn.rollback()
                    raise
            if status is not None:
                reaped += 1
                logger.warning(f"Reaped stale job {job_id} (started {started_at}) -> {status.value}")
        return reaped

    def counts(self) -> dict[str, int]:
        """Job counts per status. Every status is present."""
        cur = self._conn.execute("SELECT status, COUNT(*) FROM embedding_jobs GROUP BY status")
        counts = {s.value: 0 for s in JobStatus}
        for status, n in cur.fetchall():
            counts[status] = n
        return counts

    def get(self, job_id: int) -> EmbeddingJob | None:
        cur = self._conn.execute(f"SELECT {_JOB_COLUMNS} FROM embedding_jobs WHERE id = ?", (job_id,))
        row = cur.fetchone()
        return EmbeddingJob.from_row(row) if row else None

    def get_for_narrative(self, narrative_id: str) -> EmbeddingJob | None:
        cur = self._conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM embedding_jobs WHERE narrative_id = ?",
            (narrative_id,),
        )
        row = cur.fetchone()
        return EmbeddingJob.from_row(row) if row else None


# Global queue instance
_queue: JobQueue | None = None


def init_job_queue(conn: sqlite3.Connection, settings: Settings | None = None) -> JobQueue:
    """Initialize the global JobQueue. Called from init_db."""
    global _queue
    policy = RetryPolicy.from_settings(settings) if settings else RetryPolicy()
    _queue = JobQueue(conn, policy)
    return _queue


def get_job_queue() -> JobQueue:
    """Get the global JobQueue. Must call init_job_queue first."""
    if _queue is None:
        raise RuntimeError("JobQueue not initialized. Call init_job_queue first.")
    return _queue
