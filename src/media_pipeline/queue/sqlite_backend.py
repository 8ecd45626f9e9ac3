"""SQLite implementation of QueueBackend.

This module provides the local, crash-safe job queue using:
- sqlite-utils for schema management and audit inserts
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions for atomic dequeue and deduplicated enqueue
- available_at timestamps for backoff-delayed redelivery
- Exponential backoff retry for database lock handling
"""

import json
import logging
import sqlite3
import time
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from sqlite_utils import Database

from .backends import QueueBackend
from .hashing import compute_payload_hash
from .models import (
    BackoffPolicy,
    JobHandle,
    JobItem,
    JobOptions,
    JobPayload,
    JobStatus,
    JobStatusView,
)

logger = logging.getLogger(__name__)

CRASHED_WORKER_ERROR = "Worker crashed mid-stage (no heartbeat)"

# Running with no heartbeat for 10 minutes, or started before the cutoff and never beat
STALE_RUNNING_SQL = """
    status = ?
    AND (last_heartbeat < ? OR (started_at < ? AND last_heartbeat IS NULL))
"""

SCHEMA_SQL = """
-- Jobs table
CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    job_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    dedupe_key TEXT,
    status TEXT NOT NULL,
    attempts_made INTEGER DEFAULT 0,
    max_attempts INTEGER DEFAULT 3,
    backoff_type TEXT NOT NULL,
    backoff_delay_ms INTEGER NOT NULL,
    progress INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    available_at TEXT NOT NULL,
    updated_at TEXT,
    started_at TEXT,
    finished_at TEXT,
    last_heartbeat TEXT,
    worker_id TEXT,
    last_error TEXT,
    result TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(status, available_at, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_dedupe ON jobs(dedupe_key, status);
CREATE INDEX IF NOT EXISTS idx_jobs_finished ON jobs(status, finished_at);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, timestamp);
"""


def _iso(value: datetime) -> str:
    # Fixed width so string comparison orders correctly
    return value.isoformat(timespec="microseconds")


class SQLiteQueue(QueueBackend):
    """SQLite-based queue with atomic dequeue and delayed retries.

    Features:
    - Atomic dequeue via UPDATE...RETURNING with BEGIN IMMEDIATE
    - Per-job backoff policy (exponential or fixed)
    - Payload-hash deduplication of pending/running jobs
    - Heartbeats and crash recovery via reset_stale_running()
    - Retention pruning and a state transition audit log

    Concurrency safety:
    - One instance per thread (sqlite3 connections are not shared)
    - BEGIN IMMEDIATE takes the write lock at transaction start so two
      workers can never claim the same job
    """

    def __init__(self, db_path: str, clock: Callable[[], datetime] = datetime.now):
        """Open (and create if needed) the queue database.

        Args:
            db_path: Path to SQLite database file
            clock: Time source, replaceable in tests
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.clock = clock

        self.db = Database(str(self.db_path))

        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
        self.db.conn.execute("PRAGMA busy_timeout=5000")
        self.db.conn.commit()

        self.db.executescript(SCHEMA_SQL)

    def enqueue(self, payload: JobPayload, options: Optional[JobOptions] = None) -> JobHandle:
        """Insert a pending job, collapsing identical in-flight payloads.

        Args:
            payload: Job payload variant
            options: Retry policy; defaults to JobOptions()

        Returns:
            JobHandle (``deduplicated=True`` when an existing job was reused)
        """
        options = options or JobOptions()
        job_type = payload.type
        dedupe_key = compute_payload_hash(job_type, payload) if options.dedupe else None
        now = _iso(self.clock())

        with self.db.conn:
            self.db.conn.execute("BEGIN IMMEDIATE")

            if dedupe_key:
                existing = self.db.conn.execute(
                    """
                    SELECT job_id FROM jobs
                    WHERE dedupe_key = ? AND status IN (?, ?)
                    LIMIT 1
                    """,
                    (dedupe_key, JobStatus.PENDING.value, JobStatus.RUNNING.value),
                ).fetchone()
                if existing:
                    logger.info("Job %s already queued for %s payload", existing[0], job_type)
                    return JobHandle(job_id=existing[0], job_type=job_type, deduplicated=True)

            job_id = str(uuid.uuid4())
            self.db.conn.execute(
                """
                INSERT INTO jobs (
                    job_id, job_type, payload, dedupe_key, status, attempts_made,
                    max_attempts, backoff_type, backoff_delay_ms, progress,
                    created_at, available_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, 0, ?, ?, ?)
                """,
                (
                    job_id,
                    job_type,
                    json.dumps(payload.model_dump(mode="json")),
                    dedupe_key,
                    JobStatus.PENDING.value,
                    options.attempts,
                    options.backoff.type.value,
                    options.backoff.delay_ms,
                    now,
                    now,
                    now,
                ),
            )
            self._log_transition(job_id, None, JobStatus.PENDING.value)

        logger.info("Enqueued %s job %s (attempts=%d)", job_type, job_id, options.attempts)
        return JobHandle(job_id=job_id, job_type=job_type)

    def dequeue(self, worker_id: str) -> Optional[JobItem]:
        """Atomically pop next available job and mark as running.

        Args:
            worker_id: Unique identifier for the claiming worker

        Returns:
            JobItem or None when nothing is due

        Atomicity: Uses BEGIN IMMEDIATE + UPDATE...RETURNING
        Retry logic: Exponential backoff on database lock
        """
        return self._dequeue_with_retry(worker_id, max_retries=3)

    def _dequeue_with_retry(self, worker_id: str, max_retries: int = 3) -> Optional[JobItem]:
        """Dequeue with exponential backoff on SQLITE_BUSY.

        Implementation note:
        - BEGIN IMMEDIATE ensures write lock from transaction start
        - Exponential backoff: 100ms, 200ms, 400ms delays
        """
        for attempt in range(max_retries):
            try:
                with self.db.conn:
                    self.db.conn.execute("BEGIN IMMEDIATE")

                    try:
                        now = _iso(self.clock())
                        cursor = self.db.conn.execute(
                            """
                            UPDATE jobs
                            SET status = ?,
                                worker_id = ?,
                                started_at = ?,
                                last_heartbeat = ?,
                                updated_at = ?
                            WHERE job_id = (
                                SELECT job_id FROM jobs
                                WHERE status = ? AND available_at <= ?
                                ORDER BY available_at ASC, created_at ASC
                                LIMIT 1
                            )
                            RETURNING *
                            """,
                            (
                                JobStatus.RUNNING.value,
                                worker_id,
                                now,
                                now,
                                now,
                                JobStatus.PENDING.value,
                                now,
                            ),
                        )
                        row = cursor.fetchone()
                        columns = [c[0] for c in cursor.description] if row else []
                        self.db.conn.commit()

                        if row:
                            data = dict(zip(columns, row))
                            self._log_transition(
                                data["job_id"],
                                JobStatus.PENDING.value,
                                JobStatus.RUNNING.value,
                                worker_id=worker_id,
                            )
                            return self._row_to_job_item(data)

                        return None

                    except Exception:
                        self.db.conn.rollback()
                        raise

            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise

        return None

    def ack_success(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> None:
        """Mark job as completed with an optional small JSON result."""
        now = _iso(self.clock())
        with self.db.conn:
            self.db.execute(
                """
                UPDATE jobs
                SET status = ?, progress = 100, finished_at = ?, updated_at = ?, result = ?
                WHERE job_id = ? AND status = ?
                """,
                (
                    JobStatus.COMPLETED.value,
                    now,
                    now,
                    json.dumps(result) if result is not None else None,
                    job_id,
                    JobStatus.RUNNING.value,
                ),
            )
            self._log_transition(job_id, JobStatus.RUNNING.value, JobStatus.COMPLETED.value)

    def ack_fail(self, job_id: str, error: str, retry: bool) -> JobStatus:
        """Mark job as failed with optional retry.

        Args:
            job_id: Job identifier
            error: Error message (truncated to 500 chars)
            retry: If True, reschedule while attempts remain

        Retry logic:
        - attempts_made is incremented on every failure
        - If retry and attempts_made < max_attempts: back to 'pending' with
          available_at pushed out by the job's backoff policy
        - Otherwise: 'failed' (terminal)
        """
        row = self._get_row(job_id)
        if row is None:
            raise KeyError(f"Unknown job {job_id}")

        attempts_made = row["attempts_made"] + 1
        error_snippet = error[:500] if error else None
        now = self.clock()

        with self.db.conn:
            if retry and attempts_made < row["max_attempts"]:
                policy = BackoffPolicy(type=row["backoff_type"], delay_ms=row["backoff_delay_ms"])
                available_at = now + timedelta(seconds=policy.delay_for(attempts_made))
                self.db.execute(
                    """
                    UPDATE jobs
                    SET status = ?, attempts_made = ?, last_error = ?, worker_id = NULL,
                        available_at = ?, updated_at = ?
                    WHERE job_id = ?
                    """,
                    (
                        JobStatus.PENDING.value,
                        attempts_made,
                        error_snippet,
                        _iso(available_at),
                        _iso(now),
                        job_id,
                    ),
                )
                self._log_transition(
                    job_id, JobStatus.RUNNING.value, JobStatus.PENDING.value, error=error_snippet
                )
                logger.info(
                    "Job %s attempt %d/%d failed, retrying at %s",
                    job_id, attempts_made, row["max_attempts"], _iso(available_at),
                )
                return JobStatus.PENDING

            self.db.execute(
                """
                UPDATE jobs
                SET status = ?, attempts_made = ?, last_error = ?, finished_at = ?, updated_at = ?
                WHERE job_id = ?
                """,
                (JobStatus.FAILED.value, attempts_made, error_snippet, _iso(now), _iso(now), job_id),
            )
            self._log_transition(
                job_id, JobStatus.RUNNING.value, JobStatus.FAILED.value, error=error_snippet
            )

        logger.warning("Job %s failed permanently after %d attempt(s)", job_id, attempts_made)
        return JobStatus.FAILED

    def get_status(self, job_id: str) -> Optional[JobStatusView]:
        row = self._get_row(job_id)
        return self._row_to_view(row) if row else None

    def remove(self, job_id: str) -> bool:
        """Delete a job unless a worker currently holds it."""
        with self.db.conn:
            cursor = self.db.execute(
                "DELETE FROM jobs WHERE job_id = ? AND status != ?",
                (job_id, JobStatus.RUNNING.value),
            )
            removed = cursor.rowcount == 1
            if removed:
                self.db.execute("DELETE FROM state_transitions WHERE job_id = ?", (job_id,))
        return removed

    def prune(self, keep_completed: int, completed_max_age_s: int,
              keep_failed: int, failed_max_age_s: int) -> int:
        """Delete finished jobs past their count or age cap.

        Returns:
            Number of jobs removed
        """
        now = self.clock()
        removed = 0
        with self.db.conn:
            for status, keep, max_age_s in (
                (JobStatus.COMPLETED.value, keep_completed, completed_max_age_s),
                (JobStatus.FAILED.value, keep_failed, failed_max_age_s),
            ):
                cutoff = _iso(now - timedelta(seconds=max_age_s))
                cursor = self.db.execute(
                    """
                    DELETE FROM jobs
                    WHERE status = ?
                      AND (
                          finished_at < ?
                          OR job_id NOT IN (
                              SELECT job_id FROM jobs
                              WHERE status = ?
                              ORDER BY finished_at DESC
                              LIMIT ?
                          )
                      )
                    """,
                    (status, cutoff, status, keep),
                )
                removed += cursor.rowcount
            if removed:
                self.db.execute(
                    "DELETE FROM state_transitions WHERE job_id NOT IN (SELECT job_id FROM jobs)"
                )
        if removed:
            logger.info("Pruned %d finished job(s)", removed)
        return removed

    def reset_stale_running(self, timeout_s: int = 7200) -> int:
        """Crash recovery: Reset jobs stuck in 'running' state.

        Args:
            timeout_s: Consider job stale if started this long ago without heartbeat

        Returns:
            Count of recovered jobs (requeued or failed)

        Logic:
        - No heartbeat in 10 minutes (worker crashed)
        - OR started > timeout_s ago AND no heartbeat at all
        - The lost attempt counts: attempts_made is incremented, and a job
          with no attempts left is failed instead of requeued
        """
        now = self.clock()
        stale_args = (
            JobStatus.RUNNING.value,
            _iso(now - timedelta(seconds=600)),
            _iso(now - timedelta(seconds=timeout_s)),
        )

        with self.db.conn:
            exhausted = self.db.execute(
                f"""
                UPDATE jobs
                SET status = ?, attempts_made = attempts_made + 1, last_error = ?,
                    worker_id = NULL, finished_at = ?, updated_at = ?
                WHERE {STALE_RUNNING_SQL}
                  AND attempts_made + 1 >= max_attempts
                RETURNING job_id
                """,
                (JobStatus.FAILED.value, CRASHED_WORKER_ERROR, _iso(now), _iso(now), *stale_args),
            ).fetchall()
            requeued = self.db.execute(
                f"""
                UPDATE jobs
                SET status = ?, attempts_made = attempts_made + 1, last_error = ?,
                    worker_id = NULL, available_at = ?, updated_at = ?
                WHERE {STALE_RUNNING_SQL}
                RETURNING job_id
                """,
                (JobStatus.PENDING.value, CRASHED_WORKER_ERROR, _iso(now), _iso(now), *stale_args),
            ).fetchall()

            for rows, target in ((exhausted, JobStatus.FAILED), (requeued, JobStatus.PENDING)):
                for row in rows:
                    self._log_transition(
                        row[0], JobStatus.RUNNING.value, target.value, error=CRASHED_WORKER_ERROR
                    )

        if requeued:
            logger.warning("Reset %d stale running job(s)", len(requeued))
        if exhausted:
            logger.warning("Failed %d stale running job(s) with no attempts left", len(exhausted))
        return len(requeued) + len(exhausted)

    def update_heartbeat(self, job_id: str) -> None:
        """Update heartbeat timestamp for a running job."""
        with self.db.conn:
            self.db.execute(
                "UPDATE jobs SET last_heartbeat = ? WHERE job_id = ? AND status = ?",
                (_iso(self.clock()), job_id, JobStatus.RUNNING.value),
            )

    def update_progress(self, job_id: str, progress: int) -> None:
        with self.db.conn:
            self.db.execute(
                "UPDATE jobs SET progress = ? WHERE job_id = ? AND status = ?",
                (max(0, min(100, progress)), job_id, JobStatus.RUNNING.value),
            )

    def list_jobs(self, status_filter: Optional[str] = None, limit: int = 50) -> List[JobStatusView]:
        if status_filter:
            rows = self.db["jobs"].rows_where(
                "status = ?", [status_filter], order_by="created_at desc", limit=limit
            )
        else:
            rows = self.db["jobs"].rows_where(order_by="created_at desc", limit=limit)
        return [self._row_to_view(dict(row)) for row in rows]

    def counts(self) -> Dict[str, int]:
        """Job counts per status (all statuses present, zero-filled)."""
        counts = {status.value: 0 for status in JobStatus}
        for status, count in self.db.execute(
            "SELECT status, COUNT(*) FROM jobs GROUP BY status"
        ).fetchall():
            counts[status] = count
        counts["total"] = sum(counts.values())
        return counts

    def close(self) -> None:
        self.db.close()

    def _get_row(self, job_id: str) -> Optional[Dict[str, Any]]:
        rows = list(self.db["jobs"].rows_where("job_id = ?", [job_id]))
        return dict(rows[0]) if rows else None

    def _row_to_job_item(self, row: Dict[str, Any]) -> JobItem:
        return JobItem(
            job_id=row["job_id"],
            job_type=row["job_type"],
            payload=json.loads(row["payload"]),
            status=JobStatus(row["status"]),
            attempts_made=row["attempts_made"],
            max_attempts=row["max_attempts"],
            backoff=BackoffPolicy(type=row["backoff_type"], delay_ms=row["backoff_delay_ms"]),
            dedupe_key=row["dedupe_key"],
            created_at=datetime.fromisoformat(row["created_at"]),
            available_at=datetime.fromisoformat(row["available_at"]),
            started_at=datetime.fromisoformat(row["started_at"]) if row["started_at"] else None,
            finished_at=datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None,
            last_heartbeat=(
                datetime.fromisoformat(row["last_heartbeat"]) if row["last_heartbeat"] else None
            ),
            worker_id=row["worker_id"],
            last_error=row["last_error"],
        )

    @staticmethod
    def _row_to_view(row: Dict[str, Any]) -> JobStatusView:
        status = JobStatus(row["status"])
        return JobStatusView(
            job_id=row["job_id"],
            job_type=row["job_type"],
            state=status,
            progress=row["progress"] or 0,
            attempts_made=row["attempts_made"],
            max_attempts=row["max_attempts"],
            result=json.loads(row["result"]) if row["result"] else None,
            failed_reason=row["last_error"] if status == JobStatus.FAILED else None,
            created_at=datetime.fromisoformat(row["created_at"]),
            finished_at=datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None,
        )

    def _log_transition(
        self,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ):
        """Log state transition to audit trail."""
        self.db.conn.execute(
            """
            INSERT INTO state_transitions (job_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (job_id, from_state, to_state, _iso(self.clock()), worker_id, error[:200] if error else None),
        )
