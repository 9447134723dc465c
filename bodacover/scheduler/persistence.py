"""
Persistence for the job scheduler (JobStore + JobHistoryLog).

SQLite with WAL mode, one database file shared by every scheduler process
on the host.

Write discipline:
- Jobs change only through compare_and_transition (atomic conditional
  UPDATE). A mismatch returns None ("already claimed"), never an error.
- History rows are appended once and finalized once.

No business logic lives here.
"""

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone, tzinfo
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Union

from .entities import (
    Job,
    JobHistory,
    JobResult,
    JobStatus,
    JobType,
    is_transition_allowed,
    utc_now,
)
from .errors import (
    InvalidOperationError,
    InvalidTransitionError,
    JobHistoryNotFoundError,
    JobNotFoundError,
)
from .schedule import EAT, due_time


class _AnyToken:
    """Sentinel: do not constrain the execution token."""

    def __repr__(self) -> str:
        return "ANY_TOKEN"


ANY_TOKEN = _AnyToken()

# Columns compare_and_transition may change besides status.
MUTABLE_JOB_FIELDS = frozenset(
    {
        "scheduled_at",
        "started_at",
        "completed_at",
        "next_run_at",
        "duration_ms",
        "result",
        "error_message",
        "retry_count",
        "last_retry_at",
        "is_enabled",
        "execution_token",
        "heartbeat_at",
        "cancel_requested",
    }
)

# Statuses list_enabled_due considers. RUNNING is included so the caller can
# note overlapping firings.
DUE_CANDIDATE_STATUSES = (JobStatus.SCHEDULED, JobStatus.PAUSED, JobStatus.RUNNING)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _encode(value: Any) -> Any:
    """Encode a Python value for a SQLite column."""
    if isinstance(value, datetime):
        return _iso(value)
    if isinstance(value, JobResult):
        return json.dumps(value.to_dict())
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, dict):
        return json.dumps(value)
    return value


class JobStore:
    """
    SQLite-backed storage for Job and JobHistory rows.

    - Abstracts SQLite storage
    - Atomic claim via compare_and_transition
    - Append/finalize history
    - Paginated read models for operators
    """

    def __init__(self, db_path: Union[str, Path], tz: tzinfo = EAT):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file. ":memory:" creates a
                private shared-cache database kept alive by this instance.
            tz: Zone in which cron expressions are evaluated
        """
        self.tz = tz
        self._uri = False
        self._keeper: Optional[sqlite3.Connection] = None

        if str(db_path) == ":memory:":
            self.db_path = f"file:bodacover-{uuid.uuid4().hex}?mode=memory&cache=shared"
            self._uri = True
            self._keeper = sqlite3.connect(self.db_path, uri=True, check_same_thread=False)
        else:
            self.db_path = str(db_path)

        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with WAL mode enabled."""
        conn = sqlite3.connect(self.db_path, uri=self._uri, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for read-only connections."""
        conn = self._get_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def close(self) -> None:
        """Release the keeper connection of an in-memory store."""
        if self._keeper is not None:
            self._keeper.close()
            self._keeper = None

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    job_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    cron_expression TEXT,
                    is_recurring INTEGER NOT NULL DEFAULT 0,
                    config TEXT NOT NULL DEFAULT '{}',
                    scheduled_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    next_run_at TEXT,
                    duration_ms INTEGER,
                    result TEXT,
                    error_message TEXT,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL DEFAULT 3,
                    last_retry_at TEXT,
                    is_enabled INTEGER NOT NULL DEFAULT 1,
                    created_by TEXT,
                    execution_token TEXT,
                    heartbeat_at TEXT,
                    cancel_requested INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    CHECK (retry_count >= 0 AND retry_count <= max_retries)
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_type_status
                ON jobs (job_type, status)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_enabled_status
                ON jobs (is_enabled, status)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS job_history (
                    history_id TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL,
                    job_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    ended_at TEXT,
                    duration_ms INTEGER,
                    result TEXT,
                    error_message TEXT,
                    triggered_by TEXT NOT NULL DEFAULT 'system',
                    execution_token TEXT,
                    idempotency_key TEXT,
                    FOREIGN KEY (job_id) REFERENCES jobs(job_id)
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_job_history_job_started
                ON job_history (job_id, started_at)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_job_history_idempotency
                ON job_history (idempotency_key, status)
            """)

    # =========================================================================
    # Job Operations
    # =========================================================================

    def create_job(self, job: Job) -> Job:
        """Persist a new job."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO jobs
                (job_id, name, job_type, status, cron_expression, is_recurring, config,
                 scheduled_at, started_at, completed_at, next_run_at, duration_ms, result,
                 error_message, retry_count, max_retries, last_retry_at, is_enabled,
                 created_by, execution_token, heartbeat_at, cancel_requested,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.job_id,
                    job.name,
                    job.job_type.value,
                    job.status.value,
                    job.cron_expression,
                    _encode(job.is_recurring),
                    json.dumps(job.config),
                    _iso(job.scheduled_at),
                    _iso(job.started_at),
                    _iso(job.completed_at),
                    _iso(job.next_run_at),
                    job.duration_ms,
                    _encode(job.result),
                    job.error_message,
                    job.retry_count,
                    job.max_retries,
                    _iso(job.last_retry_at),
                    _encode(job.is_enabled),
                    job.created_by,
                    job.execution_token,
                    _iso(job.heartbeat_at),
                    _encode(job.cancel_requested),
                    _iso(job.created_at),
                    _iso(job.updated_at),
                ),
            )
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE job_id = ?",
                (job_id,),
            ).fetchone()

        if row is None:
            return None

        return self._row_to_job(row)

    def require_job(self, job_id: str) -> Job:
        """Get a job by ID or raise JobNotFoundError."""
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def find_job_by_name(self, name: str) -> Optional[Job]:
        """Get the oldest job with the given name."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE name = ? ORDER BY created_at ASC LIMIT 1",
                (name,),
            ).fetchone()

        return self._row_to_job(row) if row is not None else None

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        return Job(
            job_id=row["job_id"],
            name=row["name"],
            job_type=JobType(row["job_type"]),
            status=JobStatus(row["status"]),
            cron_expression=row["cron_expression"],
            is_recurring=bool(row["is_recurring"]),
            config=json.loads(row["config"]) if row["config"] else {},
            scheduled_at=_parse_dt(row["scheduled_at"]),
            started_at=_parse_dt(row["started_at"]),
            completed_at=_parse_dt(row["completed_at"]),
            next_run_at=_parse_dt(row["next_run_at"]),
            duration_ms=row["duration_ms"],
            result=JobResult.from_dict(json.loads(row["result"])) if row["result"] else None,
            error_message=row["error_message"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            last_retry_at=_parse_dt(row["last_retry_at"]),
            is_enabled=bool(row["is_enabled"]),
            created_by=row["created_by"],
            execution_token=row["execution_token"],
            heartbeat_at=_parse_dt(row["heartbeat_at"]),
            cancel_requested=bool(row["cancel_requested"]),
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    def compare_and_transition(
        self,
        job_id: str,
        expected_status: Union[JobStatus, Iterable[JobStatus]],
        new_status: JobStatus,
        *,
        expected_token: Any = ANY_TOKEN,
        **changes: Any,
    ) -> Optional[Job]:
        """
        Atomically move a job from an expected status to a new status.

        The UPDATE only matches when the persisted status is one of
        `expected_status` (and, if given, the execution token equals
        `expected_token`). Two schedulers racing for the same job therefore
        cannot both win.

        Args:
            job_id: Job to transition
            expected_status: Status (or statuses) the caller believes is current
            new_status: Target status
            expected_token: Required execution token (None means "no token")
            **changes: Additional columns from MUTABLE_JOB_FIELDS

        Returns:
            The updated Job, or None if the job was not in the expected
            state (already claimed / superseded)

        Raises:
            JobNotFoundError: If the job doesn't exist
            InvalidTransitionError: If an edge is not allowed
            ValueError: If a change names a non-mutable column
        """
        if isinstance(expected_status, JobStatus):
            expected = (expected_status,)
        else:
            expected = tuple(expected_status)

        if not expected:
            raise ValueError("expected_status must name at least one status")

        for status in expected:
            if not is_transition_allowed(status, new_status):
                raise InvalidTransitionError(job_id, status.value, new_status.value)

        unknown = set(changes) - MUTABLE_JOB_FIELDS
        if unknown:
            raise ValueError(f"Fields are not mutable: {', '.join(sorted(unknown))}")

        if "retry_count" in changes and changes["retry_count"] < 0:
            raise ValueError("retry_count must be >= 0")

        assignments = ["status = ?", "updated_at = ?"]
        values: list[Any] = [new_status.value, _iso(utc_now())]
        for column, value in changes.items():
            assignments.append(f"{column} = ?")
            values.append(_encode(value))

        placeholders = ", ".join("?" for _ in expected)
        where = f"job_id = ? AND status IN ({placeholders})"
        values.append(job_id)
        values.extend(status.value for status in expected)

        if expected_token is not ANY_TOKEN:
            if expected_token is None:
                where += " AND execution_token IS NULL"
            else:
                where += " AND execution_token = ?"
                values.append(expected_token)

        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE jobs SET {', '.join(assignments)} WHERE {where}",
                values,
            )

            if cursor.rowcount == 0:
                exists = conn.execute(
                    "SELECT 1 FROM jobs WHERE job_id = ?",
                    (job_id,),
                ).fetchone()

                if exists is None:
                    raise JobNotFoundError(job_id)

                return None

            row = conn.execute(
                "SELECT * FROM jobs WHERE job_id = ?",
                (job_id,),
            ).fetchone()

        return self._row_to_job(row)

    def list_jobs(
        self,
        job_type: Optional[JobType] = None,
        status: Optional[JobStatus] = None,
        is_recurring: Optional[bool] = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Job], int]:
        """
        List jobs, newest schedule first.

        Returns:
            (jobs on the requested page, total matching jobs)
        """
        clauses = []
        values: list[Any] = []

        if job_type is not None:
            clauses.append("job_type = ?")
            values.append(JobType(job_type).value)
        if status is not None:
            clauses.append("status = ?")
            values.append(JobStatus(status).value)
        if is_recurring is not None:
            clauses.append("is_recurring = ?")
            values.append(1 if is_recurring else 0)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        page = max(1, page)

        with self._connection() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM jobs {where}",
                values,
            ).fetchone()[0]

            rows = conn.execute(
                f"""
                SELECT * FROM jobs {where}
                ORDER BY scheduled_at DESC, created_at DESC
                LIMIT ? OFFSET ?
                """,
                [*values, limit, (page - 1) * limit],
            ).fetchall()

        return [self._row_to_job(row) for row in rows], total

    def list_enabled_due(self, now: datetime) -> list[Job]:
        """
        List enabled jobs that are due at `now`.

        RUNNING jobs that are due again are included so the scheduler can
        record an overlapping firing instead of silently dropping it.
        """
        placeholders = ", ".join("?" for _ in DUE_CANDIDATE_STATUSES)

        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM jobs
                WHERE is_enabled = 1 AND status IN ({placeholders})
                ORDER BY COALESCE(next_run_at, scheduled_at) ASC
                """,
                [status.value for status in DUE_CANDIDATE_STATUSES],
            ).fetchall()

        jobs = [self._row_to_job(row) for row in rows]
        return [job for job in jobs if due_time(job, now, self.tz) is not None]

    def list_running_jobs(self) -> list[Job]:
        """List all RUNNING jobs."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE status = ? ORDER BY started_at ASC",
                (JobStatus.RUNNING.value,),
            ).fetchall()

        return [self._row_to_job(row) for row in rows]

    def count_jobs_by_status(self) -> dict[str, int]:
        """Count jobs grouped by status."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS count FROM jobs GROUP BY status"
            ).fetchall()

        counts = {status.value: 0 for status in JobStatus}
        for row in rows:
            counts[row["status"]] = row["count"]
        return counts

    # =========================================================================
    # JobHistory Operations
    # =========================================================================

    def append_history(self, entry: JobHistory) -> JobHistory:
        """Append a new history row (normally RUNNING)."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO job_history
                (history_id, job_id, job_name, status, started_at, ended_at, duration_ms,
                 result, error_message, triggered_by, execution_token, idempotency_key)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.history_id,
                    entry.job_id,
                    entry.job_name,
                    entry.status.value,
                    _iso(entry.started_at),
                    _iso(entry.ended_at),
                    entry.duration_ms,
                    _encode(entry.result),
                    entry.error_message,
                    entry.triggered_by,
                    entry.execution_token,
                    entry.idempotency_key,
                ),
            )
        return entry

    def get_history(self, history_id: str) -> Optional[JobHistory]:
        """Get a history row by ID."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM job_history WHERE history_id = ?",
                (history_id,),
            ).fetchone()

        if row is None:
            return None

        return self._row_to_history(row)

    def _row_to_history(self, row: sqlite3.Row) -> JobHistory:
        return JobHistory(
            history_id=row["history_id"],
            job_id=row["job_id"],
            job_name=row["job_name"],
            status=JobStatus(row["status"]),
            started_at=_parse_dt(row["started_at"]),
            ended_at=_parse_dt(row["ended_at"]),
            duration_ms=row["duration_ms"],
            result=JobResult.from_dict(json.loads(row["result"])) if row["result"] else None,
            error_message=row["error_message"],
            triggered_by=row["triggered_by"],
            execution_token=row["execution_token"],
            idempotency_key=row["idempotency_key"],
        )

    def finalize_history(
        self,
        history_id: str,
        status: JobStatus,
        ended_at: datetime,
        result: Optional[JobResult] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Finalize a history row exactly once.

        Returns:
            True if the row was finalized by this call, False if it had
            already been finalized (rows are immutable once ended)

        Raises:
            JobHistoryNotFoundError: If the row doesn't exist
            InvalidOperationError: If status is RUNNING
        """
        if status == JobStatus.RUNNING:
            raise InvalidOperationError("History rows cannot be finalized as RUNNING")

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT started_at, ended_at FROM job_history WHERE history_id = ?",
                (history_id,),
            ).fetchone()

            if row is None:
                raise JobHistoryNotFoundError(history_id)

            if row["ended_at"] is not None:
                return False

            started_at = _parse_dt(row["started_at"])
            duration_ms = max(0, int((ended_at - started_at).total_seconds() * 1000))

            cursor = conn.execute(
                """
                UPDATE job_history
                SET status = ?, ended_at = ?, duration_ms = ?, result = ?, error_message = ?
                WHERE history_id = ? AND ended_at IS NULL
                """,
                (
                    status.value,
                    _iso(ended_at),
                    duration_ms,
                    _encode(result),
                    error_message,
                    history_id,
                ),
            )

        return cursor.rowcount == 1

    def list_history(
        self,
        job_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[JobHistory], int]:
        """
        List history rows, newest first.

        Returns:
            (rows on the requested page, total matching rows)
        """
        where = "WHERE job_id = ?" if job_id is not None else ""
        values: list[Any] = [job_id] if job_id is not None else []
        page = max(1, page)

        with self._connection() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM job_history {where}",
                values,
            ).fetchone()[0]

            rows = conn.execute(
                f"""
                SELECT * FROM job_history {where}
                ORDER BY started_at DESC
                LIMIT ? OFFSET ?
                """,
                [*values, limit, (page - 1) * limit],
            ).fetchall()

        return [self._row_to_history(row) for row in rows], total

    def list_recent_history(self, since: datetime, limit: int = 100) -> list[JobHistory]:
        """History rows started after `since`, newest first."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM job_history
                WHERE started_at > ?
                ORDER BY started_at DESC
                LIMIT ?
                """,
                (_iso(since), limit),
            ).fetchall()

        return [self._row_to_history(row) for row in rows]

    def list_open_history(self, job_id: str) -> list[JobHistory]:
        """History rows for a job that have not been finalized."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM job_history
                WHERE job_id = ? AND ended_at IS NULL
                ORDER BY started_at ASC
                """,
                (job_id,),
            ).fetchall()

        return [self._row_to_history(row) for row in rows]

    def has_completed_history(self, idempotency_key: str) -> bool:
        """True if a COMPLETED history row exists for the idempotency key."""
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM job_history
                WHERE idempotency_key = ? AND status = ?
                LIMIT 1
                """,
                (idempotency_key, JobStatus.COMPLETED.value),
            ).fetchone()

        return row is not None

    # =========================================================================
    # Statistics
    # =========================================================================

    def job_stats(self, since: datetime) -> dict:
        """
        Aggregate statistics for the operator view.

        Returns:
            Dict with total_jobs, active_jobs, recurring_jobs,
            recent_executions, failed_recent, average_duration_ms
        """
        with self._connection() as conn:
            job_row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN status IN (?, ?) THEN 1 ELSE 0 END) AS active,
                    SUM(is_recurring) AS recurring
                FROM jobs
                """,
                (JobStatus.SCHEDULED.value, JobStatus.RUNNING.value),
            ).fetchone()

            history_row = conn.execute(
                """
                SELECT
                    COUNT(*) AS recent,
                    SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) AS failed,
                    AVG(CASE WHEN status = ? THEN duration_ms END) AS avg_duration
                FROM job_history
                WHERE started_at > ?
                """,
                (JobStatus.FAILED.value, JobStatus.COMPLETED.value, _iso(since)),
            ).fetchone()

        return {
            "total_jobs": job_row["total"] or 0,
            "active_jobs": job_row["active"] or 0,
            "recurring_jobs": job_row["recurring"] or 0,
            "recent_executions": history_row["recent"] or 0,
            "failed_recent": history_row["failed"] or 0,
            "average_duration_ms": int(round(history_row["avg_duration"] or 0)),
        }
