"""
Persistence Adapter (run ledger) for the cron server.

SQLite storage with WAL mode:
- jobs: job configuration and the persisted paused flag
- runs: execution history keyed by job id, with cost and token columns

Provides:
- Additive, idempotent migrations for databases created by older versions
- Single-statement terminal updates for runs
- Daily spend aggregate used by the admission budget guard
- Startup recovery of runs orphaned by a previous process
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Iterator, Optional

from .entities import (
    JOB_FIELDS,
    Job,
    Run,
    RunStatus,
    local_midnight,
    now_iso,
    to_iso,
)
from .errors import (
    InvalidOperationError,
    JobNotFoundError,
    RunNotFoundError,
)


logger = logging.getLogger(__name__)


# Columns added after the first release. Applied on every start; a column
# that already exists is not an error.
MIGRATIONS = [
    "ALTER TABLE jobs ADD COLUMN session_limit_threshold INTEGER NOT NULL DEFAULT 90",
    "ALTER TABLE jobs ADD COLUMN daily_budget_usd REAL",
    "ALTER TABLE jobs ADD COLUMN block_token_limit INTEGER",
    "ALTER TABLE jobs ADD COLUMN paused INTEGER NOT NULL DEFAULT 0",
    "ALTER TABLE runs ADD COLUMN cost_usd REAL",
    "ALTER TABLE runs ADD COLUMN input_tokens INTEGER",
    "ALTER TABLE runs ADD COLUMN output_tokens INTEGER",
]

ORPHANED_RUN_ERROR = "Interrupted by server restart"


class PersistenceAdapter:
    """
    SQLite-based persistence for jobs and runs.

    - CRUD operations for Job and Run
    - Does NOT contain scheduling or admission logic
    - Validation beyond schema constraints is the caller's responsibility

    A new connection is opened per operation, so the adapter can be shared
    across trigger threads. The database must be a file path.
    """

    def __init__(self, db_path: str | Path):
        """
        Initialize persistence adapter.

        Args:
            db_path: Path to SQLite database file (parent dirs are created)
        """
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with WAL mode enabled."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections."""
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

    def _init_db(self) -> None:
        """Initialize database schema and apply migrations."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    expression TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    cwd TEXT NOT NULL,
                    model TEXT NOT NULL DEFAULT 'sonnet',
                    permission_mode TEXT NOT NULL DEFAULT 'bypassPermissions',
                    max_budget REAL,
                    timeout_ms INTEGER NOT NULL DEFAULT 600000,
                    allowed_tools TEXT NOT NULL DEFAULT '[]',
                    append_system_prompt TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id INTEGER NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    exit_code INTEGER,
                    duration_ms INTEGER,
                    log_file TEXT,
                    error TEXT,
                    status TEXT NOT NULL DEFAULT 'running'
                )
            """)

            # Index for job -> runs lookup, newest first
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_runs_job_started
                ON runs (job_id, started_at)
            """)

            for statement in MIGRATIONS:
                try:
                    conn.execute(statement)
                except sqlite3.OperationalError as e:
                    if "duplicate column" not in str(e).lower():
                        raise

    # =========================================================================
    # Job Operations
    # =========================================================================

    def create_job(self, fields: dict) -> Job:
        """
        Insert a job row and return it with its assigned id.

        Args:
            fields: Job attributes keyed by JOB_FIELDS names; missing optional
                fields take the Job dataclass defaults
        """
        job = Job(id=0, **{k: v for k, v in fields.items() if k in JOB_FIELDS})

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO jobs
                (name, expression, prompt, cwd, model, permission_mode, max_budget,
                 timeout_ms, allowed_tools, append_system_prompt, session_limit_threshold,
                 daily_budget_usd, block_token_limit, paused, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.name,
                    job.expression,
                    job.prompt,
                    job.cwd,
                    job.model,
                    job.permission_mode,
                    job.max_budget,
                    job.timeout_ms,
                    json.dumps(list(job.allowed_tools)),
                    job.append_system_prompt or "",
                    job.session_limit_threshold,
                    job.daily_budget_usd,
                    job.block_token_limit,
                    1 if job.paused else 0,
                    job.created_at,
                ),
            )
            job.id = cursor.lastrowid

        return job

    def get_job(self, job_id: int) -> Optional[Job]:
        """Get a job by ID."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE id = ?",
                (job_id,),
            ).fetchone()

        if row is None:
            return None

        return self._row_to_job(row)

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        """Convert database row to Job entity."""
        return Job(
            id=row["id"],
            name=row["name"],
            expression=row["expression"],
            prompt=row["prompt"],
            cwd=row["cwd"],
            model=row["model"],
            permission_mode=row["permission_mode"],
            max_budget=row["max_budget"],
            timeout_ms=row["timeout_ms"],
            allowed_tools=json.loads(row["allowed_tools"] or "[]"),
            append_system_prompt=row["append_system_prompt"] or "",
            session_limit_threshold=row["session_limit_threshold"],
            daily_budget_usd=row["daily_budget_usd"],
            block_token_limit=row["block_token_limit"],
            paused=bool(row["paused"]),
            created_at=row["created_at"],
        )

    def list_jobs(self) -> list[Job]:
        """List all jobs in id order."""
        with self._connection() as conn:
            rows = conn.execute("SELECT * FROM jobs ORDER BY id").fetchall()

        return [self._row_to_job(row) for row in rows]

    def update_job(self, job_id: int, **changes) -> Job:
        """
        Update persisted job fields.

        Accepts any of JOB_FIELDS plus `paused`. Unknown keys are ignored.
        """
        if self.get_job(job_id) is None:
            raise JobNotFoundError(job_id)

        updates = []
        values = []

        for key, value in changes.items():
            if key not in JOB_FIELDS and key != "paused":
                continue
            if key == "allowed_tools":
                value = json.dumps(list(value or []))
            elif key == "paused":
                value = 1 if value else 0
            elif key == "append_system_prompt":
                value = value or ""
            updates.append(f"{key} = ?")
            values.append(value)

        if updates:
            values.append(job_id)
            with self._transaction() as conn:
                conn.execute(
                    f"UPDATE jobs SET {', '.join(updates)} WHERE id = ?",
                    values,
                )

        return self.get_job(job_id)

    def set_job_paused(self, job_id: int, paused: bool) -> None:
        """Persist the paused flag."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE jobs SET paused = ? WHERE id = ?",
                (1 if paused else 0, job_id),
            )

    def delete_job(self, job_id: int) -> None:
        """Delete a job and purge its run history."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM runs WHERE job_id = ?", (job_id,))
            conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))

    # =========================================================================
    # Run Operations
    # =========================================================================

    def create_run(self, job_id: int, started_at: str, log_file: Optional[str]) -> Run:
        """Insert a RUNNING run row."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO runs (job_id, started_at, log_file, status)
                VALUES (?, ?, ?, ?)
                """,
                (job_id, started_at, log_file, RunStatus.RUNNING.value),
            )
            run_id = cursor.lastrowid

        return Run(
            id=run_id,
            job_id=job_id,
            started_at=started_at,
            log_file=log_file,
        )

    def finish_run(
        self,
        run_id: int,
        status: RunStatus,
        finished_at: str,
        duration_ms: int,
        exit_code: Optional[int] = None,
        error: Optional[str] = None,
        cost_usd: Optional[float] = None,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None,
    ) -> Run:
        """
        Write the single terminal update of a run.

        Raises:
            RunNotFoundError: Unknown run id
            InvalidOperationError: Run already has a terminal status
        """
        if status == RunStatus.RUNNING:
            raise InvalidOperationError("Terminal update requires a terminal status")

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE runs
                   SET status = ?, finished_at = ?, duration_ms = ?, exit_code = ?,
                       error = ?, cost_usd = ?, input_tokens = ?, output_tokens = ?
                 WHERE id = ? AND status = ?
                """,
                (
                    status.value,
                    finished_at,
                    duration_ms,
                    exit_code,
                    error,
                    cost_usd,
                    input_tokens,
                    output_tokens,
                    run_id,
                    RunStatus.RUNNING.value,
                ),
            )
            updated = cursor.rowcount

        if updated == 0:
            run = self.get_run(run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            raise InvalidOperationError(
                f"Run {run_id} already finalized with status '{run.status.value}'"
            )

        return self.get_run(run_id)

    def record_skipped_run(self, job_id: int, reason: str) -> Run:
        """Insert an already-finalized SKIPPED run in a single statement."""
        now = now_iso()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO runs (job_id, started_at, finished_at, duration_ms, error, status)
                VALUES (?, ?, ?, 0, ?, ?)
                """,
                (job_id, now, now, reason, RunStatus.SKIPPED.value),
            )
            run_id = cursor.lastrowid

        return self.get_run(run_id)

    def get_run(self, run_id: int, job_id: Optional[int] = None) -> Optional[Run]:
        """Get a run by ID, optionally scoped to a job."""
        query = "SELECT * FROM runs WHERE id = ?"
        params: list = [run_id]
        if job_id is not None:
            query += " AND job_id = ?"
            params.append(job_id)

        with self._connection() as conn:
            row = conn.execute(query, params).fetchone()

        if row is None:
            return None

        return self._row_to_run(row)

    def _row_to_run(self, row: sqlite3.Row) -> Run:
        """Convert database row to Run entity."""
        return Run(
            id=row["id"],
            job_id=row["job_id"],
            started_at=row["started_at"],
            status=RunStatus(row["status"]),
            finished_at=row["finished_at"],
            exit_code=row["exit_code"],
            duration_ms=row["duration_ms"],
            log_file=row["log_file"],
            error=row["error"],
            cost_usd=row["cost_usd"],
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
        )

    def get_latest_run(self, job_id: int) -> Optional[Run]:
        """Get the most recently started run of a job."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM runs WHERE job_id = ? ORDER BY started_at DESC, id DESC LIMIT 1",
                (job_id,),
            ).fetchone()

        if row is None:
            return None

        return self._row_to_run(row)

    def list_runs(
        self,
        job_id: int,
        limit: int = 20,
        offset: int = 0,
        status: Optional[RunStatus] = None,
    ) -> list[Run]:
        """List runs of a job ordered by start time (newest first)."""
        query = "SELECT * FROM runs WHERE job_id = ?"
        params: list = [job_id]

        if status is not None:
            query += " AND status = ?"
            params.append(RunStatus(status).value)

        query += " ORDER BY started_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()

        return [self._row_to_run(row) for row in rows]

    def count_runs(self, job_id: int, status: Optional[RunStatus] = None) -> int:
        """Count runs of a job, optionally filtered by status."""
        query = "SELECT COUNT(*) FROM runs WHERE job_id = ?"
        params: list = [job_id]

        if status is not None:
            query += " AND status = ?"
            params.append(RunStatus(status).value)

        with self._connection() as conn:
            row = conn.execute(query, params).fetchone()

        return row[0]

    def daily_usage(self, now: Optional[datetime] = None, tz: Optional[tzinfo] = None) -> float:
        """
        Sum run costs since midnight across all jobs.

        Args:
            now: Reference time (defaults to the current time)
            tz: Zone whose calendar day counts (defaults to the host zone)

        Returns:
            Total cost in USD; 0.0 when no costed runs exist today
        """
        since = to_iso(local_midnight(now, tz))
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(cost_usd), 0.0) AS total
                  FROM runs
                 WHERE started_at >= ? AND cost_usd IS NOT NULL
                """,
                (since,),
            ).fetchone()

        return float(row["total"])

    def fail_orphaned_runs(self) -> int:
        """
        Finalize runs left RUNNING by a previous process.

        Called once at startup, before any trigger can fire.

        Returns:
            Number of runs finalized
        """
        now = now_iso()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE runs
                   SET status = ?, finished_at = ?, error = ?
                 WHERE status = ?
                """,
                (RunStatus.FAILED.value, now, ORPHANED_RUN_ERROR, RunStatus.RUNNING.value),
            )
            count = cursor.rowcount

        if count:
            logger.warning(f"Marked {count} orphaned run(s) as failed")

        return count
