"""
Durable storage for jobs and job runs.

Backed by a SQLite database. All access goes through a single connection
guarded by a lock, so worker threads finalizing runs and the caller's thread
observe each other's writes immediately.
"""

import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Union

from scheduler.errors import AlreadyRunningError, NotFoundError
from scheduler.models import Job, JobRun, PENDING, RUNNING, SCHEDULED, TERMINAL_RUN_STATUSES

logger = logging.getLogger(__name__)

JOB_COLUMNS = (
    "id, worktree_path, name, command, cron, status, "
    "last_run, next_run, created_at, updated_at"
)
RUN_COLUMNS = "id, job_id, started_at, finished_at, exit_code, stdout, stderr, status"

# Fields callers may patch; everything else is owned by the store
JOB_PATCH_FIELDS = ('status', 'last_run', 'next_run')
RUN_PATCH_FIELDS = ('stdout', 'stderr', 'exit_code', 'status')


def _now() -> str:
    return datetime.now().isoformat(timespec='microseconds')


def _to_db(value):
    if isinstance(value, datetime):
        return value.isoformat(timespec='microseconds')
    return value


class RunRecordStore:
    """Persists Job and JobRun records in SQLite"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        """
        Initialize the store.

        Args:
            db_path: Path to the SQLite database file, or ":memory:"
        """
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.execute("PRAGMA foreign_keys = ON")
        if self.db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode = WAL")
        self._create_tables()
        logger.info(f"Initialized run record store with database: {self.db_path}")

    def _create_tables(self):
        """Create database tables if they don't exist"""
        with self._lock, self.conn:
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    worktree_path TEXT NOT NULL,
                    name TEXT NOT NULL,
                    command TEXT NOT NULL,
                    cron TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    last_run TEXT,
                    next_run TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS job_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id INTEGER NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    exit_code INTEGER,
                    stdout TEXT NOT NULL DEFAULT '',
                    stderr TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'running',
                    FOREIGN KEY (job_id) REFERENCES jobs(id) ON DELETE CASCADE
                )
            """)
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_worktree ON jobs(worktree_path)")
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_job_runs_job_id ON job_runs(job_id)")
        logger.debug("Database tables created/verified")

    # Jobs

    def create_job(self, worktree_path: str, name: str, command: str, cron: Optional[str] = None) -> Job:
        """Create a job. Jobs with a cron expression start out 'scheduled'."""
        status = SCHEDULED if cron else PENDING
        now = _now()
        with self._lock, self.conn:
            cursor = self.conn.execute(
                """
                INSERT INTO jobs (worktree_path, name, command, cron, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (worktree_path, name, command, cron or None, status, now, now)
            )
            job_id = cursor.lastrowid
        return self.get_job(job_id)

    def get_job(self, job_id: int) -> Optional[Job]:
        with self._lock:
            row = self.conn.execute(
                f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return Job.from_row(row) if row else None

    def list_jobs(self, worktree_path: Optional[str] = None) -> List[Job]:
        """List jobs, newest first, optionally only those of one worktree"""
        with self._lock:
            if worktree_path:
                rows = self.conn.execute(
                    f"SELECT {JOB_COLUMNS} FROM jobs WHERE worktree_path = ? "
                    "ORDER BY created_at DESC, id DESC",
                    (worktree_path,)
                ).fetchall()
            else:
                rows = self.conn.execute(
                    f"SELECT {JOB_COLUMNS} FROM jobs ORDER BY created_at DESC, id DESC"
                ).fetchall()
        return [Job.from_row(row) for row in rows]

    def update_job(self, job_id: int, **updates) -> Job:
        """
        Apply a partial update to a job.

        Only the supplied fields change; updated_at is always refreshed.

        Raises:
            ValueError: If a field cannot be patched
            NotFoundError: If the job does not exist
        """
        unknown = set(updates) - set(JOB_PATCH_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update job field(s): {', '.join(sorted(unknown))}")

        set_clauses = ["updated_at = ?"]
        values = [_now()]
        for key, value in updates.items():
            set_clauses.append(f"{key} = ?")
            values.append(_to_db(value))
        values.append(job_id)

        with self._lock, self.conn:
            cursor = self.conn.execute(
                f"UPDATE jobs SET {', '.join(set_clauses)} WHERE id = ?", values
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Job not found: {job_id}")
        return self.get_job(job_id)

    def delete_job(self, job_id: int):
        """
        Delete a job together with all of its runs.

        Raises:
            NotFoundError: If the job does not exist
        """
        with self._lock, self.conn:
            self.conn.execute("DELETE FROM job_runs WHERE job_id = ?", (job_id,))
            cursor = self.conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            if cursor.rowcount == 0:
                raise NotFoundError(f"Job not found: {job_id}")
        logger.debug(f"Deleted job {job_id} and its runs")

    # Job runs

    def create_job_run(self, job_id: int, exclusive: bool = False) -> JobRun:
        """
        Create a run record in 'running' state.

        Args:
            job_id: Job the run belongs to
            exclusive: Refuse if the job already has a run recorded as
                'running', including one started by another process sharing
                this database. The check and the insert are one statement.

        Raises:
            NotFoundError: If the job does not exist
            AlreadyRunningError: If exclusive and a run is already in flight
        """
        with self._lock, self.conn:
            if self.conn.execute("SELECT 1 FROM jobs WHERE id = ?", (job_id,)).fetchone() is None:
                raise NotFoundError(f"Job not found: {job_id}")
            if exclusive:
                cursor = self.conn.execute(
                    "INSERT INTO job_runs (job_id, started_at, status) "
                    "SELECT ?, ?, ? WHERE NOT EXISTS "
                    "(SELECT 1 FROM job_runs WHERE job_id = ? AND status = ?)",
                    (job_id, _now(), RUNNING, job_id, RUNNING)
                )
                if cursor.rowcount == 0:
                    raise AlreadyRunningError(f"Job already has a run in flight: {job_id}")
            else:
                cursor = self.conn.execute(
                    "INSERT INTO job_runs (job_id, started_at, status) VALUES (?, ?, ?)",
                    (job_id, _now(), RUNNING)
                )
            run_id = cursor.lastrowid
        return self.get_job_run(run_id)

    def get_job_run(self, run_id: int) -> Optional[JobRun]:
        with self._lock:
            row = self.conn.execute(
                f"SELECT {RUN_COLUMNS} FROM job_runs WHERE id = ?", (run_id,)
            ).fetchone()
        return JobRun.from_row(row) if row else None

    def update_job_run(self, run_id: int, **updates) -> JobRun:
        """
        Apply a partial update to a run.

        Setting a terminal status also stamps finished_at in the same write.

        Raises:
            ValueError: If a field cannot be patched
            NotFoundError: If the run does not exist
        """
        unknown = set(updates) - set(RUN_PATCH_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update run field(s): {', '.join(sorted(unknown))}")
        if not updates:
            run = self.get_job_run(run_id)
            if run is None:
                raise NotFoundError(f"Job run not found: {run_id}")
            return run

        set_clauses = []
        values = []
        for key, value in updates.items():
            set_clauses.append(f"{key} = ?")
            values.append(value)
        if updates.get('status') in TERMINAL_RUN_STATUSES:
            set_clauses.append("finished_at = ?")
            values.append(_now())
        values.append(run_id)

        with self._lock, self.conn:
            cursor = self.conn.execute(
                f"UPDATE job_runs SET {', '.join(set_clauses)} WHERE id = ?", values
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Job run not found: {run_id}")
        return self.get_job_run(run_id)

    def get_job_runs(self, job_id: int, limit: Optional[int] = 10) -> List[JobRun]:
        """Get runs of a job, most recent first"""
        query = f"SELECT {RUN_COLUMNS} FROM job_runs WHERE job_id = ? ORDER BY started_at DESC, id DESC"
        params = [job_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [JobRun.from_row(row) for row in rows]

    def list_running_runs(self) -> List[JobRun]:
        """Get every run still recorded as 'running'"""
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {RUN_COLUMNS} FROM job_runs WHERE status = ? ORDER BY id",
                (RUNNING,)
            ).fetchall()
        return [JobRun.from_row(row) for row in rows]

    def close(self):
        """Close the database connection"""
        with self._lock:
            self.conn.close()
