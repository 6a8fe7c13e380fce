"""SQLite job store for Agentvisor."""

from __future__ import annotations

import json
import shutil
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

from loguru import logger

from agentvisor.config import DEFAULT_DB_FILE
from agentvisor.core.store import JobStore, JobStoreError
from agentvisor.models import VALID_TRANSITIONS, FailureKind, Job, JobResult, JobStatus, utcnow

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'pending',
    executable TEXT NOT NULL,
    arguments TEXT NOT NULL DEFAULT '',
    executable_path TEXT,
    working_directory TEXT,
    environment TEXT NOT NULL DEFAULT '{}',
    agent_family TEXT,
    model TEXT,
    priority INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    depends_on_job_id TEXT,
    parent_job_id TEXT,
    max_tokens INTEGER,
    max_cost_usd REAL,
    max_execution_minutes REAL,
    stall_timeout_seconds REAL,
    max_restarts INTEGER NOT NULL DEFAULT 3,
    success_patterns TEXT NOT NULL DEFAULT '[]',
    failure_patterns TEXT NOT NULL DEFAULT '[]',
    worker_instance_id TEXT,
    process_id INTEGER,
    started_at TEXT,
    last_heartbeat_at TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    completed_at TEXT,
    execution_duration_seconds REAL,
    exit_code INTEGER,
    output TEXT,
    error_output TEXT,
    error_message TEXT,
    failure_kind TEXT,
    session_summary TEXT,
    success_pattern_matches TEXT NOT NULL DEFAULT '[]',
    failure_pattern_matches TEXT NOT NULL DEFAULT '[]',
    model_used TEXT,
    tokens_used INTEGER NOT NULL DEFAULT 0,
    cost_usd REAL NOT NULL DEFAULT 0
);

-- Matches the eligibility ordering (status, priority desc, created_at asc)
CREATE INDEX IF NOT EXISTS idx_jobs_scheduling ON jobs (status, priority, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_depends_on ON jobs (depends_on_job_id);
CREATE INDEX IF NOT EXISTS idx_jobs_parent ON jobs (parent_job_id);
"""

_JSON_COLUMNS = ("environment", "success_patterns", "failure_patterns",
                 "success_pattern_matches", "failure_pattern_matches")
_DATETIME_COLUMNS = ("created_at", "started_at", "last_heartbeat_at", "completed_at")

# Statuses in which a job belongs to a worker
_ACTIVE_STATUSES = (JobStatus.RUNNING, JobStatus.PAUSED, JobStatus.AWAITING_INTERACTION)

_ELIGIBLE_SQL = """
SELECT j.* FROM jobs j
LEFT JOIN jobs d ON d.id = j.depends_on_job_id
WHERE j.status = 'pending'
  AND (j.depends_on_job_id IS NULL OR d.status = 'completed')
ORDER BY j.priority DESC, j.created_at ASC, j.id ASC
"""


def _ts(value: datetime | None) -> str | None:
    """Fixed-width UTC timestamp so text order equals time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _sources_for(target: JobStatus) -> list[JobStatus]:
    """Statuses from which ``target`` can be reached."""
    return [status for status, targets in VALID_TRANSITIONS.items() if target in targets]


class Database(JobStore):
    """SQLite implementation of the job store."""

    def __init__(self, db_path: Path | None = None):
        """Initialize the database."""
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_FILE
        self._ensure_db()

    def _ensure_db(self) -> None:
        """Ensure the database exists and is up to date."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._init_schema()
        except sqlite3.DatabaseError as e:
            message = str(e).lower()
            if "malformed" not in message and "not a database" not in message:
                raise

            logger.error(f"Database corruption detected at {self.db_path}: {e}")
            backup_path = self.db_path.with_suffix(".db.corrupt")
            shutil.move(str(self.db_path), str(backup_path))
            logger.warning(f"Moved corrupted database to {backup_path}")
            self._init_schema()
            logger.info(f"Created fresh database at {self.db_path}")

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA_SQL)

            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
                logger.debug(f"Initialized database at {self.db_path}")

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # Conversion

    def _job_to_row(self, job: Job) -> dict[str, Any]:
        row = job.model_dump(mode="python")
        for column in _JSON_COLUMNS:
            row[column] = json.dumps(row[column])
        for column in _DATETIME_COLUMNS:
            row[column] = _ts(row[column])
        row["status"] = job.status.value
        row["failure_kind"] = job.failure_kind.value if job.failure_kind else None
        return row

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        """Convert a database row to a Job."""
        data = dict(row)
        for column in _JSON_COLUMNS:
            data[column] = json.loads(data[column]) if data[column] else ([] if column != "environment" else {})
        for column in _DATETIME_COLUMNS:
            data[column] = datetime.fromisoformat(data[column]) if data[column] else None
        return Job.model_validate(data)

    # Queries

    def add_job(self, job: Job) -> Job:
        """Store a new job."""
        if job.depends_on_job_id == job.id:
            raise JobStoreError(f"Job '{job.id}' cannot depend on itself")

        row = self._job_to_row(job)
        columns = ", ".join(row)
        placeholders = ", ".join(f":{column}" for column in row)

        with self._connect() as conn:
            if job.depends_on_job_id:
                found = conn.execute("SELECT 1 FROM jobs WHERE id = ?", (job.depends_on_job_id,)).fetchone()
                if found is None:
                    raise JobStoreError(f"Job '{job.id}' depends on unknown job '{job.depends_on_job_id}'")
            try:
                conn.execute(f"INSERT INTO jobs ({columns}) VALUES ({placeholders})", row)
            except sqlite3.IntegrityError as e:
                raise JobStoreError(f"Job '{job.id}' already exists") from e

        logger.debug(f"Added job '{job.id}' (priority {job.priority})")
        return job

    def get_job(self, job_id: str) -> Job | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return self._row_to_job(row) if row else None

    def list_jobs(self, status: JobStatus | None = None) -> list[Job]:
        with self._connect() as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM jobs ORDER BY created_at, id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM jobs WHERE status = ? ORDER BY created_at, id", (status.value,)
                ).fetchall()
            return [self._row_to_job(row) for row in rows]

    def get_children(self, parent_job_id: str) -> list[Job]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE parent_job_id = ? ORDER BY created_at, id", (parent_job_id,)
            ).fetchall()
            return [self._row_to_job(row) for row in rows]

    def get_eligible_pending_jobs(self, limit: int | None = None) -> list[Job]:
        sql = _ELIGIBLE_SQL
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)

        with self._connect() as conn:
            return [self._row_to_job(row) for row in conn.execute(sql, params).fetchall()]

    def get_running_jobs(self) -> list[Job]:
        return self.list_jobs(JobStatus.RUNNING)

    def get_dependency_failed_jobs(self) -> list[Job]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT j.* FROM jobs j
                JOIN jobs d ON d.id = j.depends_on_job_id
                WHERE j.status = 'pending' AND d.status = 'failed'
                ORDER BY j.created_at, j.id
                """
            ).fetchall()
            return [self._row_to_job(row) for row in rows]

    # State changes

    def _update(
        self,
        job_id: str,
        sets: dict[str, Any],
        sources: list[JobStatus],
        worker_instance_id: str | None = None,
        raw_sets: tuple[str, ...] = (),
        raw_params: tuple = (),
        extra_where: str = "",
        extra_params: tuple = (),
        action: str = "update",
    ) -> bool:
        """Conditionally update a job that is in one of ``sources``."""
        assignments = [f"{column} = ?" for column in sets] + list(raw_sets)
        status_marks = ", ".join("?" for _ in sources)
        sql = f"UPDATE jobs SET {', '.join(assignments)} WHERE id = ? AND status IN ({status_marks})"
        params: list[Any] = [*sets.values(), *raw_params, job_id, *(s.value for s in sources)]

        if worker_instance_id is not None:
            sql += " AND worker_instance_id = ?"
            params.append(worker_instance_id)
        if extra_where:
            sql += f" AND {extra_where}"
            params.extend(extra_params)

        with self._connect() as conn:
            updated = conn.execute(sql, params).rowcount == 1
            if not updated:
                row = conn.execute(
                    "SELECT status, worker_instance_id FROM jobs WHERE id = ?", (job_id,)
                ).fetchone()

        if not updated:
            if row is None:
                logger.warning(f"Cannot {action} job '{job_id}': not found")
            else:
                logger.warning(
                    f"Refused to {action} job '{job_id}' "
                    f"(status: {row['status']}, worker: {row['worker_instance_id']})"
                )
        return updated

    def mark_running(self, job_id: str, worker_instance_id: str, process_id: int | None) -> bool:
        """Claim a Pending job, or refresh the process of a job this worker owns."""
        now = _ts(utcnow())
        sets = {
            "status": JobStatus.RUNNING.value,
            "worker_instance_id": worker_instance_id,
            "process_id": process_id,
            "last_heartbeat_at": now,
        }
        return self._update(
            job_id,
            sets,
            _sources_for(JobStatus.RUNNING),
            raw_sets=("started_at = COALESCE(started_at, ?)",),
            raw_params=(now,),
            extra_where="(status = 'pending' OR worker_instance_id = ?)",
            extra_params=(worker_instance_id,),
            action="mark running",
        )

    def heartbeat(self, job_id: str, timestamp: datetime, worker_instance_id: str | None = None) -> bool:
        return self._update(
            job_id,
            {"last_heartbeat_at": _ts(timestamp)},
            list(_ACTIVE_STATUSES),
            worker_instance_id=worker_instance_id,
            action="heartbeat",
        )

    def update_usage(self, job_id: str, tokens_used: int, cost_usd: float) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE jobs SET tokens_used = ?, cost_usd = ? WHERE id = ?",
                (tokens_used, cost_usd, job_id),
            )
            return cursor.rowcount == 1

    def _result_sets(self, result: JobResult) -> dict[str, Any]:
        return {
            "exit_code": result.exit_code,
            "execution_duration_seconds": result.duration_seconds,
            "output": result.output,
            "error_output": result.error_output,
            "session_summary": result.session_summary,
            "success_pattern_matches": json.dumps(result.success_pattern_matches),
            "failure_pattern_matches": json.dumps(result.failure_pattern_matches),
            "model_used": result.model_used,
            "tokens_used": result.tokens_used,
            "cost_usd": result.cost_usd,
        }

    def mark_completed(self, job_id: str, result: JobResult, worker_instance_id: str | None = None) -> bool:
        sets = {
            "status": JobStatus.COMPLETED.value,
            "completed_at": _ts(utcnow()),
            "process_id": None,
            "error_message": None,
            "failure_kind": None,
            **self._result_sets(result),
        }
        updated = self._update(
            job_id,
            sets,
            _sources_for(JobStatus.COMPLETED),
            worker_instance_id=worker_instance_id,
            action="complete",
        )
        if updated:
            logger.info(f"Job '{job_id}' completed")
        return updated

    def mark_failed(
        self,
        job_id: str,
        reason: str,
        kind: FailureKind | None = None,
        result: JobResult | None = None,
        worker_instance_id: str | None = None,
    ) -> bool:
        sets = {
            "status": JobStatus.FAILED.value,
            "completed_at": _ts(utcnow()),
            "process_id": None,
            "error_message": reason,
            "failure_kind": kind.value if kind else None,
        }
        if result is not None:
            sets.update(self._result_sets(result))

        sources = _sources_for(JobStatus.FAILED)
        extra_where = ""
        if worker_instance_id is not None:
            # Pending jobs have no owner; only fence the active ones
            extra_where = "(status = 'pending' OR worker_instance_id = ?)"

        updated = self._update(
            job_id,
            sets,
            sources,
            extra_where=extra_where,
            extra_params=(worker_instance_id,) if worker_instance_id is not None else (),
            action="fail",
        )
        if updated:
            logger.info(f"Job '{job_id}' failed: {reason}")
        return updated

    def requeue(
        self,
        job_id: str,
        reason: str | None = None,
        kind: FailureKind | None = None,
        count_retry: bool = True,
        worker_instance_id: str | None = None,
    ) -> bool:
        sets = {
            "status": JobStatus.PENDING.value,
            "worker_instance_id": None,
            "process_id": None,
            "started_at": None,
            "last_heartbeat_at": None,
            "error_message": reason,
            "failure_kind": kind.value if kind else None,
        }
        raw_sets: tuple[str, ...] = ()
        extra_where = ""
        if count_retry:
            raw_sets = ("retry_count = retry_count + 1",)
            extra_where = "retry_count < max_retries"

        updated = self._update(
            job_id,
            sets,
            _sources_for(JobStatus.PENDING),
            worker_instance_id=worker_instance_id,
            raw_sets=raw_sets,
            extra_where=extra_where,
            action="requeue",
        )
        if updated:
            logger.info(f"Requeued job '{job_id}'" + (f": {reason}" if reason else ""))
        return updated
