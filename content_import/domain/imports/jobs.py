"""
Persistent tracking for batch import jobs.

The processor owns live jobs and writes a snapshot here after every state
change. ``InMemoryJobStore`` serves tests and single-process runs;
``SqlJobStore`` keeps the job JSON in an ``import_batch_jobs`` table so
history survives restarts.
"""
from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, ProgrammingError

from content_import.api.schemas.shared import TERMINAL_STATUSES, BatchJob, JobStatus


class JobStore(Protocol):
    def save(self, job: BatchJob) -> None: ...

    def get(self, job_id: str) -> Optional[BatchJob]: ...

    def list(
        self, user_id: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[BatchJob], int]: ...

    def delete(self, job_id: str) -> bool: ...

    def purge_terminal_before(self, cutoff: datetime) -> int: ...


class InMemoryJobStore:
    def __init__(self) -> None:
        self._jobs: Dict[str, BatchJob] = {}
        self._lock = threading.Lock()

    def save(self, job: BatchJob) -> None:
        with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)

    def get(self, job_id: str) -> Optional[BatchJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def list(
        self, user_id: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[BatchJob], int]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if user_id is None or j.user_id == user_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy(deep=True) for j in jobs[offset:offset + limit]], len(jobs)

    def delete(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def purge_terminal_before(self, cutoff: datetime) -> int:
        with self._lock:
            stale = [
                job_id
                for job_id, job in self._jobs.items()
                if job.status in TERMINAL_STATUSES and (job.completed_at or job.updated_at) < cutoff
            ]
            for job_id in stale:
                del self._jobs[job_id]
        return len(stale)


class SqlJobStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._table_initialized = False
        self._table_init_lock = threading.Lock()

    def ensure_table(self) -> None:
        """Create the import_batch_jobs table on-demand."""
        if self._table_initialized:
            return
        with self._table_init_lock:
            if self._table_initialized:
                return
            with self._engine.begin() as conn:
                conn.execute(text("""
                    CREATE TABLE IF NOT EXISTS import_batch_jobs (
                        id VARCHAR(64) PRIMARY KEY,
                        user_id VARCHAR(255) NOT NULL,
                        status VARCHAR(50) NOT NULL,
                        payload TEXT NOT NULL,
                        created_at VARCHAR(40) NOT NULL,
                        finished_at VARCHAR(40)
                    )
                """))
                conn.execute(text(
                    "CREATE INDEX IF NOT EXISTS idx_import_batch_jobs_user ON import_batch_jobs(user_id)"
                ))
            self._table_initialized = True

    def _reset_table_flag(self) -> None:
        with self._table_init_lock:
            self._table_initialized = False

    def _run_with_table_retry(self, operation: Callable[[], Any]) -> Any:
        self.ensure_table()
        try:
            return operation()
        except (ProgrammingError, OperationalError) as error:
            if "import_batch_jobs" not in str(error):
                raise
            self._reset_table_flag()
            self.ensure_table()
            return operation()

    def save(self, job: BatchJob) -> None:
        finished = job.completed_at or (job.updated_at if job.status in TERMINAL_STATUSES else None)
        params = {
            "id": job.id,
            "user_id": job.user_id,
            "status": job.status.value,
            "payload": job.model_dump_json(),
            "created_at": job.created_at.isoformat(),
            "finished_at": finished.isoformat() if finished else None,
        }

        def _upsert() -> None:
            with self._engine.begin() as conn:
                result = conn.execute(
                    text("""
                        UPDATE import_batch_jobs
                        SET status = :status, payload = :payload, finished_at = :finished_at
                        WHERE id = :id
                    """),
                    params,
                )
                if not result.rowcount:
                    conn.execute(
                        text("""
                            INSERT INTO import_batch_jobs (id, user_id, status, payload, created_at, finished_at)
                            VALUES (:id, :user_id, :status, :payload, :created_at, :finished_at)
                        """),
                        params,
                    )

        self._run_with_table_retry(_upsert)

    def get(self, job_id: str) -> Optional[BatchJob]:
        def _select() -> Optional[BatchJob]:
            with self._engine.connect() as conn:
                row = conn.execute(
                    text("SELECT payload FROM import_batch_jobs WHERE id = :id"), {"id": job_id}
                ).fetchone()
            return BatchJob.model_validate_json(row[0]) if row else None

        return self._run_with_table_retry(_select)

    def list(
        self, user_id: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[BatchJob], int]:
        where = "WHERE user_id = :user_id" if user_id else ""
        params: Dict[str, Any] = {"user_id": user_id, "limit": limit, "offset": offset}

        def _select() -> Tuple[List[BatchJob], int]:
            with self._engine.connect() as conn:
                total = conn.execute(
                    text(f"SELECT COUNT(*) FROM import_batch_jobs {where}"), params
                ).scalar() or 0
                rows = conn.execute(
                    text(f"""
                        SELECT payload FROM import_batch_jobs {where}
                        ORDER BY created_at DESC
                        LIMIT :limit OFFSET :offset
                    """),
                    params,
                ).fetchall()
            return [BatchJob.model_validate_json(row[0]) for row in rows], int(total)

        return self._run_with_table_retry(_select)

    def delete(self, job_id: str) -> bool:
        def _delete() -> bool:
            with self._engine.begin() as conn:
                result = conn.execute(
                    text("DELETE FROM import_batch_jobs WHERE id = :id"), {"id": job_id}
                )
            return (result.rowcount or 0) > 0

        return self._run_with_table_retry(_delete)

    def purge_terminal_before(self, cutoff: datetime) -> int:
        statuses = [status.value for status in TERMINAL_STATUSES]
        placeholders = ", ".join(f":status_{i}" for i in range(len(statuses)))
        params: Dict[str, Any] = {f"status_{i}": value for i, value in enumerate(statuses)}
        params["cutoff"] = cutoff.isoformat()

        def _purge() -> int:
            with self._engine.begin() as conn:
                result = conn.execute(
                    text(f"""
                        DELETE FROM import_batch_jobs
                        WHERE status IN ({placeholders})
                        AND finished_at IS NOT NULL AND finished_at < :cutoff
                    """),
                    params,
                )
            return result.rowcount or 0

        return self._run_with_table_retry(_purge)


def is_active(job: BatchJob) -> bool:
    return job.status in (JobStatus.PROCESSING, JobStatus.PAUSED, JobStatus.QUEUED)
