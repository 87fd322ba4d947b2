from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import Connection, text

from .statuses import TERMINAL_JOB_STATUSES, JobStatus, parse_status


@dataclass(frozen=True, slots=True)
class JobRecord:
    """One migration attempt against a source."""
    id: int
    source_id: int
    status: JobStatus
    processed_rows: int
    failed_rows: int
    error_message: Optional[str]


def _to_record(row: Any) -> JobRecord:
    return JobRecord(
        id=int(row.id),
        source_id=int(row.source_id),
        status=parse_status(JobStatus, row.status),
        processed_rows=int(row.processed_rows),
        failed_rows=int(row.failed_rows),
        error_message=row.error_message,
    )


def latest_job(conn: Connection, *, source_id: int) -> JobRecord | None:
    row = conn.execute(
        text(
            """
            SELECT id, source_id, status, processed_rows, failed_rows, error_message
            FROM jobs
            WHERE source_id = :source_id
            ORDER BY id DESC
            LIMIT 1
            """
        ),
        {"source_id": source_id},
    ).one_or_none()
    return None if row is None else _to_record(row)


def list_jobs(conn: Connection, *, source_id: int) -> list[JobRecord]:
    rows = conn.execute(
        text(
            """
            SELECT id, source_id, status, processed_rows, failed_rows, error_message
            FROM jobs WHERE source_id = :source_id ORDER BY id
            """
        ),
        {"source_id": source_id},
    )
    return [_to_record(r) for r in rows]


def create_job(conn: Connection, *, source_id: int) -> int:
    """Insert a `PENDING` job for the source, returns its id."""
    return conn.execute(
        text(
            """
            INSERT INTO jobs (source_id, status, start_time)
            VALUES (:source_id, :status, CURRENT_TIMESTAMP)
            RETURNING id
            """
        ),
        {"source_id": source_id, "status": JobStatus.PENDING.value},
    ).scalar_one()


def open_job(conn: Connection, *, source_id: int) -> int:
    """
    Returns the job the next pass over this source should run under.

    - no job yet, or the latest ended `COMPLETED`/`FAILED` -> new job
    - otherwise the latest (still open) job is reused
    """
    job = latest_job(conn, source_id=source_id)
    if job is None or job.status in TERMINAL_JOB_STATUSES:
        return create_job(conn, source_id=source_id)
    return job.id


def update_job_status(
    conn: Connection,
    *,
    job_id: int,
    status: JobStatus,
    error_message: Optional[str] = None,
) -> None:
    """Updates a job's status. Terminal statuses also stamp `end_time`."""
    if status in TERMINAL_JOB_STATUSES:
        sql = """
            UPDATE jobs
            SET status = :status, error_message = :error_message, end_time = CURRENT_TIMESTAMP
            WHERE id = :id
        """
    else:
        sql = "UPDATE jobs SET status = :status, error_message = :error_message WHERE id = :id"
    conn.execute(text(sql), {"status": status.value, "error_message": error_message, "id": job_id})


def increment_job_progress(conn: Connection, *, job_id: int, processed: int = 0, failed: int = 0) -> None:
    conn.execute(
        text(
            """
            UPDATE jobs
            SET processed_rows = processed_rows + :processed,
                failed_rows = failed_rows + :failed
            WHERE id = :id
            """
        ),
        {"processed": processed, "failed": failed, "id": job_id},
    )
