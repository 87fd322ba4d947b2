from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Connection, text

from .statuses import RowStatus, SourceStatus, parse_status


@dataclass(frozen=True, slots=True)
class SourceRecord:
    """One row of `sources`: a single input file and its counters."""
    id: int
    path: str
    status: SourceStatus
    total_rows: int
    processed_rows: int
    failed_rows: int
    last_processed_at: Optional[datetime | str]    # sqlite hands back text
    error_message: Optional[str]
    has_failed_rows: bool


_SELECT_SOURCE = """
    SELECT id, path, status, total_rows, processed_rows, failed_rows,
           last_processed_at, error_message, has_failed_rows
    FROM sources
"""


def _to_record(row: Any) -> SourceRecord:
    return SourceRecord(
        id=int(row.id),
        path=row.path,
        status=parse_status(SourceStatus, row.status),
        total_rows=int(row.total_rows),
        processed_rows=int(row.processed_rows),
        failed_rows=int(row.failed_rows),
        last_processed_at=row.last_processed_at,
        error_message=row.error_message,
        has_failed_rows=bool(row.has_failed_rows),
    )


def find_source_id(conn: Connection, *, path: str) -> int | None:
    """Returns the id of the source registered for `path`, if any."""
    return conn.execute(text("SELECT id FROM sources WHERE path = :path"), {"path": path}).scalar_one_or_none()


def create_source(conn: Connection, *, path: str) -> int:
    """Insert a `PENDING` source for `path`, returns its id."""
    return conn.execute(
        text(
            """
            INSERT INTO sources (path, status)
            VALUES (:path, :status)
            RETURNING id
            """
        ),
        {"path": path, "status": SourceStatus.PENDING.value},
    ).scalar_one()


def get_or_create_source(conn: Connection, *, path: str) -> int:
    source_id = find_source_id(conn, path=path)
    if source_id is None:
        source_id = create_source(conn, path=path)
    return source_id


def get_source(conn: Connection, *, source_id: int) -> SourceRecord | None:
    row = conn.execute(text(_SELECT_SOURCE + " WHERE id = :id"), {"id": source_id}).one_or_none()
    return None if row is None else _to_record(row)


def list_sources(conn: Connection) -> list[SourceRecord]:
    """Every registered source, oldest first."""
    return [_to_record(r) for r in conn.execute(text(_SELECT_SOURCE + " ORDER BY id"))]


def set_source_status(
    conn: Connection,
    *,
    source_id: int,
    status: SourceStatus,
    error_message: Optional[str] = None,
) -> None:
    """
    Move a source to `status` and stamp `last_processed_at`.

    `error_message` is overwritten every time, so a successful pass clears
    the error left by an earlier failed one.
    """
    conn.execute(
        text(
            """
            UPDATE sources
            SET status = :status,
                error_message = :error_message,
                last_processed_at = CURRENT_TIMESTAMP
            WHERE id = :id
            """
        ),
        {"status": status.value, "error_message": error_message, "id": source_id},
    )


def increment_source_counters(conn: Connection, *, source_id: int, processed: int = 0, failed: int = 0) -> None:
    """Atomic `col = col + n` increments, never read-modify-write."""
    conn.execute(
        text(
            """
            UPDATE sources
            SET processed_rows = processed_rows + :processed,
                failed_rows = failed_rows + :failed
            WHERE id = :id
            """
        ),
        {"processed": processed, "failed": failed, "id": source_id},
    )


def set_total_rows(conn: Connection, *, source_id: int, total_rows: int) -> None:
    conn.execute(
        text("UPDATE sources SET total_rows = :total_rows WHERE id = :id"),
        {"total_rows": total_rows, "id": source_id},
    )


def set_has_failed_rows(conn: Connection, *, source_id: int, value: bool) -> None:
    conn.execute(
        text("UPDATE sources SET has_failed_rows = :value WHERE id = :id"),
        {"value": value, "id": source_id},
    )


def sync_failed_rows(conn: Connection, *, source_id: int) -> int:
    """
    Set `failed_rows` to the number of rows currently `FAILED` in the ledger.

    The per-batch increments count every failure of every pass; once a
    source is finalized the counter is brought back in line with what is
    actually left failed. Returns the new count.
    """
    conn.execute(
        text(
            """
            UPDATE sources
            SET failed_rows = (
                SELECT COUNT(*) FROM row_progress
                WHERE row_progress.source_id = sources.id
                  AND row_progress.status = :failed
            )
            WHERE id = :id
            """
        ),
        {"failed": RowStatus.FAILED.value, "id": source_id},
    )
    return conn.execute(
        text("SELECT failed_rows FROM sources WHERE id = :id"), {"id": source_id}
    ).scalar_one()
