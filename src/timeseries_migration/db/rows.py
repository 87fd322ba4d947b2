from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Mapping, Optional, Sequence

from sqlalchemy import Connection, bindparam, text

from .statuses import REPLAYABLE_ROW_STATUSES, RowStatus, parse_status

# identities per `IN (...)` statement, keeps bound parameters well under driver limits
CHUNK_SIZE = 500


@dataclass(frozen=True, slots=True)
class RowUpsert:
    """A row status the batch reader wants recorded."""
    row_identity: str
    row_number: int
    status: RowStatus
    error_message: Optional[str] = None


@dataclass(frozen=True, slots=True)
class RowProgress:
    """One row of the per-row ledger."""
    source_id: int
    row_identity: str
    row_number: int
    status: RowStatus
    error_message: Optional[str]
    retry_count: int


def _chunks(items: Sequence[str]) -> Iterator[list[str]]:
    for i in range(0, len(items), CHUNK_SIZE):
        yield list(items[i:i + CHUNK_SIZE])


def _failed_inc(status: RowStatus) -> int:
    # retry_count grows by one on every transition *into* FAILED
    return 1 if status is RowStatus.FAILED else 0


def _to_progress(row: Any) -> RowProgress:
    return RowProgress(
        source_id=int(row.source_id),
        row_identity=row.row_identity,
        row_number=int(row.row_number),
        status=parse_status(RowStatus, row.status),
        error_message=row.error_message,
        retry_count=int(row.retry_count),
    )


_SELECT_ROWS = """
    SELECT source_id, row_identity, row_number, status, error_message, retry_count
    FROM row_progress
"""


## -- writes

def upsert_rows(conn: Connection, *, source_id: int, rows: Sequence[RowUpsert]) -> None:
    """
    Insert each row if unseen, otherwise move it to the new status.

    Idempotent on `(source_id, row_identity)`: re-reading the same file
    never creates a second ledger row. A first-time `FAILED` insert starts
    `retry_count` at 1; an update only bumps it when the row was not
    already `FAILED`.
    """
    if not rows:
        return
    conn.execute(
        text(
            """
            INSERT INTO row_progress
                (source_id, row_identity, row_number, status, error_message, retry_count, created_at, updated_at)
            VALUES
                (:source_id, :row_identity, :row_number, :status, :error_message, :failed_inc,
                 CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
            ON CONFLICT (source_id, row_identity) DO UPDATE SET
                status = excluded.status,
                error_message = excluded.error_message,
                updated_at = CURRENT_TIMESTAMP,
                retry_count = row_progress.retry_count
                    + CASE WHEN row_progress.status <> 'FAILED' THEN excluded.retry_count ELSE 0 END
            """
        ),
        [
            {
                "source_id": source_id,
                "row_identity": r.row_identity,
                "row_number": r.row_number,
                "status": r.status.value,
                "error_message": r.error_message,
                "failed_inc": _failed_inc(r.status),
            }
            for r in rows
        ],
    )


_UPDATE_STATUS = text(
    """
    UPDATE row_progress
    SET status = :status,
        error_message = :error_message,
        updated_at = CURRENT_TIMESTAMP,
        retry_count = CASE WHEN status <> 'FAILED' THEN retry_count + :failed_inc ELSE retry_count END
    WHERE source_id = :source_id AND row_identity IN :ids
    """
).bindparams(bindparam("ids", expanding=True))


def update_row_statuses(
    conn: Connection,
    *,
    source_id: int,
    row_identities: Sequence[str],
    status: RowStatus,
    error_message: Optional[str] = None,
) -> int:
    """Bulk move the listed rows to one status. Returns the number of rows touched."""
    touched = 0
    for ids in _chunks(row_identities):
        result = conn.execute(
            _UPDATE_STATUS,
            {
                "status": status.value,
                "error_message": error_message,
                "failed_inc": _failed_inc(status),
                "source_id": source_id,
                "ids": ids,
            },
        )
        touched += result.rowcount
    return touched


def fail_rows(conn: Connection, *, source_id: int, failures: Mapping[str, str]) -> None:
    """Mark rows `FAILED`, each with its own error message."""
    if not failures:
        return
    conn.execute(
        text(
            """
            UPDATE row_progress
            SET status = :status,
                error_message = :error_message,
                updated_at = CURRENT_TIMESTAMP,
                retry_count = CASE WHEN status <> 'FAILED' THEN retry_count + 1 ELSE retry_count END
            WHERE source_id = :source_id AND row_identity = :row_identity
            """
        ),
        [
            {
                "status": RowStatus.FAILED.value,
                "error_message": message,
                "source_id": source_id,
                "row_identity": identity,
            }
            for identity, message in failures.items()
        ],
    )


_COMPLETE = text(
    """
    UPDATE row_progress
    SET status = :completed, error_message = NULL, updated_at = CURRENT_TIMESTAMP
    WHERE source_id = :source_id
      AND row_identity IN :ids
      AND status <> :failed
    """
).bindparams(bindparam("ids", expanding=True))


def complete_rows(conn: Connection, *, source_id: int, row_identities: Sequence[str]) -> int:
    """
    Mark rows `COMPLETED`.

    A row that went `FAILED` earlier in the same pass (another destination,
    or a conversion error) keeps its failure.
    """
    touched = 0
    for ids in _chunks(row_identities):
        result = conn.execute(
            _COMPLETE,
            {
                "completed": RowStatus.COMPLETED.value,
                "failed": RowStatus.FAILED.value,
                "source_id": source_id,
                "ids": ids,
            },
        )
        touched += result.rowcount
    return touched


_RESET = text(
    """
    UPDATE row_progress
    SET status = :pending, error_message = NULL, updated_at = CURRENT_TIMESTAMP
    WHERE source_id = :source_id
      AND row_identity IN :ids
      AND status = :failed
    """
).bindparams(bindparam("ids", expanding=True))


def reset_rows_to_pending(conn: Connection, *, source_id: int, row_identities: Sequence[str]) -> int:
    """`FAILED` -> `PENDING` with the error cleared. `retry_count` is kept."""
    touched = 0
    for ids in _chunks(row_identities):
        result = conn.execute(
            _RESET,
            {
                "pending": RowStatus.PENDING.value,
                "failed": RowStatus.FAILED.value,
                "source_id": source_id,
                "ids": ids,
            },
        )
        touched += result.rowcount
    return touched


## -- reads

def get_row(conn: Connection, *, source_id: int, row_identity: str) -> RowProgress | None:
    row = conn.execute(
        text(_SELECT_ROWS + " WHERE source_id = :source_id AND row_identity = :row_identity"),
        {"source_id": source_id, "row_identity": row_identity},
    ).one_or_none()
    return None if row is None else _to_progress(row)


def fetch_rows_by_status(conn: Connection, *, source_id: int, statuses: Iterable[RowStatus]) -> list[RowProgress]:
    """Rows of one source in any of `statuses`, in file order."""
    stmt = text(
        _SELECT_ROWS + " WHERE source_id = :source_id AND status IN :statuses ORDER BY row_number"
    ).bindparams(bindparam("statuses", expanding=True))
    rows = conn.execute(stmt, {"source_id": source_id, "statuses": [s.value for s in statuses]})
    return [_to_progress(r) for r in rows]


def fetch_rows_eligible_for_retry(conn: Connection, *, source_id: int, max_retry_count: int) -> list[RowProgress]:
    """`FAILED` rows whose `retry_count` is still below `max_retry_count`."""
    rows = conn.execute(
        text(
            _SELECT_ROWS
            + """
            WHERE source_id = :source_id
              AND status = :failed
              AND retry_count < :max_retry_count
            ORDER BY row_number
            """
        ),
        {"source_id": source_id, "failed": RowStatus.FAILED.value, "max_retry_count": max_retry_count},
    )
    return [_to_progress(r) for r in rows]


def fetch_replay_row_numbers(conn: Connection, *, source_id: int, max_retry_count: int) -> set[int]:
    """
    Row numbers a replay pass must emit again:
    - `PENDING`, `RETRY` or `PROCESSING` (never confirmed written),
    - `FAILED` with retry budget left.
    """
    stmt = text(
        """
        SELECT row_number FROM row_progress
        WHERE source_id = :source_id
          AND (
                status IN :open_statuses
             OR (status = :failed AND retry_count < :max_retry_count)
          )
        """
    ).bindparams(bindparam("open_statuses", expanding=True))
    rows = conn.execute(
        stmt,
        {
            "source_id": source_id,
            "open_statuses": [s.value for s in REPLAYABLE_ROW_STATUSES],
            "failed": RowStatus.FAILED.value,
            "max_retry_count": max_retry_count,
        },
    )
    return {int(r[0]) for r in rows}


def max_row_number(conn: Connection, *, source_id: int) -> int | None:
    """Highest row number recorded for the source, `None` if nothing was recorded yet."""
    value = conn.execute(
        text("SELECT MAX(row_number) FROM row_progress WHERE source_id = :source_id"),
        {"source_id": source_id},
    ).scalar_one()
    return None if value is None else int(value)


def count_rows_by_status(conn: Connection, *, source_id: int) -> dict[RowStatus, int]:
    rows = conn.execute(
        text("SELECT status, COUNT(*) FROM row_progress WHERE source_id = :source_id GROUP BY status"),
        {"source_id": source_id},
    )
    return {parse_status(RowStatus, r[0]): int(r[1]) for r in rows}
