from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import Connection, text

from .statuses import LogLevel, parse_status


@dataclass(frozen=True, slots=True)
class LogEntry:
    id: int
    source_id: Optional[int]
    level: LogLevel
    message: str


def insert_log(conn: Connection, *, level: LogLevel, message: str, source_id: Optional[int] = None) -> None:
    """Append one audit line. `source_id` is left NULL for process-level events."""
    conn.execute(
        text(
            """
            INSERT INTO migration_logs (source_id, level, message, logged_at)
            VALUES (:source_id, :level, :message, CURRENT_TIMESTAMP)
            """
        ),
        {"source_id": source_id, "level": level.value, "message": message},
    )


def fetch_logs(conn: Connection, *, source_id: Optional[int] = None, limit: Optional[int] = None) -> list[LogEntry]:
    """Audit lines in insertion order, optionally for one source only."""
    sql = "SELECT id, source_id, level, message FROM migration_logs"
    params: dict[str, object] = {}
    if source_id is not None:
        sql += " WHERE source_id = :source_id"
        params["source_id"] = source_id
    sql += " ORDER BY id"
    if limit is not None:
        sql += " LIMIT :limit"
        params["limit"] = limit

    return [
        LogEntry(id=int(r.id), source_id=r.source_id, level=parse_status(LogLevel, r.level), message=r.message)
        for r in conn.execute(text(sql), params)
    ]
