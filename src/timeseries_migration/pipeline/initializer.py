from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from timeseries_migration.config.models import SourceConfig
from timeseries_migration.db.migration_logs import insert_log
from timeseries_migration.db.rows import fetch_replay_row_numbers
from timeseries_migration.db.sources import get_or_create_source, get_source, set_has_failed_rows, set_source_status
from timeseries_migration.db.statuses import TERMINAL_SOURCE_STATUSES, LogLevel, SourceStatus
from timeseries_migration.db.store import ProgressStore
from timeseries_migration.ingest.batch_reader import SourceFile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceGroup:
    """One configured source and the ledger entries of its files still needing work."""
    config: SourceConfig
    files: list[SourceFile] = field(default_factory=list)


def initialize_sources(
    store: ProgressStore,
    sources: Sequence[SourceConfig],
    *,
    max_retry_count: int,
) -> list[SourceGroup]:
    """
    Register every configured file and decide which ones this run works on.

    - unseen paths are inserted as `PENDING`
    - a `COMPLETED`/`FAILED` source that still owes rows (replayable or
      failed with retry budget) goes back to `PENDING` with
      `has_failed_rows` set
    - a `COMPLETED` source owing nothing is left out of the run
    """
    groups: list[SourceGroup] = []
    for config in sources:
        files: list[SourceFile] = []
        for path in config.file_paths:
            key = str(path)
            with store.transaction() as conn:
                source_id = get_or_create_source(conn, path=key)
                source = get_source(conn, source_id=source_id)
                assert source is not None
                owed = fetch_replay_row_numbers(conn, source_id=source_id, max_retry_count=max_retry_count)

                if source.status in TERMINAL_SOURCE_STATUSES and owed:
                    set_source_status(conn, source_id=source_id, status=SourceStatus.PENDING)
                    set_has_failed_rows(conn, source_id=source_id, value=True)
                    insert_log(
                        conn,
                        level=LogLevel.INFO,
                        source_id=source_id,
                        message=f"{len(owed)} row(s) of {key} queued for replay (was {source.status.value})",
                    )
                    logger.info("source %s: %d row(s) queued for replay", key, len(owed))
                elif source.status is SourceStatus.COMPLETED:
                    logger.info("source %s already completed, skipping", key)
                    continue

            files.append(SourceFile(source_id=source_id, path=key))
        if files:
            groups.append(SourceGroup(config=config, files=files))
    return groups
