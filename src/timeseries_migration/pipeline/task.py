from __future__ import annotations

import logging
import threading
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from timeseries_migration.convert.converter import Converter
from timeseries_migration.db.jobs import increment_job_progress, open_job, update_job_status
from timeseries_migration.db.migration_logs import insert_log
from timeseries_migration.db.rows import complete_rows
from timeseries_migration.db.sources import (
    get_source,
    increment_source_counters,
    set_has_failed_rows,
    set_source_status,
    sync_failed_rows,
)
from timeseries_migration.db.statuses import JobStatus, LogLevel, SourceStatus
from timeseries_migration.db.store import ProgressStore
from timeseries_migration.destination.writer import Writer
from timeseries_migration.errors import SourceReadError
from timeseries_migration.ingest.batch_reader import Batch, BatchReader, SourceFile
from timeseries_migration.ingest.summary import SourceSummary

from .initializer import SourceGroup

logger = logging.getLogger(__name__)

INTERRUPTED = "interrupted by shutdown"


class MigrateTask:
    """
    Drives every file of one source group through reader -> converter -> writer.

    Per file:
      - open (or reuse) a job, mark source and job `IN_PROGRESS`,
      - per batch: convert, write, then commit counters, `COMPLETED` marks
        for rows with nothing to write, and an audit line together,
      - finalize `COMPLETED` once the file is drained, or `FAILED` on an
        unreadable file, a ledger error, or a shutdown request.
    """

    def __init__(
        self,
        store: ProgressStore,
        group: SourceGroup,
        *,
        converter: Converter,
        writer: Writer,
        batch_size: int,
        max_retry_count: int,
        stop: Optional[threading.Event] = None,
    ) -> None:
        self.store = store
        self.group = group
        self.converter = converter
        self.writer = writer
        self.batch_size = batch_size
        self.max_retry_count = max_retry_count
        self.stop = stop or threading.Event()

    def run(self) -> list[SourceSummary]:
        summaries: list[SourceSummary] = []
        for sf in self.group.files:
            if self.stop.is_set():
                logger.info("stop requested, %s not started", sf.path)
                break
            summaries.append(self._migrate_file(sf))
        return summaries

    def _start(self, sf: SourceFile) -> int:
        with self.store.transaction() as conn:
            job_id = open_job(conn, source_id=sf.source_id)
            update_job_status(conn, job_id=job_id, status=JobStatus.IN_PROGRESS)
            set_source_status(conn, source_id=sf.source_id, status=SourceStatus.IN_PROGRESS)
            insert_log(conn, level=LogLevel.INFO, source_id=sf.source_id, message=f"job {job_id} started on {sf.path}")
        return job_id

    def _migrate_file(self, sf: SourceFile) -> SourceSummary:
        job_id = self._start(sf)
        processed = 0
        error: Optional[str] = None

        try:
            with BatchReader(
                self.store,
                self.group.config,
                [sf],
                batch_size=self.batch_size,
                max_retry_count=self.max_retry_count,
            ) as reader:
                while (batch := reader.read_batch()) is not None:
                    processed += self._process_batch(job_id, batch)
                    if self.stop.is_set() and not batch.last_in_file:
                        error = INTERRUPTED
                        break
        except SourceReadError as e:
            logger.error("%s", e)
            error = str(e)
        except SQLAlchemyError as e:
            logger.exception("progress store error while migrating %s", sf.path)
            error = f"progress store error: {e.__class__.__name__}: {e}"

        return self._finalize(sf, job_id, processed=processed, error=error)

    def _process_batch(self, job_id: int, batch: Batch) -> int:
        result = self.converter.convert(batch.source_id, batch.rows)
        write_failed = self.writer.write(batch.source_id, result)

        failed = len(set(result.failed) | set(write_failed)) + batch.rejected
        with self.store.transaction() as conn:
            complete_rows(conn, source_id=batch.source_id, row_identities=result.unwritten)
            increment_source_counters(conn, source_id=batch.source_id, processed=batch.emitted, failed=failed)
            increment_job_progress(conn, job_id=job_id, processed=batch.emitted, failed=failed)
            if batch.emitted:
                insert_log(
                    conn,
                    level=LogLevel.WARNING if failed else LogLevel.INFO,
                    source_id=batch.source_id,
                    message=(
                        f"batch: {batch.emitted} row(s), {result.record_count()} record(s) "
                        f"to {len(result.groups)} path(s), {failed} failed, {result.lossy_count} lossy"
                        + (" (replay)" if batch.replay else "")
                    ),
                )
        return batch.emitted

    def _finalize(self, sf: SourceFile, job_id: int, *, processed: int, error: Optional[str]) -> SourceSummary:
        source_status = SourceStatus.FAILED if error else SourceStatus.COMPLETED
        job_status = JobStatus.FAILED if error else JobStatus.COMPLETED

        with self.store.transaction() as conn:
            failed_rows = sync_failed_rows(conn, source_id=sf.source_id)
            set_has_failed_rows(conn, source_id=sf.source_id, value=failed_rows > 0)
            set_source_status(conn, source_id=sf.source_id, status=source_status, error_message=error)
            update_job_status(conn, job_id=job_id, status=job_status, error_message=error)
            insert_log(
                conn,
                level=LogLevel.ERROR if error else LogLevel.INFO,
                source_id=sf.source_id,
                message=f"job {job_id} {job_status.value.lower()}: {processed} row(s) processed, "
                f"{failed_rows} failed" + (f": {error}" if error else ""),
            )
            source = get_source(conn, source_id=sf.source_id)

        logger.info("source %s %s (job %d)", sf.path, source_status.value, job_id)
        return SourceSummary(
            source_id=sf.source_id,
            path=sf.path,
            job_id=job_id,
            status=source_status,
            total=source.total_rows if source else 0,
            processed=processed,
            failed=failed_rows,
            error=error,
        )
