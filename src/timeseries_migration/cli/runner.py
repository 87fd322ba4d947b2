from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from timeseries_migration.config.models import MigrationConfig
from timeseries_migration.convert.converter import Converter
from timeseries_migration.db.migration_logs import insert_log
from timeseries_migration.db.statuses import LogLevel, SourceStatus
from timeseries_migration.db.store import ProgressStore
from timeseries_migration.destination.pool import SessionFactory, SessionPool
from timeseries_migration.destination.schema import SchemaReconciler
from timeseries_migration.destination.writer import Writer
from timeseries_migration.ingest.summary import SourceSummary
from timeseries_migration.pipeline.initializer import SourceGroup, initialize_sources
from timeseries_migration.pipeline.orchestrator import Orchestrator
from timeseries_migration.pipeline.retry_scheduler import RetryScheduler
from timeseries_migration.pipeline.task import MigrateTask

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunReport:
    summaries: list[SourceSummary] = field(default_factory=list)
    schema_errors: list[str] = field(default_factory=list)
    worker_errors: list[str] = field(default_factory=list)

    @property
    def failed_sources(self) -> int:
        return sum(1 for s in self.summaries if s.status is SourceStatus.FAILED)


def _default_session_factory(config: MigrationConfig) -> SessionFactory:
    # imported here so the client library is only loaded for real runs
    from timeseries_migration.destination.iotdb_session import iotdb_session_factory

    return iotdb_session_factory(config.destination.connections, fetch_size=config.destination.fetch_size)


def run_migration(
    config: MigrationConfig,
    *,
    session_factory: Optional[SessionFactory] = None,
    store: Optional[ProgressStore] = None,
) -> RunReport:
    """
    One full migration run:
      - open the progress store and destination pool (failures here are fatal),
      - reconcile devices with a static path up front,
      - register sources, start the retry scheduler,
      - drain all source groups through the worker pool.

    Raises `ConfigurationError`/`DestinationError`/`SQLAlchemyError` only
    for startup failures; per-row and per-source failures end up in the
    ledger and the returned report.
    """
    owns_store = store is None
    if store is None:
        store = ProgressStore.from_url(config.progress_store.url, pool_size=config.progress_store.pool_size)
    settings = config.migration
    dest = config.destination

    pool = SessionPool(session_factory or _default_session_factory(config), dest.pool_size)
    scheduler = RetryScheduler(
        store,
        interval_s=settings.retry_scheduler_interval_s,
        max_retry_count=settings.max_retry_count,
    )
    try:
        store.initialize()
        pool.open()

        reconciler = SchemaReconciler(pool)
        checked = reconciler.validate_static_devices(dest.devices)
        logger.info("validated %d static device(s)", checked)

        groups = initialize_sources(store, config.sources, max_retry_count=settings.max_retry_count)
        with store.transaction() as conn:
            insert_log(
                conn,
                level=LogLevel.INFO,
                message=f"run started: {sum(len(g.files) for g in groups)} file(s) in {len(groups)} group(s)",
            )

        writer = Writer(
            store,
            pool,
            reconciler,
            max_retries=dest.max_retries,
            retry_interval_ms=dest.retry_interval_ms,
            max_backoff_ms=dest.max_backoff_ms,
        )

        def make_task(group: SourceGroup, stop_event: threading.Event) -> MigrateTask:
            return MigrateTask(
                store,
                group,
                converter=Converter(store, group.config, config.devices_for(group.config)),
                writer=writer,
                batch_size=settings.batch_size,
                max_retry_count=settings.max_retry_count,
                stop=stop_event,
            )

        orchestrator = Orchestrator(make_task, workers=settings.threads, grace_period_s=settings.shutdown_grace_period_s)
        if settings.retry_scheduler_enabled:
            scheduler.start()
        summaries = orchestrator.run(groups)

        report = RunReport(
            summaries=summaries,
            schema_errors=list(writer.schema_errors),
            worker_errors=list(orchestrator.errors),
        )
        with store.transaction() as conn:
            insert_log(
                conn,
                level=LogLevel.WARNING if report.failed_sources or report.schema_errors else LogLevel.INFO,
                message=f"run finished: {len(summaries)} file(s), {report.failed_sources} failed",
            )
        return report
    finally:
        scheduler.stop()
        pool.close()
        if owns_store:
            store.dispose()
