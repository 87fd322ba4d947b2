from __future__ import annotations

import logging
import threading
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from timeseries_migration.db.migration_logs import insert_log
from timeseries_migration.db.rows import fetch_rows_eligible_for_retry, reset_rows_to_pending
from timeseries_migration.db.sources import list_sources
from timeseries_migration.db.statuses import LogLevel
from timeseries_migration.db.store import ProgressStore

logger = logging.getLogger(__name__)


class RetryScheduler:
    """
    Background loop re-queueing failed rows that still have retry budget.

    Every `interval_s`, for every source: rows `FAILED` with
    `retry_count < max_retry_count` go back to `PENDING` with their error
    cleared, so the next reader pass replays them. Never writes to the
    destination.
    """

    def __init__(self, store: ProgressStore, *, interval_s: float, max_retry_count: int) -> None:
        self.store = store
        self.interval_s = interval_s
        self.max_retry_count = max_retry_count
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> int:
        """One scan over all sources. Returns the number of rows reset."""
        try:
            with self.store.transaction() as conn:
                sources = list_sources(conn)
        except SQLAlchemyError:
            logger.exception("retry scan could not list sources")
            return 0

        reset = 0
        for source in sources:
            try:
                with self.store.transaction() as conn:
                    rows = fetch_rows_eligible_for_retry(
                        conn, source_id=source.id, max_retry_count=self.max_retry_count
                    )
                    if not rows:
                        continue
                    n = reset_rows_to_pending(conn, source_id=source.id, row_identities=[r.row_identity for r in rows])
                    insert_log(
                        conn,
                        level=LogLevel.INFO,
                        source_id=source.id,
                        message=f"retry scheduler reset {n} failed row(s) to PENDING",
                    )
                reset += n
                logger.info("reset %d failed row(s) of %s to PENDING", n, source.path)
            except SQLAlchemyError:
                logger.exception("retry scan failed for source %s", source.path)
        return reset

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            self.run_once()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="retry-scheduler", daemon=True)
        self._thread.start()
        logger.info("retry scheduler started (every %.1fs, max retry count %d)", self.interval_s, self.max_retry_count)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
