from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from timeseries_migration.config.models import DeviceConfig
from timeseries_migration.convert.converter import ConversionResult, RowRecord
from timeseries_migration.db.rows import complete_rows, update_row_statuses
from timeseries_migration.db.statuses import RowStatus
from timeseries_migration.db.store import ProgressStore
from timeseries_migration.errors import DestinationError, PoolClosedError, SchemaMismatchError

from .pool import SessionPool
from .schema import SchemaReconciler
from .types import Tablet

logger = logging.getLogger(__name__)

MAX_RETRIES_REACHED = "max retries reached"


def build_tablet(path: str, device: DeviceConfig, records: Sequence[RowRecord]) -> Tablet:
    """
    One tablet for `path`: a column per measurement, rows ordered by event time.

    A measurement a record has no value for stays `None` in that row.
    """
    names = [m.name for m in device.measurements]
    ordered = sorted(records, key=lambda r: (r.timestamp, r.row_number))

    values: list[list[object]] = []
    empty = 0
    for rec in ordered:
        row = [rec.values.get(n) for n in names]
        empty += row.count(None)
        values.append(row)
    if empty:
        logger.debug("tablet %s: %d empty cell(s) across %d row(s)", path, empty, len(ordered))

    return Tablet(
        device_path=path,
        measurements=names,
        data_types=[m.data_type for m in device.measurements],
        timestamps=[r.timestamp for r in ordered],
        values=values,
    )


class Writer:
    """
    Writes converted batches to the destination and records the outcome.

    Per destination path: reconcile the schema, build one tablet, and try
    the write up to `max_retries + 1` times with capped exponential
    backoff. The rows of the tablet are then marked `COMPLETED` or `FAILED`
    in a single ledger transaction.
    """

    def __init__(
        self,
        store: ProgressStore,
        pool: SessionPool,
        reconciler: SchemaReconciler,
        *,
        max_retries: int,
        retry_interval_ms: int,
        max_backoff_ms: int,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.pool = pool
        self.reconciler = reconciler
        self.max_retries = max_retries
        self.retry_interval_ms = retry_interval_ms
        self.max_backoff_ms = max_backoff_ms
        self._sleep = sleep
        self.schema_errors: list[str] = []

    def backoff_ms(self, attempt: int) -> int:
        """Delay after failed attempt `attempt` (0-based): `min(interval * 2^attempt, cap)`."""
        return min(self.retry_interval_ms * (2**attempt), self.max_backoff_ms)

    def write(self, source_id: int, result: ConversionResult) -> list[str]:
        """Write every path group of `result`. Returns the identities of rows that failed."""
        failed: list[str] = []
        for path, records in result.groups.items():
            device = result.devices[path]
            identities = [r.row_identity for r in records]
            error = self._write_unit(path, device, records)
            self._record_outcome(source_id, path, identities, error)
            if error is not None:
                failed.extend(identities)
        return failed

    def _write_unit(self, path: str, device: DeviceConfig, records: Sequence[RowRecord]) -> Optional[str]:
        """Returns `None` on success, otherwise the error to record against the rows."""
        tablet = build_tablet(path, device, records)

        for attempt in range(self.max_retries + 1):
            try:
                self.reconciler.ensure_device(path, device)
                with self.pool.session() as session:
                    session.write_tablet(tablet, aligned=device.aligned)
                logger.debug("wrote %d row(s) to %s", len(tablet), path)
                return None
            except SchemaMismatchError as e:
                # not retried: the series has to be fixed by hand
                logger.error("%s", e)
                self.schema_errors.append(str(e))
                return str(e)
            except PoolClosedError as e:
                logger.warning("write to %s abandoned: %s", path, e)
                return str(e)
            except DestinationError as e:
                if attempt >= self.max_retries:
                    logger.error("write to %s failed after %d attempt(s): %s", path, attempt + 1, e)
                    break
                delay = self.backoff_ms(attempt)
                logger.warning(
                    "write to %s failed (attempt %d/%d), retrying in %d ms: %s",
                    path,
                    attempt + 1,
                    self.max_retries + 1,
                    delay,
                    e,
                )
                self._sleep(delay / 1000)

        return MAX_RETRIES_REACHED

    def _record_outcome(self, source_id: int, path: str, identities: Sequence[str], error: Optional[str]) -> None:
        try:
            with self.store.transaction() as conn:
                if error is None:
                    complete_rows(conn, source_id=source_id, row_identities=identities)
                else:
                    update_row_statuses(
                        conn,
                        source_id=source_id,
                        row_identities=identities,
                        status=RowStatus.FAILED,
                        error_message=error,
                    )
        except SQLAlchemyError:
            # rows stay PROCESSING and are replayed on the next pass
            logger.exception("could not record write outcome for %d row(s) of %s", len(identities), path)
