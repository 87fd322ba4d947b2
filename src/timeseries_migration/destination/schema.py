from __future__ import annotations

import logging
import threading
from typing import Iterable

from timeseries_migration.config.models import DeviceConfig
from timeseries_migration.errors import SchemaMismatchError

from .pool import SessionPool
from .types import SeriesSchema, series_path

logger = logging.getLogger(__name__)


class SchemaReconciler:
    """
    Makes sure destination series exist with the declared type, encoding
    and compression.

    Missing series are created; an existing series that differs raises
    `SchemaMismatchError`. Each concrete path is checked once per process,
    later calls hit the cache.
    """

    def __init__(self, pool: SessionPool) -> None:
        self.pool = pool
        self._verified: set[str] = set()
        self._lock = threading.Lock()

    def is_verified(self, path: str) -> bool:
        return path in self._verified

    def ensure(self, path: str, field: str, schema: SeriesSchema) -> None:
        full = series_path(path, field)
        if full in self._verified:
            return
        with self._lock:
            if full in self._verified:
                return
            with self.pool.session() as session:
                actual = session.describe_series(full)
                if actual is None:
                    session.create_series(full, schema)
                    logger.info("created series %s (%s)", full, schema)
                elif actual != schema:
                    raise SchemaMismatchError(full, expected=schema, actual=actual)
            self._verified.add(full)

    def ensure_device(self, path: str, device: DeviceConfig) -> None:
        """
        Reconcile every measurement of `device` under `path`.

        Aligned devices create all of their missing measurements in one call.
        """
        expected = {m.name: m.series_schema() for m in device.measurements}
        pending = {name: s for name, s in expected.items() if series_path(path, name) not in self._verified}
        if not pending:
            return
        if not device.aligned:
            for name, schema in pending.items():
                self.ensure(path, name, schema)
            return

        with self._lock:
            missing: dict[str, SeriesSchema] = {}
            with self.pool.session() as session:
                for name, schema in pending.items():
                    full = series_path(path, name)
                    actual = session.describe_series(full)
                    if actual is None:
                        missing[name] = schema
                    elif actual != schema:
                        raise SchemaMismatchError(full, expected=schema, actual=actual)
                if missing:
                    session.create_aligned_series(path, missing)
                    logger.info("created aligned series under %s: %s", path, ", ".join(missing))
            self._verified.update(series_path(path, name) for name in pending)

    def validate_static_devices(self, devices: Iterable[DeviceConfig]) -> int:
        """
        Eagerly reconcile devices whose path does not depend on row data.

        Returns the number of devices checked. Path-column devices are
        reconciled lazily by the writer.
        """
        checked = 0
        for device in devices:
            if device.path_column is None:
                self.ensure_device(device.prefix, device)
                checked += 1
        return checked
