from __future__ import annotations

import itertools
import logging
import threading
from typing import Mapping, Optional, Sequence

from iotdb.Session import Session
from iotdb.utils.IoTDBConstants import Compressor, TSDataType, TSEncoding
from iotdb.utils.Tablet import Tablet as IoTDBTablet

from timeseries_migration.config.models import ConnectionConfig
from timeseries_migration.errors import DestinationError

from .pool import SessionFactory
from .types import SeriesSchema, Tablet

logger = logging.getLogger(__name__)


class IoTDBSession:
    """`DestinationSession` over one Apache IoTDB client session."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        *,
        fetch_size: int = 1024,
        zone_id: str = "UTC",
    ) -> None:
        self.endpoint = f"{host}:{port}"
        self._session = Session(host, str(port), username, password, fetch_size=fetch_size, zone_id=zone_id)

    def open(self) -> None:
        try:
            self._session.open(False)
        except Exception as e:
            raise DestinationError(f"cannot connect to {self.endpoint}: {e}") from e

    def describe_series(self, path: str) -> Optional[SeriesSchema]:
        try:
            ds = self._session.execute_query_statement(f"SHOW TIMESERIES {path}")
        except Exception as e:
            raise DestinationError(f"SHOW TIMESERIES {path} failed: {e}") from e
        try:
            columns = [c.lower() for c in ds.get_column_names()]
            if not ds.has_next():
                return None
            fields = ds.next().get_fields()
            # some server versions report a leading Time column the row does not carry
            if columns and columns[0] == "time" and len(fields) == len(columns) - 1:
                columns = columns[1:]
            cell = dict(zip(columns, (f.get_string_value() for f in fields)))
            return SeriesSchema(
                data_type=str(cell.get("datatype", "")).upper(),
                encoding=str(cell.get("encoding", "")).upper(),
                compression=str(cell.get("compression", "")).upper(),
            )
        except Exception as e:
            raise DestinationError(f"cannot read schema of {path}: {e}") from e
        finally:
            ds.close_operation_handle()

    def create_series(self, path: str, schema: SeriesSchema) -> None:
        try:
            self._session.create_time_series(
                path,
                TSDataType[schema.data_type],
                TSEncoding[schema.encoding],
                Compressor[schema.compression],
            )
        except Exception as e:
            raise DestinationError(f"cannot create series {path}: {e}") from e

    def create_aligned_series(self, device_path: str, fields: Mapping[str, SeriesSchema]) -> None:
        names = list(fields)
        try:
            self._session.create_aligned_time_series(
                device_path,
                names,
                [TSDataType[fields[n].data_type] for n in names],
                [TSEncoding[fields[n].encoding] for n in names],
                [Compressor[fields[n].compression] for n in names],
            )
        except Exception as e:
            raise DestinationError(f"cannot create aligned series under {device_path}: {e}") from e

    def write_tablet(self, tablet: Tablet, *, aligned: bool) -> None:
        native = IoTDBTablet(
            tablet.device_path,
            list(tablet.measurements),
            [TSDataType[t.value] for t in tablet.data_types],
            [list(row) for row in tablet.values],
            list(tablet.timestamps),
        )
        try:
            if aligned:
                self._session.insert_aligned_tablet(native)
            else:
                self._session.insert_tablet(native)
        except Exception as e:
            raise DestinationError(f"write of {len(tablet)} row(s) to {tablet.device_path} failed: {e}") from e

    def close(self) -> None:
        try:
            self._session.close()
        except Exception as e:
            raise DestinationError(f"error closing session to {self.endpoint}: {e}") from e


def iotdb_session_factory(
    connections: Sequence[ConnectionConfig],
    *,
    fetch_size: int = 1024,
    zone_id: str = "UTC",
) -> SessionFactory:
    """
    Returns a factory opening one `IoTDBSession` per call, spreading
    sessions round-robin over the configured connections.
    """
    if not connections:
        raise ValueError("at least one connection is required")
    ring = itertools.cycle(list(connections))
    lock = threading.Lock()

    def factory() -> IoTDBSession:
        with lock:
            conn = next(ring)
        session = IoTDBSession(
            conn.host,
            conn.port,
            conn.username,
            conn.password,
            fetch_size=fetch_size,
            zone_id=zone_id,
        )
        session.open()
        logger.debug("opened destination session to %s", session.endpoint)
        return session

    return factory
