from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

from timeseries_migration.config.models import DeviceConfig, SourceConfig
from timeseries_migration.db.rows import fail_rows, update_row_statuses
from timeseries_migration.db.statuses import RowStatus
from timeseries_migration.db.store import ProgressStore
from timeseries_migration.parsing.types import ParsedRow

from .matrix import convert_value

logger = logging.getLogger(__name__)

MISSING_TIMESTAMP = "missing timestamp"


@dataclass(frozen=True, slots=True)
class RowRecord:
    """One row's typed field values for one resolved destination path."""
    row_identity: str
    row_number: int
    timestamp: int
    path: str
    values: dict[str, Any]      # measurement name -> converted value; dropped fields are absent


@dataclass
class ConversionResult:
    groups: dict[str, list[RowRecord]] = field(default_factory=dict)
    devices: dict[str, DeviceConfig] = field(default_factory=dict)     # path -> device it resolved from
    failed: dict[str, str] = field(default_factory=dict)               # row identity -> error
    unwritten: list[str] = field(default_factory=list)                 # mapped rows with nothing to write
    lossy_count: int = 0

    def record_count(self) -> int:
        return sum(len(v) for v in self.groups.values())


def resolve_device_path(device: DeviceConfig, values: Mapping[str, Any]) -> Optional[str]:
    """
    `prefix`, or `prefix.<segment>` for devices with a path column.

    Returns `None` when the row has no value for the path column.
    """
    if device.path_column is None:
        return device.prefix
    segment = values.get(device.path_column)
    if segment is None or str(segment).strip() == "":
        return None
    return f"{device.prefix}.{str(segment).strip()}"


class Converter:
    """
    Maps parsed rows onto destination paths through the conversion matrix.

    Row status side effects (mapped rows -> `PROCESSING`, mapping failures
    -> `FAILED`) are written in one transaction per batch.
    """

    def __init__(self, store: ProgressStore, source: SourceConfig, devices: Sequence[DeviceConfig]) -> None:
        self.store = store
        self.source = source
        self.column_types = source.column_types()
        # only devices that read at least one of this source's join keys
        self.devices = [d for d in devices if d.join_keys() & set(self.column_types)]

    def convert(self, source_id: int, rows: Sequence[ParsedRow]) -> ConversionResult:
        result = ConversionResult()

        for row in rows:
            if row.timestamp is None:
                result.failed[row.row_identity] = MISSING_TIMESTAMP
                continue

            wrote = False
            for device in self.devices:
                path = resolve_device_path(device, row.values)
                if path is None:
                    # fails the row, other devices still get its values
                    msg = f"missing path segment {device.path_column!r} for {device.prefix}"
                    prev = result.failed.get(row.row_identity)
                    result.failed[row.row_identity] = f"{prev}; {msg}" if prev else msg
                    continue

                values = self._convert_fields(device, row, result)
                if not values:
                    continue
                result.groups.setdefault(path, []).append(
                    RowRecord(
                        row_identity=row.row_identity,
                        row_number=row.row_number,
                        timestamp=row.timestamp,
                        path=path,
                        values=values,
                    )
                )
                result.devices[path] = device
                wrote = True

            if not wrote and row.row_identity not in result.failed:
                result.unwritten.append(row.row_identity)

        self._record(source_id, rows, result)
        return result

    def _convert_fields(self, device: DeviceConfig, row: ParsedRow, result: ConversionResult) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for m in device.measurements:
            source_type = self.column_types.get(m.join_key)
            if source_type is None:
                continue
            conv = convert_value(source_type, m.data_type, row.values.get(m.join_key))
            if conv.error is not None:
                logger.debug("row %d: %s.%s dropped: %s", row.row_number, device.prefix, m.name, conv.error)
                continue
            if conv.value is None:
                continue
            if conv.lossy:
                result.lossy_count += 1
                logger.warning(
                    "row %d: precision lost converting %s (%s) to %s for %s.%s: %r -> %r",
                    row.row_number,
                    m.join_key,
                    source_type.value,
                    m.data_type.value,
                    device.prefix,
                    m.name,
                    row.values.get(m.join_key),
                    conv.value,
                )
            values[m.name] = conv.value
        return values

    def _record(self, source_id: int, rows: Sequence[ParsedRow], result: ConversionResult) -> None:
        mapped = [r.row_identity for r in rows if r.row_identity not in result.failed]
        if not mapped and not result.failed:
            return
        with self.store.transaction() as conn:
            update_row_statuses(conn, source_id=source_id, row_identities=mapped, status=RowStatus.PROCESSING)
            fail_rows(conn, source_id=source_id, failures=result.failed)
