from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from timeseries_migration.config.models import DeviceConfig, MigrationConfig
from timeseries_migration.convert.converter import MISSING_TIMESTAMP, Converter, resolve_device_path
from timeseries_migration.db.rows import RowUpsert, get_row, upsert_rows
from timeseries_migration.db.sources import create_source
from timeseries_migration.db.statuses import RowStatus
from timeseries_migration.db.store import ProgressStore
from timeseries_migration.parsing.types import ParsedRow

TS = 1_767_225_601_000


def _row(n: int, *, zone: Optional[str] = "A1", temp: Any = 20.5, ok: Any = True, ts: Optional[int] = TS) -> ParsedRow:
    return ParsedRow(
        row_identity=f"id-{n}",
        row_number=n,
        timestamp=ts,
        values={"ts": ts, "zone": zone, "temp": temp, "ok": ok},
    )


@pytest.fixture()
def ledger(store: ProgressStore) -> Callable[[list[ParsedRow]], int]:
    """Register a source and record `rows` as PENDING; returns the source id."""
    def _make(rows: list[ParsedRow]) -> int:
        with store.transaction() as conn:
            source_id = create_source(conn, path="sensors.csv")
            upsert_rows(
                conn,
                source_id=source_id,
                rows=[RowUpsert(r.row_identity, r.row_number, RowStatus.PENDING) for r in rows],
            )
        return source_id
    return _make


def _status(store: ProgressStore, source_id: int, identity: str) -> tuple[RowStatus, Optional[str]]:
    with store.transaction() as conn:
        row = get_row(conn, source_id=source_id, row_identity=identity)
    assert row is not None
    return row.status, row.error_message


def _converter(store: ProgressStore, config: MigrationConfig) -> Converter:
    source = config.sources[0]
    return Converter(store, source, config.devices_for(source))


def test_resolve_device_path() -> None:
    plain = DeviceConfig(prefix="root.site", measurements=[{"name": "t", "join_key": "temp", "data_type": "DOUBLE"}])
    seg = DeviceConfig(
        prefix="root.plant",
        path_column="zone",
        measurements=[{"name": "t", "join_key": "temp", "data_type": "DOUBLE"}],
    )
    assert resolve_device_path(plain, {}) == "root.site"
    assert resolve_device_path(seg, {"zone": " A1 "}) == "root.plant.A1"
    assert resolve_device_path(seg, {"zone": None}) is None
    assert resolve_device_path(seg, {"zone": "  "}) is None


def test_rows_grouped_by_resolved_path(
    store: ProgressStore,
    sensor_config: Callable[..., MigrationConfig],
    ledger: Callable[[list[ParsedRow]], int],
    tmp_path: Path,
) -> None:
    rows = [_row(1, zone="A1"), _row(2, zone="B2", ok=False), _row(3, zone="A1", temp=None)]
    source_id = ledger(rows)

    result = _converter(store, sensor_config([tmp_path / "x.csv"])).convert(source_id, rows)

    assert sorted(result.groups) == ["root.plant.A1", "root.plant.B2"]
    a1 = result.groups["root.plant.A1"]
    assert [r.row_number for r in a1] == [1, 3]
    assert a1[0].values == {"temperature": 20.5, "healthy": True}
    # an empty cell is left out, not written as null
    assert a1[1].values == {"healthy": True}
    assert result.groups["root.plant.B2"][0].values == {"temperature": 20.5, "healthy": False}
    assert result.failed == {}
    assert result.record_count() == 3
    for r in rows:
        assert _status(store, source_id, r.row_identity) == (RowStatus.PROCESSING, None)


def test_missing_timestamp_fails_the_row(
    store: ProgressStore,
    sensor_config: Callable[..., MigrationConfig],
    ledger: Callable[[list[ParsedRow]], int],
    tmp_path: Path,
) -> None:
    rows = [_row(1), _row(2, ts=None)]
    source_id = ledger(rows)

    result = _converter(store, sensor_config([tmp_path / "x.csv"])).convert(source_id, rows)

    assert result.failed == {"id-2": MISSING_TIMESTAMP}
    assert [r.row_number for r in result.groups["root.plant.A1"]] == [1]
    assert _status(store, source_id, "id-2") == (RowStatus.FAILED, MISSING_TIMESTAMP)


def test_missing_path_segment_fails_row_but_other_devices_still_get_it(
    store: ProgressStore,
    sensor_config_data: Callable[..., dict[str, Any]],
    ledger: Callable[[list[ParsedRow]], int],
    tmp_path: Path,
) -> None:
    data = sensor_config_data([tmp_path / "x.csv"])
    data["destination"]["devices"].append(
        {"prefix": "root.site", "measurements": [{"name": "temp_copy", "join_key": "temp", "data_type": "FLOAT"}]}
    )
    config = MigrationConfig.model_validate(data)
    rows = [_row(1, zone=None)]
    source_id = ledger(rows)

    result = _converter(store, config).convert(source_id, rows)

    assert list(result.groups) == ["root.site"]
    assert result.groups["root.site"][0].values == {"temp_copy": 20.5}
    status, error = _status(store, source_id, "id-1")
    assert status is RowStatus.FAILED
    assert "missing path segment 'zone'" in error


def test_lossy_conversion_is_counted_and_logged(
    store: ProgressStore,
    sensor_config_data: Callable[..., dict[str, Any]],
    ledger: Callable[[list[ParsedRow]], int],
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    data = sensor_config_data([tmp_path / "x.csv"])
    data["destination"]["devices"][0]["measurements"][0]["data_type"] = "INT32"
    config = MigrationConfig.model_validate(data)
    rows = [_row(1, temp=3.5), _row(2, temp=4.0)]
    source_id = ledger(rows)

    with caplog.at_level("WARNING"):
        result = _converter(store, config).convert(source_id, rows)

    assert result.lossy_count == 1
    assert [r.values["temperature"] for r in result.groups["root.plant.A1"]] == [3, 4]
    assert any("precision lost" in m for m in caplog.messages)
    # lossy values are still written; the row is not failed
    assert _status(store, source_id, "id-1")[0] is RowStatus.PROCESSING


def test_row_with_nothing_to_write_is_unwritten(
    store: ProgressStore,
    sensor_config: Callable[..., MigrationConfig],
    ledger: Callable[[list[ParsedRow]], int],
    tmp_path: Path,
) -> None:
    rows = [_row(1, temp=None, ok=None)]
    source_id = ledger(rows)

    result = _converter(store, sensor_config([tmp_path / "x.csv"])).convert(source_id, rows)

    assert result.groups == {}
    assert result.unwritten == ["id-1"]
    assert result.failed == {}


def test_missing_path_segment_names_every_device_it_failed(
    store: ProgressStore,
    sensor_config_data: Callable[..., dict[str, Any]],
    ledger: Callable[[list[ParsedRow]], int],
    tmp_path: Path,
) -> None:
    data = sensor_config_data([tmp_path / "x.csv"])
    data["destination"]["devices"].append(
        {
            "prefix": "root.backup",
            "path_column": "zone",
            "measurements": [{"name": "temp_copy", "join_key": "temp", "data_type": "FLOAT"}],
        }
    )
    config = MigrationConfig.model_validate(data)
    rows = [_row(1, zone=None), _row(2, zone="A1")]
    source_id = ledger(rows)

    result = _converter(store, config).convert(source_id, rows)

    assert sorted(result.groups) == ["root.backup.A1", "root.plant.A1"]
    expected = "missing path segment 'zone' for root.plant; missing path segment 'zone' for root.backup"
    assert result.failed == {"id-1": expected}
    assert _status(store, source_id, "id-1") == (RowStatus.FAILED, expected)
