from __future__ import annotations

import csv
import threading
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, Optional, Sequence

import pytest

from timeseries_migration.config.models import MigrationConfig
from timeseries_migration.db.store import ProgressStore
from timeseries_migration.destination.pool import SessionPool
from timeseries_migration.destination.types import SeriesSchema, Tablet
from timeseries_migration.errors import DestinationError


def _find_repo_root(start: Path) -> Path:
    marker = "pyproject.toml"
    cur = start.resolve()
    for p in (cur, *cur.parents):
        if (p / marker).exists():
            return p
    raise RuntimeError(f"Could not find repo root from: {start}")


@pytest.fixture(scope="session")
def repo_root() -> Path:
    """The absolute path to the repo root (finds by walking up to `pyproject.toml`)."""
    return _find_repo_root(Path(__file__))


## -- progress store

@pytest.fixture()
def store(tmp_path: Path) -> Iterator[ProgressStore]:
    """A fresh file-backed SQLite ledger per test, tables created."""
    s = ProgressStore.from_url(f"sqlite:///{tmp_path / 'progress.db'}")
    s.initialize()
    yield s
    s.dispose()


## -- fake destination

class FakeDestination:
    """
    In-memory time-series store shared by every `FakeSession` it hands out.

    - `fail_writes`: number of upcoming `write_tablet` calls that raise
    - `fail_all_writes`: every write raises
    - `series`: path -> schema of every existing series
    """

    def __init__(self) -> None:
        self.series: dict[str, SeriesSchema] = {}
        self.tablets: list[tuple[Tablet, bool]] = []
        self.fail_writes = 0
        self.fail_all_writes = False
        self.write_attempts = 0
        self.create_calls: list[str] = []
        self.sessions_opened = 0
        self.sessions_closed = 0
        self.lock = threading.Lock()

    def session(self) -> FakeSession:
        with self.lock:
            self.sessions_opened += 1
        return FakeSession(self)

    def written_rows(self, path: str) -> list[tuple[int, dict[str, Any]]]:
        """`(timestamp, {measurement: value})` for every row written to `path`."""
        out: list[tuple[int, dict[str, Any]]] = []
        for tablet, _ in self.tablets:
            if tablet.device_path != path:
                continue
            for ts, row in zip(tablet.timestamps, tablet.values):
                out.append((ts, dict(zip(tablet.measurements, row))))
        return out

    def written_timestamps(self) -> list[int]:
        return [ts for tablet, _ in self.tablets for ts in tablet.timestamps]


class FakeSession:
    def __init__(self, dest: FakeDestination) -> None:
        self.dest = dest

    def describe_series(self, path: str) -> Optional[SeriesSchema]:
        return self.dest.series.get(path)

    def create_series(self, path: str, schema: SeriesSchema) -> None:
        with self.dest.lock:
            if path in self.dest.series:
                raise DestinationError(f"{path} already exists")
            self.dest.series[path] = schema
            self.dest.create_calls.append(path)

    def create_aligned_series(self, device_path: str, fields: Mapping[str, SeriesSchema]) -> None:
        with self.dest.lock:
            for name, schema in fields.items():
                self.dest.series[f"{device_path}.{name}"] = schema
            self.dest.create_calls.append(device_path)

    def write_tablet(self, tablet: Tablet, *, aligned: bool) -> None:
        with self.dest.lock:
            self.dest.write_attempts += 1
            if self.dest.fail_all_writes:
                raise DestinationError("connection refused")
            if self.dest.fail_writes > 0:
                self.dest.fail_writes -= 1
                raise DestinationError("connection reset")
            self.dest.tablets.append((tablet, aligned))

    def close(self) -> None:
        with self.dest.lock:
            self.dest.sessions_closed += 1


@pytest.fixture()
def destination() -> FakeDestination:
    return FakeDestination()


@pytest.fixture()
def pool(destination: FakeDestination) -> Iterator[SessionPool]:
    """An opened pool of two fake sessions."""
    p = SessionPool(destination.session, 2)
    p.open()
    yield p
    p.close()


## -- CSV and config builders

@pytest.fixture()
def write_csv(tmp_path: Path) -> Callable[..., Path]:
    """Write a CSV file under `tmp_path`; returns its path."""
    def _write(name: str, header: Sequence[str], rows: Sequence[Sequence[Any]], *, delimiter: str = ",") -> Path:
        path = tmp_path / name
        with path.open("w", encoding="utf-8", newline="") as f:
            w = csv.writer(f, delimiter=delimiter)
            w.writerow(header)
            w.writerows(rows)
        return path
    return _write


SENSOR_HEADER = ["ts", "zone", "temp", "ok"]


def make_sensor_rows(n: int, *, start: int = 1) -> list[list[Any]]:
    """`n` well-formed sensor rows, one second apart, zones A1/B2 alternating."""
    return [
        [f"2026-01-01T00:{i // 60:02d}:{i % 60:02d}Z", "A1" if i % 2 else "B2", f"{i}.5", "1"]
        for i in range(start, start + n)
    ]


@pytest.fixture()
def sensor_rows() -> Callable[..., list[list[Any]]]:
    return make_sensor_rows


@pytest.fixture()
def sensor_csv(write_csv: Callable[..., Path]) -> Callable[..., Path]:
    def _make(rows: Sequence[Sequence[Any]], name: str = "sensors.csv") -> Path:
        return write_csv(name, SENSOR_HEADER, rows)
    return _make


def sensor_config_dict(paths: Sequence[Path], **migration: Any) -> dict[str, Any]:
    return {
        "sources": [
            {
                "file_paths": [str(p) for p in paths],
                "timestamp_column": "ts",
                "columns": [
                    {"name": "ts", "type": "TIME", "time_format": "iso"},
                    {"name": "zone", "type": "STRING", "is_path_column": True},
                    {"name": "temp", "type": "DOUBLE"},
                    {"name": "ok", "type": "BOOLEAN"},
                ],
            }
        ],
        "destination": {
            "pool_size": 2,
            "max_retries": 2,
            "retry_interval_ms": 1,
            "max_backoff_ms": 2,
            "connections": [{"host": "127.0.0.1", "port": 6667}],
            "devices": [
                {
                    "prefix": "root.plant",
                    "path_column": "zone",
                    "measurements": [
                        {"name": "temperature", "join_key": "temp", "data_type": "DOUBLE"},
                        {"name": "healthy", "join_key": "ok", "data_type": "BOOLEAN"},
                    ],
                }
            ],
        },
        "migration": {"threads": 1, "batch_size": 4, "retry_scheduler_enabled": False, **migration},
    }


@pytest.fixture()
def sensor_config() -> Callable[..., MigrationConfig]:
    """Validated config for one sensor source group over `paths`."""
    def _make(paths: Sequence[Path], **migration: Any) -> MigrationConfig:
        return MigrationConfig.model_validate(sensor_config_dict(paths, **migration))
    return _make


@pytest.fixture()
def sensor_config_data() -> Callable[..., dict[str, Any]]:
    """The raw (unvalidated) sensor config, for tests that tweak it before validating."""
    return sensor_config_dict
