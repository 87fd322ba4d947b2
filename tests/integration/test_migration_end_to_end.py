from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable

import pytest

from timeseries_migration.cli.runner import run_migration
from timeseries_migration.config.models import MigrationConfig
from timeseries_migration.db.jobs import list_jobs
from timeseries_migration.db.migration_logs import fetch_logs
from timeseries_migration.db.rows import count_rows_by_status, fetch_rows_by_status, update_row_statuses
from timeseries_migration.db.sources import find_source_id, get_source, set_source_status
from timeseries_migration.db.statuses import JobStatus, RowStatus, SourceStatus
from timeseries_migration.db.store import ProgressStore
from timeseries_migration.destination.types import SeriesSchema
from timeseries_migration.destination.writer import MAX_RETRIES_REACHED
from timeseries_migration.errors import DestinationError

from conftest import FakeDestination

pytestmark = pytest.mark.integration

T0 = 1_767_225_600_000      # 2026-01-01T00:00:00Z


def _ts(i: int) -> int:
    return T0 + i * 1000


def _source_id(store: ProgressStore, path: Path) -> int:
    with store.transaction() as conn:
        sid = find_source_id(conn, path=str(path))
    assert sid is not None
    return sid


def test_fresh_run_writes_every_row(
    store: ProgressStore,
    destination: FakeDestination,
    sensor_csv: Callable[..., Path],
    sensor_rows: Callable[..., list[list[Any]]],
    sensor_config: Callable[..., MigrationConfig],
) -> None:
    path = sensor_csv(sensor_rows(10))

    report = run_migration(sensor_config([path]), session_factory=destination.session, store=store)

    (summary,) = report.summaries
    assert (summary.status, summary.total, summary.processed, summary.failed) == (SourceStatus.COMPLETED, 10, 10, 0)
    assert report.schema_errors == [] and report.worker_errors == []

    # odd rows go to zone A1, even rows to B2
    assert [ts for ts, _ in destination.written_rows("root.plant.A1")] == [_ts(i) for i in (1, 3, 5, 7, 9)]
    assert destination.written_rows("root.plant.B2")[0] == (_ts(2), {"temperature": 2.5, "healthy": True})
    assert sorted(destination.series) == [
        "root.plant.A1.healthy",
        "root.plant.A1.temperature",
        "root.plant.B2.healthy",
        "root.plant.B2.temperature",
    ]

    sid = summary.source_id
    with store.transaction() as conn:
        assert count_rows_by_status(conn, source_id=sid) == {RowStatus.COMPLETED: 10}
        source = get_source(conn, source_id=sid)
        (job,) = list_jobs(conn, source_id=sid)
        logs = fetch_logs(conn)
    assert (source.processed_rows, source.failed_rows, source.has_failed_rows) == (10, 0, False)
    assert job.status is JobStatus.COMPLETED
    assert any(e.message.startswith("run finished") for e in logs)
    assert destination.sessions_closed == destination.sessions_opened


def test_rerun_of_completed_source_writes_nothing(
    store: ProgressStore,
    destination: FakeDestination,
    sensor_csv: Callable[..., Path],
    sensor_rows: Callable[..., list[list[Any]]],
    sensor_config: Callable[..., MigrationConfig],
) -> None:
    path = sensor_csv(sensor_rows(6))
    config = sensor_config([path])
    run_migration(config, session_factory=destination.session, store=store)
    attempts = destination.write_attempts

    report = run_migration(config, session_factory=destination.session, store=store)

    assert report.summaries == []
    assert destination.write_attempts == attempts


def test_resume_after_destination_outage(
    store: ProgressStore,
    destination: FakeDestination,
    sensor_csv: Callable[..., Path],
    sensor_rows: Callable[..., list[list[Any]]],
    sensor_config: Callable[..., MigrationConfig],
) -> None:
    """Every write fails on the first run; the second run replays only those rows and finishes the job."""
    path = sensor_csv(sensor_rows(10))
    config = sensor_config([path])

    destination.fail_all_writes = True
    first = run_migration(config, session_factory=destination.session, store=store)

    (summary,) = first.summaries
    assert summary.failed == 10
    sid = summary.source_id
    with store.transaction() as conn:
        failed = fetch_rows_by_status(conn, source_id=sid, statuses=[RowStatus.FAILED])
    assert len(failed) == 10
    assert {r.error_message for r in failed} == {MAX_RETRIES_REACHED}
    assert {r.retry_count for r in failed} == {1}
    assert destination.written_timestamps() == []

    destination.fail_all_writes = False
    second = run_migration(config, session_factory=destination.session, store=store)

    (summary,) = second.summaries
    assert (summary.status, summary.processed, summary.failed) == (SourceStatus.COMPLETED, 10, 0)
    assert sorted(destination.written_timestamps()) == [_ts(i) for i in range(1, 11)]
    with store.transaction() as conn:
        assert count_rows_by_status(conn, source_id=sid) == {RowStatus.COMPLETED: 10}
        jobs = list_jobs(conn, source_id=sid)
    assert [j.status for j in jobs] == [JobStatus.COMPLETED, JobStatus.COMPLETED]


def test_interrupted_run_resumes_only_unfinished_rows(
    store: ProgressStore,
    destination: FakeDestination,
    sensor_csv: Callable[..., Path],
    sensor_rows: Callable[..., list[list[Any]]],
    sensor_config: Callable[..., MigrationConfig],
) -> None:
    """A crash leaves rows PENDING/PROCESSING and the source IN_PROGRESS; the next run picks up just those."""
    path = sensor_csv(sensor_rows(10))
    config = sensor_config([path])
    run_migration(config, session_factory=destination.session, store=store)
    sid = _source_id(store, path)

    row3, row8 = _identities(store, sid, {3}), _identities(store, sid, {8})
    with store.transaction() as conn:
        update_row_statuses(conn, source_id=sid, row_identities=row3, status=RowStatus.PENDING)
        update_row_statuses(conn, source_id=sid, row_identities=row8, status=RowStatus.PROCESSING)
        set_source_status(conn, source_id=sid, status=SourceStatus.IN_PROGRESS)
    before = len(destination.written_timestamps())

    report = run_migration(config, session_factory=destination.session, store=store)

    assert report.summaries[0].processed == 2
    assert sorted(destination.written_timestamps()[before:]) == [_ts(3), _ts(8)]
    with store.transaction() as conn:
        assert count_rows_by_status(conn, source_id=sid) == {RowStatus.COMPLETED: 10}


def _identities(store: ProgressStore, source_id: int, row_numbers: set[int]) -> list[str]:
    with store.transaction() as conn:
        rows = fetch_rows_by_status(conn, source_id=source_id, statuses=list(RowStatus))
    return [r.row_identity for r in rows if r.row_number in row_numbers]


def test_parse_failures_do_not_stop_the_file(
    store: ProgressStore,
    destination: FakeDestination,
    sensor_csv: Callable[..., Path],
    sensor_config: Callable[..., MigrationConfig],
) -> None:
    path = sensor_csv(
        [
            ["2026-01-01T00:00:01Z", "A1", "1.5", "1"],
            ["2026-01-01T00:00:02Z", "A1", "warm", "1"],
            ["", "A1", "3.5", "1"],
            ["2026-01-01T00:00:04Z", "", "4.5", "0"],
            ["2026-01-01T00:00:05Z", "A1", "5.5", "0"],
        ]
    )

    report = run_migration(sensor_config([path]), session_factory=destination.session, store=store)

    (summary,) = report.summaries
    assert (summary.status, summary.total, summary.failed) == (SourceStatus.COMPLETED, 5, 3)
    assert [ts for ts, _ in destination.written_rows("root.plant.A1")] == [_ts(1), _ts(5)]
    with store.transaction() as conn:
        failed = fetch_rows_by_status(conn, source_id=summary.source_id, statuses=[RowStatus.FAILED])
        source = get_source(conn, source_id=summary.source_id)
    assert [r.row_number for r in failed] == [2, 3, 4]
    assert failed[0].error_message.startswith("invalid_numeric")
    assert failed[1].error_message == "missing timestamp"
    assert "missing path segment" in failed[2].error_message
    assert source.has_failed_rows


def test_static_aligned_device_is_created_at_startup(
    store: ProgressStore,
    destination: FakeDestination,
    sensor_csv: Callable[..., Path],
    sensor_rows: Callable[..., list[list[Any]]],
    sensor_config_data: Callable[..., dict[str, Any]],
) -> None:
    path = sensor_csv(sensor_rows(4))
    data = sensor_config_data([path], threads=2)
    data["destination"]["devices"].append(
        {
            "prefix": "root.site",
            "aligned": True,
            "measurements": [{"name": "temp_f", "join_key": "temp", "data_type": "FLOAT"}],
        }
    )

    run_migration(MigrationConfig.model_validate(data), session_factory=destination.session, store=store)

    assert destination.create_calls[0] == "root.site"
    site = [(t, aligned) for t, aligned in destination.tablets if t.device_path == "root.site"]
    assert site and all(aligned for _, aligned in site)
    assert [ts for ts, _ in destination.written_rows("root.site")] == [_ts(i) for i in range(1, 5)]


def test_schema_mismatch_is_reported(
    store: ProgressStore,
    destination: FakeDestination,
    sensor_csv: Callable[..., Path],
    sensor_rows: Callable[..., list[list[Any]]],
    sensor_config: Callable[..., MigrationConfig],
) -> None:
    destination.series["root.plant.A1.temperature"] = SeriesSchema("INT64", "RLE", "SNAPPY")
    path = sensor_csv(sensor_rows(4))

    report = run_migration(sensor_config([path]), session_factory=destination.session, store=store)

    assert report.schema_errors
    assert "root.plant.A1.temperature" in report.schema_errors[0]
    assert destination.written_rows("root.plant.A1") == []
    assert [ts for ts, _ in destination.written_rows("root.plant.B2")] == [_ts(2), _ts(4)]
    assert report.summaries[0].failed == 2


def test_unreadable_file_fails_its_source_only(
    store: ProgressStore,
    destination: FakeDestination,
    tmp_path: Path,
    sensor_csv: Callable[..., Path],
    sensor_rows: Callable[..., list[list[Any]]],
    sensor_config: Callable[..., MigrationConfig],
) -> None:
    missing = tmp_path / "vanished.csv"
    good = sensor_csv(sensor_rows(3))

    report = run_migration(sensor_config([missing, good]), session_factory=destination.session, store=store)

    by_path = {s.path: s for s in report.summaries}
    assert by_path[str(missing)].status is SourceStatus.FAILED
    assert "cannot open" in by_path[str(missing)].error
    assert by_path[str(good)].status is SourceStatus.COMPLETED
    with store.transaction() as conn:
        source = get_source(conn, source_id=_source_id(store, missing))
    assert source.status is SourceStatus.FAILED
    assert "cannot open" in source.error_message


def test_unreachable_destination_is_fatal(
    store: ProgressStore,
    sensor_csv: Callable[..., Path],
    sensor_rows: Callable[..., list[list[Any]]],
    sensor_config: Callable[..., MigrationConfig],
) -> None:
    def refuse() -> Any:
        raise DestinationError("connection refused")

    with pytest.raises(DestinationError, match="connection refused"):
        run_migration(sensor_config([sensor_csv(sensor_rows(1))]), session_factory=refuse, store=store)


def test_unparseable_row_stops_being_replayed_at_the_retry_limit(
    store: ProgressStore,
    destination: FakeDestination,
    sensor_csv: Callable[..., Path],
    sensor_config: Callable[..., MigrationConfig],
) -> None:
    """Each run counts the bad row once more; after `max_retry_count` runs the source is left alone."""
    path = sensor_csv(
        [
            ["2026-01-01T00:00:01Z", "A1", "1.5", "1"],
            ["2026-01-01T00:00:02Z", "A1", "oops", "1"],
            ["2026-01-01T00:00:03Z", "A1", "3.5", "1"],
        ]
    )
    config = sensor_config([path], max_retry_count=3)

    reports = [run_migration(config, session_factory=destination.session, store=store) for _ in range(6)]

    assert [len(r.summaries) for r in reports] == [1, 1, 1, 0, 0, 0]
    sid = _source_id(store, path)
    with store.transaction() as conn:
        (bad,) = fetch_rows_by_status(conn, source_id=sid, statuses=[RowStatus.FAILED])
        counts = count_rows_by_status(conn, source_id=sid)
    assert (bad.row_number, bad.retry_count) == (2, 3)
    assert bad.error_message.startswith("invalid_numeric")
    assert counts == {RowStatus.COMPLETED: 2, RowStatus.FAILED: 1}
    assert sorted(destination.written_timestamps()) == [_ts(1), _ts(3)]


@pytest.mark.skipif(not os.getenv("MIGRATION_TEST_DSN"), reason="set MIGRATION_TEST_DSN to run against PostgreSQL")
def test_fresh_run_against_postgres(
    destination: FakeDestination,
    sensor_csv: Callable[..., Path],
    sensor_rows: Callable[..., list[list[Any]]],
    sensor_config: Callable[..., MigrationConfig],
) -> None:
    pg = ProgressStore.from_url(os.environ["MIGRATION_TEST_DSN"])
    try:
        path = sensor_csv(sensor_rows(10))
        report = run_migration(sensor_config([path]), session_factory=destination.session, store=pg)
        (summary,) = report.summaries
        assert (summary.status, summary.failed) == (SourceStatus.COMPLETED, 0)
        with pg.transaction() as conn:
            assert count_rows_by_status(conn, source_id=summary.source_id) == {RowStatus.COMPLETED: 10}
    finally:
        pg.dispose()
