from __future__ import annotations

import pytest

from timeseries_migration.db.statuses import JobStatus, LogLevel, RowStatus, SourceStatus, parse_status


def test_parse_status_round_trips_stored_values() -> None:
    """Stored strings map back onto their enum members."""
    assert parse_status(RowStatus, "RETRY") is RowStatus.RETRY
    assert parse_status(SourceStatus, "IN_PROGRESS") is SourceStatus.IN_PROGRESS
    assert parse_status(JobStatus, "FAILED") is JobStatus.FAILED
    assert parse_status(LogLevel, "WARNING") is LogLevel.WARNING


@pytest.mark.parametrize("value", ["", "pending", "DONE", "PROCESSED"])
def test_parse_status_unknown_value_is_an_error(value: str) -> None:
    """No fallback default: an unknown status string raises."""
    with pytest.raises(ValueError, match="unknown RowStatus"):
        parse_status(RowStatus, value)


def test_row_status_is_not_a_source_status() -> None:
    """`RETRY` only exists for rows."""
    with pytest.raises(ValueError):
        parse_status(SourceStatus, "RETRY")
