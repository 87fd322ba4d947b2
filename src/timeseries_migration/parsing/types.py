from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ColumnType(str, Enum):
    """Declared type of a source CSV column."""
    INTEGER = "INTEGER"     # 32-bit
    LONG = "LONG"
    FLOAT = "FLOAT"
    DOUBLE = "DOUBLE"
    BOOLEAN = "BOOLEAN"
    STRING = "STRING"
    TIME = "TIME"           # parsed to epoch milliseconds


class TimeFormat(str, Enum):
    """How a `TIME` column's text is turned into epoch milliseconds."""
    UNIX = "unix"           # seconds
    UNIX_MS = "unix_ms"
    ISO = "iso"
    CUSTOM = "custom"       # strptime pattern


class RejectCode(str, Enum):
    """Typed parse failure classifications."""
    missing_column = "missing_column"
    invalid_int = "invalid_int"
    invalid_numeric = "invalid_numeric"
    invalid_bool = "invalid_bool"
    invalid_timestamp = "invalid_timestamp"


@dataclass(frozen=True, slots=True)
class ParsedRow:
    """A source row with every configured column parsed."""
    row_identity: str
    row_number: int                 # 1-based, header not counted
    timestamp: int | None           # event time in epoch ms, None if the cell was empty
    values: dict[str, Any]          # keyed by join key, None for empty cells


@dataclass(frozen=True, slots=True)
class RejectRow:
    """A source row that failed to parse."""
    row_identity: str
    row_number: int
    reason_code: RejectCode
    detail: str

    def message(self) -> str:
        return f"{self.reason_code.value}: {self.detail}"
