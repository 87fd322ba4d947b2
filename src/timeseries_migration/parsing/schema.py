from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence

from timeseries_migration.config.models import CsvColumn, SourceConfig

from .primitives import (
    ParseError,
    parse_bool,
    parse_float,
    parse_int32,
    parse_int64,
    parse_text,
    parse_time,
)
from .types import ColumnType, ParsedRow, RejectCode, RejectRow

Parser = Callable[[Any], Any]


@dataclass(frozen=True, slots=True)
class FieldSpec:
    """How one configured CSV column is read and parsed."""
    column: str                 # header name in the file
    join_key: str               # key the parsed value is stored under
    parser: Parser


def _parser_for(col: CsvColumn) -> Parser:
    field = col.name
    match col.type:
        case ColumnType.INTEGER:
            return lambda v: parse_int32(v, field=field)
        case ColumnType.LONG:
            return lambda v: parse_int64(v, field=field)
        case ColumnType.FLOAT | ColumnType.DOUBLE:
            return lambda v: parse_float(v, field=field)
        case ColumnType.BOOLEAN:
            return lambda v: parse_bool(v, field=field)
        case ColumnType.STRING:
            return lambda v: parse_text(v, field=field)
        case ColumnType.TIME:
            fmt, pattern, zone = col.time_format, col.time_pattern, col.time_zone
            return lambda v: parse_time(v, field=field, time_format=fmt, pattern=pattern, zone=zone)
    raise ValueError(f"unhandled column type {col.type!r}")


@dataclass(frozen=True, slots=True)
class RowParser:
    """
    Parse one CSV row into a `ParsedRow`, or a `RejectRow` on the first bad field.

    Fields are checked in configured order; the event-time column is parsed
    like any other and also lifted into `ParsedRow.timestamp`. An empty
    event-time cell is not a parse failure here, the converter fails the row.
    """
    fields: Sequence[FieldSpec]
    timestamp_key: str

    @classmethod
    def for_source(cls, source: SourceConfig) -> RowParser:
        fields = [FieldSpec(column=c.name, join_key=c.key, parser=_parser_for(c)) for c in source.columns]
        return cls(fields=fields, timestamp_key=source.timestamp_join_key)

    def parse(self, raw: Mapping[str, Any], *, row_number: int, row_identity: str) -> ParsedRow | RejectRow:
        values: dict[str, Any] = {}
        for f in self.fields:
            if f.column not in raw:
                return RejectRow(row_identity, row_number, RejectCode.missing_column, f"{f.column}: missing column")
            try:
                values[f.join_key] = f.parser(raw[f.column])
            except ParseError as e:
                return RejectRow(row_identity, row_number, e.code, e.detail)

        ts: Optional[int] = values.get(self.timestamp_key)
        return ParsedRow(row_identity=row_identity, row_number=row_number, timestamp=ts, values=values)


