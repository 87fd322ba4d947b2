from __future__ import annotations

import math
import struct
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Mapping, Optional

from timeseries_migration.destination.types import SeriesType
from timeseries_migration.parsing.primitives import (
    EPOCH,
    INT32_MAX,
    INT32_MIN,
    INT64_MAX,
    INT64_MIN,
    ParseError,
    parse_bool,
    parse_float,
    parse_int32,
    parse_int64,
)
from timeseries_migration.parsing.types import ColumnType


@dataclass(frozen=True, slots=True)
class Conversion:
    """
    Result of converting one value.

    - `value` is `None` for an empty input or an invalid conversion
    - `lossy` flags a narrowing that changed the value (still written)
    - `error` is set only for an invalid conversion
    """
    value: Any
    lossy: bool = False
    error: Optional[str] = None


Converter = Callable[[Any], Conversion]


def _invalid(detail: str) -> Conversion:
    return Conversion(None, error=detail)


def _to_float32(v: float) -> float:
    # raises OverflowError past float32 range
    return struct.unpack("f", struct.pack("f", v))[0]


## -- floating point sources (FLOAT, DOUBLE)

def _float_to_int(low: int, high: int, kind: str) -> Converter:
    def convert(v: float) -> Conversion:
        if math.isnan(v) or math.isinf(v):
            return _invalid(f"{v!r} has no {kind} value")
        n = math.trunc(v)
        if not (low <= n <= high):
            return _invalid(f"{v!r} out of {kind} range")
        return Conversion(n, lossy=(n != v))
    return convert


def _float_to_float32(v: float) -> Conversion:
    try:
        f = _to_float32(v)
    except OverflowError:
        return _invalid(f"{v!r} out of FLOAT range")
    return Conversion(f, lossy=not math.isnan(v) and f != v)


def _float_to_double(v: float) -> Conversion:
    return Conversion(float(v))


## -- integral sources (INTEGER, LONG)

def _int_to_int(low: int, high: int, kind: str) -> Converter:
    def convert(v: int) -> Conversion:
        if not (low <= v <= high):
            return _invalid(f"{v!r} out of {kind} range")
        return Conversion(int(v))
    return convert


def _int_to_float32(v: int) -> Conversion:
    f = _to_float32(float(v))
    return Conversion(f, lossy=int(f) != v)


def _int_to_double(v: int) -> Conversion:
    f = float(v)
    return Conversion(f, lossy=int(f) != v)


## -- BOOLEAN, TIME

def _bool_to_int(v: bool) -> Conversion:
    return Conversion(1 if v else 0)


def _bool_to_text(v: bool) -> Conversion:
    return Conversion("true" if v else "false")


def _time_to_text(v: int) -> Conversion:
    """Epoch ms -> ISO-8601 instant in UTC, e.g. `2026-02-10T12:34:56.000Z`."""
    try:
        dt = EPOCH + timedelta(milliseconds=v)
    except OverflowError:
        return _invalid(f"{v!r} out of datetime range")
    return Conversion(dt.isoformat(timespec="milliseconds").replace("+00:00", "Z"))


## -- STRING: parse into the destination type

def _parsing(parse: Callable[..., Any], kind: str) -> Converter:
    def convert(v: str) -> Conversion:
        try:
            parsed = parse(v, field="value")
        except ParseError as e:
            return _invalid(f"cannot parse {kind}: {e.detail}")
        return Conversion(parsed)
    return convert


def _identity(v: Any) -> Conversion:
    return Conversion(v)


def _to_text(v: Any) -> Conversion:
    return Conversion(str(v))


_FLOATING = {
    SeriesType.DOUBLE: _float_to_double,
    SeriesType.FLOAT: _float_to_float32,
    SeriesType.INT32: _float_to_int(INT32_MIN, INT32_MAX, "INT32"),
    SeriesType.INT64: _float_to_int(INT64_MIN, INT64_MAX, "INT64"),
    SeriesType.TEXT: _to_text,
}

_INTEGRAL = {
    SeriesType.INT32: _int_to_int(INT32_MIN, INT32_MAX, "INT32"),
    SeriesType.INT64: _int_to_int(INT64_MIN, INT64_MAX, "INT64"),
    SeriesType.FLOAT: _int_to_float32,
    SeriesType.DOUBLE: _int_to_double,
    SeriesType.TEXT: _to_text,
}


# (source column type, destination series type) -> converter; any pair not listed is invalid
CONVERSIONS: Mapping[tuple[ColumnType, SeriesType], Converter] = {
    **{(ColumnType.DOUBLE, dst): fn for dst, fn in _FLOATING.items()},
    **{(ColumnType.FLOAT, dst): fn for dst, fn in _FLOATING.items()},
    **{(ColumnType.INTEGER, dst): fn for dst, fn in _INTEGRAL.items()},
    **{(ColumnType.LONG, dst): fn for dst, fn in _INTEGRAL.items()},
    (ColumnType.BOOLEAN, SeriesType.BOOLEAN): _identity,
    (ColumnType.BOOLEAN, SeriesType.INT32): _bool_to_int,
    (ColumnType.BOOLEAN, SeriesType.INT64): _bool_to_int,
    (ColumnType.BOOLEAN, SeriesType.TEXT): _bool_to_text,
    (ColumnType.TIME, SeriesType.INT64): _int_to_int(INT64_MIN, INT64_MAX, "INT64"),
    (ColumnType.TIME, SeriesType.TEXT): _time_to_text,
    (ColumnType.STRING, SeriesType.TEXT): _identity,
    (ColumnType.STRING, SeriesType.INT32): _parsing(parse_int32, "INT32"),
    (ColumnType.STRING, SeriesType.INT64): _parsing(parse_int64, "INT64"),
    (ColumnType.STRING, SeriesType.FLOAT): _parsing(parse_float, "FLOAT"),
    (ColumnType.STRING, SeriesType.DOUBLE): _parsing(parse_float, "DOUBLE"),
    (ColumnType.STRING, SeriesType.BOOLEAN): _parsing(parse_bool, "BOOLEAN"),
}


def is_valid_conversion(source: ColumnType, destination: SeriesType) -> bool:
    return (source, destination) in CONVERSIONS


def convert_value(source: ColumnType, destination: SeriesType, value: Any) -> Conversion:
    """
    Convert one parsed value for a destination field.

    Never raises: an incompatible pair or an unconvertible value comes back
    as `Conversion(None, error=...)` so the caller can drop just that field.
    """
    if value is None:
        return Conversion(None)
    fn = CONVERSIONS.get((source, destination))
    if fn is None:
        return _invalid(f"no conversion from {source.value} to {destination.value}")
    return fn(value)
