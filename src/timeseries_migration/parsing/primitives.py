from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Any, Optional
from zoneinfo import ZoneInfo

from .types import RejectCode, TimeFormat


@dataclass(frozen=True, slots=True)
class ParseError(Exception):
    """Raised by the typed parsers, turned into a `RejectRow` by `RowParser`."""
    code: RejectCode
    detail: str


_NULL_STRINGS = {"", "null", "na", "n/a"}

INT32_MIN, INT32_MAX = -(2**31), 2**31 - 1
INT64_MIN, INT64_MAX = -(2**63), 2**63 - 1

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


def normalize_cell(v: Any) -> Any:
    """Strip text cells; the null synonyms become `None`."""
    if v is None:
        return None
    if isinstance(v, str):
        s = v.strip()
        if s.lower() in _NULL_STRINGS:
            return None
        return s
    return v


## -- integers

def _parse_integer(v: Any, *, field: str, low: int, high: int, kind: str) -> Optional[int]:
    v = normalize_cell(v)
    if v is None:
        return None
    try:
        # "12.3" or "1e4" must not sneak through as an int
        if isinstance(v, str) and (("." in v) or ("e" in v.lower())):
            raise ValueError("non-integer text")
        n = int(v)
    except (TypeError, ValueError):
        raise ParseError(RejectCode.invalid_int, f"{field}: invalid {kind} value {v!r}")
    if not (low <= n <= high):
        raise ParseError(RejectCode.invalid_int, f"{field}: {kind} out of range {v!r}")
    return n


def parse_int32(v: Any, *, field: str) -> Optional[int]:
    return _parse_integer(v, field=field, low=INT32_MIN, high=INT32_MAX, kind="int32")


def parse_int64(v: Any, *, field: str) -> Optional[int]:
    return _parse_integer(v, field=field, low=INT64_MIN, high=INT64_MAX, kind="int64")


## -- floating point, bool, text

def parse_float(v: Any, *, field: str) -> Optional[float]:
    """Parse FLOAT and DOUBLE columns. Precision narrowing happens at conversion time."""
    v = normalize_cell(v)
    if v is None:
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        raise ParseError(RejectCode.invalid_numeric, f"{field}: invalid numeric value {v!r}")


_TRUE = ("1", "true", "t", "yes", "y")
_FALSE = ("0", "false", "f", "no", "n")


def parse_bool(v: Any, *, field: str) -> Optional[bool]:
    v = normalize_cell(v)
    if v is None:
        return None
    if isinstance(v, bool):
        return v

    s = str(v).lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    raise ParseError(RejectCode.invalid_bool, f"{field}: invalid boolean {v!r} (expected true/false or 1/0)")


def parse_text(v: Any, *, field: str) -> Optional[str]:
    v = normalize_cell(v)
    return None if v is None else str(v)


## -- time

@lru_cache(maxsize=None)
def resolve_zone(name: str) -> tzinfo:
    """`UTC` without touching the tz database, anything else through `zoneinfo`."""
    if name.upper() in ("UTC", "Z"):
        return timezone.utc
    return ZoneInfo(name)


def to_epoch_ms(dt: datetime) -> int:
    """Aware datetime -> integer epoch milliseconds (floor)."""
    return (dt - EPOCH) // _ONE_MS


def parse_time(
    v: Any,
    *,
    field: str,
    time_format: TimeFormat,
    pattern: Optional[str] = None,
    zone: str = "UTC",
) -> Optional[int]:
    """
    Parse a `TIME` cell into epoch milliseconds.

    - `unix`: seconds, fractional seconds allowed
    - `unix_ms`: integer milliseconds
    - `iso`: `2026-02-10T12:34:56Z`, `2026-02-10 12:34:56+00:00`, naive -> `zone`
    - `custom`: `datetime.strptime(pattern)`, naive -> `zone`
    """
    v = normalize_cell(v)
    if v is None:
        return None
    s = str(v)

    if time_format is TimeFormat.UNIX:
        try:
            return int(Decimal(s) * 1000)
        except (InvalidOperation, ValueError, OverflowError):
            raise ParseError(RejectCode.invalid_timestamp, f"{field}: invalid unix seconds {v!r}")

    if time_format is TimeFormat.UNIX_MS:
        try:
            return int(s)
        except ValueError:
            raise ParseError(RejectCode.invalid_timestamp, f"{field}: invalid unix milliseconds {v!r}")

    if time_format is TimeFormat.ISO:
        normalized = s.replace("Z", "+00:00").replace(" ", "T")
        try:
            dt = datetime.fromisoformat(normalized)
        except ValueError:
            raise ParseError(RejectCode.invalid_timestamp, f"{field}: invalid timestamp (ISO): {v!r}")
    else:
        if not pattern:
            raise ParseError(RejectCode.invalid_timestamp, f"{field}: custom time format without a pattern")
        try:
            dt = datetime.strptime(s, pattern)
        except ValueError:
            raise ParseError(RejectCode.invalid_timestamp, f"{field}: timestamp {v!r} does not match {pattern!r}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=resolve_zone(zone))
    return to_epoch_ms(dt)
