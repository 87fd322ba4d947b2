from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Protocol


class SeriesType(str, Enum):
    """Value type of a destination series."""
    BOOLEAN = "BOOLEAN"
    INT32 = "INT32"
    INT64 = "INT64"
    FLOAT = "FLOAT"
    DOUBLE = "DOUBLE"
    TEXT = "TEXT"


class Encoding(str, Enum):
    PLAIN = "PLAIN"
    DICTIONARY = "DICTIONARY"
    RLE = "RLE"
    DIFF = "DIFF"
    TS_2DIFF = "TS_2DIFF"
    GORILLA = "GORILLA"
    ZIGZAG = "ZIGZAG"


class Compression(str, Enum):
    UNCOMPRESSED = "UNCOMPRESSED"
    SNAPPY = "SNAPPY"
    GZIP = "GZIP"
    LZ4 = "LZ4"
    ZSTD = "ZSTD"
    LZMA2 = "LZMA2"


# used when a measurement does not name an encoding; TEXT cannot be RLE encoded
DEFAULT_ENCODINGS: Mapping[SeriesType, Encoding] = {
    SeriesType.BOOLEAN: Encoding.RLE,
    SeriesType.INT32: Encoding.RLE,
    SeriesType.INT64: Encoding.RLE,
    SeriesType.FLOAT: Encoding.GORILLA,
    SeriesType.DOUBLE: Encoding.GORILLA,
    SeriesType.TEXT: Encoding.PLAIN,
}


@dataclass(frozen=True, slots=True)
class SeriesSchema:
    """
    Type, encoding and compression of one series.

    Held as plain upper-case strings so a series described by the server
    with a value this package has no enum member for still compares
    (unequal) instead of failing to parse.
    """
    data_type: str
    encoding: str
    compression: str

    @classmethod
    def of(cls, data_type: SeriesType, encoding: Encoding, compression: Compression) -> SeriesSchema:
        return cls(data_type.value, encoding.value, compression.value)

    def __str__(self) -> str:
        return f"{self.data_type}/{self.encoding}/{self.compression}"


@dataclass(frozen=True, slots=True)
class Tablet:
    """
    Columnar write unit for one device path.

    `values` is row-major and aligned with `timestamps`; a `None` cell is a
    field with no value for that row.
    """
    device_path: str
    measurements: list[str]
    data_types: list[SeriesType]
    timestamps: list[int] = field(default_factory=list)
    values: list[list[Any]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.timestamps)


class DestinationSession(Protocol):
    """
    What the migration needs from one destination client session.

    Implementations raise `DestinationError` for connection and execution
    failures.
    """

    def describe_series(self, path: str) -> Optional[SeriesSchema]: ...

    def create_series(self, path: str, schema: SeriesSchema) -> None: ...

    def create_aligned_series(self, device_path: str, fields: Mapping[str, SeriesSchema]) -> None: ...

    def write_tablet(self, tablet: Tablet, *, aligned: bool) -> None: ...

    def close(self) -> None: ...


def series_path(device_path: str, measurement: str) -> str:
    return f"{device_path}.{measurement}"


