"""
Pydantic models for the migration config file.

MigrationConfig
    sources         CSV file groups, their columns and the event-time column
    destination     client pool settings, connections, device mappings
    migration       worker count, batch size, retry budget, scheduler timing
    progress_store  ledger database url

Field-level checks live on each model; the cross-references between CSV
join keys and destination measurements are checked once on `MigrationConfig`.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationInfo, field_validator, model_validator

from timeseries_migration.convert.matrix import is_valid_conversion
from timeseries_migration.destination.types import (
    DEFAULT_ENCODINGS,
    Compression,
    Encoding,
    SeriesSchema,
    SeriesType,
)
from timeseries_migration.parsing.types import ColumnType, TimeFormat

# join key the event time is addressed by; no column may claim it
RESERVED_JOIN_KEY = "timestamp"

TIMESTAMP_COLUMN_TYPES = (ColumnType.TIME, ColumnType.LONG, ColumnType.INTEGER)


class CsvColumn(BaseModel):
    """One column of a source file."""

    name: str = Field(min_length=1, description="Header name in the CSV file")
    type: ColumnType
    join_key: Optional[str] = Field(default=None, description="Key measurements refer to; defaults to name")
    time_format: TimeFormat = TimeFormat.ISO
    time_pattern: Optional[str] = Field(default=None, description="strptime pattern for time_format=custom")
    time_zone: str = "UTC"
    is_path_column: bool = False

    @property
    def key(self) -> str:
        return self.join_key or self.name

    @model_validator(mode="after")
    def validate_time_settings(self) -> CsvColumn:
        if self.type is ColumnType.TIME and self.time_format is TimeFormat.CUSTOM and not self.time_pattern:
            raise ValueError(f"column {self.name!r}: time_format 'custom' requires time_pattern")
        return self


class SourceConfig(BaseModel):
    """A group of CSV files sharing one column layout."""

    file_paths: list[Path] = Field(min_length=1)
    timestamp_column: str = Field(description="Name of the event-time column")
    columns: list[CsvColumn] = Field(min_length=1)
    delimiter: str = ","
    quote_char: str = '"'
    encoding: str = "utf-8"

    @field_validator("delimiter", "quote_char")
    @classmethod
    def validate_single_char(cls, v: str) -> str:
        if len(v) != 1:
            raise ValueError("must be a single character")
        return v

    @field_validator("file_paths")
    @classmethod
    def validate_files_exist(cls, v: list[Path], info: ValidationInfo) -> list[Path]:
        # only checked when the loader asks for it
        if info.context and info.context.get("check_files"):
            missing = [str(p) for p in v if not p.is_file()]
            if missing:
                raise ValueError(f"source files not found: {missing}")
        return v

    @model_validator(mode="after")
    def validate_timestamp_column(self) -> SourceConfig:
        matches = [c for c in self.columns if c.name == self.timestamp_column]
        if len(matches) != 1:
            raise ValueError(
                f"timestamp_column {self.timestamp_column!r} must name exactly one column, found {len(matches)}"
            )
        if matches[0].type not in TIMESTAMP_COLUMN_TYPES:
            raise ValueError(f"timestamp column {self.timestamp_column!r} must be TIME, LONG or INTEGER")
        return self

    @property
    def timestamp_join_key(self) -> str:
        return next(c.key for c in self.columns if c.name == self.timestamp_column)

    def column_types(self) -> dict[str, ColumnType]:
        """Join key -> declared column type."""
        return {c.key: c.type for c in self.columns}

    def display_name(self) -> str:
        return ", ".join(str(p) for p in self.file_paths)


class MeasurementConfig(BaseModel):
    """One field of a destination device."""

    name: str = Field(min_length=1)
    join_key: str = Field(description="CSV join key the value is read from")
    data_type: SeriesType
    encoding: Optional[Encoding] = None
    compression: Compression = Compression.SNAPPY

    @model_validator(mode="after")
    def default_encoding(self) -> MeasurementConfig:
        if self.encoding is None:
            self.encoding = DEFAULT_ENCODINGS[self.data_type]
        return self

    def series_schema(self) -> SeriesSchema:
        assert self.encoding is not None
        return SeriesSchema.of(self.data_type, self.encoding, self.compression)


class DeviceConfig(BaseModel):
    """
    A destination device: fixed path prefix, optional per-row segment,
    and the measurements written under it.
    """

    prefix: str = Field(description="Path prefix, e.g. root.plant")
    path_column: Optional[str] = Field(default=None, description="Join key whose value is appended to prefix")
    aligned: bool = False
    measurements: list[MeasurementConfig] = Field(min_length=1)

    @field_validator("prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        v = v.strip()
        if v != "root" and not v.startswith("root."):
            raise ValueError("device prefix must start with 'root'")
        if v.endswith("."):
            raise ValueError("device prefix must not end with '.'")
        return v

    @model_validator(mode="after")
    def validate_unique_measurements(self) -> DeviceConfig:
        names = [m.name for m in self.measurements]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"device {self.prefix!r}: duplicate measurement names {dupes}")
        return self

    def join_keys(self) -> set[str]:
        keys = {m.join_key for m in self.measurements}
        if self.path_column:
            keys.add(self.path_column)
        return keys


class ConnectionConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(default=6667, ge=1, le=65535)
    username: str = "root"
    password: str = "root"

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("host cannot be empty")
        return v.strip()


class DestinationConfig(BaseModel):
    """Time-series store client settings and device mappings."""

    pool_size: int = Field(default=4, ge=1, description="Sessions kept open in the client pool")
    max_retries: int = Field(default=3, ge=0, description="Retries after the first failed write")
    retry_interval_ms: int = Field(default=1000, ge=0, description="Backoff base interval")
    max_backoff_ms: int = Field(default=30_000, ge=0, description="Backoff cap")
    fetch_size: int = Field(default=1024, ge=1)
    connections: list[ConnectionConfig] = Field(min_length=1)
    devices: list[DeviceConfig] = Field(min_length=1)


class MigrationSettings(BaseModel):
    """Concurrency and retry budget."""

    threads: int = Field(default=4, ge=1)
    batch_size: int = Field(default=1000, ge=1)
    max_retry_count: int = Field(default=3, ge=1, description="Failed rows with fewer failures are replayed")
    retry_scheduler_enabled: bool = True
    retry_scheduler_interval_s: float = Field(default=60.0, gt=0)
    shutdown_grace_period_s: float = Field(default=30.0, ge=0)


class ProgressStoreConfig(BaseModel):
    url: Optional[str] = Field(default=None, description="SQLAlchemy url; MIGRATION_DSN when unset")
    pool_size: int = Field(default=10, ge=1)


class MigrationConfig(BaseModel):
    """Top-level configuration."""

    sources: list[SourceConfig] = Field(min_length=1)
    destination: DestinationConfig
    migration: MigrationSettings = Field(default_factory=MigrationSettings)
    progress_store: ProgressStoreConfig = Field(default_factory=ProgressStoreConfig)

    @model_validator(mode="after")
    def validate_mappings(self) -> MigrationConfig:
        """
        Cross-check CSV columns against destination devices:
        - a file path is listed once, by a single source
        - join keys are unique across all sources and never `timestamp`
        - every measurement reads an existing join key through a valid conversion
        - a device only reads join keys of a single source
        - path columns exist and are used by a device
        - every non event-time column is used by some device
        """
        # the ledger keys sources by path, a shared path would share row identities
        listed_by: dict[str, int] = {}
        for idx, source in enumerate(self.sources):
            for p in source.file_paths:
                key = str(p)
                if key in listed_by:
                    where = "twice by one source" if listed_by[key] == idx else "by more than one source"
                    raise ValueError(f"file {key!r} is listed {where}")
                listed_by[key] = idx

        columns: dict[str, CsvColumn] = {}
        owner: dict[str, int] = {}
        for idx, source in enumerate(self.sources):
            for col in source.columns:
                if col.key == RESERVED_JOIN_KEY:
                    raise ValueError(f"join key {RESERVED_JOIN_KEY!r} is reserved (column {col.name!r})")
                if col.key in columns:
                    raise ValueError(f"duplicate join key {col.key!r}")
                columns[col.key] = col
                owner[col.key] = idx

        used: set[str] = set()
        for device in self.destination.devices:
            for m in device.measurements:
                col = columns.get(m.join_key)
                if col is None:
                    raise ValueError(f"device {device.prefix!r}: measurement {m.name!r} join key {m.join_key!r} matches no CSV column")
                if not is_valid_conversion(col.type, m.data_type):
                    raise ValueError(
                        f"device {device.prefix!r}: cannot convert column {col.name!r} "
                        f"({col.type.value}) to {m.data_type.value}"
                    )
            if device.path_column is not None and device.path_column not in columns:
                raise ValueError(f"device {device.prefix!r}: path column {device.path_column!r} matches no CSV column")

            owners = {owner[k] for k in device.join_keys()}
            if len(owners) > 1:
                raise ValueError(f"device {device.prefix!r} reads join keys from more than one source")
            used |= device.join_keys()

        for source in self.sources:
            for col in source.columns:
                if col.name == source.timestamp_column or col.key in used:
                    continue
                if col.is_path_column:
                    raise ValueError(f"path column {col.name!r} is not used by any device")
                raise ValueError(f"column {col.name!r} (join key {col.key!r}) is not used by any device")
        return self

    def devices_for(self, source: SourceConfig) -> list[DeviceConfig]:
        """Devices fed by this source's join keys."""
        keys = set(source.column_types())
        return [d for d in self.destination.devices if d.join_keys() & keys]
