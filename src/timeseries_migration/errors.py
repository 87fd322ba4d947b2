from __future__ import annotations


class MigrationError(Exception):
    """Base class for every error raised by the migration engine."""


class ConfigurationError(MigrationError):
    """Bad configuration. Fatal at startup, never retried."""


class SchemaMismatchError(ConfigurationError):
    """A destination series exists with a different type, encoding or compression."""

    def __init__(self, path: str, *, expected: object, actual: object) -> None:
        super().__init__(f"schema mismatch for {path}: expected {expected}, found {actual}")
        self.path = path
        self.expected = expected
        self.actual = actual


class DestinationError(MigrationError):
    """A connection or execution failure reported by the destination client."""


class PoolClosedError(DestinationError):
    """Raised by `SessionPool.acquire` once the pool has been closed."""


class SourceReadError(MigrationError):
    """A source file could not be opened or tokenized."""

    def __init__(self, source_id: int, path: str, detail: str) -> None:
        super().__init__(f"source {source_id} ({path}): {detail}")
        self.source_id = source_id
        self.path = path
        self.detail = detail


class ReaderExhaustedError(MigrationError):
    """`read_batch` was called after the reader already reported terminal."""
