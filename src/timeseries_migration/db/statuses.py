from __future__ import annotations

from enum import Enum
from typing import TypeVar


class SourceStatus(str, Enum):
    """Lifecycle of one source file."""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class JobStatus(str, Enum):
    """Lifecycle of one migration attempt against a source."""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class RowStatus(str, Enum):
    """Per-row progress states."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    RETRY = "RETRY"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class LogLevel(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


TERMINAL_SOURCE_STATUSES = frozenset({SourceStatus.COMPLETED, SourceStatus.FAILED})
TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# rows the batch reader re-emits on a later pass (FAILED rows also need retry budget)
REPLAYABLE_ROW_STATUSES = (RowStatus.PENDING, RowStatus.RETRY, RowStatus.PROCESSING)


E = TypeVar("E", SourceStatus, JobStatus, RowStatus, LogLevel)


def parse_status(enum_cls: type[E], value: str) -> E:
    """
    Map a stored status string back onto its enum.

    Unknown values are a hard error: a ledger holding a status this code
    does not know about was written by something else.
    """
    try:
        return enum_cls(value)
    except ValueError:
        raise ValueError(f"unknown {enum_cls.__name__} value: {value!r}") from None
