from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional, Sequence

from timeseries_migration.config.models import SourceConfig
from timeseries_migration.db.rows import RowUpsert, fail_rows, fetch_replay_row_numbers, max_row_number, upsert_rows
from timeseries_migration.db.sources import set_total_rows
from timeseries_migration.db.statuses import RowStatus
from timeseries_migration.db.store import ProgressStore
from timeseries_migration.errors import ReaderExhaustedError, SourceReadError
from timeseries_migration.parsing.identity import row_identity
from timeseries_migration.parsing.schema import RowParser
from timeseries_migration.parsing.types import ParsedRow, RejectRow

from .readers import CsvRowStream

logger = logging.getLogger(__name__)


class ReaderState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    EXHAUSTED = "EXHAUSTED"


@dataclass(frozen=True, slots=True)
class SourceFile:
    """A registered source: ledger id plus the path its row identities are derived from."""
    source_id: int
    path: str


@dataclass(frozen=True, slots=True)
class Batch:
    """
    Parsed rows from a single file.

    Rows that failed to parse are already recorded `FAILED` and only
    counted in `rejected`. `last_in_file` marks the batch that drained
    its file (it may hold no rows at all).
    """
    source_id: int
    file_path: str
    rows: list[ParsedRow] = field(default_factory=list)
    rejected: int = 0
    replay: bool = False
    last_in_file: bool = False

    @property
    def emitted(self) -> int:
        return len(self.rows) + self.rejected


class BatchReader:
    """
    Streams fixed-size batches of parsed rows over a list of files.

    State machine `CLOSED -> OPEN -> EXHAUSTED`:
      - each file is opened in turn; opening runs one replay check against
        the ledger,
      - a source with rows already recorded is read in replay-only mode:
        only rows still owed a write (`PENDING`/`RETRY`/`PROCESSING`, or
        `FAILED` with retry budget left) are emitted, plus rows past the
        highest recorded row number (never seen before),
      - everything else in replay mode is skipped without touching the ledger,
      - parse failures are recorded `FAILED` right away and reading continues;
        a replayed one passes through `RETRY` first so it uses up retry budget,
      - new rows are recorded `PENDING`, replayed ones `RETRY`.

    `read_batch` returns `None` once, when every file is done; calling it
    again after that raises `ReaderExhaustedError`.
    """

    def __init__(
        self,
        store: ProgressStore,
        source: SourceConfig,
        files: Sequence[SourceFile],
        *,
        batch_size: int,
        max_retry_count: int,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.store = store
        self.source = source
        self.files = list(files)
        self.batch_size = batch_size
        self.max_retry_count = max_retry_count
        self.parser = RowParser.for_source(source)

        self.state = ReaderState.CLOSED
        self._next_file = 0
        self._terminal_reported = False

        # per open file
        self._current: Optional[SourceFile] = None
        self._stream: Optional[CsvRowStream] = None
        self._rows: Optional[Iterator[tuple[int, Mapping[str, Any]]]] = None
        self._replay = False
        self._replay_numbers: set[int] = set()
        self._max_recorded = 0
        self._last_row_number = 0

    ## -- file lifecycle

    def _open_next_file(self) -> None:
        sf = self.files[self._next_file]
        # advance first: a file that fails to open is not retried by this reader
        self._next_file += 1

        stream = CsvRowStream(
            Path(sf.path),
            delimiter=self.source.delimiter,
            quote_char=self.source.quote_char,
            encoding=self.source.encoding,
        )
        try:
            header = stream.open()
        except (OSError, UnicodeDecodeError, csv.Error) as e:
            stream.close()
            raise SourceReadError(sf.source_id, sf.path, f"cannot open: {e}") from e

        missing = [f.column for f in self.parser.fields if f.column not in header]
        if missing:
            stream.close()
            raise SourceReadError(sf.source_id, sf.path, f"header is missing columns {missing}")

        with self.store.transaction() as conn:
            recorded = max_row_number(conn, source_id=sf.source_id)
            replay_numbers = (
                fetch_replay_row_numbers(conn, source_id=sf.source_id, max_retry_count=self.max_retry_count)
                if recorded is not None
                else set()
            )

        self._current = sf
        self._stream = stream
        self._rows = stream.rows()
        self._replay = recorded is not None
        self._replay_numbers = replay_numbers
        self._max_recorded = recorded or 0
        self._last_row_number = 0
        self.state = ReaderState.OPEN

        if self._replay:
            logger.info(
                "replaying %s: %d recorded row(s) to re-emit, rows after %d are new",
                sf.path,
                len(replay_numbers),
                self._max_recorded,
            )
        else:
            logger.info("reading %s from the start", sf.path)

    def _close_file(self) -> None:
        if self._stream is not None:
            self._stream.close()
        self._stream = None
        self._rows = None
        self._current = None

    def close(self) -> None:
        """Release the open file, if any. Idempotent."""
        self._close_file()
        if self.state is ReaderState.OPEN:
            self.state = ReaderState.CLOSED

    def __enter__(self) -> BatchReader:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    ## -- reading

    def _wanted(self, row_number: int) -> bool:
        if not self._replay or row_number > self._max_recorded:
            return True
        return row_number in self._replay_numbers

    def read_batch(self) -> Batch | None:
        """
        Next batch of up to `batch_size` parsed rows from the current file.

        Raises `SourceReadError` when a file cannot be opened or tokenized;
        the following call moves on to the next file.
        """
        if self.state is ReaderState.EXHAUSTED:
            if self._terminal_reported:
                raise ReaderExhaustedError("read_batch called after the reader reported terminal")
            self._terminal_reported = True
            return None

        if self._stream is None:
            if self._next_file >= len(self.files):
                self.state = ReaderState.EXHAUSTED
                self._terminal_reported = True
                return None
            self._open_next_file()

        return self._fill_batch()

    def _fill_batch(self) -> Batch:
        sf = self._current
        assert sf is not None and self._rows is not None

        parsed: list[ParsedRow] = []
        ledger: list[RowUpsert] = []
        refailed: dict[str, str] = {}
        rejected = 0
        file_done = False

        try:
            while len(parsed) < self.batch_size:
                item = next(self._rows, None)
                if item is None:
                    file_done = True
                    break
                row_number, raw = item
                self._last_row_number = row_number
                if not self._wanted(row_number):
                    continue

                identity = row_identity(sf.source_id, sf.path, row_number)
                replayed = self._replay and row_number <= self._max_recorded
                res = self.parser.parse(raw, row_number=row_number, row_identity=identity)

                if isinstance(res, RejectRow):
                    rejected += 1
                    if replayed:
                        # RETRY -> FAILED counts as a fresh failure against the retry budget
                        ledger.append(RowUpsert(identity, row_number, RowStatus.RETRY))
                        refailed[identity] = res.message()
                    else:
                        ledger.append(RowUpsert(identity, row_number, RowStatus.FAILED, res.message()))
                    logger.debug("row %d of %s rejected: %s", row_number, sf.path, res.message())
                else:
                    parsed.append(res)
                    ledger.append(RowUpsert(identity, row_number, RowStatus.RETRY if replayed else RowStatus.PENDING))
        except (OSError, UnicodeDecodeError, csv.Error) as e:
            self._close_file()
            raise SourceReadError(sf.source_id, sf.path, f"read failed after row {self._last_row_number}: {e}") from e

        with self.store.transaction() as conn:
            upsert_rows(conn, source_id=sf.source_id, rows=ledger)
            fail_rows(conn, source_id=sf.source_id, failures=refailed)
            if file_done:
                set_total_rows(conn, source_id=sf.source_id, total_rows=self._last_row_number)

        batch = Batch(
            source_id=sf.source_id,
            file_path=sf.path,
            rows=parsed,
            rejected=rejected,
            replay=self._replay,
            last_in_file=file_done,
        )
        if file_done:
            logger.info("finished reading %s (%d rows)", sf.path, self._last_row_number)
            self._close_file()
            self.state = ReaderState.CLOSED if self._next_file < len(self.files) else ReaderState.EXHAUSTED
        return batch
