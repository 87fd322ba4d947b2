from __future__ import annotations

import csv
from pathlib import Path
from typing import IO, Any, Iterator, Mapping, Optional


class CsvRowStream:
    """
    An open CSV file yielding `(row_number, dict)` pairs.

    `row_number` is 1-based for the first data row, the header is not
    counted. `close()` releases the file handle exactly once.
    """

    def __init__(self, path: Path, *, delimiter: str = ",", quote_char: str = '"', encoding: str = "utf-8") -> None:
        self.path = path
        self.delimiter = delimiter
        self.quote_char = quote_char
        self.encoding = encoding
        self._fh: Optional[IO[str]] = None
        self._reader: Optional[csv.DictReader[str]] = None

    def open(self) -> list[str]:
        """Open the file and read the header. Returns the header names (empty for an empty file)."""
        self._fh = self.path.open("r", encoding=self.encoding, newline="")
        self._reader = csv.DictReader(self._fh, delimiter=self.delimiter, quotechar=self.quote_char)
        return [name.strip() for name in (self._reader.fieldnames or [])]

    @property
    def closed(self) -> bool:
        return self._fh is None

    def rows(self) -> Iterator[tuple[int, Mapping[str, Any]]]:
        if self._reader is None:
            raise RuntimeError(f"{self.path} is not open")
        for i, row in enumerate(self._reader, start=1):
            # header names are matched stripped; short rows leave None cells
            yield i, {str(k).strip(): v for k, v in row.items() if k is not None}

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
        self._fh = None
        self._reader = None

    def __enter__(self) -> CsvRowStream:
        self.open()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
