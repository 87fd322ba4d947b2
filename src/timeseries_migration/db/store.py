from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import Connection, Engine

from .connect import create_store_engine
from .tables import metadata

logger = logging.getLogger(__name__)


class ProgressStore:
    """
    Handle on the progress ledger (sources, jobs, row progress, audit log).

    Built explicitly and handed to every component that needs it. All
    mutations go through `transaction()`; the row/source/job modules take
    the yielded connection as their first argument.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: Optional[str] = None, *, pool_size: int = 10) -> ProgressStore:
        return cls(create_store_engine(database_url, pool_size=pool_size))

    def initialize(self) -> None:
        """Create any missing ledger tables. Safe to run on every start."""
        metadata.create_all(self.engine)
        logger.debug("progress store tables ensured on %s", self.engine.url.render_as_string(hide_password=True))

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """
        One `BEGIN ... COMMIT` block.

        Any exception inside the block rolls the whole transaction back and
        is re-raised to the caller.
        """
        with self.engine.begin() as conn:
            yield conn

    def dispose(self) -> None:
        self.engine.dispose()

    def __repr__(self) -> str:
        return f"ProgressStore(url={self.engine.url.render_as_string(hide_password=True)!r})"
