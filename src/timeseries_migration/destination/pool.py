from __future__ import annotations

import logging
import queue
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from timeseries_migration.errors import DestinationError, PoolClosedError

from .types import DestinationSession

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], DestinationSession]

# how often a blocked acquire re-checks whether the pool was closed
_POLL_S = 0.1


class SessionPool:
    """
    Fixed-capacity pool of destination sessions.

    All sessions are opened by `open()`, so an unreachable destination
    fails at startup. `acquire` blocks until a session is free, the
    optional timeout runs out, or the pool is closed.
    """

    def __init__(self, factory: SessionFactory, size: int) -> None:
        if size < 1:
            raise ValueError("pool size must be >= 1")
        self._factory = factory
        self.size = size
        self._idle: queue.Queue[DestinationSession] = queue.Queue(maxsize=size)
        self._closed = threading.Event()
        # orders release against close so no session lands in a drained pool
        self._lock = threading.Lock()
        self._opened = False

    def open(self) -> None:
        created: list[DestinationSession] = []
        try:
            for _ in range(self.size):
                created.append(self._factory())
        except DestinationError:
            for s in created:
                s.close()
            raise
        for s in created:
            self._idle.put_nowait(s)
        self._opened = True
        logger.info("destination pool opened with %d session(s)", self.size)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def acquire(self, timeout: Optional[float] = None) -> DestinationSession:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if self._closed.is_set():
                raise PoolClosedError("destination pool is closed")
            wait = _POLL_S
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise DestinationError(f"no destination session free after {timeout}s")
                wait = min(wait, remaining)
            try:
                return self._idle.get(timeout=wait)
            except queue.Empty:
                continue

    def release(self, session: DestinationSession) -> None:
        with self._lock:
            if not self._closed.is_set():
                self._idle.put_nowait(session)
                return
        session.close()

    @contextmanager
    def session(self, timeout: Optional[float] = None) -> Iterator[DestinationSession]:
        """Check out one session; it goes back to the pool even if the block raises."""
        s = self.acquire(timeout)
        try:
            yield s
        finally:
            self.release(s)

    def close(self) -> None:
        """Close idle sessions now, checked-out ones as they are released. Idempotent."""
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
            drained: list[DestinationSession] = []
            while True:
                try:
                    drained.append(self._idle.get_nowait())
                except queue.Empty:
                    break
        for s in drained:
            try:
                s.close()
            except DestinationError:
                logger.warning("error closing destination session", exc_info=True)
        logger.info("destination pool closed")

    def __enter__(self) -> SessionPool:
        if not self._opened:
            self.open()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
