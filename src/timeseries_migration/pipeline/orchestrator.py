from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from typing import Callable, Protocol, Sequence

from timeseries_migration.ingest.summary import SourceSummary

from .initializer import SourceGroup

logger = logging.getLogger(__name__)


class Task(Protocol):
    def run(self) -> list[SourceSummary]: ...


TaskFactory = Callable[[SourceGroup, threading.Event], Task]


class Orchestrator:
    """
    Fixed pool of workers draining a queue of source groups.

    Each worker claims one group at a time and runs it to completion, so
    a source is never processed by two workers at once. `stop()` stops
    workers from claiming new groups; in-flight groups stop at their next
    batch boundary, and after `grace_period_s` anything not yet started
    is cancelled.
    """

    def __init__(self, task_factory: TaskFactory, *, workers: int, grace_period_s: float) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.task_factory = task_factory
        self.workers = workers
        self.grace_period_s = grace_period_s
        self._stop = threading.Event()
        self.errors: list[str] = []

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def _worker(self, work: queue.Queue[SourceGroup]) -> list[SourceSummary]:
        summaries: list[SourceSummary] = []
        while not self._stop.is_set():
            try:
                group = work.get_nowait()
            except queue.Empty:
                break
            try:
                summaries.extend(self.task_factory(group, self._stop).run())
            except Exception as e:
                # one source group failing must not take the others down
                logger.exception("source group %s failed", group.config.display_name())
                self.errors.append(f"{group.config.display_name()}: {e}")
            finally:
                work.task_done()
        return summaries

    def run(self, groups: Sequence[SourceGroup]) -> list[SourceSummary]:
        work: queue.Queue[SourceGroup] = queue.Queue()
        for g in groups:
            work.put(g)
        if not groups:
            return []

        n = min(self.workers, len(groups))
        logger.info("starting %d worker(s) for %d source group(s)", n, len(groups))

        pool = ThreadPoolExecutor(max_workers=n, thread_name_prefix="migrate-worker")
        futures: list[Future[list[SourceSummary]]] = [pool.submit(self._worker, work) for _ in range(n)]
        pending = set(futures)
        try:
            while pending and not self._stop.is_set():
                _, pending = wait(pending, timeout=0.5, return_when=FIRST_EXCEPTION)
        except BaseException:
            # workers must stop claiming groups before the caller closes the session pool
            logger.warning("interrupted, stopping workers")
            self._stop.set()
            raise
        finally:
            if pending:
                logger.info("shutdown requested, waiting up to %.1fs for workers", self.grace_period_s)
                _, pending = wait(pending, timeout=self.grace_period_s)
                if pending:
                    logger.warning("%d worker(s) still running after the grace period, cancelling", len(pending))
            pool.shutdown(wait=False, cancel_futures=True)

        summaries: list[SourceSummary] = []
        for f in futures:
            if f.done() and not f.cancelled():
                summaries.extend(f.result())
        return summaries
