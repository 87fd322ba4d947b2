from __future__ import annotations

from typing import Optional

from .store import ProgressStore


def db_init(*, database_url: Optional[str] = None) -> str:
    """
    Create the progress store tables (sources, jobs, row_progress, migration_logs).

    Existing tables are left untouched. Returns the url used, with the
    password masked, for printing.
    """
    store = ProgressStore.from_url(database_url)
    try:
        store.initialize()
        return store.engine.url.render_as_string(hide_password=True)
    finally:
        store.dispose()
