from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from timeseries_migration.db.statuses import SourceStatus


@dataclass(frozen=True)
class SourceSummary:
    """Outcome of one pass over one source file."""
    source_id: int
    path: str
    job_id: int
    status: SourceStatus
    total: int              # data rows in the file
    processed: int          # rows emitted by the reader this pass
    failed: int             # rows left FAILED in the ledger
    error: Optional[str] = None

    def render_one_line(self) -> str:
        line = (
            f"{self.path}: status={self.status.value} total={self.total} "
            f"processed={self.processed} failed={self.failed} job_id={self.job_id}"
        )
        if self.error:
            line += f" error={self.error!r}"
        return line
