from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    false,
    func,
)

metadata = MetaData()


sources = Table(
    "sources",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("path", Text, nullable=False, unique=True),
    Column("status", String(16), nullable=False, server_default="PENDING"),
    Column("total_rows", BigInteger, nullable=False, server_default="0"),
    Column("processed_rows", BigInteger, nullable=False, server_default="0"),
    Column("failed_rows", BigInteger, nullable=False, server_default="0"),
    Column("last_processed_at", DateTime(timezone=True)),
    Column("error_message", Text),
    Column("has_failed_rows", Boolean, nullable=False, server_default=false()),
)


jobs = Table(
    "jobs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("source_id", Integer, ForeignKey("sources.id"), nullable=False),
    Column("status", String(16), nullable=False, server_default="PENDING"),
    Column("start_time", DateTime(timezone=True), server_default=func.current_timestamp()),
    Column("end_time", DateTime(timezone=True)),
    Column("processed_rows", BigInteger, nullable=False, server_default="0"),
    Column("failed_rows", BigInteger, nullable=False, server_default="0"),
    Column("error_message", Text),
    Index("ix_jobs_source_id", "source_id"),
)


# the per-row ledger, keyed by (source_id, row_identity)
row_progress = Table(
    "row_progress",
    metadata,
    Column("source_id", Integer, ForeignKey("sources.id"), nullable=False),
    Column("row_identity", String(64), nullable=False),
    Column("row_number", BigInteger, nullable=False),
    Column("status", String(16), nullable=False),
    Column("error_message", Text),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.current_timestamp()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.current_timestamp()),
    Column("retry_count", Integer, nullable=False, server_default="0"),
    PrimaryKeyConstraint("source_id", "row_identity", name="pk_row_progress"),
    Index("ix_row_progress_source_status", "source_id", "status"),
    Index("ix_row_progress_source_row_number", "source_id", "row_number"),
)


migration_logs = Table(
    "migration_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("source_id", Integer, ForeignKey("sources.id")),     # NULL for process-level events
    Column("logged_at", DateTime(timezone=True), nullable=False, server_default=func.current_timestamp()),
    Column("level", String(16), nullable=False),
    Column("message", Text, nullable=False),
)
