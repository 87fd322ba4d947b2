from __future__ import annotations

import argparse
import sys
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from timeseries_migration.cli.runner import run_migration
from timeseries_migration.config.loader import load_config
from timeseries_migration.db.initialize import db_init
from timeseries_migration.db.sources import list_sources
from timeseries_migration.db.store import ProgressStore
from timeseries_migration.errors import ConfigurationError, DestinationError
from timeseries_migration.logging_config import configure_logging


def main(argv: list[str] | None = None) -> int:
    """
    CLI for migrating CSV files into a time-series store.

    ## run
    Migrate every source in a JSON config. Safe to re-run: only rows not
    already `COMPLETED` are read again.
    - `--config` path to the migration config
    - `--log-level`, `--json-logs` logging output

    One summary line per source file is printed on completion. Exits 1 on
    a configuration or startup error, or when a destination series has a
    mismatched schema.

    ### Example:
    - `migrate run --config config/migration.json`

    ## db
    - `init` creates the progress store tables (`--dsn` overrides `MIGRATION_DSN`)

    ## status
    One line per registered source with its status and row counters.
    """
    p = argparse.ArgumentParser(prog="migrate")
    sub = p.add_subparsers(dest="cmd", required=True)

    # run cmd
    run = sub.add_parser("run", help="Migrate the configured CSV sources.")
    run.add_argument("--config", required=True, help="Path to the JSON migration config.")
    run.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    run.add_argument("--json-logs", action="store_true", help="Log one JSON object per line.")

    # db cmd
    db = sub.add_parser("db", help="Progress store utilities.")
    db_sub = db.add_subparsers(dest="db_cmd", required=True)
    db_init_p = db_sub.add_parser("init", help="Create the progress store tables.")
    db_init_p.add_argument("--dsn", default=None, help="SQLAlchemy url of the progress store.")

    # status cmd
    status = sub.add_parser("status", help="Show per-source progress.")
    status.add_argument("--dsn", default=None, help="SQLAlchemy url of the progress store.")

    args = p.parse_args(argv)

    if args.cmd == "run":
        configure_logging(args.log_level, json_format=args.json_logs)
        try:
            config = load_config(Path(args.config))
            report = run_migration(config)
        except (ConfigurationError, DestinationError, SQLAlchemyError) as e:
            print(f"migration failed: {e}", file=sys.stderr)
            return 1

        for summary in report.summaries:
            print(summary.render_one_line())
        for err in report.schema_errors:
            print(f"schema error: {err}", file=sys.stderr)
        return 1 if report.schema_errors else 0

    if args.cmd == "db" and args.db_cmd == "init":
        try:
            url = db_init(database_url=args.dsn)
        except SQLAlchemyError as e:
            print(f"db init failed: {e}", file=sys.stderr)
            return 1
        print(f"Initialized progress store at {url}")
        return 0

    if args.cmd == "status":
        store = ProgressStore.from_url(args.dsn)
        try:
            with store.transaction() as conn:
                sources = list_sources(conn)
        except SQLAlchemyError as e:
            print(f"cannot read progress store: {e}", file=sys.stderr)
            return 1
        finally:
            store.dispose()

        for s in sources:
            print(
                f"{s.id} {s.path}: status={s.status.value} total={s.total_rows} "
                f"processed={s.processed_rows} failed={s.failed_rows}"
                + (f" error={s.error_message!r}" if s.error_message else "")
            )
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
