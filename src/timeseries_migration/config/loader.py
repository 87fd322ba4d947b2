from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from timeseries_migration.db.connect import get_database_url
from timeseries_migration.errors import ConfigurationError

from .models import MigrationConfig

logger = logging.getLogger(__name__)


def _load_env_file(env_file: Optional[Path]) -> None:
    """Load `.env` (or `env_file`) without overriding variables already set."""
    target = env_file or Path(".env")
    if not target.exists():
        if env_file is not None:
            logger.warning("environment file %s not found", env_file)
        return
    load_dotenv(target, override=False)
    logger.debug("loaded environment variables from %s", target)


def load_config(path: Path, *, check_files: bool = True, env_file: Optional[Path] = None) -> MigrationConfig:
    """
    Read and validate a JSON migration config.

    - Source files must exist unless `check_files=False`.
    - A missing `progress_store.url` is filled from `MIGRATION_DSN`
      (after `.env` is loaded), falling back to the local default.

    Raises `ConfigurationError` for unreadable files, bad JSON and
    validation failures.
    """
    _load_env_file(env_file)

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"cannot read config {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"config {path} is not valid JSON: {e}") from e

    try:
        config = MigrationConfig.model_validate(raw, context={"check_files": check_files})
    except ValidationError as e:
        raise ConfigurationError(f"invalid config {path}:\n{e}") from e

    if config.progress_store.url is None:
        config.progress_store.url = get_database_url()

    logger.info(
        "loaded config %s: %d source group(s), %d device(s)",
        path,
        len(config.sources),
        len(config.destination.devices),
    )
    return config
