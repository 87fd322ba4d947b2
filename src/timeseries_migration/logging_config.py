from __future__ import annotations

import logging
import sys
import threading
from typing import Optional, TextIO

from pythonjsonlogger.json import JsonFormatter

JSON_FIELDS = [
    "asctime",
    "levelname",
    "name",
    "threadName",
    "funcName",
    "message",
]

_lock = threading.Lock()


def _json_formatter() -> JsonFormatter:
    return JsonFormatter(" ".join(f"%({name})s" for name in JSON_FIELDS))


def _console_formatter() -> logging.Formatter:
    return logging.Formatter("%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s")


def configure_logging(level: str = "INFO", *, json_format: bool = False, stream: Optional[TextIO] = None) -> None:
    """
    Configure the root logger once per call (replacing earlier handlers).

    - plain text by default, one JSON object per line with `json_format`
    - logs go to stderr so stdout stays free for run summaries
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(_json_formatter() if json_format else _console_formatter())

    with _lock:
        root = logging.getLogger()
        root.handlers.clear()
        root.addHandler(handler)
        root.setLevel(level.upper())

    # the destination client logs every request at INFO
    logging.getLogger("iotdb").setLevel(logging.WARNING)
