"""
Logging setup for the staker process.

Console output is either ``human`` (one coloured line per record) or
``json`` (one object per line).  A log file, when configured, is always
JSON.  Records from the service carry ``op``, ``code`` and ``handle``
extras, which both formats keep.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

EXTRA_FIELDS: tuple[str, ...] = ("op", "code", "handle")


def _extras(record: logging.LogRecord) -> dict:
    return {
        name: getattr(record, name)
        for name in EXTRA_FIELDS
        if getattr(record, name, None) is not None
    }


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **_extras(record),
        }
        if record.exc_info and record.exc_info[1]:
            obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(obj, default=str)


class HumanFormatter(logging.Formatter):
    """``HH:MM:SS [LEVEL  ] logger: message [op=… handle=…]``"""

    LEVEL_COLOURS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(self, colour: bool = True):
        super().__init__()
        self.colour = colour

    def _level(self, levelname: str) -> str:
        tag = f"[{levelname:<7}]"
        if not self.colour:
            return tag
        return f"{self.LEVEL_COLOURS.get(levelname, '')}{tag}{self.RESET}"

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        parts = [f"{ts} {self._level(record.levelname)} {record.name}: {record.getMessage()}"]
        extras = _extras(record)
        if extras:
            parts.append("[" + " ".join(f"{k}={v}" for k, v in extras.items()) + "]")
        line = " ".join(parts)
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    fmt: str = "human",
    log_file: Optional[str] = None,
) -> None:
    """
    Replace the root logger's handlers.

    *fmt* picks the console format (``human`` or ``json``); *log_file*
    adds a JSON file handler, creating parent directories as needed.
    """
    formatters = {
        "human": lambda: HumanFormatter(colour=sys.stderr.isatty()),
        "json": JSONFormatter,
    }
    if fmt not in formatters:
        raise ValueError(f"Unknown log format: {fmt!r}")

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatters[fmt]())
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(path))
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)

    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
