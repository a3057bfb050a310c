"""Root logger configuration shared by the server, the CLI and config reloads."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Iterable

from .config import LoggingConfig

# Library logger trees whose level follows the gateway's configured level.
_THIRD_PARTY_TREES = ("fastapi", "httpcore", "httpx", "uvicorn", "watchdog")


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record, stamped with the record's own creation time."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, str] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            entry["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(entry, ensure_ascii=False)


def _build_handler(json_logs: bool) -> logging.Handler:
    handler = logging.StreamHandler()
    if json_logs:
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    return handler


def _tree_members(root_name: str, known: Iterable[str]) -> list[str]:
    return [root_name, *(name for name in known if name.startswith(root_name + "."))]


def setup_logging(cfg: LoggingConfig) -> None:
    """Install a single stream handler on the root logger at ``cfg.level``.

    Called again on every config reload, so it also resets library loggers
    that picked up their own level, handlers or ``propagate=False`` earlier.
    """
    level = logging.getLevelName(cfg.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(_build_handler(cfg.json_logs))
    root.setLevel(level)

    known = [str(name) for name in logging.root.manager.loggerDict]
    for tree in _THIRD_PARTY_TREES:
        for name in _tree_members(tree, known):
            library_logger = logging.getLogger(name)
            library_logger.handlers.clear()
            library_logger.setLevel(level)
            library_logger.propagate = True
