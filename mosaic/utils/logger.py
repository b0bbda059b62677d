"""
Mosaic logging
--------------
One stderr sink for the CLI and, when configured, a rotating pipeline log
plus a failures-only log that mirrors what lands in processing_logs.

Config section (config.yaml -> logging):
  level:         minimum level for every sink
  file:          pipeline log path, null disables file logging
  failures_file: ERROR+ only, null disables
  rotation / retention: passed straight to loguru
"""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> "
    "<level>{level: <7}</level> "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}"


def _file_sink(path: str, level: str, rotation: str, retention: str) -> int:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    return logger.add(
        path,
        level=level,
        format=FILE_FORMAT,
        rotation=rotation,
        retention=retention,
        compression="zip",
        enqueue=True,
    )


def setup_logger(log_config: dict[str, Any] | None = None) -> list[int]:
    """Replace loguru's default handler with Mosaic's sinks. Returns the sink ids."""
    cfg = log_config or {}
    level = str(cfg.get("level", "INFO")).upper()
    rotation = cfg.get("rotation", "10 MB")
    retention = cfg.get("retention", "7 days")

    logger.remove()
    sinks = [logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT, colorize=True)]

    log_file = cfg.get("file")
    if log_file:
        sinks.append(_file_sink(log_file, level, rotation, retention))

    failures_file = cfg.get("failures_file")
    if failures_file:
        sinks.append(_file_sink(failures_file, "ERROR", rotation, retention))

    logger.debug(f"[Logging] level={level} file={log_file} failures={failures_file}")
    return sinks
