"""Logging for CLI runs and the MCP server.

Console output goes to stderr so JSON on stdout stays parseable. Sync runs
rewrite many locality files, so an optional rotating log file keeps a
timestamped record of them:

    TELDIRECTORY_LOG_LEVEL  overrides the console level (e.g. WARNING)
    TELDIRECTORY_LOG_FILE   also log to this file at DEBUG
"""

import os
import sys
from pathlib import Path

from loguru import logger

FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function} | {message}"


def configure_logging(*, verbose: bool = False, quiet: bool = False) -> Path | None:
    """Configure loguru sinks. Returns the log file path, if one was added."""
    logger.remove()
    if verbose:
        level = "DEBUG"
    elif quiet:
        level = "WARNING"
    else:
        level = os.environ.get("TELDIRECTORY_LOG_LEVEL", "").strip().upper() or "INFO"
    logger.add(sys.stderr, level=level, format="{level.icon} {message}")

    log_file = os.environ.get("TELDIRECTORY_LOG_FILE", "").strip()
    if not log_file:
        return None
    path = Path(log_file).expanduser()
    logger.add(path, level="DEBUG", format=FILE_FORMAT, rotation="5 MB", retention=5)
    logger.debug("Logging to {}", path)
    return path
