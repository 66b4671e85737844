"""Logging configuration for the crawl and report commands."""

import logging
import sys
from pathlib import Path
from typing import Optional

# Console lines are the crawl progress log (one line per URL), so keep them short
CONSOLE_FORMAT = '%(asctime)s %(levelname)-7s %(message)s'
FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# httpx logs every request at INFO, which duplicates the per-URL crawl lines
QUIET_LOGGERS = ('httpx', 'httpcore')


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    format_string: Optional[str] = None
) -> None:
    """Configure the root logger for a seo-audit run.

    Args:
        level: Log level name; unknown names fall back to INFO
        log_file: Also write logs here, with module names (parent dirs are created)
        format_string: Use one format for every handler instead of the defaults
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(format_string or CONSOLE_FORMAT, datefmt='%H:%M:%S'))
    handlers = [console]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setFormatter(logging.Formatter(format_string or FILE_FORMAT))
        handlers.append(file_handler)

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))
