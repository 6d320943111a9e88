"""Root logger setup: rotating file log plus console."""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

import config

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def teardown_logging(logger: Optional[logging.Logger] = None) -> None:
    """Flush, detach and close every handler on the logger (root by default)."""
    target = logger or logging.getLogger()
    for handler in list(target.handlers):
        target.removeHandler(handler)
        handler.flush()
        handler.close()


def setup_logging(level: str = config.LOG_LEVEL, logs_dir=None,
                  console: bool = True) -> logging.Logger:
    """
    Configure the root logger for a backtest run.

    The file handler (logs/backtest.log, 5 MB x 3) always records DEBUG so
    a run can be audited tick by tick; the console shows `level` and up.
    """
    logs_dir = Path(logs_dir or config.LOGS_DIR)
    logs_dir.mkdir(parents=True, exist_ok=True)
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)

    root = logging.getLogger()
    teardown_logging(root)
    root.setLevel(logging.DEBUG)
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    log_file = logs_dir / "backtest.log"
    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8", delay=True,
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    # Connection pool chatter from requests/urllib3 is never useful here
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    root.debug(f"Logging initialized at {logging.getLevelName(numeric_level)} | file {log_file}")
    return root
