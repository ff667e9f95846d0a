# hcspipe/utils/logging.py
"""
Logging for hcspipe. Everything logs under the `hcspipe` namespace: a rich
console handler always, plus a plain-text file when a log path is given.
Runs started from a config file log to `<output_dir>/run_logs/`.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional

from rich.logging import RichHandler

from hcspipe.utils.hashing import run_log_name

LOGGER_NAME = "hcspipe"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
RUN_LOG_DIR = "run_logs"


def setup_logger(logfile: Optional[Path] = None, verbose: bool = False) -> logging.Logger:
    """
    (Re)configure the `hcspipe` logger and return it.

    Calling it again replaces the previous handlers, so switching from
    console-only to console plus run log never duplicates console output.
    """
    level = logging.DEBUG if verbose else logging.INFO
    log = logging.getLogger(LOGGER_NAME)
    log.setLevel(level)
    log.propagate = False
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()

    console = RichHandler(rich_tracebacks=True, show_path=False, log_time_format="[%X]")
    console.setLevel(level)
    log.addHandler(console)

    if logfile:
        logfile = Path(logfile)
        logfile.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(logfile)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        log.addHandler(file_handler)
        log.debug("File logging enabled at: %s", logfile)

    log.debug("Logger configured with level=%s", logging.getLevelName(level))
    return log


def run_log_path(
    output_dir: Path,
    cfg: Optional[Mapping[str, Any]],
    started: Optional[datetime] = None,
) -> Path:
    """Default log file of a configured run; the run_logs directory is created."""
    log_dir = Path(output_dir) / RUN_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / run_log_name(cfg, started)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
