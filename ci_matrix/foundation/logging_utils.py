"""Logging helpers for the matrix runner."""

from __future__ import annotations

import logging
import os
import re

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"

_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(name: str) -> str:
    cleaned = _UNSAFE_FILENAME_RE.sub("_", name.strip()).strip("._")
    return cleaned or "lane"


def setup_operational_logger(log_dir: str, run_id: str) -> tuple[logging.Logger, str]:
    """
    Configure the run logger: DEBUG to a UTF-8 file under `log_dir`, INFO to the console.

    Kernel loggers (`lanekit.*`) are attached to the same handlers so matrix and lane
    events land in one operational log.
    """
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, f"{run_id}_oplog.log")

    formatter = logging.Formatter(LOG_FORMAT)

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(logging.INFO)
    stream_handler.setFormatter(formatter)

    logger = logging.getLogger(f"ci_matrix.{run_id}")
    kernel_logger = logging.getLogger("lanekit")
    for target in (logger, kernel_logger):
        target.setLevel(logging.DEBUG)
        target.handlers.clear()
        target.addHandler(file_handler)
        target.addHandler(stream_handler)
        target.propagate = False

    logger.info("Operational logging initialized for run %s", run_id)
    logger.debug("Operational log file: %s", log_file)

    return logger, log_file


def close_logger(logger: logging.Logger) -> None:
    kernel_logger = logging.getLogger("lanekit")
    for target in (logger, kernel_logger):
        for handler in list(target.handlers):
            handler.close()
            target.removeHandler(handler)
    kernel_logger.propagate = True


def write_lane_log(log_path: str, text: str) -> None:
    """Write captured lane output to a UTF-8 file."""
    os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
    with open(log_path, "w", encoding="utf-8") as file:
        file.write(text)
