from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
JOB_LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
PACKAGE_LOGGER = "snapvault"

_configured = False


def configure_logging(level: str | int = "INFO") -> None:
    global _configured
    resolved = logging.getLevelName(level.upper()) if isinstance(level, str) else level
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level}")

    root = logging.getLogger()
    root.setLevel(resolved)
    if _configured:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    _configured = True


def job_log_path(storage_root: Path, job_id: str) -> Path:
    return storage_root / f"log.{job_id}.txt"


def attach_job_log(job_id: str, storage_root: Path) -> logging.FileHandler:
    """Mirror package log records into the job's own log file for one invocation."""
    handler = logging.FileHandler(job_log_path(storage_root, job_id), encoding="utf-8")
    handler.setFormatter(logging.Formatter(JOB_LOG_FORMAT))
    handler.setLevel(logging.INFO)
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.addHandler(handler)
    if logger.level == logging.NOTSET or logger.level > logging.INFO:
        logger.setLevel(logging.INFO)
    return handler


def detach_job_log(handler: logging.Handler | None) -> None:
    if handler is None:
        return
    logging.getLogger(PACKAGE_LOGGER).removeHandler(handler)
    handler.close()
