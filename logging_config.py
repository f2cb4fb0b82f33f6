"""
logging_config.py - Centralized logging configuration.

Provides consistent logging setup across all modules, plus a stage timer
used by the comparison pipeline to log start/complete lines per stage.
"""

from __future__ import annotations

import contextlib
import logging
import sys
import time
from typing import Any, Iterator, TextIO


def setup_logging(
    level: int = logging.INFO,
    json_format: bool = False,
    stream: TextIO | None = None,
) -> None:
    """Configure root logger with consistent formatting.

    Args:
        level: Logging level.
        json_format: If True, emit JSON-like log lines.
        stream: Destination stream, stderr by default.
    """
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    if json_format:
        formatter = logging.Formatter(
            '{"timestamp":"%(asctime)s","level":"%(levelname)s",'
            '"module":"%(name)s","message":"%(message)s"}',
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(name)-20s] %(levelname)-7s %(message)s",
            datefmt="%H:%M:%S",
        )

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(formatter)
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get a named logger."""
    return logging.getLogger(name)


class StageTimer:
    """Mutable holder for one stage's duration and completion fields."""

    def __init__(self) -> None:
        self.started = time.perf_counter()
        self.duration_s = 0.0
        self.fields: dict[str, Any] = {}

    def note(self, **fields: Any) -> None:
        """Attach key/value pairs to the stage's completion log line."""
        self.fields.update(fields)


@contextlib.contextmanager
def log_stage(
    logger: logging.Logger,
    number: int,
    total: int,
    name: str,
) -> Iterator[StageTimer]:
    """Log `pipeline_stage` start/complete lines around one pipeline stage.

    Failures are logged with the stage name and re-raised unchanged.
    """
    timer = StageTimer()
    logger.info("pipeline_stage | stage=%s/%s | name=%s | status=start", number, total, name)
    try:
        yield timer
    except Exception as exc:
        timer.duration_s = time.perf_counter() - timer.started
        logger.error(
            "pipeline_stage | stage=%s/%s | name=%s | status=failed | error_type=%s | error=%s | duration_s=%.4f",
            number,
            total,
            name,
            type(exc).__name__,
            exc,
            timer.duration_s,
        )
        raise
    timer.duration_s = time.perf_counter() - timer.started
    extra = "".join(f" | {key}={value}" for key, value in timer.fields.items())
    logger.info(
        "pipeline_stage | stage=%s/%s | name=%s | status=complete%s | duration_s=%.4f",
        number,
        total,
        name,
        extra,
        timer.duration_s,
    )
