"""Bounded retry for SQLite writes that hit transient lock contention."""

from __future__ import annotations

import logging
import random
import sqlite3
import time
from collections.abc import Callable
from typing import TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

_LOCK_MARKERS = ("database is locked", "database is busy", "database table is locked")


def is_lock_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _LOCK_MARKERS)


def run_with_sqlite_lock_retry(
    operation: Callable[[], T],
    *,
    op_name: str,
    max_attempts: int = 3,
    base_delay_s: float = 0.05,
    max_delay_s: float = 0.5,
) -> T:
    """Run `operation`, retrying with jittered backoff only on lock errors.

    Attempts are capped so a stuck writer surfaces as an error to the caller
    instead of spinning; the checkpointer treats that as a skipped tick.
    """
    attempts = max(1, int(max_attempts))
    delay = max(0.0, float(base_delay_s))
    attempt = 1
    while True:
        try:
            return operation()
        except sqlite3.OperationalError as exc:
            if not is_lock_error(exc) or attempt >= attempts:
                raise
            wait_s = min(max_delay_s, delay + random.random() * delay * 0.5)
            logger.debug(
                "SQLite %s locked (attempt %d/%d); retrying in %.3fs",
                op_name,
                attempt,
                attempts,
                wait_s,
            )
            time.sleep(wait_s)
            delay = min(max_delay_s, max(0.01, delay * 2.0))
            attempt += 1
