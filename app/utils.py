"""Utility helpers for the ReelState service."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, TypeVar

from .errors import ConcurrentUpdateConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_read(
    operation: Callable[[], Awaitable[T]],
    *,
    retry_on: tuple[type[BaseException], ...],
    label: str,
) -> T:
    """Run a read operation, retrying once without delay on transient errors."""

    max_attempts = 2
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= max_attempts:
                raise
            logger.warning(
                "Transient failure during %s (%s), retrying once",
                label,
                exc.__class__.__name__,
            )
    raise AssertionError("unreachable")  # pragma: no cover


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    *,
    label: str,
) -> T:
    """Re-run a conditional read-modify-write once after losing a race."""

    try:
        return await operation()
    except ConcurrentUpdateConflict:
        logger.warning("Concurrent update detected during %s, retrying once", label)
    return await operation()


def clamp_percentage(current_time: float, duration: float) -> float:
    """Return ``current_time`` as a percentage of ``duration`` within [0, 100]."""

    if duration <= 0:
        return 0.0
    percentage = current_time / duration * 100
    return max(0.0, min(100.0, percentage))

