"""Utility functions and helpers for the kubejoin application."""
import logging
import time
from typing import Any, Callable, Optional, TypeVar

from ..config import Config

T = TypeVar('T')

logger = logging.getLogger("kubejoin.utils")


def redact_sensitive_data(data: Any) -> Any:
    """Recursively redact sensitive data from dictionaries and lists.

    Args:
        data: Input data that might contain sensitive information

    Returns:
        Data with sensitive values redacted
    """
    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if any(
                redact_key.lower() in str(k).lower()
                for redact_key in Config.REDACT_KEYS
            ) else redact_sensitive_data(v)
            for k, v in data.items()
        }
    elif isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item) for item in data]
    return data


def poll(
    probe: Callable[[], Optional[T]],
    attempts: int,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "condition",
) -> Optional[T]:
    """Call ``probe`` up to ``attempts`` times, sleeping ``interval`` before each call.

    There is no backoff: the bound is expected to be short. ``sleep`` is
    injectable so callers and tests control the clock.

    Args:
        probe: Callable returning a truthy value once the condition holds
        attempts: Maximum number of probes
        interval: Seconds to sleep before each probe
        sleep: Sleep function
        description: Used in debug logging

    Returns:
        The first truthy probe result, or None when the bound is exhausted
    """
    for attempt in range(1, attempts + 1):
        sleep(interval)
        result = probe()
        if result:
            return result
        logger.debug(f"⏳ Waiting for {description} ({attempt}/{attempts})")
    return None
