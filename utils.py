#!/usr/bin/env python3
"""
Utility classes and functions for the status feed processor.

Shared helpers used by the fetcher, summarizer and scheduler: rate limiting,
batch partitioning, timestamp formatting and log-friendly string helpers.
"""

from asyncio import Lock, sleep
from datetime import datetime, timezone
from time import time
from typing import Iterator, List, Optional, Sequence, TypeVar

from config import get_logger

logger = get_logger("utils")

T = TypeVar("T")


class RateLimiter:
    """A simple interval rate limiter for controlling request rates.

    Ensures requests don't exceed a specified rate by introducing delays
    when necessary.
    """

    def __init__(self, requests_per_minute: int):
        """Initialize the rate limiter.

        Args:
            requests_per_minute: Maximum number of requests allowed per minute.
                                If 0 or negative, no rate limiting is applied.
        """
        self.requests_per_minute = requests_per_minute
        self.min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0
        self.last_request_time = 0
        self._lock = Lock()

    async def acquire(self):
        """Wait until a request may be made under the configured rate."""
        if self.min_interval <= 0:
            return

        async with self._lock:
            current_time = time()
            time_since_last = current_time - self.last_request_time

            if time_since_last < self.min_interval:
                wait_time = self.min_interval - time_since_last
                logger.debug(f"Rate limiting: waiting {wait_time:.2f} seconds")
                await sleep(wait_time)

            self.last_request_time = time()


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive groups of at most `size` items, preserving order.

    Raises:
        ValueError: If size is smaller than 1.
    """
    if size < 1:
        raise ValueError(f"batch size must be at least 1, got {size}")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def to_iso8601(timestamp: Optional[float] = None) -> str:
    """Format a Unix timestamp (default: now) as an ISO 8601 UTC string ending in 'Z'."""
    if timestamp is None:
        timestamp = time()
    dt = datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string (e.g. "1h 23m 45s")."""
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated."""
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix
