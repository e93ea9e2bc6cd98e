#!/usr/bin/env python3
"""
Utility classes and functions for the feed notifier.

This module contains the pure helpers shared by the scheduler and the store:
polling interval adaptation, entry fingerprinting and bounded fingerprint
merging, plus the retry helper used by the notifier.
"""

from asyncio import sleep
from enum import Enum
from hashlib import md5
from typing import Iterable, List, Optional, Sequence

from config import get_logger

logger = get_logger("utils")

# Interval adaptation factors
ACTIVE_SHRINK_DIVISOR = 2
QUIET_GROWTH_FACTOR = 1.2
ERROR_GROWTH_FACTOR = 2


class FetchOutcome(str, Enum):
    """Result class of one fetch cycle, as far as interval adaptation is concerned."""

    NEW_ENTRIES = "new_entries"
    NO_CHANGE = "no_change"
    ERROR = "error"


def clamp_interval(interval: float, min_interval: int, max_interval: int) -> int:
    """Clamp an interval into [min_interval, max_interval] as whole seconds."""
    return int(max(min_interval, min(max_interval, round(interval))))


def next_interval(current: int, outcome: FetchOutcome, min_interval: int, max_interval: int) -> int:
    """Compute the polling interval that follows a fetch outcome.

    Active feeds are polled twice as often, quiet feeds back off slowly and
    failing feeds back off fast. Growth always moves by at least one second so
    that small intervals still progress towards max_interval.

    Args:
        current: The feed's current interval in seconds.
        outcome: What the fetch cycle observed.
        min_interval: Lower bound (seconds).
        max_interval: Upper bound (seconds).

    Returns:
        The new interval, always within [min_interval, max_interval].
    """
    outcome = FetchOutcome(outcome)
    if outcome is FetchOutcome.NEW_ENTRIES:
        proposed = current / ACTIVE_SHRINK_DIVISOR
    else:
        factor = QUIET_GROWTH_FACTOR if outcome is FetchOutcome.NO_CHANGE else ERROR_GROWTH_FACTOR
        proposed = max(current + 1, round(current * factor))
    return clamp_interval(proposed, min_interval, max_interval)


def entry_fingerprint(entry) -> str:
    """Derive a stable fingerprint for a feed entry.

    Priority: the entry id, else its link, else its title combined with the
    published date. The chosen key is hashed so stored fingerprints have a
    fixed size regardless of how long publishers make their ids.
    """
    entry_id = (getattr(entry, 'id', None) or "").strip()
    if entry_id:
        key = f"id:{entry_id}"
    else:
        link = (getattr(entry, 'link', None) or "").strip()
        if link:
            key = f"link:{link}"
        else:
            title = (getattr(entry, 'title', None) or "").strip()
            published = (getattr(entry, 'published', None) or "").strip()
            key = f"title:{title}|published:{published}"
    return md5(key.encode('utf-8')).hexdigest()


def merge_fingerprints(current: Sequence[str], stored: Iterable[str], cap: int) -> List[str]:
    """Merge the fingerprints seen in the latest fetch with the stored ones.

    The result is ordered newest first: fingerprints of the current feed body,
    then previously stored fingerprints that have left the feed. The list is
    trimmed to ``cap`` by dropping the oldest stored fingerprints, but never
    below the size of the current feed body, so an entry still being served
    by the publisher can never be evicted and re-announced.
    """
    merged: List[str] = []
    seen = set()
    for fingerprint in list(current) + list(stored):
        if fingerprint in seen:
            continue
        seen.add(fingerprint)
        merged.append(fingerprint)
    limit = max(cap, len(set(current)))
    return merged[:limit]


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


class RetryHelper:
    """Helper class for implementing retry logic with exponential backoff."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 60.0):
        """Initialize the retry helper.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds between retries
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int, hint: Optional[float] = None) -> float:
        """Calculate the delay for a given retry attempt (0-based).

        A server-provided hint (e.g. Telegram's retry_after) wins over the
        exponential schedule but is still capped at max_delay.
        """
        if hint is not None and hint >= 0:
            return min(float(hint), self.max_delay)
        delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)

    async def sleep_for_attempt(self, attempt: int, hint: Optional[float] = None):
        """Sleep for the calculated delay for the given attempt."""
        delay = self.calculate_delay(attempt, hint)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)
