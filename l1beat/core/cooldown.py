"""Key to timestamp cache with TTL checks.

Replaces process-wide "last triggered" maps: the read service asks it whether
a background refresh for a data type ran recently before starting another.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from l1beat.utils.clock import Clock, utc_now


class TimestampCache:
    """In-memory map from key to the last time it was touched."""

    def __init__(self, *, ttl: timedelta, clock: Clock = utc_now) -> None:
        """Initialize cache.

        Args:
            ttl: Default age under which an entry counts as fresh
            clock: Source of the current time
        """
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, datetime] = {}

    def touch(self, key: str, at: Optional[datetime] = None) -> datetime:
        """Record ``key`` as touched now (or at ``at``)."""
        stamp = at or self._clock()
        self._entries[key] = stamp
        return stamp

    def get(self, key: str) -> Optional[datetime]:
        """Return when ``key`` was last touched, if ever."""
        return self._entries.get(key)

    def is_fresh(self, key: str, ttl: Optional[timedelta] = None) -> bool:
        """Return True if ``key`` was touched within the TTL."""
        stamp = self._entries.get(key)
        if stamp is None:
            return False
        return self._clock() - stamp < (ttl if ttl is not None else self._ttl)

    def try_acquire(self, key: str, ttl: Optional[timedelta] = None) -> bool:
        """Touch ``key`` and return True unless it is still fresh."""
        if self.is_fresh(key, ttl):
            return False
        self.touch(key)
        return True

    def clear(self, key: Optional[str] = None) -> None:
        """Forget one key, or every key when ``key`` is None."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)
