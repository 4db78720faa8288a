"""
TTL cache for DNS lookup outcomes.

Both answers and failures are cached (negative caching), so one assessment pass
does not repeat a failing lookup across the SPF/DKIM/blacklist checks of the
same domain. A cached failure is re-raised as the same exception type it was
stored with: an "unreachable" resolver error never turns into "no data" on a
cache hit.

Concurrent callers racing on a missing key may both perform the lookup; the
last writer wins and both results are equivalent.
"""

import time
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import Any

from app.services.errors import DnsLookupError, DnsNoDataError

CACHEABLE_ERRORS = (DnsNoDataError, DnsLookupError)


@dataclass(slots=True)
class _Entry:
    expires_at: float
    value: Any = None
    error: Exception | None = None


class DnsLookupCache:
    """
    Expired entries are dropped on access and swept from the whole map at most
    once per TTL interval, so a long-lived process scanning many domains does
    not keep every name it ever looked up.
    """

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, _Entry] = {}
        self._next_sweep = clock() + ttl_seconds
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    async def get_or_lookup(self, key: Hashable, lookup: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached outcome for ``key`` or run ``lookup`` and cache it."""
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at > now:
            self.hits += 1
            if entry.error is not None:
                raise entry.error
            return entry.value

        self.misses += 1
        if entry is not None:
            del self._entries[key]
        if now >= self._next_sweep:
            self.purge_expired()
            self._next_sweep = now + self.ttl_seconds

        try:
            value = await lookup()
        except CACHEABLE_ERRORS as e:
            self._entries[key] = _Entry(expires_at=self._clock() + self.ttl_seconds, error=e)
            raise

        self._entries[key] = _Entry(expires_at=self._clock() + self.ttl_seconds, value=value)
        return value

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
