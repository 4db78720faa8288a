"""
Tests for the DNS lookup TTL cache.
"""

import pytest

from app.services.dns_assessment import DnsLookupCache
from app.services.errors import DnsLookupError, DnsNoDataError


class TickingClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class CountingLookup:
    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


@pytest.mark.asyncio
async def test_answer_is_cached_until_ttl_expires():
    clock = TickingClock()
    cache = DnsLookupCache(ttl_seconds=60, clock=clock)
    lookup = CountingLookup(["v=spf1 -all"])

    assert await cache.get_or_lookup(("TXT", "example.com"), lookup) == ["v=spf1 -all"]
    assert await cache.get_or_lookup(("TXT", "example.com"), lookup) == ["v=spf1 -all"]
    assert lookup.calls == 1
    assert cache.hits == 1
    assert cache.misses == 1

    clock.now += 61
    await cache.get_or_lookup(("TXT", "example.com"), lookup)
    assert lookup.calls == 2


@pytest.mark.asyncio
async def test_lookup_failure_is_cached_with_its_type():
    cache = DnsLookupCache(ttl_seconds=60, clock=TickingClock())
    lookup = CountingLookup(DnsLookupError("example.com", "timeout"))

    with pytest.raises(DnsLookupError):
        await cache.get_or_lookup(("A", "example.com"), lookup)
    # a cached "unreachable" must never come back as "no data"
    with pytest.raises(DnsLookupError):
        await cache.get_or_lookup(("A", "example.com"), lookup)
    assert lookup.calls == 1


@pytest.mark.asyncio
async def test_no_data_is_cached():
    cache = DnsLookupCache(ttl_seconds=60, clock=TickingClock())
    lookup = CountingLookup(DnsNoDataError("missing.example.com"))

    for _ in range(3):
        with pytest.raises(DnsNoDataError):
            await cache.get_or_lookup(("TXT", "missing.example.com"), lookup)
    assert lookup.calls == 1


@pytest.mark.asyncio
async def test_unexpected_errors_are_not_cached():
    cache = DnsLookupCache(ttl_seconds=60, clock=TickingClock())
    lookup = CountingLookup(RuntimeError("boom"))

    with pytest.raises(RuntimeError):
        await cache.get_or_lookup("key", lookup)
    with pytest.raises(RuntimeError):
        await cache.get_or_lookup("key", lookup)
    assert lookup.calls == 2
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_purge_expired_and_clear():
    clock = TickingClock()
    cache = DnsLookupCache(ttl_seconds=10, clock=clock)
    await cache.get_or_lookup("old", CountingLookup(1))
    clock.now += 5
    await cache.get_or_lookup("new", CountingLookup(2))

    clock.now += 6
    assert cache.purge_expired() == 1
    assert len(cache) == 1

    cache.clear()
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_lookups_sweep_expired_entries():
    clock = TickingClock()
    cache = DnsLookupCache(ttl_seconds=10, clock=clock)
    for i in range(50):
        await cache.get_or_lookup(("A", f"{i}.zen.spamhaus.org"), CountingLookup([]))
    assert len(cache) == 50

    clock.now += 11
    await cache.get_or_lookup(("TXT", "example.com"), CountingLookup(["v=spf1 -all"]))

    # only the fresh entry survives, nobody called purge_expired() directly
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_expired_key_is_replaced_not_duplicated():
    clock = TickingClock()
    cache = DnsLookupCache(ttl_seconds=10, clock=clock)
    lookup = CountingLookup(["127.0.0.2"])
    await cache.get_or_lookup("key", lookup)

    clock.now += 5
    await cache.get_or_lookup("other", CountingLookup([]))
    clock.now += 6
    await cache.get_or_lookup("key", lookup)

    assert lookup.calls == 2
    assert len(cache) == 2
