"""
Async DNS resolver (dnspython) with exception normalization and caching.

NXDOMAIN and empty answers become DnsNoDataError ("no such record").
Everything else (timeouts, SERVFAIL, no reachable nameservers) becomes
DnsLookupError ("could not determine").
"""

import asyncio

import dns.asyncresolver
import dns.exception
import dns.resolver

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.services.dns_assessment.dns_cache import DnsLookupCache
from app.services.errors import DnsLookupError, DnsNoDataError

logger = get_logger(__name__)


class DnsResolver:
    """TXT/A lookups through a shared DnsLookupCache."""

    def __init__(
        self,
        cache: DnsLookupCache | None = None,
        timeout_seconds: float | None = None,
        resolver: dns.asyncresolver.Resolver | None = None,
    ):
        self.timeout_seconds = timeout_seconds or settings.DNS_QUERY_TIMEOUT_SECONDS
        self.cache = cache or DnsLookupCache(ttl_seconds=settings.DNS_CACHE_TTL_SECONDS)
        self._resolver = resolver

    def _get_resolver(self) -> dns.asyncresolver.Resolver:
        # reads /etc/resolv.conf, so build lazily
        if self._resolver is None:
            self._resolver = dns.asyncresolver.Resolver()
            self._resolver.timeout = self.timeout_seconds
            self._resolver.lifetime = self.timeout_seconds
        return self._resolver

    async def resolve_txt(self, hostname: str) -> list[str]:
        """Return each TXT record as one string (multi-part strings joined)."""
        return await self.cache.get_or_lookup(("TXT", hostname.lower()), lambda: self._query(hostname, "TXT"))

    async def resolve_a(self, hostname: str) -> list[str]:
        """Return IPv4 addresses for ``hostname``."""
        return await self.cache.get_or_lookup(("A", hostname.lower()), lambda: self._query(hostname, "A"))

    async def _query(self, hostname: str, rdtype: str) -> list[str]:
        try:
            answer = await asyncio.wait_for(
                self._get_resolver().resolve(hostname, rdtype),
                timeout=self.timeout_seconds + 1.0,
            )
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer) as e:
            raise DnsNoDataError(hostname) from e
        except (TimeoutError, dns.exception.Timeout) as e:
            logger.warning("DNS lookup timed out", hostname=hostname, rdtype=rdtype, timeout=self.timeout_seconds)
            raise DnsLookupError(hostname, "timeout") from e
        except dns.resolver.NoNameservers as e:
            logger.warning("DNS lookup failed, no nameserver answered", hostname=hostname, rdtype=rdtype)
            raise DnsLookupError(hostname, "no_nameservers") from e
        except dns.exception.DNSException as e:
            logger.warning("DNS lookup failed", hostname=hostname, rdtype=rdtype, error=str(e))
            raise DnsLookupError(hostname, type(e).__name__) from e

        if rdtype == "TXT":
            return [b"".join(rdata.strings).decode("utf-8", errors="replace") for rdata in answer]
        return [rdata.to_text() for rdata in answer]
