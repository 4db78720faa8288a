"""
Domain DNS assessment: SPF, DKIM, DMARC and DNSBL checks for one domain.

All checks are independent and run concurrently; the verdict is computed only
after every check finished. Lookup failures map to the pessimistic tri-state
value (``None`` for SPF, ``UNREACHABLE`` for blacklists), never to "clean".
"""

import asyncio
import re
from typing import Protocol

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.infrastructure import (
    BlacklistName,
    BlacklistStatus,
    Domain,
    DomainDnsResult,
    HealthStatus,
)
from app.services.errors import DnsLookupError, DnsNoDataError

logger = get_logger(__name__)

DKIM_MARKERS = ("v=DKIM1", "k=rsa", "p=")
DMARC_POLICY_PATTERN = re.compile(r"(?:^|;)\s*p\s*=\s*(\w+)", re.IGNORECASE)

# Score penalties
SPF_MISSING_PENALTY = 25
SPF_UNKNOWN_PENALTY = 15
DKIM_MISSING_PENALTY = 20
DMARC_MISSING_PENALTY = 15
DMARC_NONE_PENALTY = 10
BLACKLIST_CONFIRMED_PENALTY = 30
BLACKLIST_UNREACHABLE_PENALTY = 10


class TxtAResolver(Protocol):
    async def resolve_txt(self, hostname: str) -> list[str]: ...

    async def resolve_a(self, hostname: str) -> list[str]: ...


def compute_domain_score(
    spf_valid: bool | None,
    dkim_valid: bool,
    dmarc_policy: str | None,
    blacklist_results: dict[BlacklistName, BlacklistStatus],
) -> int:
    """100 minus weighted penalties, floored at 0."""
    score = 100

    if spf_valid is False:
        score -= SPF_MISSING_PENALTY
    elif spf_valid is None:
        score -= SPF_UNKNOWN_PENALTY

    if dkim_valid is False:
        score -= DKIM_MISSING_PENALTY

    if dmarc_policy is None:
        score -= DMARC_MISSING_PENALTY
    elif dmarc_policy == "none":
        score -= DMARC_NONE_PENALTY

    for status in blacklist_results.values():
        if status is BlacklistStatus.CONFIRMED:
            score -= BLACKLIST_CONFIRMED_PENALTY
        elif status is BlacklistStatus.UNREACHABLE:
            score -= BLACKLIST_UNREACHABLE_PENALTY

    return max(0, score)


def derive_domain_state(result: DomainDnsResult) -> HealthStatus:
    """
    paused if any blacklist CONFIRMED; warning if any UNREACHABLE, SPF not true,
    or DKIM false; otherwise healthy. DMARC never changes the state.
    """
    statuses = result.blacklist_results.values()
    if any(s is BlacklistStatus.CONFIRMED for s in statuses):
        return HealthStatus.PAUSED
    if (
        any(s is BlacklistStatus.UNREACHABLE for s in statuses)
        or result.spf_valid is not True
        or result.dkim_valid is False
    ):
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def stored_dns_status(domain: Domain) -> HealthStatus | None:
    """Verdict implied by the DNS fields persisted on ``domain``; None if never checked."""
    if domain.dns_checked_at is None:
        return None
    return derive_domain_state(
        DomainDnsResult(
            domain_name=domain.domain,
            spf_valid=domain.spf_valid,
            dkim_valid=domain.dkim_valid,
            dmarc_policy=domain.dmarc_policy,
            blacklist_results=domain.blacklist_results,
            score=domain.initial_assessment_score or 0,
        )
    )


class DomainDnsAssessor:
    """Runs every DNS check for a domain and combines them into a DomainDnsResult."""

    def __init__(
        self,
        resolver: TxtAResolver,
        blacklists: list[BlacklistName] | None = None,
        dkim_selectors: list[str] | None = None,
    ):
        self.resolver = resolver
        self.blacklists = blacklists or [BlacklistName(name) for name in settings.ENABLED_BLACKLISTS]
        self.dkim_selectors = dkim_selectors or list(settings.DKIM_SELECTORS)

    async def assess(self, domain_name: str) -> DomainDnsResult:
        domain_name = domain_name.strip().lower().rstrip(".")

        spf_valid, dkim_valid, dmarc_policy, *blacklist_statuses = await asyncio.gather(
            self.check_spf(domain_name),
            self.check_dkim(domain_name),
            self.check_dmarc(domain_name),
            *(self.check_blacklist(domain_name, name) for name in self.blacklists),
        )
        blacklist_results = dict(zip(self.blacklists, blacklist_statuses, strict=True))

        result = DomainDnsResult(
            domain_name=domain_name,
            spf_valid=spf_valid,
            dkim_valid=dkim_valid,
            dmarc_policy=dmarc_policy,
            blacklist_results=blacklist_results,
            score=compute_domain_score(spf_valid, dkim_valid, dmarc_policy, blacklist_results),
        )

        logger.info(
            "Domain DNS assessed",
            domain=domain_name,
            spf_valid=spf_valid,
            dkim_valid=dkim_valid,
            dmarc_policy=dmarc_policy,
            blacklists={name.value: status.value for name, status in blacklist_results.items()},
            score=result.score,
        )
        return result

    async def check_spf(self, domain_name: str) -> bool | None:
        try:
            records = await self.resolver.resolve_txt(domain_name)
        except DnsNoDataError:
            return False
        except DnsLookupError:
            return None
        return any("v=spf1" in record.lower() for record in records)

    async def check_dkim(self, domain_name: str) -> bool:
        """True if any common selector publishes a DKIM key; False otherwise."""
        outcomes = await asyncio.gather(
            *(self._check_dkim_selector(domain_name, selector) for selector in self.dkim_selectors)
        )
        return any(outcomes)

    async def _check_dkim_selector(self, domain_name: str, selector: str) -> bool:
        try:
            records = await self.resolver.resolve_txt(f"{selector}._domainkey.{domain_name}")
        except (DnsNoDataError, DnsLookupError):
            return False
        return any(marker in record for record in records for marker in DKIM_MARKERS)

    async def check_dmarc(self, domain_name: str) -> str | None:
        try:
            records = await self.resolver.resolve_txt(f"_dmarc.{domain_name}")
        except (DnsNoDataError, DnsLookupError):
            return None

        for record in records:
            if "v=dmarc1" not in record.lower():
                continue
            match = DMARC_POLICY_PATTERN.search(record)
            if match:
                return match.group(1).lower()
        return None

    async def check_blacklist(self, domain_name: str, blacklist: BlacklistName) -> BlacklistStatus:
        try:
            addresses = await self.resolver.resolve_a(domain_name)
        except (DnsNoDataError, DnsLookupError):
            # without the sending IP the DNSBL cannot be consulted
            return BlacklistStatus.UNREACHABLE
        if not addresses:
            return BlacklistStatus.UNREACHABLE

        reversed_ip = ".".join(reversed(addresses[0].split(".")))
        try:
            await self.resolver.resolve_a(f"{reversed_ip}.{blacklist.zone}")
        except DnsNoDataError:
            return BlacklistStatus.NOT_LISTED
        except DnsLookupError:
            return BlacklistStatus.UNREACHABLE
        return BlacklistStatus.CONFIRMED
