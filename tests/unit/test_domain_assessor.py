"""
Tests for domain DNS probing, scoring and the derived domain verdict.
"""

import pytest

from app.models.domain.infrastructure import (
    BlacklistName,
    BlacklistStatus,
    Domain,
    HealthStatus,
)
from app.services.dns_assessment import (
    DomainDnsAssessor,
    compute_domain_score,
    derive_domain_state,
    stored_dns_status,
)
from app.services.errors import DnsLookupError


@pytest.fixture
def assessor(resolver):
    return DomainDnsAssessor(resolver)


@pytest.mark.asyncio
async def test_clean_domain_scores_100_and_is_healthy(assessor, resolver):
    resolver.publish_clean("clean.example")

    result = await assessor.assess("clean.example")

    assert result.spf_valid is True
    assert result.dkim_valid is True
    assert result.dmarc_policy == "reject"
    assert set(result.blacklist_results.values()) == {BlacklistStatus.NOT_LISTED}
    assert result.score == 100
    assert derive_domain_state(result) is HealthStatus.HEALTHY


@pytest.mark.asyncio
async def test_confirmed_blacklist_pauses_domain(assessor, resolver):
    resolver.publish_clean("listed.example")
    resolver.list_on(BlacklistName.SPAMHAUS)

    result = await assessor.assess("listed.example")

    assert result.blacklist_results[BlacklistName.SPAMHAUS] is BlacklistStatus.CONFIRMED
    assert result.confirmed_blacklists == [BlacklistName.SPAMHAUS]
    assert result.score <= 70
    assert derive_domain_state(result) is HealthStatus.PAUSED


@pytest.mark.asyncio
async def test_unreachable_blacklist_is_never_healthy(assessor, resolver):
    resolver.publish_clean("flaky.example")
    resolver.make_unreachable(BlacklistName.SORBS)

    result = await assessor.assess("flaky.example")

    assert result.blacklist_results[BlacklistName.SORBS] is BlacklistStatus.UNREACHABLE
    assert result.unreachable_blacklists == [BlacklistName.SORBS]
    assert result.score == 90
    assert derive_domain_state(result) is HealthStatus.WARNING


@pytest.mark.asyncio
async def test_missing_a_record_makes_every_blacklist_unreachable(assessor, resolver):
    resolver.publish_clean("noip.example")
    del resolver.a["noip.example"]

    result = await assessor.assess("noip.example")

    assert set(result.blacklist_results.values()) == {BlacklistStatus.UNREACHABLE}
    assert result.score == 60
    assert derive_domain_state(result) is HealthStatus.WARNING


@pytest.mark.asyncio
async def test_spf_timeout_is_unknown_not_missing(assessor, resolver):
    resolver.publish_clean("slow.example")
    resolver.failing.add("slow.example")

    assert await assessor.check_spf("slow.example") is None

    result = await assessor.assess("slow.example")
    assert result.spf_valid is None
    assert derive_domain_state(result) is HealthStatus.WARNING


@pytest.mark.asyncio
async def test_spf_nxdomain_is_missing(assessor, resolver):
    assert await assessor.check_spf("nospf.example") is False


@pytest.mark.asyncio
async def test_spf_requires_spf1_marker(assessor, resolver):
    resolver.txt["other.example"] = ["google-site-verification=abc"]
    assert await assessor.check_spf("other.example") is False


@pytest.mark.asyncio
async def test_dkim_found_on_any_common_selector(assessor, resolver):
    resolver.txt["google._domainkey.dkim.example"] = ["v=DKIM1; k=rsa; p=MIGf"]
    assert await assessor.check_dkim("dkim.example") is True


@pytest.mark.asyncio
async def test_dkim_lookup_failures_count_as_missing(assessor, resolver):
    resolver.failing.add("default._domainkey.broken.example")
    assert await assessor.check_dkim("broken.example") is False


@pytest.mark.asyncio
async def test_dmarc_policy_parsed(assessor, resolver):
    resolver.txt["_dmarc.policy.example"] = ["v=DMARC1; p=Quarantine; pct=100"]
    assert await assessor.check_dmarc("policy.example") == "quarantine"


@pytest.mark.asyncio
async def test_dmarc_ignores_non_dmarc_records(assessor, resolver):
    resolver.txt["_dmarc.junk.example"] = ["something else; p=reject"]
    assert await assessor.check_dmarc("junk.example") is None


@pytest.mark.asyncio
async def test_weak_dmarc_lowers_score_but_not_state(assessor, resolver):
    resolver.publish_clean("weak.example", dmarc="none")

    result = await assessor.assess("weak.example")

    assert result.dmarc_policy == "none"
    assert result.score == 90
    assert derive_domain_state(result) is HealthStatus.HEALTHY


@pytest.mark.asyncio
async def test_domain_name_normalized(assessor, resolver):
    resolver.publish_clean("mixed.example")

    result = await assessor.assess("  Mixed.Example. ")

    assert result.domain_name == "mixed.example"
    assert result.score == 100


def test_score_penalties_and_floor():
    all_listed = {name: BlacklistStatus.CONFIRMED for name in BlacklistName}
    assert compute_domain_score(False, False, None, all_listed) == 0

    assert compute_domain_score(True, True, "reject", {}) == 100
    assert compute_domain_score(False, True, "reject", {}) == 75
    assert compute_domain_score(None, True, "reject", {}) == 85
    assert compute_domain_score(True, False, "reject", {}) == 80
    assert compute_domain_score(True, True, None, {}) == 85
    assert compute_domain_score(
        True, True, "reject", {BlacklistName.SPAMCOP: BlacklistStatus.UNREACHABLE}
    ) == 90


@pytest.mark.asyncio
async def test_resolver_errors_carry_hostname(resolver):
    resolver.failing.add("x.example")
    with pytest.raises(DnsLookupError) as exc_info:
        await resolver.resolve_txt("x.example")
    assert exc_info.value.hostname == "x.example"


def test_stored_dns_status_requires_a_check(clock):
    domain = Domain(id="d", tenant_id="t", domain="example.com")
    assert stored_dns_status(domain) is None

    domain.dns_checked_at = clock()
    domain.spf_valid = True
    domain.dkim_valid = True
    domain.blacklist_results = {BlacklistName.SPAMHAUS: BlacklistStatus.NOT_LISTED}
    assert stored_dns_status(domain) is HealthStatus.HEALTHY

    domain.blacklist_results = {BlacklistName.SPAMHAUS: BlacklistStatus.CONFIRMED}
    assert stored_dns_status(domain) is HealthStatus.PAUSED
