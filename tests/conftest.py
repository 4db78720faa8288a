from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from app.models.domain.infrastructure import (
    AssessmentSummary,
    BlacklistName,
    BlacklistStatus,
    Campaign,
    Domain,
    InfrastructureReport,
    Mailbox,
    ReportType,
    Tenant,
)
from app.repositories.memory_repository import InMemoryInfrastructureRepository
from app.services.container import build_engine
from app.services.errors import DnsLookupError, DnsNoDataError
from app.services.healing import DEFAULT_CRITERIA
from app.utils.clock import new_id

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeResolver:
    """Table-driven TXT/A answers. Unknown names are NXDOMAIN; ``failing`` names time out."""

    def __init__(self):
        self.txt: dict[str, list[str]] = {}
        self.a: dict[str, list[str]] = {}
        self.failing: set[str] = set()
        self.queries: list[str] = []

    async def resolve_txt(self, hostname: str) -> list[str]:
        return self._answer(self.txt, hostname)

    async def resolve_a(self, hostname: str) -> list[str]:
        return self._answer(self.a, hostname)

    def _answer(self, table: dict[str, list[str]], hostname: str) -> list[str]:
        self.queries.append(hostname)
        if hostname in self.failing:
            raise DnsLookupError(hostname, "timeout")
        records = table.get(hostname)
        if not records:
            raise DnsNoDataError(hostname)
        return list(records)

    def publish_clean(self, domain: str, ip: str = "192.0.2.10", dmarc: str = "reject") -> None:
        self.txt[domain] = ["v=spf1 include:_spf.google.com ~all"]
        self.txt[f"default._domainkey.{domain}"] = ["v=DKIM1; k=rsa; p=MIIBIjANBgkqhkiG9w0BAQEFAAOCAQ8A"]
        self.txt[f"_dmarc.{domain}"] = [f"v=DMARC1; p={dmarc}; rua=mailto:dmarc@{domain}"]
        self.a[domain] = [ip]

    @staticmethod
    def dnsbl_name(ip: str, blacklist: BlacklistName) -> str:
        return ".".join(reversed(ip.split("."))) + "." + blacklist.zone

    def list_on(self, blacklist: BlacklistName, ip: str = "192.0.2.10") -> None:
        self.a[self.dnsbl_name(ip, blacklist)] = ["127.0.0.2"]

    def make_unreachable(self, blacklist: BlacklistName, ip: str = "192.0.2.10") -> None:
        self.failing.add(self.dnsbl_name(ip, blacklist))


class RecordingPlatform:
    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.calls: list[tuple] = []

    async def pause_campaign(self, tenant_id: str, campaign_id: str) -> bool:
        self.calls.append(("pause_campaign", campaign_id))
        return self.succeed

    async def resume_campaign(self, tenant_id: str, campaign_id: str) -> bool:
        self.calls.append(("resume_campaign", campaign_id))
        return self.succeed

    async def add_mailbox_to_campaign(self, tenant_id: str, campaign_id: str, mailbox_id: str) -> bool:
        self.calls.append(("add_mailbox_to_campaign", campaign_id, mailbox_id))
        return self.succeed

    async def remove_mailbox_from_campaign(self, tenant_id: str, campaign_id: str, mailbox_id: str) -> bool:
        self.calls.append(("remove_mailbox_from_campaign", campaign_id, mailbox_id))
        return self.succeed

    def actions(self, name: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == name]


class RecordingNotifier:
    def __init__(self):
        self.sent: list[dict] = []

    async def notify(self, tenant_id: str, level: str, title: str, message: str) -> None:
        self.sent.append({"tenant_id": tenant_id, "level": level, "title": title, "message": message})


CLEAN_BLACKLISTS = {name: BlacklistStatus.NOT_LISTED for name in BlacklistName}


class Seeder:
    """Inserts fixtures straight into the repository."""

    def __init__(self, repository: InMemoryInfrastructureRepository, clock: FakeClock):
        self.repository = repository
        self.clock = clock

    async def tenant(self, tenant_id: str = "tenant-1", **fields) -> Tenant:
        return await self.repository.add_tenant(Tenant(id=tenant_id, name=f"Tenant {tenant_id}", **fields))

    async def domain(
        self,
        domain_id: str = "dom-1",
        tenant_id: str = "tenant-1",
        name: str = "example.com",
        clean_dns: bool = False,
        **fields,
    ) -> Domain:
        if clean_dns:
            fields.setdefault("spf_valid", True)
            fields.setdefault("dkim_valid", True)
            fields.setdefault("dmarc_policy", "reject")
            fields.setdefault("blacklist_results", dict(CLEAN_BLACKLISTS))
            fields.setdefault("dns_checked_at", self.clock())
        return await self.repository.add_domain(Domain(id=domain_id, tenant_id=tenant_id, domain=name, **fields))

    async def mailbox(
        self, mailbox_id: str = "mb-1", domain_id: str = "dom-1", tenant_id: str = "tenant-1", **fields
    ) -> Mailbox:
        fields.setdefault("email", f"{mailbox_id}@example.com")
        return await self.repository.add_mailbox(
            Mailbox(id=mailbox_id, tenant_id=tenant_id, domain_id=domain_id, **fields)
        )

    async def campaign(
        self, campaign_id: str = "camp-1", tenant_id: str = "tenant-1", mailbox_ids: tuple = (), **fields
    ) -> Campaign:
        return await self.repository.add_campaign(
            Campaign(
                id=campaign_id,
                tenant_id=tenant_id,
                name=f"Campaign {campaign_id}",
                mailbox_ids=list(mailbox_ids),
                **fields,
            )
        )

    async def report(self, tenant_id: str = "tenant-1", score: int = 100) -> InfrastructureReport:
        return await self.repository.create_report(
            InfrastructureReport(
                id=new_id(),
                tenant_id=tenant_id,
                report_type=ReportType.MANUAL_REASSESSMENT,
                assessment_version="1.0",
                overall_score=score,
                summary=AssessmentSummary(),
                findings=(),
                recommendations=(),
                created_at=self.clock(),
            )
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def platform():
    return RecordingPlatform()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def repository():
    return InMemoryInfrastructureRepository()


@pytest.fixture
def criteria():
    return DEFAULT_CRITERIA


@pytest.fixture
def engine(repository, platform, notifier, resolver, criteria, clock):
    return build_engine(
        repository=repository,
        platform=platform,
        notifier=notifier,
        resolver=resolver,
        criteria=criteria,
        clock=clock,
    )


@pytest.fixture
def seed(repository, clock):
    return Seeder(repository, clock)


@pytest.fixture
def scenario_d_criteria():
    """First-offense clean-send base of 10."""
    return replace(DEFAULT_CRITERIA, first_offense_clean_sends=10)
