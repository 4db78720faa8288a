"""
In-memory repository used by the ``memory`` storage backend and the test suite.

Entities live in per-type arenas keyed by id. Every read and write copies, so
callers can never mutate stored state without going through a CAS save.
"""

import asyncio
import copy
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime

from app.models.domain.infrastructure import (
    AuditEntry,
    Campaign,
    Domain,
    InfrastructureReport,
    Mailbox,
    StateTransition,
    Tenant,
)
from app.repositories.base import InfrastructureRepository
from app.services.errors import EntityNotFoundError, RepositoryError, StaleEntityError


class InMemoryInfrastructureRepository(InfrastructureRepository):
    def __init__(self):
        self._tenants: dict[str, Tenant] = {}
        self._domains: dict[str, Domain] = {}
        self._mailboxes: dict[str, Mailbox] = {}
        self._campaigns: dict[str, Campaign] = {}
        self._transitions: list[StateTransition] = []
        self._audit: list[AuditEntry] = []
        self._reports: list[InfrastructureReport] = []
        self._assessment_locks: dict[str, asyncio.Lock] = {}
        self._assessment_waiters: dict[str, int] = {}

    # Tenants ------------------------------------------------------------

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        return copy.deepcopy(self._tenants.get(tenant_id))

    async def list_tenants(self) -> list[Tenant]:
        return [copy.deepcopy(t) for t in self._tenants.values()]

    async def add_tenant(self, tenant: Tenant) -> Tenant:
        self._tenants[tenant.id] = copy.deepcopy(tenant)
        return copy.deepcopy(tenant)

    async def set_assessment_completed(self, tenant_id: str, completed: bool) -> None:
        self._tenant(tenant_id).assessment_completed = completed

    async def set_transition_acknowledged(self, tenant_id: str, acknowledged: bool) -> None:
        self._tenant(tenant_id).transition_acknowledged = acknowledged

    def _tenant(self, tenant_id: str) -> Tenant:
        tenant = self._tenants.get(tenant_id)
        if tenant is None:
            raise EntityNotFoundError("tenant", tenant_id)
        return tenant

    # Domains ------------------------------------------------------------

    async def get_domain(self, domain_id: str) -> Domain | None:
        return copy.deepcopy(self._domains.get(domain_id))

    async def list_domains(self, tenant_id: str) -> list[Domain]:
        return [copy.deepcopy(d) for d in self._domains.values() if d.tenant_id == tenant_id]

    async def add_domain(self, domain: Domain) -> Domain:
        return self._insert(self._domains, domain)

    async def save_domain(self, domain: Domain) -> Domain:
        return self._cas(self._domains, "domain", domain)

    # Mailboxes ----------------------------------------------------------

    async def get_mailbox(self, mailbox_id: str) -> Mailbox | None:
        return copy.deepcopy(self._mailboxes.get(mailbox_id))

    async def list_mailboxes(self, tenant_id: str, domain_id: str | None = None) -> list[Mailbox]:
        return [
            copy.deepcopy(m)
            for m in self._mailboxes.values()
            if m.tenant_id == tenant_id and (domain_id is None or m.domain_id == domain_id)
        ]

    async def add_mailbox(self, mailbox: Mailbox) -> Mailbox:
        if mailbox.domain_id not in self._domains:
            raise EntityNotFoundError("domain", mailbox.domain_id)
        return self._insert(self._mailboxes, mailbox)

    async def save_mailbox(self, mailbox: Mailbox) -> Mailbox:
        return self._cas(self._mailboxes, "mailbox", mailbox)

    # Campaigns ----------------------------------------------------------

    async def get_campaign(self, campaign_id: str) -> Campaign | None:
        return copy.deepcopy(self._campaigns.get(campaign_id))

    async def list_campaigns(self, tenant_id: str) -> list[Campaign]:
        return [copy.deepcopy(c) for c in self._campaigns.values() if c.tenant_id == tenant_id]

    async def list_campaigns_for_mailbox(self, mailbox_id: str) -> list[Campaign]:
        return [copy.deepcopy(c) for c in self._campaigns.values() if mailbox_id in c.mailbox_ids]

    async def add_campaign(self, campaign: Campaign) -> Campaign:
        return self._insert(self._campaigns, campaign)

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        return self._cas(self._campaigns, "campaign", campaign)

    # Append-only records ------------------------------------------------

    async def append_transition(self, transition: StateTransition) -> None:
        self._transitions.append(transition)

    async def list_transitions(self, tenant_id: str, entity_id: str | None = None) -> list[StateTransition]:
        return [
            t
            for t in self._transitions
            if t.tenant_id == tenant_id and (entity_id is None or t.entity_id == entity_id)
        ]

    async def append_audit(self, entry: AuditEntry) -> None:
        self._audit.append(entry)

    async def count_audit_entries(
        self,
        tenant_id: str,
        actions: tuple[str, ...],
        since: datetime,
        entity_id: str | None = None,
    ) -> int:
        return sum(
            1
            for e in self._audit
            if e.tenant_id == tenant_id
            and e.action in actions
            and e.created_at >= since
            and (entity_id is None or e.entity_id == entity_id)
        )

    async def list_audit_entries(self, tenant_id: str) -> list[AuditEntry]:
        return [e for e in self._audit if e.tenant_id == tenant_id]

    async def create_report(self, report: InfrastructureReport) -> InfrastructureReport:
        self._reports.append(report)
        return report

    async def get_latest_report(self, tenant_id: str) -> InfrastructureReport | None:
        reports = await self.list_reports(tenant_id, limit=1)
        return reports[0] if reports else None

    async def list_reports(self, tenant_id: str, limit: int = 10) -> list[InfrastructureReport]:
        # stable sort keeps insertion order for equal timestamps, so reverse both
        ordered = [
            r for _, r in sorted(
                ((i, r) for i, r in enumerate(self._reports) if r.tenant_id == tenant_id),
                key=lambda pair: (pair[1].created_at, pair[0]),
                reverse=True,
            )
        ]
        return ordered[:limit]

    # Assessment lock ----------------------------------------------------

    @asynccontextmanager
    async def tenant_assessment_lock(self, tenant_id: str) -> AsyncIterator[None]:
        lock = self._assessment_locks.setdefault(tenant_id, asyncio.Lock())
        self._assessment_waiters[tenant_id] = self._assessment_waiters.get(tenant_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # drop the entry once nobody holds or waits for it
            self._assessment_waiters[tenant_id] -= 1
            if not self._assessment_waiters[tenant_id]:
                del self._assessment_waiters[tenant_id]
                del self._assessment_locks[tenant_id]

    async def assessment_locked(self, tenant_id: str) -> bool:
        lock = self._assessment_locks.get(tenant_id)
        return lock is not None and lock.locked()

    # Internals ----------------------------------------------------------

    @staticmethod
    def _insert(arena: dict, entity):
        if entity.id in arena:
            raise RepositoryError(f"Duplicate id {entity.id}", operation="insert", recoverable=False)
        stored = replace(copy.deepcopy(entity), version=0)
        arena[entity.id] = stored
        return copy.deepcopy(stored)

    @staticmethod
    def _cas(arena: dict, entity_type: str, entity):
        current = arena.get(entity.id)
        if current is None:
            raise EntityNotFoundError(entity_type, entity.id)
        if current.version != entity.version:
            raise StaleEntityError(entity_type, entity.id, entity.version)
        stored = replace(copy.deepcopy(entity), version=entity.version + 1)
        arena[entity.id] = stored
        return copy.deepcopy(stored)
