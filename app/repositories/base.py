"""
Storage interface for infrastructure entities, transitions, audit entries and reports.

Entities are saved with an optimistic compare-and-swap on ``version``: a save
succeeds only when the stored version equals the one that was read, and the
stored version is then incremented. The ``update_*`` helpers wrap the
read-mutate-save cycle and retry on conflicts, so every caller gets a single
atomic read-modify-write per entity without holding a lock across I/O.
"""

import copy
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import TypeVar

from app.infrastructure.observability.logging import get_logger
from app.models.domain.infrastructure import (
    AuditEntry,
    Campaign,
    Domain,
    InfrastructureReport,
    Mailbox,
    StateTransition,
    Tenant,
)
from app.services.errors import EntityNotFoundError, StaleEntityError

logger = get_logger(__name__)

E = TypeVar("E", Domain, Mailbox, Campaign)
R = TypeVar("R")

DEFAULT_CAS_ATTEMPTS = 5


class InfrastructureRepository(ABC):
    """Abstract repository. Reads return detached copies; callers own them."""

    # ------------------------------------------------------------------
    # Tenants + execution gate
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_tenant(self, tenant_id: str) -> Tenant | None: ...

    @abstractmethod
    async def list_tenants(self) -> list[Tenant]: ...

    @abstractmethod
    async def add_tenant(self, tenant: Tenant) -> Tenant: ...

    @abstractmethod
    async def set_assessment_completed(self, tenant_id: str, completed: bool) -> None:
        """Lock (False) or unlock (True) the tenant execution gate."""

    @abstractmethod
    async def set_transition_acknowledged(self, tenant_id: str, acknowledged: bool) -> None: ...

    # ------------------------------------------------------------------
    # Domains / mailboxes / campaigns
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_domain(self, domain_id: str) -> Domain | None: ...

    @abstractmethod
    async def list_domains(self, tenant_id: str) -> list[Domain]: ...

    @abstractmethod
    async def add_domain(self, domain: Domain) -> Domain: ...

    @abstractmethod
    async def save_domain(self, domain: Domain) -> Domain:
        """CAS save. Raises StaleEntityError on version mismatch."""

    @abstractmethod
    async def get_mailbox(self, mailbox_id: str) -> Mailbox | None: ...

    @abstractmethod
    async def list_mailboxes(self, tenant_id: str, domain_id: str | None = None) -> list[Mailbox]: ...

    @abstractmethod
    async def add_mailbox(self, mailbox: Mailbox) -> Mailbox: ...

    @abstractmethod
    async def save_mailbox(self, mailbox: Mailbox) -> Mailbox:
        """CAS save. Raises StaleEntityError on version mismatch."""

    @abstractmethod
    async def get_campaign(self, campaign_id: str) -> Campaign | None: ...

    @abstractmethod
    async def list_campaigns(self, tenant_id: str) -> list[Campaign]: ...

    @abstractmethod
    async def list_campaigns_for_mailbox(self, mailbox_id: str) -> list[Campaign]: ...

    @abstractmethod
    async def add_campaign(self, campaign: Campaign) -> Campaign: ...

    @abstractmethod
    async def save_campaign(self, campaign: Campaign) -> Campaign:
        """CAS save. Raises StaleEntityError on version mismatch."""

    # ------------------------------------------------------------------
    # Append-only records
    # ------------------------------------------------------------------

    @abstractmethod
    async def append_transition(self, transition: StateTransition) -> None: ...

    @abstractmethod
    async def list_transitions(self, tenant_id: str, entity_id: str | None = None) -> list[StateTransition]:
        """Oldest first."""

    @abstractmethod
    async def append_audit(self, entry: AuditEntry) -> None: ...

    @abstractmethod
    async def count_audit_entries(
        self,
        tenant_id: str,
        actions: tuple[str, ...],
        since: datetime,
        entity_id: str | None = None,
    ) -> int: ...

    @abstractmethod
    async def create_report(self, report: InfrastructureReport) -> InfrastructureReport: ...

    @abstractmethod
    async def get_latest_report(self, tenant_id: str) -> InfrastructureReport | None: ...

    @abstractmethod
    async def list_reports(self, tenant_id: str, limit: int = 10) -> list[InfrastructureReport]:
        """Newest first."""

    # ------------------------------------------------------------------
    # Assessment lock
    # ------------------------------------------------------------------

    @abstractmethod
    def tenant_assessment_lock(self, tenant_id: str) -> AbstractAsyncContextManager[None]:
        """
        Exclusive per-tenant assessment lock, held for the whole run.

        The lock lives in the store, so every process sharing the store
        (API workers, the scheduler) serializes on it. Entering waits for
        the current holder to finish.
        """

    @abstractmethod
    async def assessment_locked(self, tenant_id: str) -> bool:
        """True while some process holds the tenant's assessment lock."""

    # ------------------------------------------------------------------
    # Read-modify-write helpers
    # ------------------------------------------------------------------

    async def require_tenant(self, tenant_id: str) -> Tenant:
        tenant = await self.get_tenant(tenant_id)
        if tenant is None:
            raise EntityNotFoundError("tenant", tenant_id)
        return tenant

    async def require_domain(self, domain_id: str) -> Domain:
        domain = await self.get_domain(domain_id)
        if domain is None:
            raise EntityNotFoundError("domain", domain_id)
        return domain

    async def require_mailbox(self, mailbox_id: str) -> Mailbox:
        mailbox = await self.get_mailbox(mailbox_id)
        if mailbox is None:
            raise EntityNotFoundError("mailbox", mailbox_id)
        return mailbox

    async def require_campaign(self, campaign_id: str) -> Campaign:
        campaign = await self.get_campaign(campaign_id)
        if campaign is None:
            raise EntityNotFoundError("campaign", campaign_id)
        return campaign

    async def update_domain(
        self, domain_id: str, mutator: Callable[[Domain], R], max_attempts: int = DEFAULT_CAS_ATTEMPTS
    ) -> tuple[Domain, R]:
        return await self._update("domain", domain_id, self.require_domain, self.save_domain, mutator, max_attempts)

    async def update_mailbox(
        self, mailbox_id: str, mutator: Callable[[Mailbox], R], max_attempts: int = DEFAULT_CAS_ATTEMPTS
    ) -> tuple[Mailbox, R]:
        return await self._update(
            "mailbox", mailbox_id, self.require_mailbox, self.save_mailbox, mutator, max_attempts
        )

    async def update_campaign(
        self, campaign_id: str, mutator: Callable[[Campaign], R], max_attempts: int = DEFAULT_CAS_ATTEMPTS
    ) -> tuple[Campaign, R]:
        return await self._update(
            "campaign", campaign_id, self.require_campaign, self.save_campaign, mutator, max_attempts
        )

    async def _update(
        self,
        entity_type: str,
        entity_id: str,
        load: Callable[[str], Awaitable[E]],
        save: Callable[[E], Awaitable[E]],
        mutator: Callable[[E], R],
        max_attempts: int,
    ) -> tuple[E, R]:
        """
        Load, apply ``mutator`` in place, save if anything changed.

        The mutator must be synchronous and free of I/O; it may run more than
        once when a concurrent writer wins the race.
        """
        for attempt in range(1, max_attempts + 1):
            entity = await load(entity_id)
            before = copy.deepcopy(entity)
            result = mutator(entity)

            if entity == before:
                return entity, result

            try:
                return await save(entity), result
            except StaleEntityError:
                if attempt == max_attempts:
                    raise
                logger.debug(
                    "Concurrent update detected, retrying",
                    entity_type=entity_type,
                    entity_id=entity_id,
                    attempt=attempt,
                )

        raise StaleEntityError(entity_type, entity_id, expected_version=-1)
