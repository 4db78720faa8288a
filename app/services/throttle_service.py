"""
Aggregate send caps while anything is recovering.

Individual phase limits alone would let a domain with many recovering
mailboxes send a lot in total; these caps bound the sum per domain and per
tenant. ``None`` means unbounded.
"""

from app.config import settings
from app.infrastructure.observability.logging import log_throttle_decision
from app.models.domain.infrastructure import Mailbox, is_recovering
from app.repositories.base import InfrastructureRepository
from app.services.healing.criteria import DEFAULT_CRITERIA, GraduationCriteria, phase_volume_limit


def aggregate_domain_limit(
    mailboxes: list[Mailbox], criteria: GraduationCriteria | None = None, cap: int | None = None
) -> int | None:
    """
    Sum of per-mailbox phase limits, capped, when any mailbox is recovering.

    Mailboxes outside recovery contribute nothing to the sum.
    """
    if not any(is_recovering(m.recovery_phase) for m in mailboxes):
        return None

    cap = settings.DOMAIN_RECOVERY_CAP if cap is None else cap
    individual_sum = sum(
        phase_volume_limit(m.recovery_phase, m.resilience_score, criteria or DEFAULT_CRITERIA) or 0
        for m in mailboxes
    )
    return min(individual_sum, cap)


class ThrottleService:
    def __init__(self, repository: InfrastructureRepository, criteria: GraduationCriteria | None = None):
        self.repository = repository
        self.criteria = criteria or DEFAULT_CRITERIA

    async def domain_limit(self, domain_id: str) -> int | None:
        domain = await self.repository.require_domain(domain_id)
        mailboxes = await self.repository.list_mailboxes(domain.tenant_id, domain_id=domain_id)
        limit = aggregate_domain_limit(mailboxes, self.criteria)

        if limit is not None:
            log_throttle_decision(
                scope="domain",
                scope_id=domain_id,
                limit=limit,
                recovering=sum(1 for m in mailboxes if is_recovering(m.recovery_phase)),
                total_mailboxes=len(mailboxes),
            )
        return limit

    async def tenant_limit(self, tenant_id: str) -> int | None:
        await self.repository.require_tenant(tenant_id)
        mailboxes = await self.repository.list_mailboxes(tenant_id)

        by_domain: dict[str, list[Mailbox]] = {}
        for mailbox in mailboxes:
            by_domain.setdefault(mailbox.domain_id, []).append(mailbox)

        bounded = [
            limit
            for limit in (aggregate_domain_limit(group, self.criteria) for group in by_domain.values())
            if limit is not None
        ]
        if not bounded:
            return None

        limit = min(sum(bounded), settings.TENANT_RECOVERY_CAP)
        log_throttle_decision(
            scope="tenant",
            scope_id=tenant_id,
            limit=limit,
            throttled_domains=len(bounded),
            domains_sum=sum(bounded),
        )
        return limit
