"""
Cross-entity health ceiling.

A mailbox is never healthier than its domain, and a campaign is never
healthier than the worst of its mailboxes and their domains. Whenever a domain
or mailbox status changes, the dependents are re-derived here. Mailbox status
follows its phase and its domain in both directions; campaigns are only ever
raised here: a paused campaign comes back only through an operator resume,
and a resumed one returns to active through the healing graduation pass.
"""

from app.infrastructure.audit import AuditLogger
from app.infrastructure.observability.logging import get_logger
from app.models.domain.infrastructure import (
    Campaign,
    CampaignStatus,
    Domain,
    EntityType,
    HealthStatus,
    Mailbox,
    campaign_status_for_rank,
    health_for_rank,
    phase_status,
    state_rank,
    worst_state,
)
from app.repositories.base import InfrastructureRepository
from app.services.collaborators import PlatformControl, safe_platform_call
from app.utils.clock import Clock, utc_now

logger = get_logger(__name__)


def mailbox_effective_status(mailbox: Mailbox, domain: Domain | None) -> HealthStatus:
    """Status implied by the mailbox's own phase, capped by its domain."""
    return health_for_rank(worst_state(phase_status(mailbox.recovery_phase), domain.status if domain else None))


def campaign_ceiling(campaign: Campaign, mailboxes: dict[str, Mailbox], domains: dict[str, Domain]) -> int:
    """Worst rank among the campaign's mailboxes and their domains."""
    ranks = [0]
    for mailbox_id in campaign.mailbox_ids:
        mailbox = mailboxes.get(mailbox_id)
        if mailbox is None:
            continue
        ranks.append(state_rank(mailbox.status))
        domain = domains.get(mailbox.domain_id)
        if domain is not None:
            ranks.append(state_rank(domain.status))
    return max(ranks)


class HealthCeiling:
    def __init__(
        self,
        repository: InfrastructureRepository,
        audit: AuditLogger,
        platform: PlatformControl,
        clock: Clock = utc_now,
    ):
        self.repository = repository
        self.audit = audit
        self.platform = platform
        self.clock = clock

    async def sync_domain_mailboxes(self, domain_id: str, reason: str) -> list[Mailbox]:
        """Re-derive every mailbox status under ``domain_id``. Returns the mailboxes that changed."""
        domain = await self.repository.require_domain(domain_id)
        changed: list[Mailbox] = []

        for mailbox in await self.repository.list_mailboxes(domain.tenant_id, domain_id=domain_id):
            previous: dict[str, HealthStatus] = {}

            def apply(m: Mailbox) -> bool:
                target = mailbox_effective_status(m, domain)
                if m.status is target:
                    return False
                previous["status"] = m.status
                m.status = target
                return True

            saved, did_change = await self.repository.update_mailbox(mailbox.id, apply)
            if did_change:
                changed.append(saved)
                await self.audit.record_transition(
                    tenant_id=saved.tenant_id,
                    entity_type=EntityType.MAILBOX,
                    entity_id=saved.id,
                    from_state=previous["status"].value,
                    to_state=saved.status.value,
                    reason=f"Domain {domain.domain} is {domain.status.value}: {reason}",
                )

        if changed:
            logger.info(
                "Domain ceiling applied to mailboxes",
                domain_id=domain_id,
                domain_status=domain.status.value,
                changed=len(changed),
            )
        return changed

    async def raise_campaigns(
        self, tenant_id: str, mailbox_ids: set[str] | None = None, reason: str = "Infrastructure health ceiling"
    ) -> list[Campaign]:
        """
        Raise campaign statuses to their infrastructure ceiling.

        Only campaigns touching ``mailbox_ids`` are considered when given.
        Platform pause calls for newly paused campaigns run after every save.
        """
        mailboxes = {m.id: m for m in await self.repository.list_mailboxes(tenant_id)}
        domains = {d.id: d for d in await self.repository.list_domains(tenant_id)}
        now = self.clock()
        raised: list[tuple[Campaign, CampaignStatus]] = []

        for campaign in await self.repository.list_campaigns(tenant_id):
            if mailbox_ids is not None and not mailbox_ids.intersection(campaign.mailbox_ids):
                continue
            ceiling = campaign_ceiling(campaign, mailboxes, domains)
            if state_rank(campaign.status) >= ceiling:
                continue

            def apply(c: Campaign, ceiling: int = ceiling) -> CampaignStatus | None:
                if state_rank(c.status) >= ceiling:
                    return None
                before = c.status
                c.status = campaign_status_for_rank(ceiling)
                if c.status is CampaignStatus.PAUSED:
                    c.paused_reason = reason
                    c.paused_at = now
                    c.recovery_phase = None
                elif c.status is CampaignStatus.WARNING:
                    c.warning_count += 1
                return before

            saved, before = await self.repository.update_campaign(campaign.id, apply)
            if before is not None:
                raised.append((saved, before))

        for campaign, before in raised:
            await self.audit.record_transition(
                tenant_id=tenant_id,
                entity_type=EntityType.CAMPAIGN,
                entity_id=campaign.id,
                from_state=before.value,
                to_state=campaign.status.value,
                reason=reason,
            )
            if campaign.status is CampaignStatus.PAUSED:
                await safe_platform_call("pause_campaign", self.platform.pause_campaign, tenant_id, campaign.id)

        return [campaign for campaign, _ in raised]
