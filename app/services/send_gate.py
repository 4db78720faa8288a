"""
Pre-send check: may this mailbox send one more email right now?

Combines, in order: the execution gate lock, the transition gate, the
mailbox's effective status, its phase volume limit, the campaign's state and
restricted-mode cap, and the domain and tenant aggregate throttles, all
against today's send counters.
"""

from dataclasses import dataclass

from app.infrastructure.observability.logging import get_logger
from app.models.domain.infrastructure import Campaign, CampaignStatus, HealthStatus, Mailbox, RecoveryPhase
from app.repositories.base import InfrastructureRepository
from app.services.errors import EntityNotFoundError
from app.services.healing.criteria import DEFAULT_CRITERIA, GraduationCriteria, phase_volume_limit
from app.services.throttle_service import ThrottleService
from app.services.transition_gate import TransitionGate
from app.utils.clock import Clock, utc_now

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class SendDecision:
    allowed: bool
    reason: str
    remaining_today: int | None = None


def sent_today(sender: Mailbox | Campaign, today: str) -> int:
    return sender.sent_today if sender.sent_today_date == today else 0


class SendGate:
    def __init__(
        self,
        repository: InfrastructureRepository,
        transition_gate: TransitionGate,
        throttle: ThrottleService,
        criteria: GraduationCriteria | None = None,
        clock: Clock = utc_now,
    ):
        self.repository = repository
        self.transition_gate = transition_gate
        self.throttle = throttle
        self.criteria = criteria or DEFAULT_CRITERIA
        self.clock = clock

    async def check_send(self, tenant_id: str, mailbox_id: str, campaign_id: str | None = None) -> SendDecision:
        tenant = await self.repository.require_tenant(tenant_id)
        if not tenant.assessment_completed:
            return self._deny(tenant_id, mailbox_id, "Execution gate locked: infrastructure assessment has not completed.")

        gate = await self.transition_gate.check_gate(tenant_id)
        if not gate.can_transition:
            return self._deny(tenant_id, mailbox_id, gate.message)

        mailbox = await self.repository.require_mailbox(mailbox_id)
        if mailbox.tenant_id != tenant_id:
            raise EntityNotFoundError("mailbox", mailbox_id)

        if mailbox.status is HealthStatus.PAUSED:
            return self._deny(
                tenant_id, mailbox_id, f"Mailbox is paused (phase {mailbox.recovery_phase.value}).", remaining=0
            )

        today = self.clock().date().isoformat()
        remaining: list[int] = []

        mailbox_limit = phase_volume_limit(mailbox.recovery_phase, mailbox.resilience_score, self.criteria)
        if mailbox_limit is not None:
            left = mailbox_limit - sent_today(mailbox, today)
            if left <= 0:
                return self._deny(
                    tenant_id,
                    mailbox_id,
                    f"Mailbox daily limit reached for {mailbox.recovery_phase.value} ({mailbox_limit}/day).",
                    remaining=0,
                )
            remaining.append(left)

        if campaign_id is not None:
            campaign = await self.repository.require_campaign(campaign_id)
            if campaign.tenant_id != tenant_id:
                raise EntityNotFoundError("campaign", campaign_id)
            if campaign.status is CampaignStatus.PAUSED:
                return self._deny(tenant_id, mailbox_id, f"Campaign {campaign.name} is paused.", remaining=0)
            if campaign.recovery_phase is RecoveryPhase.RESTRICTED_SEND:
                campaign_limit = self.criteria.restricted_base_volume
                left = campaign_limit - sent_today(campaign, today)
                if left <= 0:
                    return self._deny(
                        tenant_id,
                        mailbox_id,
                        f"Campaign daily limit reached for restricted_send ({campaign_limit}/day).",
                        remaining=0,
                    )
                remaining.append(left)

        domain_limit = await self.throttle.domain_limit(mailbox.domain_id)
        if domain_limit is not None:
            domain_mailboxes = await self.repository.list_mailboxes(tenant_id, domain_id=mailbox.domain_id)
            left = domain_limit - sum(sent_today(m, today) for m in domain_mailboxes)
            if left <= 0:
                return self._deny(
                    tenant_id, mailbox_id, f"Domain recovery cap reached ({domain_limit}/day).", remaining=0
                )
            remaining.append(left)

        tenant_limit = await self.throttle.tenant_limit(tenant_id)
        if tenant_limit is not None:
            tenant_mailboxes = await self.repository.list_mailboxes(tenant_id)
            left = tenant_limit - sum(sent_today(m, today) for m in tenant_mailboxes)
            if left <= 0:
                return self._deny(
                    tenant_id, mailbox_id, f"Tenant recovery cap reached ({tenant_limit}/day).", remaining=0
                )
            remaining.append(left)

        return SendDecision(True, "Send permitted.", min(remaining) if remaining else None)

    @staticmethod
    def _deny(tenant_id: str, mailbox_id: str, reason: str, remaining: int | None = None) -> SendDecision:
        logger.info("Send denied", tenant_id=tenant_id, mailbox_id=mailbox_id, reason=reason)
        return SendDecision(False, reason, remaining)
