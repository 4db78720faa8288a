"""
Transition gate: may this tenant start sending, given its latest assessment?

    score >= 60            allow
    25 <= score < 60       allow only after operator acknowledgment
    0 < score < 25         deny, no override at any privilege level
    score == 0             deny, manual healing required
"""

from dataclasses import dataclass

from app.config import settings
from app.infrastructure.audit import AuditLogger
from app.infrastructure.observability.logging import get_logger
from app.models.domain.infrastructure import EntityType, HealthStatus
from app.repositories.base import InfrastructureRepository

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class GateDecision:
    can_transition: bool
    requires_acknowledgment: bool
    overall_score: int
    message: str


class TransitionGate:
    def __init__(self, repository: InfrastructureRepository, audit: AuditLogger):
        self.repository = repository
        self.audit = audit

    @property
    def hard_floor(self) -> int:
        return settings.GATE_HARD_FLOOR

    @property
    def auto_allow_score(self) -> int:
        return settings.GATE_AUTO_ALLOW_SCORE

    async def check_gate(self, tenant_id: str) -> GateDecision:
        tenant = await self.repository.require_tenant(tenant_id)
        report = await self.repository.get_latest_report(tenant_id)

        if report is None:
            return GateDecision(False, False, 0, "No infrastructure assessment has been performed yet.")

        score = report.overall_score

        if score >= self.auto_allow_score:
            return GateDecision(True, False, score, f"Infrastructure scored {score}/100. Safe to operate.")

        if 0 < score < self.hard_floor:
            logger.warning("Transition hard-blocked below safety floor", tenant_id=tenant_id, score=score)
            return GateDecision(
                False,
                False,
                score,
                f"Infrastructure scored {score}/100, below the safety floor of {self.hard_floor}. "
                "Manual infrastructure repair required: fix SPF, DKIM and DMARC records and resolve "
                "blacklistings. Operator override is not available at this level.",
            )

        if score >= self.hard_floor:
            if tenant.transition_acknowledged:
                return GateDecision(
                    True, False, score, f"Infrastructure scored {score}/100. Operator previously acknowledged risks."
                )

            domains = await self.repository.list_domains(tenant_id)
            mailboxes = await self.repository.list_mailboxes(tenant_id)
            paused_domains = sum(1 for d in domains if d.status is HealthStatus.PAUSED)
            paused_mailboxes = sum(1 for m in mailboxes if m.status is HealthStatus.PAUSED)
            return GateDecision(
                False,
                True,
                score,
                f"Infrastructure scored {score}/100, below the auto-allow threshold of {self.auto_allow_score}. "
                f"{paused_domains}/{len(domains)} domains and {paused_mailboxes}/{len(mailboxes)} mailboxes "
                "are paused. Operator acknowledgment of these risks is required to proceed.",
            )

        return GateDecision(
            False, False, score, "All infrastructure is paused. Manual healing required before the system can operate."
        )

    async def acknowledge(self, tenant_id: str) -> bool:
        """
        Record operator acknowledgment of a low (but not too low) score.

        The gate is re-evaluated here from the stored report; a score under the
        hard floor is always rejected.
        """
        decision = await self.check_gate(tenant_id)

        if decision.overall_score < self.hard_floor:
            logger.warning(
                "Transition acknowledgment rejected below hard floor",
                tenant_id=tenant_id,
                score=decision.overall_score,
                floor=self.hard_floor,
            )
            return False

        if not decision.requires_acknowledgment:
            # already acknowledged is fine; auto-allowed scores have nothing to acknowledge
            return decision.can_transition and decision.overall_score < self.auto_allow_score

        await self.repository.set_transition_acknowledged(tenant_id, True)
        await self.audit.log(
            tenant_id=tenant_id,
            action="transition_acknowledged",
            entity_type=EntityType.TENANT,
            entity_id=tenant_id,
            trigger="operator",
            details={"overall_score": decision.overall_score, "message": decision.message},
        )
        logger.info("Transition acknowledged", tenant_id=tenant_id, score=decision.overall_score)
        return True
