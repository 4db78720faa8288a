"""
Operator override protection.

Manual overrides are allowed but never free:
  - 3+ overrides on one entity within 48h double the resulting cooldown
  - 5+ overrides across the tenant within 7 days raise an account warning
  - entities with resilience below 20 need a written justification
  - campaign resumes re-enter restricted send, never full-volume active
  - forced entity overrides re-enter QUARANTINE, never HEALTHY
"""

from dataclasses import dataclass, field
from datetime import timedelta

from app.config import settings
from app.infrastructure.audit import ACTION_FORCE_STATE_CHANGE, ACTION_MANUAL_RESUME, OVERRIDE_ACTIONS, AuditLogger
from app.infrastructure.observability.logging import get_logger
from app.models.domain.infrastructure import (
    Campaign,
    CampaignStatus,
    EntityType,
    HealableEntity,
    HealingOrigin,
    RecoveryPhase,
    TriggeredBy,
    campaign_status_for_rank,
    health_for_rank,
    phase_status,
    worst_state,
)
from app.repositories.base import InfrastructureRepository
from app.services.collaborators import Notifier, PlatformControl, safe_notify, safe_platform_call
from app.services.dns_assessment import stored_dns_status
from app.services.errors import EntityNotFoundError
from app.services.healing.criteria import enter_phase
from app.services.health_ceiling import HealthCeiling, campaign_ceiling
from app.utils.clock import Clock, utc_now

logger = get_logger(__name__)

RESUMABLE_MAILBOX_PHASES = (RecoveryPhase.WARM_RECOVERY, RecoveryPhase.HEALTHY)


@dataclass(frozen=True, slots=True)
class OverrideRequest:
    tenant_id: str
    entity_type: EntityType
    entity_id: str
    target_state: str
    justification: str | None = None
    operator_id: str | None = None


@dataclass(frozen=True, slots=True)
class OverrideResult:
    allowed: bool
    applied: bool
    message: str
    warnings: tuple[str, ...] = field(default_factory=tuple)
    cooldown_multiplier: float = 1.0
    requires_justification: bool = False


def _denied(message: str, warnings: list[str] | None = None, requires_justification: bool = False) -> OverrideResult:
    return OverrideResult(
        allowed=False,
        applied=False,
        message=message,
        warnings=tuple(warnings or ()),
        requires_justification=requires_justification,
    )


class OperatorOverrideService:
    def __init__(
        self,
        repository: InfrastructureRepository,
        audit: AuditLogger,
        ceiling: HealthCeiling,
        platform: PlatformControl,
        notifier: Notifier,
        clock: Clock = utc_now,
    ):
        self.repository = repository
        self.audit = audit
        self.ceiling = ceiling
        self.platform = platform
        self.notifier = notifier
        self.clock = clock

    async def assess_override(self, request: OverrideRequest) -> OverrideResult:
        """Risk verdict for an override request. Writes nothing except the account warning event."""
        warnings: list[str] = []
        cooldown_multiplier = 1.0
        requires_justification = False
        now = self.clock()

        # same-entity frequency
        entity_overrides = await self.repository.count_audit_entries(
            request.tenant_id,
            OVERRIDE_ACTIONS,
            since=now - timedelta(hours=settings.OVERRIDE_ENTITY_WINDOW_HOURS),
            entity_id=request.entity_id,
        )
        if entity_overrides >= 2:
            warnings.append(f"{entity_overrides} overrides on this entity in 48h")
        if entity_overrides >= settings.OVERRIDE_ENTITY_MAX:
            cooldown_multiplier = 2.0
            warnings.append(f"{entity_overrides}+ overrides, cooldown period doubled")

        # tenant-wide frequency
        tenant_overrides = await self.repository.count_audit_entries(
            request.tenant_id,
            OVERRIDE_ACTIONS,
            since=now - timedelta(days=settings.OVERRIDE_TENANT_WINDOW_DAYS),
        )
        if tenant_overrides >= settings.OVERRIDE_TENANT_MAX:
            warnings.append(
                f"{tenant_overrides} overrides across all entities in 7 days, frequent override pattern detected"
            )
            logger.warning("Frequent operator overrides", tenant_id=request.tenant_id, count=tenant_overrides)
            await self.audit.log(
                tenant_id=request.tenant_id,
                action="frequent_overrides",
                entity_type=EntityType.TENANT,
                entity_id=request.tenant_id,
                trigger="operator_override",
                details={"count": tenant_overrides, "window": "7d"},
            )

        # low resilience needs a written reason
        if request.entity_type in (EntityType.DOMAIN, EntityType.MAILBOX):
            entity = await self._load(request.entity_type, request.entity_id)
            resilience = entity.resilience_score
            if resilience < settings.OVERRIDE_LOW_RESILIENCE_THRESHOLD:
                requires_justification = True
                justification = (request.justification or "").strip()
                if len(justification) < settings.OVERRIDE_MIN_JUSTIFICATION_LENGTH:
                    return _denied(
                        f"Entity resilience score is {resilience}/100 "
                        f"(below {settings.OVERRIDE_LOW_RESILIENCE_THRESHOLD}). Written justification required "
                        f"(min {settings.OVERRIDE_MIN_JUSTIFICATION_LENGTH} characters).",
                        warnings,
                        requires_justification=True,
                    )
                warnings.append(f"Low resilience ({resilience}/100), justification recorded")

        return OverrideResult(
            allowed=True,
            applied=False,
            message=(
                f"Override allowed with warnings: {'; '.join(warnings)}"
                if warnings
                else "Override allowed, no risk indicators"
            ),
            warnings=tuple(warnings),
            cooldown_multiplier=cooldown_multiplier,
            requires_justification=requires_justification,
        )

    async def resume_campaign(
        self,
        tenant_id: str,
        campaign_id: str,
        operator_id: str | None = None,
        justification: str | None = None,
    ) -> OverrideResult:
        """Manually resume a paused campaign in restricted send mode."""
        campaign = await self.repository.require_campaign(campaign_id)
        if campaign.tenant_id != tenant_id:
            raise EntityNotFoundError("campaign", campaign_id)

        if campaign.status is not CampaignStatus.PAUSED:
            return _denied(f"Campaign is {campaign.status.value}, not paused")

        mailboxes = await self.repository.list_mailboxes(tenant_id)
        ready = sum(1 for m in mailboxes if m.recovery_phase in RESUMABLE_MAILBOX_PHASES)
        if ready == 0:
            return _denied("Cannot resume campaign: no mailboxes at warm_recovery or healthy. Heal infrastructure first.")

        domains = {d.id: d for d in await self.repository.list_domains(tenant_id)}
        ceiling = campaign_ceiling(campaign, {m.id: m for m in mailboxes}, domains)
        if ceiling >= 2:
            return _denied("Cannot resume campaign: its mailboxes or their domains are still paused.")

        verdict = await self.assess_override(
            OverrideRequest(
                tenant_id=tenant_id,
                entity_type=EntityType.CAMPAIGN,
                entity_id=campaign_id,
                target_state=RecoveryPhase.RESTRICTED_SEND.value,
                justification=justification,
                operator_id=operator_id,
            )
        )
        if not verdict.allowed:
            return verdict

        now = self.clock()

        def apply(c: Campaign) -> CampaignStatus | None:
            if c.status is not CampaignStatus.PAUSED:
                return None
            before = c.status
            # restricted mode: volume-capped by the send gate, reported as warning
            # until the healing pass graduates it back to active
            c.status = campaign_status_for_rank(max(1, ceiling))
            c.recovery_phase = RecoveryPhase.RESTRICTED_SEND
            c.phase_entered_at = now
            c.clean_sends_since_phase = 0
            c.phase_sent_count = 0
            c.phase_bounce_count = 0
            c.paused_reason = None
            c.paused_at = None
            return before

        saved, before = await self.repository.update_campaign(campaign_id, apply)
        if before is None:
            return _denied(f"Campaign is {saved.status.value}, not paused")

        reason = f"Manual resume by operator. Justification: {justification or 'none provided'}"
        await self.audit.record_transition(
            tenant_id=tenant_id,
            entity_type=EntityType.CAMPAIGN,
            entity_id=campaign_id,
            from_state=before.value,
            to_state=saved.status.value,
            reason=reason,
            triggered_by=TriggeredBy.OPERATOR_OVERRIDE,
        )
        await self.audit.log(
            tenant_id=tenant_id,
            action=ACTION_MANUAL_RESUME,
            entity_type=EntityType.CAMPAIGN,
            entity_id=campaign_id,
            trigger="operator_override",
            details={
                "operator_id": operator_id,
                "ready_mailboxes": ready,
                "warnings": list(verdict.warnings),
                "recovery_phase": RecoveryPhase.RESTRICTED_SEND.value,
            },
        )

        await safe_platform_call("resume_campaign", self.platform.resume_campaign, tenant_id, campaign_id)
        await safe_notify(
            self.notifier,
            tenant_id,
            "info",
            "Campaign Resumed",
            f'Campaign "{saved.name}" was resumed by an operator in restricted send mode.',
        )

        logger.info(
            "Campaign resumed by operator",
            tenant_id=tenant_id,
            campaign_id=campaign_id,
            operator_id=operator_id,
            status=saved.status.value,
            warnings=len(verdict.warnings),
        )
        return OverrideResult(
            allowed=True,
            applied=True,
            message=f"Campaign resumed in restricted mode. {ready} healthy mailboxes available.",
            warnings=verdict.warnings,
            cooldown_multiplier=verdict.cooldown_multiplier,
            requires_justification=verdict.requires_justification,
        )

    async def override_entity_state(self, request: OverrideRequest) -> OverrideResult:
        """
        Force a paused domain or mailbox back into healing.

        Whatever ``target_state`` asks for, the entity enters QUARANTINE with a
        hold of the override quarantine period times the risk multiplier.
        """
        if request.entity_type not in (EntityType.DOMAIN, EntityType.MAILBOX):
            return _denied("Campaign overrides go through a campaign resume")

        entity = await self._load(request.entity_type, request.entity_id)
        if entity.tenant_id != request.tenant_id:
            raise EntityNotFoundError(request.entity_type.value, request.entity_id)
        if entity.recovery_phase is not RecoveryPhase.PAUSED:
            return _denied(
                f"{request.entity_type.value.capitalize()} is in {entity.recovery_phase.value}, not paused"
            )

        verdict = await self.assess_override(request)
        if not verdict.allowed:
            return verdict

        if request.entity_type is EntityType.MAILBOX:
            ceiling_status = (await self.repository.require_domain(entity.domain_id)).status
        else:
            ceiling_status = stored_dns_status(entity)

        now = self.clock()
        hold = timedelta(hours=settings.OVERRIDE_QUARANTINE_HOLD_HOURS) * verdict.cooldown_multiplier

        def apply(e: HealableEntity) -> RecoveryPhase | None:
            if e.recovery_phase is not RecoveryPhase.PAUSED:
                return None
            before = e.recovery_phase
            enter_phase(e, RecoveryPhase.QUARANTINE, now)
            e.cooldown_until = now + hold
            e.healing_origin = e.healing_origin or HealingOrigin.RECOVERY
            e.status = health_for_rank(worst_state(phase_status(RecoveryPhase.QUARANTINE), ceiling_status))
            return before

        if request.entity_type is EntityType.DOMAIN:
            saved, before = await self.repository.update_domain(request.entity_id, apply)
        else:
            saved, before = await self.repository.update_mailbox(request.entity_id, apply)
        if before is None:
            return _denied(f"{request.entity_type.value.capitalize()} left the paused phase concurrently")

        warnings = list(verdict.warnings)
        if request.target_state != RecoveryPhase.QUARANTINE.value:
            warnings.append(f"Requested {request.target_state}; entity re-enters quarantine instead")

        await self.audit.record_transition(
            tenant_id=request.tenant_id,
            entity_type=request.entity_type,
            entity_id=request.entity_id,
            from_state=before.value,
            to_state=RecoveryPhase.QUARANTINE.value,
            reason=f"Operator override. Justification: {request.justification or 'none'}",
            triggered_by=TriggeredBy.OPERATOR_OVERRIDE,
        )
        await self.audit.log(
            tenant_id=request.tenant_id,
            action=ACTION_FORCE_STATE_CHANGE,
            entity_type=request.entity_type,
            entity_id=request.entity_id,
            trigger="operator_override",
            details={
                "operator_id": request.operator_id,
                "requested_state": request.target_state,
                "cooldown_multiplier": verdict.cooldown_multiplier,
                "quarantine_hold_hours": hold.total_seconds() / 3600,
                "warnings": warnings,
            },
        )

        if request.entity_type is EntityType.DOMAIN:
            await self.ceiling.sync_domain_mailboxes(request.entity_id, "Operator override")

        await safe_notify(
            self.notifier,
            request.tenant_id,
            "warning",
            "Operator Override Applied",
            f"A {request.entity_type.value} was moved from paused to quarantine by an operator. "
            "It must pass the healing pipeline before sending at full volume.",
        )

        logger.info(
            "Entity override applied",
            tenant_id=request.tenant_id,
            entity_type=request.entity_type.value,
            entity_id=request.entity_id,
            requested_state=request.target_state,
            cooldown_multiplier=verdict.cooldown_multiplier,
        )
        return OverrideResult(
            allowed=True,
            applied=True,
            message=(
                f"Override to {request.target_state} accepted. "
                "Entity enters quarantine, not healthy."
            ),
            warnings=tuple(warnings),
            cooldown_multiplier=verdict.cooldown_multiplier,
            requires_justification=verdict.requires_justification,
        )

    async def _load(self, entity_type: EntityType, entity_id: str) -> HealableEntity:
        if entity_type is EntityType.MAILBOX:
            return await self.repository.require_mailbox(entity_id)
        return await self.repository.require_domain(entity_id)
