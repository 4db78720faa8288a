"""
Recovery state machine.

PAUSED -> QUARANTINE -> RESTRICTED_SEND -> WARM_RECOVERY -> HEALTHY

Every call checks a single phase step. The decision is taken inside a
repository ``update_*`` mutator, so it is re-evaluated against the freshest
row on a version conflict and two overlapping checks can never both graduate
the same entity. Audit rows, notifications, platform calls and ceiling
propagation happen after the save, outside the read-modify-write.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from app.infrastructure.audit import AuditLogger
from app.infrastructure.observability.logging import get_logger, log_phase_transition
from app.models.domain.infrastructure import (
    BlacklistStatus,
    Campaign,
    CampaignStatus,
    Domain,
    EntityType,
    HealableEntity,
    HealingOrigin,
    HealthStatus,
    Mailbox,
    PhaseTransitionResult,
    RecoveryPhase,
    TriggeredBy,
    health_for_rank,
    phase_status,
    worst_state,
)
from app.repositories.base import InfrastructureRepository
from app.services.collaborators import Notifier, PlatformControl, safe_notify, safe_platform_call
from app.services.dns_assessment import stored_dns_status
from app.services.errors import InvalidPhaseTransitionError
from app.services.healing.criteria import (
    DEFAULT_CRITERIA,
    GraduationCriteria,
    clamp_resilience,
    enter_phase,
    phase_volume_limit,
    required_clean_sends,
    required_warm_duration,
    required_warm_sends,
)
from app.services.health_ceiling import HealthCeiling, campaign_ceiling
from app.utils.clock import Clock, utc_now

logger = get_logger(__name__)

# Phases in which a health-degrading bounce counts as a relapse
RELAPSE_PHASES = frozenset(
    {RecoveryPhase.QUARANTINE, RecoveryPhase.RESTRICTED_SEND, RecoveryPhase.WARM_RECOVERY}
)
# Phases that accumulate clean-send evidence
CLEAN_SEND_PHASES = frozenset({RecoveryPhase.RESTRICTED_SEND, RecoveryPhase.WARM_RECOVERY})
GRADUATION_PHASES = frozenset(
    {
        RecoveryPhase.PAUSED,
        RecoveryPhase.QUARANTINE,
        RecoveryPhase.RESTRICTED_SEND,
        RecoveryPhase.WARM_RECOVERY,
    }
)


def dns_is_clean(domain: Domain) -> bool:
    """
    Conclusive clean DNS: SPF and DKIM valid and every checked blacklist NOT_LISTED.

    UNREACHABLE or never-checked blacklists are not evidence of cleanliness.
    """
    if domain.spf_valid is not True or domain.dkim_valid is not True:
        return False
    if not domain.blacklist_results:
        return False
    return all(status is BlacklistStatus.NOT_LISTED for status in domain.blacklist_results.values())


def apply_clean_send(entity: HealableEntity) -> bool:
    """Count one clean send toward graduation if the phase tracks them."""
    if entity.recovery_phase in CLEAN_SEND_PHASES:
        entity.clean_sends_since_phase += 1
        return True
    return False


@dataclass(frozen=True, slots=True)
class RecoveryStatusEntry:
    entity_type: EntityType
    entity_id: str
    name: str
    recovery_phase: RecoveryPhase
    status: HealthStatus
    resilience_score: int
    relapse_count: int
    healing_origin: HealingOrigin | None
    cooldown_until: datetime | None
    phase_entered_at: datetime | None
    clean_sends_since_phase: int
    required_clean_sends: int | None
    daily_volume_limit: int | None
    manual_intervention_required: bool


class HealingService:
    """Graduation and relapse for domains and mailboxes, plus the restricted-send exit for resumed campaigns."""

    def __init__(
        self,
        repository: InfrastructureRepository,
        audit: AuditLogger,
        ceiling: HealthCeiling,
        platform: PlatformControl,
        notifier: Notifier,
        criteria: GraduationCriteria | None = None,
        clock: Clock = utc_now,
    ):
        self.repository = repository
        self.audit = audit
        self.ceiling = ceiling
        self.platform = platform
        self.notifier = notifier
        self.criteria = criteria or DEFAULT_CRITERIA
        self.clock = clock

    # ------------------------------------------------------------------
    # Graduation
    # ------------------------------------------------------------------

    async def check_graduation(self, entity_type: EntityType, entity_id: str) -> PhaseTransitionResult | None:
        """
        Evaluate one phase step for a domain or mailbox.

        Paused entities leave only once ``cooldown_until`` has passed; a pause
        with no cooldown stays paused until an operator overrides it.
        Quarantine needs clean DNS and also waits out any ``cooldown_until``
        still set, so a relapse or operator hold is honoured before restricted
        sending begins. Campaigns are handed to check_campaign_graduation.

        Returns the transition when one happened, None when the entity is not
        yet eligible or not recovering.
        """
        if entity_type is EntityType.CAMPAIGN:
            return await self.check_campaign_graduation(entity_id)
        entity = await self._load(entity_type, entity_id)
        if entity.recovery_phase not in GRADUATION_PHASES:
            return None

        domain = await self._owning_domain(entity_type, entity)
        dns_clean = dns_is_clean(domain)
        # mailboxes are capped by their domain, domains by their last DNS verdict
        ceiling_status = domain.status if entity_type is EntityType.MAILBOX else stored_dns_status(domain)
        now = self.clock()

        def apply(e: HealableEntity) -> PhaseTransitionResult | None:
            return self._evaluate_graduation(entity_type, e, now, dns_clean, ceiling_status)

        saved, result = await self._update(entity_type, entity_id, apply)
        if result is None:
            return None

        await self._after_transition(
            entity_type,
            saved,
            result,
            trigger="healing_graduation",
            action=f"phase_{result.from_phase.value}_to_{result.to_phase.value}",
        )
        return result

    def _evaluate_graduation(
        self,
        entity_type: EntityType,
        e: HealableEntity,
        now: datetime,
        dns_clean: bool,
        ceiling_status: HealthStatus | None,
    ) -> PhaseTransitionResult | None:
        from_phase = e.recovery_phase

        if from_phase is RecoveryPhase.PAUSED:
            # no cooldown recorded means nobody scheduled this pause to end
            if e.cooldown_until is None or now < e.cooldown_until:
                return None
            to_phase = RecoveryPhase.QUARANTINE
            reason = "Cooldown expired, entering quarantine (no sending)"

        elif from_phase is RecoveryPhase.QUARANTINE:
            if not dns_clean:
                return None
            if e.cooldown_until is not None and now < e.cooldown_until:
                return None
            to_phase = RecoveryPhase.RESTRICTED_SEND
            reason = "DNS checks passed, entering restricted send mode"

        elif from_phase is RecoveryPhase.RESTRICTED_SEND:
            required = required_clean_sends(e, self.criteria)
            if e.clean_sends_since_phase < required:
                return None
            to_phase = RecoveryPhase.WARM_RECOVERY
            reason = (
                f"{e.clean_sends_since_phase} clean sends achieved (required: {required}), "
                "entering warm recovery"
            )

        elif from_phase is RecoveryPhase.WARM_RECOVERY:
            required = required_warm_sends(e, self.criteria)
            if e.clean_sends_since_phase < required:
                return None
            if e.phase_entered_at is None:
                return None
            min_duration = required_warm_duration(e, self.criteria)
            if now - e.phase_entered_at < min_duration:
                return None
            bounce_rate = e.phase_bounce_count / e.phase_sent_count if e.phase_sent_count else 0.0
            if bounce_rate > self.criteria.warm_recovery_max_bounce_rate:
                return None

            to_phase = RecoveryPhase.HEALTHY
            reason = (
                f"Recovery complete: {e.clean_sends_since_phase} clean sends over "
                f"{_format_duration(min_duration)}, bounce rate {bounce_rate * 100:.1f}%"
            )
            e.resilience_score = clamp_resilience(e.resilience_score + self.criteria.graduation_bonus)
            e.healing_origin = None
            e.relapse_count = 0
            e.manual_intervention_required = False
            e.cooldown_until = None
            e.paused_reason = None

        else:
            return None

        enter_phase(e, to_phase, now)
        e.status = health_for_rank(worst_state(phase_status(to_phase), ceiling_status))

        return PhaseTransitionResult(
            entity_type=entity_type,
            entity_id=e.id,
            transitioned=True,
            from_phase=from_phase,
            to_phase=to_phase,
            reason=reason,
            resilience_score=e.resilience_score,
        )

    async def run_graduation_pass(self, tenant_id: str) -> list[PhaseTransitionResult]:
        """One graduation check for every recovering domain, mailbox and restricted campaign, in that order."""
        results: list[PhaseTransitionResult] = []
        for domain in await self.repository.list_domains(tenant_id):
            if domain.recovery_phase in GRADUATION_PHASES:
                result = await self.check_graduation(EntityType.DOMAIN, domain.id)
                if result:
                    results.append(result)
        for mailbox in await self.repository.list_mailboxes(tenant_id):
            if mailbox.recovery_phase in GRADUATION_PHASES:
                result = await self.check_graduation(EntityType.MAILBOX, mailbox.id)
                if result:
                    results.append(result)
        for campaign in await self.repository.list_campaigns(tenant_id):
            if campaign.recovery_phase is RecoveryPhase.RESTRICTED_SEND:
                result = await self.check_campaign_graduation(campaign.id)
                if result:
                    results.append(result)
        return results

    # ------------------------------------------------------------------
    # Campaign restricted send
    # ------------------------------------------------------------------

    async def check_campaign_graduation(self, campaign_id: str) -> PhaseTransitionResult | None:
        """
        Return a resumed campaign from restricted send to full-volume active.

        Needs the first-offense clean-send count since the resume and a healthy
        infrastructure ceiling (every attached mailbox and its domain back to
        HEALTHY). Until then the send gate keeps capping the campaign.
        """
        campaign = await self.repository.require_campaign(campaign_id)
        if campaign.recovery_phase is not RecoveryPhase.RESTRICTED_SEND:
            return None

        mailboxes = {m.id: m for m in await self.repository.list_mailboxes(campaign.tenant_id)}
        domains = {d.id: d for d in await self.repository.list_domains(campaign.tenant_id)}
        ceiling = campaign_ceiling(campaign, mailboxes, domains)
        required = self.criteria.first_offense_clean_sends

        def apply(c: Campaign) -> tuple[PhaseTransitionResult, CampaignStatus] | None:
            if c.recovery_phase is not RecoveryPhase.RESTRICTED_SEND or c.status is CampaignStatus.PAUSED:
                return None
            if ceiling > 0 or c.clean_sends_since_phase < required:
                return None

            before = c.status
            result = PhaseTransitionResult(
                entity_type=EntityType.CAMPAIGN,
                entity_id=c.id,
                transitioned=True,
                from_phase=RecoveryPhase.RESTRICTED_SEND,
                to_phase=RecoveryPhase.HEALTHY,
                reason=(
                    f"{c.clean_sends_since_phase} clean sends since resume (required: {required}) "
                    "on healthy infrastructure, back to full volume"
                ),
                resilience_score=None,
            )
            c.recovery_phase = None
            c.clean_sends_since_phase = 0
            c.status = CampaignStatus.ACTIVE
            return result, before

        saved, outcome = await self.repository.update_campaign(campaign_id, apply)
        if outcome is None:
            return None
        result, before = outcome

        await self.audit.record_transition(
            tenant_id=saved.tenant_id,
            entity_type=EntityType.CAMPAIGN,
            entity_id=saved.id,
            from_state=before.value,
            to_state=saved.status.value,
            reason=result.reason,
            triggered_by=TriggeredBy.SYSTEM,
        )
        await self.audit.log(
            tenant_id=saved.tenant_id,
            action="restricted_send_complete",
            entity_type=EntityType.CAMPAIGN,
            entity_id=saved.id,
            trigger="healing_graduation",
            details={"reason": result.reason, "phase_sent": saved.phase_sent_count},
        )
        log_phase_transition(
            entity_type=EntityType.CAMPAIGN.value,
            entity_id=saved.id,
            from_phase=result.from_phase.value,
            to_phase=result.to_phase.value,
            reason=result.reason,
            resilience_score=None,
        )
        await safe_notify(
            self.notifier,
            saved.tenant_id,
            "success",
            "Campaign Back To Full Volume",
            f'Campaign "{saved.name}" completed restricted send mode and is active again.',
        )
        return result

    # ------------------------------------------------------------------
    # Relapse
    # ------------------------------------------------------------------

    async def handle_relapse(self, entity_type: EntityType, entity_id: str, reason: str) -> PhaseTransitionResult:
        """
        Push a recovering entity back down the pipeline.

        1st relapse: QUARANTINE with twice the first-offense cooldown.
        2nd relapse: PAUSED with the repeat cooldown.
        3rd and later: PAUSED with the longest cooldown, manual intervention flagged.
        """
        entity = await self._load(entity_type, entity_id)
        if entity.recovery_phase not in RELAPSE_PHASES:
            raise InvalidPhaseTransitionError(
                f"{entity_type.value} {entity_id} is not recovering (phase {entity.recovery_phase.value})",
                operation="handle_relapse",
            )

        if entity_type is EntityType.MAILBOX:
            ceiling_status = (await self.repository.require_domain(entity.domain_id)).status
        else:
            ceiling_status = stored_dns_status(entity)
        now = self.clock()
        criteria = self.criteria

        def apply(e: HealableEntity) -> tuple[PhaseTransitionResult, timedelta] | None:
            if e.recovery_phase not in RELAPSE_PHASES:
                return None
            from_phase = e.recovery_phase
            e.relapse_count += 1
            count = e.relapse_count
            e.resilience_score = clamp_resilience(e.resilience_score - criteria.relapse_penalty)

            if count >= 3:
                to_phase = RecoveryPhase.PAUSED
                cooldown = criteria.third_plus_cooldown
                e.manual_intervention_required = True
                message = f"RELAPSE #{count}: {reason}. Manual intervention required."
            elif count == 2:
                to_phase = RecoveryPhase.PAUSED
                cooldown = criteria.repeat_cooldown
                message = f"RELAPSE #{count}: {reason}"
            else:
                to_phase = RecoveryPhase.QUARANTINE
                cooldown = criteria.first_offense_cooldown * 2
                message = f"RELAPSE #{count}: {reason}"

            enter_phase(e, to_phase, now)
            e.cooldown_until = now + cooldown
            e.healing_origin = e.healing_origin or HealingOrigin.RECOVERY
            if to_phase is RecoveryPhase.PAUSED:
                e.last_pause_at = now
                e.paused_reason = message
            e.status = health_for_rank(worst_state(phase_status(to_phase), ceiling_status))

            result = PhaseTransitionResult(
                entity_type=entity_type,
                entity_id=e.id,
                transitioned=True,
                from_phase=from_phase,
                to_phase=to_phase,
                reason=message,
                resilience_score=e.resilience_score,
                requires_manual_intervention=count >= 3,
            )
            return result, cooldown

        saved, outcome = await self._update(entity_type, entity_id, apply)
        if outcome is None:
            raise InvalidPhaseTransitionError(
                f"{entity_type.value} {entity_id} left recovery concurrently", operation="handle_relapse"
            )
        result, cooldown = outcome

        logger.warning(
            "Relapse detected",
            entity_type=entity_type.value,
            entity_id=entity_id,
            relapse_count=saved.relapse_count,
            to_phase=result.to_phase.value,
            resilience_score=result.resilience_score,
        )
        await self._after_transition(
            entity_type,
            saved,
            result,
            trigger="healing_relapse",
            action=f"relapse_to_{result.to_phase.value}",
            details={
                "relapse_count": saved.relapse_count,
                "cooldown_hours": cooldown.total_seconds() / 3600,
                "previous_phase": result.from_phase.value,
            },
        )

        label = "Mailbox" if entity_type is EntityType.MAILBOX else "Domain"
        manual = result.requires_manual_intervention
        await safe_notify(
            self.notifier,
            saved.tenant_id,
            "error" if manual else "warning",
            f"{label} Relapse #{saved.relapse_count}",
            f"A {entity_type.value} relapsed during recovery and was moved to {result.to_phase.value}. "
            + ("Manual intervention required." if manual else "Healing will restart automatically."),
        )
        return result

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_recovery_status(self, tenant_id: str) -> list[RecoveryStatusEntry]:
        """Every domain and mailbox that is not in the HEALTHY phase."""
        await self.repository.require_tenant(tenant_id)
        entries: list[RecoveryStatusEntry] = []

        for domain in await self.repository.list_domains(tenant_id):
            if domain.recovery_phase is not RecoveryPhase.HEALTHY:
                entries.append(self._status_entry(EntityType.DOMAIN, domain, domain.domain))
        for mailbox in await self.repository.list_mailboxes(tenant_id):
            if mailbox.recovery_phase is not RecoveryPhase.HEALTHY:
                entries.append(self._status_entry(EntityType.MAILBOX, mailbox, mailbox.email))
        return entries

    def _status_entry(self, entity_type: EntityType, entity: HealableEntity, name: str) -> RecoveryStatusEntry:
        return RecoveryStatusEntry(
            entity_type=entity_type,
            entity_id=entity.id,
            name=name,
            recovery_phase=entity.recovery_phase,
            status=entity.status,
            resilience_score=entity.resilience_score,
            relapse_count=entity.relapse_count,
            healing_origin=entity.healing_origin,
            cooldown_until=entity.cooldown_until,
            phase_entered_at=entity.phase_entered_at,
            clean_sends_since_phase=entity.clean_sends_since_phase,
            required_clean_sends=(
                required_clean_sends(entity, self.criteria)
                if entity.recovery_phase is RecoveryPhase.RESTRICTED_SEND
                else required_warm_sends(entity, self.criteria)
                if entity.recovery_phase is RecoveryPhase.WARM_RECOVERY
                else None
            ),
            daily_volume_limit=phase_volume_limit(entity.recovery_phase, entity.resilience_score, self.criteria),
            manual_intervention_required=entity.manual_intervention_required,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(self, entity_type: EntityType, entity_id: str) -> HealableEntity:
        if entity_type is EntityType.DOMAIN:
            return await self.repository.require_domain(entity_id)
        if entity_type is EntityType.MAILBOX:
            return await self.repository.require_mailbox(entity_id)
        raise ValueError(f"Healing applies to domains and mailboxes, not {entity_type.value}")

    async def _update(self, entity_type: EntityType, entity_id: str, mutator):
        if entity_type is EntityType.DOMAIN:
            return await self.repository.update_domain(entity_id, mutator)
        if entity_type is EntityType.MAILBOX:
            return await self.repository.update_mailbox(entity_id, mutator)
        raise ValueError(f"Healing applies to domains and mailboxes, not {entity_type.value}")

    async def _owning_domain(self, entity_type: EntityType, entity: HealableEntity) -> Domain:
        if entity_type is EntityType.DOMAIN:
            return entity
        return await self.repository.require_domain(entity.domain_id)

    async def _after_transition(
        self,
        entity_type: EntityType,
        saved: HealableEntity,
        result: PhaseTransitionResult,
        trigger: str,
        action: str,
        details: dict | None = None,
    ) -> None:
        await self.audit.record_transition(
            tenant_id=saved.tenant_id,
            entity_type=entity_type,
            entity_id=saved.id,
            from_state=result.from_phase.value,
            to_state=result.to_phase.value,
            reason=result.reason,
            triggered_by=TriggeredBy.SYSTEM,
        )
        await self.audit.log(
            tenant_id=saved.tenant_id,
            action=action,
            entity_type=entity_type,
            entity_id=saved.id,
            trigger=trigger,
            details={"reason": result.reason, "resilience_score": result.resilience_score, **(details or {})},
        )
        log_phase_transition(
            entity_type=entity_type.value,
            entity_id=saved.id,
            from_phase=result.from_phase.value,
            to_phase=result.to_phase.value,
            reason=result.reason,
            resilience_score=result.resilience_score,
        )

        await self._propagate_ceiling(entity_type, saved, result.reason)

        if result.to_phase is RecoveryPhase.HEALTHY:
            label = "Mailbox" if entity_type is EntityType.MAILBOX else "Domain"
            await safe_notify(
                self.notifier,
                saved.tenant_id,
                "success",
                f"{label} Fully Recovered",
                f"A {entity_type.value} has completed the healing pipeline and is now fully healthy. "
                f"Resilience score: {result.resilience_score}/100.",
            )
            await self._reattach(entity_type, saved)

    async def _propagate_ceiling(self, entity_type: EntityType, saved: HealableEntity, reason: str) -> None:
        if entity_type is EntityType.DOMAIN:
            await self.ceiling.sync_domain_mailboxes(saved.id, reason)
            mailbox_ids = {m.id for m in await self.repository.list_mailboxes(saved.tenant_id, domain_id=saved.id)}
        else:
            mailbox_ids = {saved.id}
        if mailbox_ids:
            await self.ceiling.raise_campaigns(saved.tenant_id, mailbox_ids, reason=reason)

    async def _reattach(self, entity_type: EntityType, saved: HealableEntity) -> None:
        """Best-effort: put recovered mailboxes back into their campaigns on the platform."""
        if isinstance(saved, Mailbox):
            mailboxes = [saved]
        else:
            mailboxes = [
                m
                for m in await self.repository.list_mailboxes(saved.tenant_id, domain_id=saved.id)
                if m.status is HealthStatus.HEALTHY
            ]

        attached = 0
        for mailbox in mailboxes:
            for campaign in await self.repository.list_campaigns_for_mailbox(mailbox.id):
                ok = await safe_platform_call(
                    "add_mailbox_to_campaign",
                    self.platform.add_mailbox_to_campaign,
                    saved.tenant_id,
                    campaign.id,
                    mailbox.id,
                )
                attached += int(ok)

        logger.info(
            "Recovered mailboxes re-attached to campaigns",
            entity_type=entity_type.value,
            entity_id=saved.id,
            mailbox_count=len(mailboxes),
            attached=attached,
        )


def _format_duration(duration: timedelta) -> str:
    days = duration.total_seconds() / 86400
    return f"{days:g} days" if days >= 1 else f"{duration.total_seconds() / 3600:g} hours"
