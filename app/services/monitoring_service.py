"""
Send/bounce event monitoring.

Keeps the per-mailbox rolling window, lifetime counters and clean-send
progress current, and turns health-degrading bounces into warnings, pauses
or relapses. Domain health is re-evaluated from the share of unhealthy
mailboxes whenever a mailbox is paused.
"""

from dataclasses import dataclass
from enum import Enum

from app.config import settings
from app.infrastructure.audit import AuditLogger
from app.infrastructure.observability.logging import get_logger
from app.models.domain.infrastructure import (
    Campaign,
    Domain,
    EntityType,
    HealingOrigin,
    HealthStatus,
    Mailbox,
    RecoveryPhase,
    health_for_rank,
    is_recovering,
    phase_status,
    worst_state,
)
from app.repositories.base import InfrastructureRepository
from app.services.collaborators import Notifier, PlatformControl, safe_notify, safe_platform_call
from app.services.dns_assessment import stored_dns_status
from app.services.errors import InvalidPhaseTransitionError
from app.services.healing import HealingService
from app.services.healing.criteria import DEFAULT_CRITERIA, GraduationCriteria, enter_paused_phase
from app.services.healing.healing_service import CLEAN_SEND_PHASES, RELAPSE_PHASES, apply_clean_send
from app.services.health_ceiling import HealthCeiling
from app.utils.clock import Clock, utc_now

logger = get_logger(__name__)


class BounceAction(str, Enum):
    TRANSIENT = "transient"
    RECORDED = "recorded"
    WARNING = "warning"
    PAUSED = "paused"
    RELAPSE = "relapse"


@dataclass(frozen=True, slots=True)
class DomainHealthVerdict:
    unhealthy: int
    total: int
    should_pause: bool
    should_warn: bool
    reason: str


def evaluate_domain_ratio(mailboxes: list[Mailbox]) -> DomainHealthVerdict:
    """
    Domain verdict from its mailboxes' own phases.

    Large domains use ratios (50% pause, 30% warning). Smaller ones pause at
    2 unhealthy mailboxes and warn at 1 when they have at most 2 mailboxes.
    Mailbox status is not used here since it already carries the domain ceiling.
    """
    total = len(mailboxes)
    unhealthy = sum(1 for m in mailboxes if phase_status(m.recovery_phase) is not HealthStatus.HEALTHY)
    ratio = unhealthy / total if total else 0.0
    should_pause = should_warn = False
    reason = ""

    if total >= settings.DOMAIN_MINIMUM_MAILBOXES:
        if ratio >= settings.DOMAIN_PAUSE_RATIO:
            should_pause = True
            reason = (
                f"{ratio * 100:.0f}% mailboxes unhealthy ({unhealthy}/{total}), "
                f"exceeds {settings.DOMAIN_PAUSE_RATIO * 100:.0f}% threshold"
            )
        elif ratio >= settings.DOMAIN_WARNING_RATIO:
            should_warn = True
            reason = (
                f"{ratio * 100:.0f}% mailboxes unhealthy ({unhealthy}/{total}), "
                f"exceeds {settings.DOMAIN_WARNING_RATIO * 100:.0f}% warning"
            )
    elif unhealthy >= 2:
        should_pause = True
        reason = f"{unhealthy}/{total} mailboxes unhealthy (small domain, absolute threshold)"
    elif unhealthy >= 1 and total <= 2:
        should_warn = True
        reason = f"{unhealthy}/{total} mailbox unhealthy (small domain warning)"

    return DomainHealthVerdict(unhealthy, total, should_pause, should_warn, reason)


class MonitoringService:
    def __init__(
        self,
        repository: InfrastructureRepository,
        audit: AuditLogger,
        healing: HealingService,
        ceiling: HealthCeiling,
        platform: PlatformControl,
        notifier: Notifier,
        criteria: GraduationCriteria | None = None,
        clock: Clock = utc_now,
    ):
        self.repository = repository
        self.audit = audit
        self.healing = healing
        self.ceiling = ceiling
        self.platform = platform
        self.notifier = notifier
        self.criteria = criteria or DEFAULT_CRITERIA
        self.clock = clock

    # ------------------------------------------------------------------
    # Sends
    # ------------------------------------------------------------------

    async def record_sent(self, mailbox_id: str, campaign_id: str | None = None) -> Mailbox:
        """Count one delivered send for a mailbox (and its domain and campaign)."""
        mailbox = await self.repository.require_mailbox(mailbox_id)
        domain = await self.repository.require_domain(mailbox.domain_id)
        today = self.clock().date().isoformat()

        def apply(m: Mailbox) -> bool:
            m.total_sent_count += 1
            m.window_sent_count += 1
            m.phase_sent_count += 1
            if m.sent_today_date != today:
                m.sent_today = 0
                m.sent_today_date = today
            m.sent_today += 1
            apply_clean_send(m)

            if m.window_sent_count >= settings.ROLLING_WINDOW_SIZE:
                # slide, keep half so a burst is not hidden behind clean sends
                m.window_sent_count //= 2
                m.window_bounce_count //= 2
                return True
            return False

        saved, slid = await self.repository.update_mailbox(mailbox_id, apply)

        def apply_domain(d: Domain) -> None:
            d.total_sent += 1
            d.phase_sent_count += 1
            apply_clean_send(d)

        await self.repository.update_domain(domain.id, apply_domain)

        if campaign_id:
            await self._update_campaign_counters(campaign_id, sent=1, bounced=0)

        if slid:
            await self.audit.log(
                tenant_id=saved.tenant_id,
                action="window_slide",
                entity_type=EntityType.MAILBOX,
                entity_id=mailbox_id,
                trigger="monitor_window",
                details={"window_sent": saved.window_sent_count, "window_bounces": saved.window_bounce_count},
            )
            if saved.recovery_phase is RecoveryPhase.WARNING and saved.window_bounce_count < settings.MAILBOX_WARNING_BOUNCES:
                saved = await self._clear_mailbox_warning(saved, domain)

        return saved

    async def _clear_mailbox_warning(self, mailbox: Mailbox, domain: Domain) -> Mailbox:
        def apply(m: Mailbox) -> HealthStatus | None:
            if m.recovery_phase is not RecoveryPhase.WARNING:
                return None
            before = m.status
            m.recovery_phase = RecoveryPhase.HEALTHY
            m.status = health_for_rank(worst_state(HealthStatus.HEALTHY, domain.status))
            return before

        saved, before = await self.repository.update_mailbox(mailbox.id, apply)
        if before is not None and saved.status is not before:
            await self.audit.record_transition(
                tenant_id=saved.tenant_id,
                entity_type=EntityType.MAILBOX,
                entity_id=saved.id,
                from_state=before.value,
                to_state=saved.status.value,
                reason="Rolling window back under warning threshold",
            )
        return saved

    # ------------------------------------------------------------------
    # Bounces
    # ------------------------------------------------------------------

    async def record_bounce(
        self,
        mailbox_id: str,
        campaign_id: str | None = None,
        degrades_health: bool = True,
        reason: str = "hard_bounce",
    ) -> BounceAction:
        """
        Handle one bounce.

        Transient (non-degrading) bounces never relapse or pause anything, but
        while a mailbox or domain is sending under recovery they still count
        towards its phase bounce rate, which gates the final graduation.
        Degrading bounces update counters, reset clean-send progress while
        recovering and then relapse, pause or warn the mailbox.
        """
        mailbox = await self.repository.require_mailbox(mailbox_id)

        if not degrades_health:
            await self._record_transient_bounce(mailbox, reason)
            return BounceAction.TRANSIENT

        def apply(m: Mailbox) -> tuple[int, int, RecoveryPhase]:
            m.window_bounce_count += 1
            m.hard_bounce_count += 1
            m.phase_bounce_count += 1
            if is_recovering(m.recovery_phase):
                m.clean_sends_since_phase = 0
            return m.window_bounce_count, m.window_sent_count, m.recovery_phase

        saved, (window_bounces, window_sent, phase) = await self.repository.update_mailbox(mailbox_id, apply)

        def apply_domain(d: Domain) -> None:
            d.total_bounces += 1
            d.phase_bounce_count += 1
            if is_recovering(d.recovery_phase):
                d.clean_sends_since_phase = 0

        domain, _ = await self.repository.update_domain(saved.domain_id, apply_domain)

        if campaign_id:
            await self._update_campaign_counters(campaign_id, sent=0, bounced=1)

        await self.audit.log(
            tenant_id=saved.tenant_id,
            action="stat_update",
            entity_type=EntityType.MAILBOX,
            entity_id=mailbox_id,
            trigger="monitor_bounce",
            details={"reason": reason, "window_bounces": window_bounces, "window_sent": window_sent},
        )

        if phase in RELAPSE_PHASES:
            try:
                await self.healing.handle_relapse(
                    EntityType.MAILBOX, mailbox_id, f"Health-degrading bounce during {phase.value}: {reason}"
                )
            except InvalidPhaseTransitionError as e:
                logger.warning("Relapse skipped, mailbox left recovery", mailbox_id=mailbox_id, error=str(e))
                return BounceAction.RECORDED
            return BounceAction.RELAPSE

        if phase is RecoveryPhase.PAUSED:
            return BounceAction.RECORDED

        if window_bounces >= settings.MAILBOX_PAUSE_BOUNCES:
            paused = await self.pause_mailbox(
                mailbox_id,
                f"Exceeded {settings.MAILBOX_PAUSE_BOUNCES} bounces ({window_bounces}/{window_sent}). Cause: {reason}",
            )
            return BounceAction.PAUSED if paused else BounceAction.RECORDED

        if (
            window_bounces >= settings.MAILBOX_WARNING_BOUNCES
            and window_sent <= settings.MAILBOX_WARNING_WINDOW
            and phase is RecoveryPhase.HEALTHY
        ):
            rate = f"{window_bounces / window_sent * 100:.1f}%" if window_sent else "n/a"
            await self.warn_mailbox(mailbox_id, f"Early warning: {window_bounces}/{window_sent} ({rate}). Cause: {reason}")
            return BounceAction.WARNING

        return BounceAction.RECORDED

    async def pause_mailbox(self, mailbox_id: str, reason: str) -> bool:
        """Enter the healing pipeline. Returns False if the mailbox was already recovering."""
        mailbox = await self.repository.require_mailbox(mailbox_id)
        domain = await self.repository.require_domain(mailbox.domain_id)
        now = self.clock()
        criteria = self.criteria

        def apply(m: Mailbox):
            if is_recovering(m.recovery_phase):
                return None
            before = m.status
            cooldown = enter_paused_phase(
                m, now, criteria, reason, HealingOrigin.RECOVERY, resilience_penalty=criteria.pause_penalty
            )
            m.status = HealthStatus.PAUSED
            return before, cooldown

        saved, outcome = await self.repository.update_mailbox(mailbox_id, apply)
        if outcome is None:
            return False
        before, cooldown = outcome

        await self.audit.record_transition(
            tenant_id=saved.tenant_id,
            entity_type=EntityType.MAILBOX,
            entity_id=mailbox_id,
            from_state=before.value,
            to_state=HealthStatus.PAUSED.value,
            reason=reason,
        )
        await self.audit.log(
            tenant_id=saved.tenant_id,
            action="pause",
            entity_type=EntityType.MAILBOX,
            entity_id=mailbox_id,
            trigger="monitor_bounce",
            details={
                "reason": reason,
                "cooldown_hours": cooldown.total_seconds() / 3600,
                "consecutive_pauses": saved.consecutive_pauses,
                "resilience_score": saved.resilience_score,
            },
        )
        logger.warning(
            "Mailbox paused",
            mailbox_id=mailbox_id,
            tenant_id=saved.tenant_id,
            reason=reason,
            cooldown_hours=cooldown.total_seconds() / 3600,
        )
        await safe_notify(
            self.notifier,
            saved.tenant_id,
            "warning",
            "Mailbox Paused",
            f"Mailbox {saved.email} was paused: {reason}. It enters the healing pipeline after cooldown.",
        )

        for campaign in await self.repository.list_campaigns_for_mailbox(mailbox_id):
            await safe_platform_call(
                "remove_mailbox_from_campaign",
                self.platform.remove_mailbox_from_campaign,
                saved.tenant_id,
                campaign.id,
                mailbox_id,
            )

        await self.evaluate_domain_health(domain.id)
        await self.ceiling.raise_campaigns(saved.tenant_id, {mailbox_id}, reason=f"Mailbox {saved.email} paused")
        return True

    async def warn_mailbox(self, mailbox_id: str, reason: str) -> None:
        mailbox = await self.repository.require_mailbox(mailbox_id)
        domain = await self.repository.require_domain(mailbox.domain_id)

        def apply(m: Mailbox) -> HealthStatus | None:
            if m.recovery_phase is not RecoveryPhase.HEALTHY:
                return None
            before = m.status
            m.recovery_phase = RecoveryPhase.WARNING
            m.status = health_for_rank(worst_state(HealthStatus.WARNING, domain.status))
            return before

        saved, before = await self.repository.update_mailbox(mailbox_id, apply)
        if before is None:
            return

        if saved.status is not before:
            await self.audit.record_transition(
                tenant_id=saved.tenant_id,
                entity_type=EntityType.MAILBOX,
                entity_id=mailbox_id,
                from_state=before.value,
                to_state=saved.status.value,
                reason=reason,
            )
        await self.audit.log(
            tenant_id=saved.tenant_id,
            action="warning",
            entity_type=EntityType.MAILBOX,
            entity_id=mailbox_id,
            trigger="monitor_bounce",
            details={"reason": reason},
        )
        await safe_notify(self.notifier, saved.tenant_id, "warning", "Mailbox Warning", f"{saved.email}: {reason}")
        await self.ceiling.raise_campaigns(saved.tenant_id, {mailbox_id}, reason=f"Mailbox {saved.email} warning")

    # ------------------------------------------------------------------
    # Domain aggregation
    # ------------------------------------------------------------------

    async def evaluate_domain_health(self, domain_id: str) -> DomainHealthVerdict | None:
        """Pause, warn or clear a domain from its mailboxes' health ratio."""
        domain = await self.repository.require_domain(domain_id)
        mailboxes = await self.repository.list_mailboxes(domain.tenant_id, domain_id=domain_id)
        if not mailboxes:
            return None

        verdict = evaluate_domain_ratio(mailboxes)
        logger.info(
            "Domain health evaluated",
            domain=domain.domain,
            unhealthy=verdict.unhealthy,
            total=verdict.total,
            should_pause=verdict.should_pause,
            should_warn=verdict.should_warn,
        )

        now = self.clock()
        criteria = self.criteria
        dns_status = stored_dns_status(domain)

        if verdict.should_pause:

            def apply(d: Domain):
                if is_recovering(d.recovery_phase):
                    return None
                before = d.status
                enter_paused_phase(
                    d, now, criteria, verdict.reason, HealingOrigin.RECOVERY, resilience_penalty=criteria.pause_penalty
                )
                d.status = HealthStatus.PAUSED
                return before

            action, level, title = "pause", "error", "Domain Paused"

        elif verdict.should_warn:

            def apply(d: Domain):
                if d.recovery_phase is not RecoveryPhase.HEALTHY:
                    return None
                before = d.status
                d.recovery_phase = RecoveryPhase.WARNING
                d.status = health_for_rank(worst_state(HealthStatus.WARNING, dns_status))
                return before

            action, level, title = "warning", "warning", "Domain Warning"

        else:

            def apply(d: Domain):
                # only a ratio warning clears here; DNS warnings wait for the next assessment
                if d.recovery_phase is not RecoveryPhase.WARNING or dns_status not in (None, HealthStatus.HEALTHY):
                    return None
                before = d.status
                d.recovery_phase = RecoveryPhase.HEALTHY
                d.status = HealthStatus.HEALTHY
                return before

            action, level, title = "warning_cleared", "info", "Domain Healthy"

        saved, before = await self.repository.update_domain(domain_id, apply)
        if before is None:
            return verdict

        reason = verdict.reason or "Unhealthy mailbox ratio back under thresholds"
        if saved.status is not before:
            await self.audit.record_transition(
                tenant_id=saved.tenant_id,
                entity_type=EntityType.DOMAIN,
                entity_id=domain_id,
                from_state=before.value,
                to_state=saved.status.value,
                reason=reason,
            )
        await self.audit.log(
            tenant_id=saved.tenant_id,
            action=action,
            entity_type=EntityType.DOMAIN,
            entity_id=domain_id,
            trigger="monitor_aggregation",
            details={"reason": reason, "unhealthy": verdict.unhealthy, "total": verdict.total},
        )
        await safe_notify(self.notifier, saved.tenant_id, level, title, f"Domain {saved.domain}: {reason}")

        await self.ceiling.sync_domain_mailboxes(domain_id, reason)
        await self.ceiling.raise_campaigns(saved.tenant_id, {m.id for m in mailboxes}, reason=f"Domain {saved.domain}: {reason}")
        return verdict

    async def _record_transient_bounce(self, mailbox: Mailbox, reason: str) -> None:
        def apply(e: Mailbox | Domain) -> int | None:
            if e.recovery_phase not in CLEAN_SEND_PHASES:
                return None
            e.phase_bounce_count += 1
            return e.phase_bounce_count

        _, phase_bounces = await self.repository.update_mailbox(mailbox.id, apply)
        await self.repository.update_domain(mailbox.domain_id, apply)

        details = {"reason": reason}
        if phase_bounces is not None:
            details["phase_bounces"] = phase_bounces
        await self.audit.log(
            tenant_id=mailbox.tenant_id,
            action="transient_bounce",
            entity_type=EntityType.MAILBOX,
            entity_id=mailbox.id,
            trigger="monitor_bounce",
            details=details,
        )

    # ------------------------------------------------------------------
    # Campaign counters
    # ------------------------------------------------------------------

    async def _update_campaign_counters(self, campaign_id: str, sent: int, bounced: int) -> Campaign:
        today = self.clock().date().isoformat()

        def apply(c: Campaign) -> None:
            c.total_sent += sent
            c.total_bounced += bounced
            c.bounce_rate = c.total_bounced / c.total_sent if c.total_sent else 0.0
            c.phase_sent_count += sent
            c.phase_bounce_count += bounced
            if sent:
                if c.sent_today_date != today:
                    c.sent_today = 0
                    c.sent_today_date = today
                c.sent_today += sent
            if c.recovery_phase is RecoveryPhase.RESTRICTED_SEND:
                # any degrading bounce restarts the restricted-mode streak
                c.clean_sends_since_phase = 0 if bounced else c.clean_sends_since_phase + sent

        saved, _ = await self.repository.update_campaign(campaign_id, apply)
        return saved
