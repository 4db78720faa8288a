"""
Infrastructure Assessment Service - tenant-wide health assessment.

One run:
  1. lock the tenant's execution gate
  2. DNS-assess every domain
  3. bounce-assess every mailbox, capped by its domain
  4. bounce-assess every campaign, capped by its mailboxes and their domains
  5. score, persist an immutable report, write an audit summary
  6. unlock the gate (success only)

Any failure in 2-6 leaves the gate locked and surfaces as AssessmentError.
Runs for the same tenant are serialized on a store-level lock, across processes.
"""

import math
from datetime import datetime

from app.config import settings
from app.infrastructure.audit import AuditLogger
from app.infrastructure.observability.logging import get_logger
from app.models.domain.infrastructure import (
    AssessmentResult,
    AssessmentSummary,
    Campaign,
    CampaignStatus,
    Domain,
    DomainDnsResult,
    EntityType,
    Finding,
    FindingCategory,
    FindingSeverity,
    HealableEntity,
    HealingOrigin,
    HealthStatus,
    InfrastructureReport,
    Mailbox,
    Recommendation,
    RecoveryPhase,
    ReportType,
    campaign_status_for_rank,
    health_for_rank,
    is_recovering,
    phase_status,
    state_rank,
    worst_state,
)
from app.repositories.base import InfrastructureRepository
from app.services.collaborators import Notifier, PlatformControl, safe_notify, safe_platform_call
from app.services.dns_assessment import DomainDnsAssessor, derive_domain_state
from app.services.errors import AssessmentError
from app.services.healing.criteria import DEFAULT_CRITERIA, GraduationCriteria, enter_paused_phase
from app.services.health_ceiling import campaign_ceiling
from app.utils.clock import Clock, new_id, utc_now

logger = get_logger(__name__)

ASSESSMENT_VERSION = "1.0"
RECOMMENDATION_LINK = "/dashboard/domains"

DOMAIN_PAUSED_REASON = "Infrastructure assessment: domain health issues detected"
MAILBOX_PAUSED_REASON = "Infrastructure assessment: historical bounce rate above threshold"
CAMPAIGN_PAUSED_REASON = "Infrastructure assessment: health issues detected"


def bounce_verdict(sent: int, bounced: int) -> HealthStatus:
    rate = bounced / sent if sent > 0 else 0.0
    if rate >= settings.PAUSE_BOUNCE_RATE:
        return HealthStatus.PAUSED
    if rate >= settings.WARNING_BOUNCE_RATE:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def overall_score(summary: AssessmentSummary) -> int:
    """Share of healthy (active) entities, rounded half up; 100 when there is nothing to assess."""
    total = summary.total_entities
    if total == 0:
        return 100
    return math.floor(100 * summary.healthy_entities / total + 0.5)


def _percent(rate: float) -> str:
    return f"{rate * 100:.1f}%"


class AssessmentService:
    """Runs tenant assessments and serves their reports."""

    def __init__(
        self,
        repository: InfrastructureRepository,
        dns_assessor: DomainDnsAssessor,
        audit: AuditLogger,
        platform: PlatformControl,
        notifier: Notifier,
        criteria: GraduationCriteria | None = None,
        clock: Clock = utc_now,
    ):
        self.repository = repository
        self.dns_assessor = dns_assessor
        self.audit = audit
        self.platform = platform
        self.notifier = notifier
        self.criteria = criteria or DEFAULT_CRITERIA
        self.clock = clock

    async def is_running(self, tenant_id: str) -> bool:
        return await self.repository.assessment_locked(tenant_id)

    async def assess(self, tenant_id: str, report_type: ReportType = ReportType.MANUAL_REASSESSMENT) -> AssessmentResult:
        """
        Assess every domain, mailbox and campaign of a tenant.

        Raises:
            EntityNotFoundError: unknown tenant (nothing is touched)
            AssessmentError: any step failed; the execution gate stays locked
        """
        await self.repository.require_tenant(tenant_id)

        async with self.repository.tenant_assessment_lock(tenant_id):
            return await self._run(tenant_id, report_type)

    async def assess_after_sync(self, tenant_id: str) -> AssessmentResult:
        """Inline re-assessment once a platform sync persisted fresh counters."""
        return await self.assess(tenant_id, ReportType.POST_SYNC)

    async def _run(self, tenant_id: str, report_type: ReportType) -> AssessmentResult:
        started = self.clock()
        step = "lock_gate"
        logger.info("Starting infrastructure assessment", tenant_id=tenant_id, report_type=report_type.value)

        try:
            # nothing downstream may treat the tenant as sendable from here on
            await self.repository.set_assessment_completed(tenant_id, False)

            summary = AssessmentSummary()
            findings: list[Finding] = []
            origin = HealingOrigin.REHAB if report_type is ReportType.ONBOARDING else HealingOrigin.RECOVERY

            step = "domains"
            dmarc_gaps = await self._assess_domains(tenant_id, origin, summary, findings)

            step = "mailboxes"
            await self._assess_mailboxes(tenant_id, origin, summary, findings)

            step = "campaigns"
            newly_paused = await self._assess_campaigns(tenant_id, summary, findings)

            step = "report"
            recommendations = self._build_recommendations(findings, dmarc_gaps)
            score = overall_score(summary)
            report = await self.repository.create_report(
                InfrastructureReport(
                    id=new_id(),
                    tenant_id=tenant_id,
                    report_type=report_type,
                    assessment_version=ASSESSMENT_VERSION,
                    overall_score=score,
                    summary=summary,
                    findings=tuple(findings),
                    recommendations=tuple(recommendations),
                    created_at=self.clock(),
                )
            )

            step = "audit"
            critical_count = sum(1 for f in findings if f.severity is FindingSeverity.CRITICAL)
            warning_count = sum(1 for f in findings if f.severity is FindingSeverity.WARNING)
            await self.audit.log(
                tenant_id=tenant_id,
                action="assessment_completed",
                entity_type=EntityType.TENANT,
                entity_id=tenant_id,
                trigger="infrastructure_assessment",
                details={
                    "report_id": report.id,
                    "report_type": report_type.value,
                    "overall_score": score,
                    "critical_findings": critical_count,
                    "warning_findings": warning_count,
                },
            )

            step = "unlock_gate"
            await self.repository.set_assessment_completed(tenant_id, True)

        except Exception as e:
            logger.error(
                "Infrastructure assessment failed, execution gate remains locked",
                tenant_id=tenant_id,
                step=step,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self.audit.log(
                tenant_id=tenant_id,
                action="assessment_failed",
                entity_type=EntityType.TENANT,
                entity_id=tenant_id,
                trigger="infrastructure_assessment",
                details={"step": step, "error": str(e)},
            )
            await safe_notify(
                self.notifier,
                tenant_id,
                "error",
                "Infrastructure Assessment Failed",
                f"The infrastructure assessment could not be completed: {e}. The execution gate remains "
                "locked. Trigger a manual reassessment once the issue is resolved.",
            )
            raise AssessmentError(
                f"Infrastructure assessment failed during {step}: {e}", tenant_id=tenant_id, step=step
            ) from e

        duration_ms = (self.clock() - started).total_seconds() * 1000
        logger.info(
            "Infrastructure assessment completed",
            tenant_id=tenant_id,
            report_id=report.id,
            overall_score=score,
            total_entities=summary.total_entities,
            healthy_entities=summary.healthy_entities,
            duration_ms=round(duration_ms, 2),
        )

        # platform and notification side effects only after the gate is unlocked
        for campaign in newly_paused:
            await safe_platform_call("pause_campaign", self.platform.pause_campaign, tenant_id, campaign.id)

        issues = summary.total_entities - summary.healthy_entities
        await safe_notify(
            self.notifier,
            tenant_id,
            "success" if issues == 0 else "warning" if score >= settings.GATE_AUTO_ALLOW_SCORE else "error",
            "Infrastructure Assessment Complete",
            f"Your infrastructure scored {score}/100. "
            + (f"Found {issues} entity issue(s)." if issues else "No issues found.")
            + " View the full report on the Infrastructure page.",
        )

        return AssessmentResult(
            report_id=report.id,
            overall_score=score,
            summary=summary,
            findings=tuple(findings),
            recommendations=tuple(recommendations),
        )

    # ------------------------------------------------------------------
    # Domains
    # ------------------------------------------------------------------

    async def _assess_domains(
        self, tenant_id: str, origin: HealingOrigin, summary: AssessmentSummary, findings: list[Finding]
    ) -> int:
        """Returns the number of domains without an enforcing DMARC policy."""
        dmarc_gaps = 0

        for domain in await self.repository.list_domains(tenant_id):
            dns = await self.dns_assessor.assess(domain.domain)
            verdict = derive_domain_state(dns)
            findings.extend(self._domain_findings(domain, dns))
            if dns.dmarc_policy in (None, "none"):
                dmarc_gaps += 1

            now = self.clock()

            def apply(d: Domain, dns: DomainDnsResult = dns, verdict: HealthStatus = verdict) -> HealthStatus:
                before = d.status
                d.spf_valid = dns.spf_valid
                d.dkim_valid = dns.dkim_valid
                d.dmarc_policy = dns.dmarc_policy
                d.blacklist_results = dict(dns.blacklist_results)
                d.dns_checked_at = now
                d.initial_assessment_score = dns.score
                self._apply_verdict(d, verdict, now, origin, DOMAIN_PAUSED_REASON)
                d.status = health_for_rank(worst_state(phase_status(d.recovery_phase), verdict))
                return before

            saved, before = await self.repository.update_domain(domain.id, apply)
            summary.domains.count(state_rank(saved.status))
            await self._record_change(EntityType.DOMAIN, saved, before, f"DNS assessment scored {dns.score}/100")

        return dmarc_gaps

    def _domain_findings(self, domain: Domain, dns: DomainDnsResult) -> list[Finding]:
        name = domain.domain
        findings: list[Finding] = []

        def add(severity: FindingSeverity, title: str, message: str, remediation: str) -> None:
            findings.append(
                Finding(
                    severity=severity,
                    category=FindingCategory.DOMAIN_DNS,
                    entity_type=EntityType.DOMAIN,
                    entity_id=domain.id,
                    entity_name=name,
                    title=title,
                    message=message,
                    remediation=remediation,
                )
            )

        confirmed = ", ".join(b.value for b in dns.confirmed_blacklists)
        unreachable = ", ".join(b.value for b in dns.unreachable_blacklists)

        if confirmed:
            add(
                FindingSeverity.CRITICAL,
                f"Blacklisted: {name}",
                f"Domain {name} is listed on blacklist(s): {confirmed}",
                f"Visit the blacklist removal pages for {confirmed} and submit a delisting request. "
                "After confirmed removal, trigger a manual re-assessment.",
            )
        if unreachable:
            add(
                FindingSeverity.WARNING,
                f"Blacklist Check Unreachable: {name}",
                f"Domain {name}: blacklist check(s) unreachable for: {unreachable}. Cannot confirm clean status.",
                "Trigger a manual re-assessment later to verify blacklist status. Do not assume clean.",
            )

        if dns.spf_valid is False:
            add(
                FindingSeverity.WARNING,
                f"Missing SPF: {name}",
                f"Domain {name} has no SPF record configured.",
                'Add a TXT record to your DNS: "v=spf1 include:_spf.google.com ~all" (adjust for your email provider).',
            )
        elif dns.spf_valid is None:
            add(
                FindingSeverity.WARNING,
                f"SPF Check Failed: {name}",
                f"Domain {name}: SPF record check failed (DNS unreachable).",
                "Verify DNS configuration is accessible. Trigger manual re-assessment.",
            )

        if dns.dkim_valid is not True:
            add(
                FindingSeverity.WARNING,
                f"Missing DKIM: {name}",
                f"Domain {name} has no DKIM record configured (checked common selectors).",
                "Enable DKIM signing in your email provider and add the DKIM TXT record to DNS.",
            )

        if dns.dmarc_policy is None:
            add(
                FindingSeverity.INFO,
                f"Missing DMARC: {name}",
                f"Domain {name} has no DMARC policy configured.",
                f'Add a TXT record at _dmarc.{name}: "v=DMARC1; p=quarantine; rua=mailto:dmarc@{name}"',
            )
        elif dns.dmarc_policy == "none":
            add(
                FindingSeverity.INFO,
                f"Weak DMARC: {name}",
                f"Domain {name} has DMARC policy set to 'none' (monitoring only, not enforcing).",
                "Consider upgrading to p=quarantine or p=reject once SPF and DKIM are stable.",
            )

        return findings

    # ------------------------------------------------------------------
    # Mailboxes
    # ------------------------------------------------------------------

    async def _assess_mailboxes(
        self, tenant_id: str, origin: HealingOrigin, summary: AssessmentSummary, findings: list[Finding]
    ) -> None:
        domains = {d.id: d for d in await self.repository.list_domains(tenant_id)}

        for mailbox in await self.repository.list_mailboxes(tenant_id):
            domain = domains.get(mailbox.domain_id)
            sent, bounced = mailbox.total_sent_count, mailbox.hard_bounce_count
            rate = bounced / sent if sent > 0 else 0.0
            verdict = bounce_verdict(sent, bounced)

            if verdict is HealthStatus.PAUSED:
                findings.append(
                    self._bounce_finding(
                        FindingSeverity.CRITICAL,
                        FindingCategory.MAILBOX_HEALTH,
                        EntityType.MAILBOX,
                        mailbox.id,
                        mailbox.email,
                        f"High Bounce Rate: {mailbox.email}",
                        f"Mailbox {mailbox.email} has a historical bounce rate of {_percent(rate)} "
                        f"(>{settings.PAUSE_BOUNCE_RATE * 100:g}% threshold).",
                        "This mailbox has been paused and will enter the healing pipeline. It will be "
                        "available for sending after cooldown and recovery.",
                    )
                )
            elif verdict is HealthStatus.WARNING:
                findings.append(
                    self._bounce_finding(
                        FindingSeverity.WARNING,
                        FindingCategory.MAILBOX_HEALTH,
                        EntityType.MAILBOX,
                        mailbox.id,
                        mailbox.email,
                        f"Elevated Bounce Rate: {mailbox.email}",
                        f"Mailbox {mailbox.email} has a historical bounce rate of {_percent(rate)} "
                        "(approaching threshold).",
                        "This mailbox is under elevated monitoring. Reduce sending volume or verify email list quality.",
                    )
                )

            now = self.clock()
            domain_status = domain.status if domain else None

            def apply(m: Mailbox, rate: float = rate, verdict: HealthStatus = verdict) -> HealthStatus:
                before = m.status
                m.initial_bounce_rate = rate
                m.initial_assessment_at = now
                self._apply_verdict(m, verdict, now, origin, MAILBOX_PAUSED_REASON)
                m.status = health_for_rank(worst_state(phase_status(m.recovery_phase), domain_status))
                return before

            saved, before = await self.repository.update_mailbox(mailbox.id, apply)
            summary.mailboxes.count(state_rank(saved.status))
            await self._record_change(
                EntityType.MAILBOX, saved, before, f"Historical bounce rate {_percent(rate)}, domain ceiling applied"
            )

    # ------------------------------------------------------------------
    # Campaigns
    # ------------------------------------------------------------------

    async def _assess_campaigns(
        self, tenant_id: str, summary: AssessmentSummary, findings: list[Finding]
    ) -> list[Campaign]:
        """Returns the campaigns this run moved to paused."""
        mailboxes = {m.id: m for m in await self.repository.list_mailboxes(tenant_id)}
        domains = {d.id: d for d in await self.repository.list_domains(tenant_id)}
        newly_paused: list[Campaign] = []

        for campaign in await self.repository.list_campaigns(tenant_id):
            rate = campaign.total_bounced / campaign.total_sent if campaign.total_sent > 0 else 0.0
            # an operator resume restarts the bounce window
            if campaign.phase_entered_at is not None:
                window_sent, window_bounced = campaign.phase_sent_count, campaign.phase_bounce_count
            else:
                window_sent, window_bounced = campaign.total_sent, campaign.total_bounced
            window_rate = window_bounced / window_sent if window_sent > 0 else 0.0

            # three independent verdicts, reduced by severity rank
            bounce_rank = 0
            if (
                campaign.status is CampaignStatus.ACTIVE
                and window_sent >= settings.CAMPAIGN_MIN_SENDS_FOR_ASSESSMENT
            ):
                bounce_rank = state_rank(bounce_verdict(window_sent, window_bounced))
            infra_rank = campaign_ceiling(campaign, mailboxes, domains)
            target_rank = max(state_rank(campaign.status), bounce_rank, infra_rank)

            if bounce_rank == 2:
                findings.append(
                    self._bounce_finding(
                        FindingSeverity.CRITICAL,
                        FindingCategory.CAMPAIGN_HEALTH,
                        EntityType.CAMPAIGN,
                        campaign.id,
                        campaign.name,
                        f"High Bounce Rate: {campaign.name}",
                        f'Campaign "{campaign.name}" has a bounce rate of {_percent(window_rate)} '
                        f"(>{settings.PAUSE_BOUNCE_RATE * 100:g}% threshold).",
                        "Campaign has been paused. Review the email list quality and domain reputation before resuming.",
                    )
                )
            elif bounce_rank == 1:
                findings.append(
                    self._bounce_finding(
                        FindingSeverity.WARNING,
                        FindingCategory.CAMPAIGN_HEALTH,
                        EntityType.CAMPAIGN,
                        campaign.id,
                        campaign.name,
                        f"Elevated Bounce Rate: {campaign.name}",
                        f'Campaign "{campaign.name}" has a bounce rate of {_percent(window_rate)} (approaching threshold).',
                        "Monitor closely. Consider reviewing email list and removing invalid addresses.",
                    )
                )

            now = self.clock()

            def apply(c: Campaign, target_rank: int = target_rank, rate: float = rate) -> CampaignStatus:
                before = c.status
                c.bounce_rate = rate
                # never lowers: paused needs an operator resume, restricted mode a healing graduation
                rank = max(state_rank(c.status), target_rank)
                c.status = campaign_status_for_rank(rank)
                if c.status is not before:
                    if c.status is CampaignStatus.PAUSED:
                        c.paused_reason = CAMPAIGN_PAUSED_REASON
                        c.paused_at = now
                        c.recovery_phase = None
                    elif c.status is CampaignStatus.WARNING:
                        c.warning_count += 1
                return before

            saved, before = await self.repository.update_campaign(campaign.id, apply)
            summary.campaigns.count(state_rank(saved.status))
            if saved.status is not before:
                await self.audit.record_transition(
                    tenant_id=tenant_id,
                    entity_type=EntityType.CAMPAIGN,
                    entity_id=saved.id,
                    from_state=before.value,
                    to_state=saved.status.value,
                    reason=CAMPAIGN_PAUSED_REASON if saved.status is CampaignStatus.PAUSED else "Infrastructure assessment",
                )
                if saved.status is CampaignStatus.PAUSED:
                    newly_paused.append(saved)

        return newly_paused

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _apply_verdict(
        self, entity: HealableEntity, verdict: HealthStatus, now: datetime, origin: HealingOrigin, reason: str
    ) -> None:
        """
        Map a fresh verdict onto the recovery phase.

        Entities already in the healing pipeline keep their phase; the
        pipeline alone promotes or relapses them.
        """
        if is_recovering(entity.recovery_phase):
            return
        if verdict is HealthStatus.PAUSED:
            enter_paused_phase(entity, now, self.criteria, reason, origin)
        elif verdict is HealthStatus.WARNING:
            entity.recovery_phase = RecoveryPhase.WARNING
        else:
            entity.recovery_phase = RecoveryPhase.HEALTHY

    async def _record_change(
        self, entity_type: EntityType, saved: HealableEntity, before: HealthStatus, reason: str
    ) -> None:
        if saved.status is before:
            return
        await self.audit.record_transition(
            tenant_id=saved.tenant_id,
            entity_type=entity_type,
            entity_id=saved.id,
            from_state=before.value,
            to_state=saved.status.value,
            reason=f"Infrastructure assessment: {reason}",
        )

    @staticmethod
    def _bounce_finding(
        severity: FindingSeverity,
        category: FindingCategory,
        entity_type: EntityType,
        entity_id: str,
        entity_name: str,
        title: str,
        message: str,
        remediation: str,
    ) -> Finding:
        return Finding(
            severity=severity,
            category=category,
            entity_type=entity_type,
            entity_id=entity_id,
            entity_name=entity_name,
            title=title,
            message=message,
            remediation=remediation,
        )

    @staticmethod
    def _build_recommendations(findings: list[Finding], dmarc_gaps: int) -> list[Recommendation]:
        critical_count = sum(1 for f in findings if f.severity is FindingSeverity.CRITICAL)
        warning_count = sum(1 for f in findings if f.severity is FindingSeverity.WARNING)
        recommendations: list[Recommendation] = []

        if critical_count:
            recommendations.append(
                Recommendation(
                    priority=1,
                    action="Address critical issues immediately",
                    reason=f"{critical_count} critical issue(s) found. Blacklisted domains and high-bounce "
                    "mailboxes have been paused. Resolve blacklist listings and verify email list quality "
                    "before resuming.",
                    link=RECOMMENDATION_LINK,
                )
            )
        if warning_count:
            recommendations.append(
                Recommendation(
                    priority=2,
                    action="Review warning-level issues",
                    reason=f"{warning_count} warning(s) found. Missing DNS authentication records and elevated "
                    "bounce rates need attention. These entities are operational but at elevated risk.",
                    link=RECOMMENDATION_LINK,
                )
            )
        if dmarc_gaps:
            recommendations.append(
                Recommendation(
                    priority=3,
                    action="Configure DMARC policies",
                    reason=f"{dmarc_gaps} domain(s) lack an enforcing DMARC policy. While not blocking, DMARC "
                    "significantly improves deliverability and protects against spoofing.",
                    link=RECOMMENDATION_LINK,
                )
            )
        return recommendations

    # ------------------------------------------------------------------
    # Reads and live checks
    # ------------------------------------------------------------------

    async def get_latest_report(self, tenant_id: str) -> InfrastructureReport | None:
        await self.repository.require_tenant(tenant_id)
        return await self.repository.get_latest_report(tenant_id)

    async def list_reports(self, tenant_id: str, limit: int = 10) -> list[InfrastructureReport]:
        await self.repository.require_tenant(tenant_id)
        return await self.repository.list_reports(tenant_id, limit=limit)

    async def assess_domain_dns(self, domain_id: str) -> DomainDnsResult:
        """
        Live DNS check for one domain.

        Refreshes the persisted DNS fields (which the QUARANTINE exit reads)
        but leaves status and phase to the next full assessment.
        """
        domain = await self.repository.require_domain(domain_id)
        dns = await self.dns_assessor.assess(domain.domain)
        now = self.clock()

        def apply(d: Domain) -> None:
            d.spf_valid = dns.spf_valid
            d.dkim_valid = dns.dkim_valid
            d.dmarc_policy = dns.dmarc_policy
            d.blacklist_results = dict(dns.blacklist_results)
            d.dns_checked_at = now

        await self.repository.update_domain(domain_id, apply)
        await self.audit.log(
            tenant_id=domain.tenant_id,
            action="dns_check",
            entity_type=EntityType.DOMAIN,
            entity_id=domain_id,
            trigger="manual",
            details={"score": dns.score, "verdict": derive_domain_state(dns).value},
        )
        return dns
