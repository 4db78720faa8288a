# app/models/api/infrastructure_response.py
"""
Infrastructure API response models.
Routes build these from the engine's dataclasses.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from app.models.domain.infrastructure import (
    AssessmentSummary,
    CategorySummary,
    DomainDnsResult,
    Finding,
    InfrastructureReport,
    PhaseTransitionResult,
    Recommendation,
)
from app.services.healing import RecoveryStatusEntry
from app.services.operator_override_service import OverrideResult
from app.services.send_gate import SendDecision
from app.services.transition_gate import GateDecision


class CategorySummaryResponse(BaseModel):
    total: int
    healthy: int
    warning: int
    paused: int

    @classmethod
    def from_summary(cls, summary: CategorySummary) -> "CategorySummaryResponse":
        return cls(total=summary.total, healthy=summary.healthy, warning=summary.warning, paused=summary.paused)


class AssessmentSummaryResponse(BaseModel):
    domains: CategorySummaryResponse
    mailboxes: CategorySummaryResponse
    campaigns: CategorySummaryResponse

    @classmethod
    def from_summary(cls, summary: AssessmentSummary) -> "AssessmentSummaryResponse":
        return cls(
            domains=CategorySummaryResponse.from_summary(summary.domains),
            mailboxes=CategorySummaryResponse.from_summary(summary.mailboxes),
            campaigns=CategorySummaryResponse.from_summary(summary.campaigns),
        )


class FindingResponse(BaseModel):
    severity: str
    category: str
    entity_type: str
    entity_id: str
    entity_name: str
    title: str
    message: str
    remediation: str

    @classmethod
    def from_finding(cls, finding: Finding) -> "FindingResponse":
        return cls(
            severity=finding.severity.value,
            category=finding.category.value,
            entity_type=finding.entity_type.value,
            entity_id=finding.entity_id,
            entity_name=finding.entity_name,
            title=finding.title,
            message=finding.message,
            remediation=finding.remediation,
        )


class RecommendationResponse(BaseModel):
    priority: int
    action: str
    reason: str
    link: str

    @classmethod
    def from_recommendation(cls, rec: Recommendation) -> "RecommendationResponse":
        return cls(priority=rec.priority, action=rec.action, reason=rec.reason, link=rec.link)


class InfrastructureReportResponse(BaseModel):
    """Response model for one stored assessment report."""

    id: str = Field(..., description="Report ID")
    tenant_id: str
    report_type: str
    assessment_version: str
    overall_score: int = Field(..., ge=0, le=100, description="Healthy entities as a percentage")
    summary: AssessmentSummaryResponse
    findings: list[FindingResponse]
    recommendations: list[RecommendationResponse]
    created_at: datetime

    @classmethod
    def from_report(cls, report: InfrastructureReport) -> "InfrastructureReportResponse":
        return cls(
            id=report.id,
            tenant_id=report.tenant_id,
            report_type=report.report_type.value,
            assessment_version=report.assessment_version,
            overall_score=report.overall_score,
            summary=AssessmentSummaryResponse.from_summary(report.summary),
            findings=[FindingResponse.from_finding(f) for f in report.findings],
            recommendations=[RecommendationResponse.from_recommendation(r) for r in report.recommendations],
            created_at=report.created_at,
        )


class ReportsListResponse(BaseModel):
    reports: list[InfrastructureReportResponse]
    total_count: int


class DomainDnsResponse(BaseModel):
    """Live DNS check result for one domain."""

    domain_id: str
    domain_name: str
    spf_valid: bool | None
    dkim_valid: bool | None
    dmarc_policy: str | None
    blacklist_results: dict[str, str]
    score: int

    @classmethod
    def from_result(cls, domain_id: str, result: DomainDnsResult) -> "DomainDnsResponse":
        return cls(
            domain_id=domain_id,
            domain_name=result.domain_name,
            spf_valid=result.spf_valid,
            dkim_valid=result.dkim_valid,
            dmarc_policy=result.dmarc_policy,
            blacklist_results={name.value: status.value for name, status in result.blacklist_results.items()},
            score=result.score,
        )


class GateDecisionResponse(BaseModel):
    can_transition: bool
    requires_acknowledgment: bool
    overall_score: int
    message: str

    @classmethod
    def from_decision(cls, decision: GateDecision) -> "GateDecisionResponse":
        return cls(
            can_transition=decision.can_transition,
            requires_acknowledgment=decision.requires_acknowledgment,
            overall_score=decision.overall_score,
            message=decision.message,
        )


class AcknowledgeResponse(BaseModel):
    acknowledged: bool
    gate: GateDecisionResponse


class RecoveryStatusResponse(BaseModel):
    entity_type: str
    entity_id: str
    name: str
    recovery_phase: str
    status: str
    resilience_score: int
    relapse_count: int
    healing_origin: str | None
    cooldown_until: datetime | None
    phase_entered_at: datetime | None
    clean_sends_since_phase: int
    required_clean_sends: int | None
    daily_volume_limit: int | None
    manual_intervention_required: bool

    @classmethod
    def from_entry(cls, entry: RecoveryStatusEntry) -> "RecoveryStatusResponse":
        return cls(
            entity_type=entry.entity_type.value,
            entity_id=entry.entity_id,
            name=entry.name,
            recovery_phase=entry.recovery_phase.value,
            status=entry.status.value,
            resilience_score=entry.resilience_score,
            relapse_count=entry.relapse_count,
            healing_origin=entry.healing_origin.value if entry.healing_origin else None,
            cooldown_until=entry.cooldown_until,
            phase_entered_at=entry.phase_entered_at,
            clean_sends_since_phase=entry.clean_sends_since_phase,
            required_clean_sends=entry.required_clean_sends,
            daily_volume_limit=entry.daily_volume_limit,
            manual_intervention_required=entry.manual_intervention_required,
        )


class RecoveryStatusListResponse(BaseModel):
    entities: list[RecoveryStatusResponse]
    total_count: int


class PhaseTransitionResponse(BaseModel):
    transitioned: bool
    entity_type: str
    entity_id: str
    from_phase: str | None = None
    to_phase: str | None = None
    reason: str | None = None
    resilience_score: int | None = None
    requires_manual_intervention: bool = False

    @classmethod
    def from_result(
        cls, entity_type: str, entity_id: str, result: PhaseTransitionResult | None
    ) -> "PhaseTransitionResponse":
        if result is None:
            return cls(transitioned=False, entity_type=entity_type, entity_id=entity_id)
        return cls(
            transitioned=result.transitioned,
            entity_type=result.entity_type.value,
            entity_id=result.entity_id,
            from_phase=result.from_phase.value,
            to_phase=result.to_phase.value,
            reason=result.reason,
            resilience_score=result.resilience_score,
            requires_manual_intervention=result.requires_manual_intervention,
        )


class OverrideResultResponse(BaseModel):
    allowed: bool
    applied: bool
    message: str
    warnings: list[str]
    cooldown_multiplier: float
    requires_justification: bool

    @classmethod
    def from_result(cls, result: OverrideResult) -> "OverrideResultResponse":
        return cls(
            allowed=result.allowed,
            applied=result.applied,
            message=result.message,
            warnings=list(result.warnings),
            cooldown_multiplier=result.cooldown_multiplier,
            requires_justification=result.requires_justification,
        )


class SendDecisionResponse(BaseModel):
    allowed: bool
    reason: str
    remaining_today: int | None

    @classmethod
    def from_decision(cls, decision: SendDecision) -> "SendDecisionResponse":
        return cls(allowed=decision.allowed, reason=decision.reason, remaining_today=decision.remaining_today)


class MailboxCountersResponse(BaseModel):
    mailbox_id: str
    status: str
    recovery_phase: str
    total_sent_count: int
    hard_bounce_count: int
    window_sent_count: int
    window_bounce_count: int
    sent_today: int


class BounceEventResponse(BaseModel):
    mailbox_id: str
    action: str
