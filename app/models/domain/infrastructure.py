"""
Domain models for sending infrastructure health.

Entities (Domain, Mailbox, Campaign) are mutable dataclasses that carry a
``version`` counter used for compare-and-swap saves. StateTransition,
AuditEntry and InfrastructureReport are write-once records.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    PAUSED = "paused"


class CampaignStatus(str, Enum):
    ACTIVE = "active"
    WARNING = "warning"
    PAUSED = "paused"


class RecoveryPhase(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    PAUSED = "paused"
    QUARANTINE = "quarantine"
    RESTRICTED_SEND = "restricted_send"
    WARM_RECOVERY = "warm_recovery"


RECOVERING_PHASES = frozenset(
    {
        RecoveryPhase.PAUSED,
        RecoveryPhase.QUARANTINE,
        RecoveryPhase.RESTRICTED_SEND,
        RecoveryPhase.WARM_RECOVERY,
    }
)


class HealingOrigin(str, Enum):
    REHAB = "rehab"  # damage found at onboarding
    RECOVERY = "recovery"  # degraded during normal operation


class BlacklistStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    NOT_LISTED = "NOT_LISTED"
    UNREACHABLE = "UNREACHABLE"


class BlacklistName(str, Enum):
    SPAMHAUS = "spamhaus"
    BARRACUDA = "barracuda"
    SORBS = "sorbs"
    SPAMCOP = "spamcop"

    @property
    def zone(self) -> str:
        return BLACKLIST_ZONES[self]


BLACKLIST_ZONES: dict[BlacklistName, str] = {
    BlacklistName.SPAMHAUS: "zen.spamhaus.org",
    BlacklistName.BARRACUDA: "b.barracudacentral.org",
    BlacklistName.SORBS: "dnsbl.sorbs.net",
    BlacklistName.SPAMCOP: "bl.spamcop.net",
}


class EntityType(str, Enum):
    DOMAIN = "domain"
    MAILBOX = "mailbox"
    CAMPAIGN = "campaign"
    TENANT = "tenant"


class TriggeredBy(str, Enum):
    SYSTEM = "system"
    OPERATOR_OVERRIDE = "operator_override"


class FindingSeverity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class FindingCategory(str, Enum):
    DOMAIN_DNS = "domain_dns"
    MAILBOX_HEALTH = "mailbox_health"
    CAMPAIGN_HEALTH = "campaign_health"


class ReportType(str, Enum):
    ONBOARDING = "onboarding"
    MANUAL_REASSESSMENT = "manual_reassessment"
    SCHEDULED = "scheduled"
    POST_SYNC = "post_sync"


@dataclass(slots=True)
class Tenant:
    id: str
    name: str
    assessment_completed: bool = False
    transition_acknowledged: bool = False


@dataclass(slots=True)
class Domain:
    """A sending domain owned by a tenant."""

    id: str
    tenant_id: str
    domain: str
    status: HealthStatus = HealthStatus.HEALTHY
    recovery_phase: RecoveryPhase = RecoveryPhase.HEALTHY
    resilience_score: int = 50
    relapse_count: int = 0
    consecutive_pauses: int = 0
    healing_origin: HealingOrigin | None = None
    cooldown_until: datetime | None = None
    phase_entered_at: datetime | None = None
    clean_sends_since_phase: int = 0
    phase_sent_count: int = 0
    phase_bounce_count: int = 0
    manual_intervention_required: bool = False

    # DNS verdicts (None = could not determine)
    spf_valid: bool | None = None
    dkim_valid: bool | None = None
    dmarc_policy: str | None = None
    blacklist_results: dict[BlacklistName, BlacklistStatus] = field(default_factory=dict)
    dns_checked_at: datetime | None = None
    initial_assessment_score: int | None = None

    paused_reason: str | None = None
    last_pause_at: datetime | None = None

    total_sent: int = 0
    total_opens: int = 0
    total_clicks: int = 0
    total_replies: int = 0
    total_bounces: int = 0

    version: int = 0


@dataclass(slots=True)
class Mailbox:
    """A sending address bound to exactly one Domain."""

    id: str
    tenant_id: str
    domain_id: str
    email: str
    status: HealthStatus = HealthStatus.HEALTHY
    recovery_phase: RecoveryPhase = RecoveryPhase.HEALTHY
    resilience_score: int = 50
    relapse_count: int = 0
    consecutive_pauses: int = 0
    healing_origin: HealingOrigin | None = None
    cooldown_until: datetime | None = None
    phase_entered_at: datetime | None = None
    clean_sends_since_phase: int = 0
    phase_sent_count: int = 0
    phase_bounce_count: int = 0
    manual_intervention_required: bool = False

    total_sent_count: int = 0
    hard_bounce_count: int = 0
    window_sent_count: int = 0
    window_bounce_count: int = 0
    sent_today: int = 0
    sent_today_date: str | None = None
    initial_bounce_rate: float | None = None
    initial_assessment_at: datetime | None = None

    paused_reason: str | None = None
    last_pause_at: datetime | None = None
    platform_connected: bool = True
    smtp_ok: bool = True
    imap_ok: bool = True

    version: int = 0


@dataclass(slots=True)
class Campaign:
    """A sending campaign referencing a set of mailboxes."""

    id: str
    tenant_id: str
    name: str
    status: CampaignStatus = CampaignStatus.ACTIVE
    mailbox_ids: list[str] = field(default_factory=list)
    recovery_phase: RecoveryPhase | None = None
    total_sent: int = 0
    total_bounced: int = 0
    bounce_rate: float = 0.0
    warning_count: int = 0
    # counters since the last operator resume; restricted_send progress
    clean_sends_since_phase: int = 0
    phase_entered_at: datetime | None = None
    phase_sent_count: int = 0
    phase_bounce_count: int = 0
    sent_today: int = 0
    sent_today_date: str | None = None
    paused_reason: str | None = None
    paused_at: datetime | None = None

    version: int = 0


# Either recovering entity type handled by the healing engine.
HealableEntity = Domain | Mailbox


@dataclass(slots=True, frozen=True)
class StateTransition:
    """Append-only record of an entity state change."""

    id: str
    tenant_id: str
    entity_type: EntityType
    entity_id: str
    from_state: str
    to_state: str
    reason: str
    triggered_by: TriggeredBy
    created_at: datetime


@dataclass(slots=True, frozen=True)
class AuditEntry:
    id: str
    tenant_id: str
    entity_type: str
    entity_id: str | None
    trigger: str
    action: str
    details: dict[str, Any]
    created_at: datetime


@dataclass(slots=True, frozen=True)
class Finding:
    severity: FindingSeverity
    category: FindingCategory
    entity_type: EntityType
    entity_id: str
    entity_name: str
    title: str
    message: str
    remediation: str


@dataclass(slots=True, frozen=True)
class Recommendation:
    priority: int
    action: str
    reason: str
    link: str


@dataclass(slots=True)
class CategorySummary:
    total: int = 0
    healthy: int = 0
    warning: int = 0
    paused: int = 0

    def count(self, rank: int) -> None:
        self.total += 1
        if rank == 0:
            self.healthy += 1
        elif rank == 1:
            self.warning += 1
        else:
            self.paused += 1


@dataclass(slots=True)
class AssessmentSummary:
    domains: CategorySummary = field(default_factory=CategorySummary)
    mailboxes: CategorySummary = field(default_factory=CategorySummary)
    campaigns: CategorySummary = field(default_factory=CategorySummary)

    @property
    def total_entities(self) -> int:
        return self.domains.total + self.mailboxes.total + self.campaigns.total

    @property
    def healthy_entities(self) -> int:
        # "healthy" for campaigns means active
        return self.domains.healthy + self.mailboxes.healthy + self.campaigns.healthy


@dataclass(slots=True, frozen=True)
class InfrastructureReport:
    """Immutable snapshot produced by one assessment run."""

    id: str
    tenant_id: str
    report_type: ReportType
    assessment_version: str
    overall_score: int
    summary: AssessmentSummary
    findings: tuple[Finding, ...]
    recommendations: tuple[Recommendation, ...]
    created_at: datetime


@dataclass(slots=True, frozen=True)
class DomainDnsResult:
    domain_name: str
    spf_valid: bool | None
    dkim_valid: bool | None
    dmarc_policy: str | None
    blacklist_results: dict[BlacklistName, BlacklistStatus]
    score: int

    @property
    def confirmed_blacklists(self) -> list[BlacklistName]:
        return [name for name, s in self.blacklist_results.items() if s is BlacklistStatus.CONFIRMED]

    @property
    def unreachable_blacklists(self) -> list[BlacklistName]:
        return [name for name, s in self.blacklist_results.items() if s is BlacklistStatus.UNREACHABLE]


@dataclass(slots=True, frozen=True)
class AssessmentResult:
    report_id: str
    overall_score: int
    summary: AssessmentSummary
    findings: tuple[Finding, ...]
    recommendations: tuple[Recommendation, ...]


@dataclass(slots=True, frozen=True)
class PhaseTransitionResult:
    entity_type: EntityType
    entity_id: str
    transitioned: bool
    from_phase: RecoveryPhase
    to_phase: RecoveryPhase
    reason: str
    resilience_score: int | None
    requires_manual_intervention: bool = False


# ---------------------------------------------------------------------------
# Severity ranking
# ---------------------------------------------------------------------------

_STATE_RANK = {
    "healthy": 0,
    "active": 0,
    "warning": 1,
    "paused": 2,
}


def state_rank(status: HealthStatus | CampaignStatus | str) -> int:
    """healthy/active = 0 < warning = 1 < paused = 2."""
    value = status.value if isinstance(status, Enum) else status
    return _STATE_RANK[value]


def health_for_rank(rank: int) -> HealthStatus:
    return (HealthStatus.HEALTHY, HealthStatus.WARNING, HealthStatus.PAUSED)[rank]


def campaign_status_for_rank(rank: int) -> CampaignStatus:
    return (CampaignStatus.ACTIVE, CampaignStatus.WARNING, CampaignStatus.PAUSED)[rank]


def worst_state(*statuses: HealthStatus | CampaignStatus | str | None) -> int:
    """Max severity rank among the given statuses (None entries are ignored)."""
    return max((state_rank(s) for s in statuses if s is not None), default=0)


def phase_status(phase: RecoveryPhase) -> HealthStatus:
    """Status implied by a recovery phase on its own."""
    if phase in (RecoveryPhase.PAUSED, RecoveryPhase.QUARANTINE):
        return HealthStatus.PAUSED
    if phase is RecoveryPhase.HEALTHY:
        return HealthStatus.HEALTHY
    return HealthStatus.WARNING


def is_recovering(phase: RecoveryPhase) -> bool:
    return phase in RECOVERING_PHASES
