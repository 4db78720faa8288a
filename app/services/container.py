"""
Service wiring.

Builds one object graph of repository, collaborators and services. The
application, the worker and the routes share the lazily created default
engine; tests build their own with fakes.
"""

from dataclasses import dataclass

from app.config import settings
from app.infrastructure.audit import AuditLogger
from app.infrastructure.observability.logging import get_logger
from app.repositories.base import InfrastructureRepository
from app.repositories.memory_repository import InMemoryInfrastructureRepository
from app.repositories.postgres_repository import PostgresInfrastructureRepository
from app.services.assessment_service import AssessmentService
from app.services.collaborators import LoggingNotifier, LoggingPlatformControl, Notifier, PlatformControl
from app.services.dns_assessment import DnsLookupCache, DnsResolver, DomainDnsAssessor
from app.services.dns_assessment.domain_assessor import TxtAResolver
from app.services.healing import GraduationCriteria, HealingService
from app.services.health_ceiling import HealthCeiling
from app.services.monitoring_service import MonitoringService
from app.services.operator_override_service import OperatorOverrideService
from app.services.send_gate import SendGate
from app.services.throttle_service import ThrottleService
from app.services.transition_gate import TransitionGate
from app.utils.clock import Clock, utc_now

logger = get_logger(__name__)


@dataclass(slots=True)
class Engine:
    repository: InfrastructureRepository
    audit: AuditLogger
    ceiling: HealthCeiling
    assessment: AssessmentService
    healing: HealingService
    throttle: ThrottleService
    transition_gate: TransitionGate
    overrides: OperatorOverrideService
    monitoring: MonitoringService
    send_gate: SendGate


def create_repository(backend: str | None = None) -> InfrastructureRepository:
    backend = (backend or settings.STORAGE_BACKEND).lower()
    if backend == "postgres":
        return PostgresInfrastructureRepository()
    if backend == "memory":
        return InMemoryInfrastructureRepository()
    raise ValueError(f"Unknown storage backend '{backend}'. Expected 'memory' or 'postgres'.")


def build_engine(
    repository: InfrastructureRepository | None = None,
    platform: PlatformControl | None = None,
    notifier: Notifier | None = None,
    resolver: TxtAResolver | None = None,
    criteria: GraduationCriteria | None = None,
    clock: Clock = utc_now,
) -> Engine:
    repository = repository or create_repository()
    platform = platform or LoggingPlatformControl()
    notifier = notifier or LoggingNotifier()
    resolver = resolver or DnsResolver(cache=DnsLookupCache(ttl_seconds=settings.DNS_CACHE_TTL_SECONDS))

    audit = AuditLogger(repository, clock=clock)
    ceiling = HealthCeiling(repository, audit, platform, clock=clock)
    healing = HealingService(repository, audit, ceiling, platform, notifier, criteria=criteria, clock=clock)
    throttle = ThrottleService(repository, criteria=criteria)
    transition_gate = TransitionGate(repository, audit)

    return Engine(
        repository=repository,
        audit=audit,
        ceiling=ceiling,
        assessment=AssessmentService(
            repository, DomainDnsAssessor(resolver), audit, platform, notifier, criteria=criteria, clock=clock
        ),
        healing=healing,
        throttle=throttle,
        transition_gate=transition_gate,
        overrides=OperatorOverrideService(repository, audit, ceiling, platform, notifier, clock=clock),
        monitoring=MonitoringService(
            repository, audit, healing, ceiling, platform, notifier, criteria=criteria, clock=clock
        ),
        send_gate=SendGate(repository, transition_gate, throttle, criteria=criteria, clock=clock),
    )


_engine: Engine | None = None


def get_engine() -> Engine:
    """Shared default engine (also the FastAPI dependency)."""
    global _engine
    if _engine is None:
        _engine = build_engine()
        logger.info("Engine created", storage_backend=settings.STORAGE_BACKEND)
    return _engine
