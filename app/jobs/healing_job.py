"""
Healing Graduation Job.

Runs one graduation check for every recovering domain and mailbox on a short
cadence, then for every campaign still in restricted send after an operator
resume. Domains go first so that mailbox checks see their domain's freshest
state, and campaigns last since their exit depends on both.
"""

import asyncio
import time
from datetime import datetime, timedelta

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger
from app.models.domain.infrastructure import EntityType, RecoveryPhase, is_recovering
from app.services.container import Engine, get_engine
from app.services.errors import HealingEngineError
from app.utils.clock import utc_now

logger = get_logger(__name__)

CHECK_TIMEOUT_SECONDS = 30


class HealingJobError(Exception):
    """Custom exception for healing job operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class HealingJobMetrics:
    """Per-run counters for the graduation pass."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = utc_now()
        self.tenants_processed = 0
        self.entities_checked = 0
        self.transitions = 0
        self.graduated_to_healthy = 0
        self.check_errors = 0
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def record_check(self, entity_type: EntityType, entity_id: str, to_phase: str | None, duration_ms: float):
        self.entities_checked += 1
        if to_phase is not None:
            self.transitions += 1
            if to_phase == "healthy":
                self.graduated_to_healthy += 1

        logger.debug(
            "Graduation check done",
            entity_type=entity_type.value,
            entity_id=entity_id,
            to_phase=to_phase,
            duration_ms=round(duration_ms, 2),
            job_run="healing_graduation",
        )

    def record_error(self, entity_type: EntityType, entity_id: str, error: str):
        self.entities_checked += 1
        self.check_errors += 1
        self.errors.append(
            {
                "entity_type": entity_type.value,
                "entity_id": entity_id,
                "error": error,
                "timestamp": utc_now().isoformat(),
            }
        )
        logger.warning(
            "Graduation check failed",
            entity_type=entity_type.value,
            entity_id=entity_id,
            error=error,
            job_run="healing_graduation",
        )

    def finalize(self):
        self.total_duration_seconds = (utc_now() - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": "healing_graduation",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "tenants_processed": self.tenants_processed,
            "entities_checked": self.entities_checked,
            "transitions": self.transitions,
            "graduated_to_healthy": self.graduated_to_healthy,
            "check_errors": self.check_errors,
            "errors_count": len(self.errors),
        }


class HealingGraduationJob:
    """
    Background job that advances recovering entities through the healing pipeline.

    Every run performs at most one phase step per entity.
    """

    def __init__(self, engine: Engine | None = None):
        self.engine = engine or get_engine()
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = HealingJobMetrics()
        self._validate_config()

    def _validate_config(self) -> None:
        if settings.uses_postgres() and not db_pool.initialized:
            raise HealingJobError("Database pool not initialized", operation="validate_config")

        if settings.GRADUATION_INTERVAL_MINUTES < 1:
            logger.warning(
                "Healing graduation interval is very short", interval_minutes=settings.GRADUATION_INTERVAL_MINUTES
            )

        logger.info(
            "Healing graduation job configured",
            interval_minutes=settings.GRADUATION_INTERVAL_MINUTES,
            max_concurrent=settings.MAX_CONCURRENT_GRADUATION_CHECKS,
        )

    async def run_once(self) -> dict:
        """
        Run a single graduation pass over every tenant.

        Returns:
            Dict: Job execution metrics

        Raises:
            HealingJobError: If the pass cannot enumerate its work
        """
        if self.is_running:
            logger.warning("Healing graduation job already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            self.job_metrics.reset()

            repository = self.engine.repository
            semaphore = asyncio.Semaphore(settings.MAX_CONCURRENT_GRADUATION_CHECKS)

            for tenant in await repository.list_tenants():
                domains = [d.id for d in await repository.list_domains(tenant.id) if is_recovering(d.recovery_phase)]
                mailboxes = [
                    m.id for m in await repository.list_mailboxes(tenant.id) if is_recovering(m.recovery_phase)
                ]
                campaigns = [
                    c.id
                    for c in await repository.list_campaigns(tenant.id)
                    if c.recovery_phase is RecoveryPhase.RESTRICTED_SEND
                ]
                self.job_metrics.tenants_processed += 1
                if not domains and not mailboxes and not campaigns:
                    continue

                logger.info(
                    "Checking recovering entities",
                    tenant_id=tenant.id,
                    domains=len(domains),
                    mailboxes=len(mailboxes),
                    campaigns=len(campaigns),
                )

                await asyncio.gather(
                    *(self._check_with_semaphore(semaphore, EntityType.DOMAIN, entity_id) for entity_id in domains),
                    return_exceptions=True,
                )
                await asyncio.gather(
                    *(self._check_with_semaphore(semaphore, EntityType.MAILBOX, entity_id) for entity_id in mailboxes),
                    return_exceptions=True,
                )
                # campaigns last, their exit depends on the mailbox and domain results above
                await asyncio.gather(
                    *(self._check_with_semaphore(semaphore, EntityType.CAMPAIGN, entity_id) for entity_id in campaigns),
                    return_exceptions=True,
                )

            self.job_metrics.finalize()
            self.last_run_time = utc_now()
            metrics = self.job_metrics.to_dict()
            logger.info("Healing graduation job completed", **metrics)
            return metrics

        except Exception as e:
            logger.error("Healing graduation job failed", error=str(e), error_type=type(e).__name__)
            self.job_metrics.finalize()
            raise HealingJobError(f"Healing graduation job failed: {e}", operation="run_once") from e

        finally:
            self.is_running = False

    async def _check_with_semaphore(self, semaphore: asyncio.Semaphore, entity_type: EntityType, entity_id: str):
        async with semaphore:
            await self._check_entity(entity_type, entity_id)

    async def _check_entity(self, entity_type: EntityType, entity_id: str):
        start_time = time.time()
        try:
            result = await asyncio.wait_for(
                self.engine.healing.check_graduation(entity_type, entity_id), timeout=CHECK_TIMEOUT_SECONDS
            )
            duration_ms = (time.time() - start_time) * 1000
            self.job_metrics.record_check(entity_type, entity_id, result.to_phase.value if result else None, duration_ms)

        except TimeoutError:
            self.job_metrics.record_error(entity_type, entity_id, f"Graduation check timed out after {CHECK_TIMEOUT_SECONDS}s")

        except HealingEngineError as e:
            self.job_metrics.record_error(entity_type, entity_id, str(e))

        except Exception as e:
            self.job_metrics.record_error(entity_type, entity_id, f"Unexpected error: {type(e).__name__}: {e}")

    def get_job_status(self) -> dict:
        return {
            "job_name": "healing_graduation",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_minutes": settings.GRADUATION_INTERVAL_MINUTES,
            "max_concurrent": settings.MAX_CONCURRENT_GRADUATION_CHECKS,
            "last_run_metrics": self.job_metrics.to_dict() if self.last_run_time else None,
        }

    def health_check(self) -> dict:
        now = utc_now()
        overdue_threshold = timedelta(minutes=settings.GRADUATION_INTERVAL_MINUTES * 2)
        is_overdue = self.last_run_time is not None and (now - self.last_run_time) > overdue_threshold

        health_status = {
            "healthy": not is_overdue,
            "service": "healing_graduation_job",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "is_overdue": is_overdue,
        }
        if is_overdue:
            health_status["warning"] = f"Job overdue by {(now - self.last_run_time).total_seconds() / 60:.1f} minutes"
        return health_status


async def start_healing_graduation_scheduler():
    """Run the graduation pass forever on the configured cadence."""
    job = HealingGraduationJob()
    interval_seconds = settings.GRADUATION_INTERVAL_MINUTES * 60
    logger.info("Starting healing graduation scheduler", interval_minutes=settings.GRADUATION_INTERVAL_MINUTES)

    while True:
        try:
            metrics = await job.run_once()
            if not metrics.get("skipped", False):
                logger.info("Healing graduation cycle completed", transitions=metrics["transitions"])
            await asyncio.sleep(interval_seconds)

        except Exception as e:
            logger.error("Error in healing graduation scheduler", error=str(e), error_type=type(e).__name__)
            # avoid a tight error loop
            await asyncio.sleep(60)
