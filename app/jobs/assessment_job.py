"""
Scheduled infrastructure re-assessment for every tenant.

A failed tenant assessment keeps that tenant's execution gate locked and is
recorded in the run metrics; other tenants are unaffected.
"""

import asyncio
from datetime import datetime

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger
from app.models.domain.infrastructure import ReportType
from app.services.container import Engine, get_engine
from app.services.errors import AssessmentError
from app.utils.clock import utc_now

logger = get_logger(__name__)

MAX_CONCURRENT_ASSESSMENTS = 3
ASSESSMENT_TIMEOUT_SECONDS = 300


class AssessmentJobError(Exception):
    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class AssessmentJobMetrics:
    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = utc_now()
        self.tenants_assessed = 0
        self.tenants_skipped = 0
        self.assessment_failures = 0
        self.scores: dict[str, int] = {}
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def record_success(self, tenant_id: str, score: int):
        self.tenants_assessed += 1
        self.scores[tenant_id] = score

    def record_failure(self, tenant_id: str, error: str):
        self.assessment_failures += 1
        self.errors.append({"tenant_id": tenant_id, "error": error, "timestamp": utc_now().isoformat()})
        logger.warning("Scheduled assessment failed", tenant_id=tenant_id, error=error, job_run="assessment")

    def finalize(self):
        self.total_duration_seconds = (utc_now() - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": "infrastructure_assessment",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "tenants_assessed": self.tenants_assessed,
            "tenants_skipped": self.tenants_skipped,
            "assessment_failures": self.assessment_failures,
            "average_score": (
                round(sum(self.scores.values()) / len(self.scores), 1) if self.scores else None
            ),
            "errors_count": len(self.errors),
        }


class InfrastructureAssessmentJob:
    def __init__(self, engine: Engine | None = None):
        self.engine = engine or get_engine()
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = AssessmentJobMetrics()

        if settings.uses_postgres() and not db_pool.initialized:
            raise AssessmentJobError("Database pool not initialized", operation="validate_config")

    async def run_once(self) -> dict:
        if self.is_running:
            logger.warning("Assessment job already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            self.job_metrics.reset()

            tenants = await self.engine.repository.list_tenants()
            semaphore = asyncio.Semaphore(MAX_CONCURRENT_ASSESSMENTS)
            await asyncio.gather(
                *(self._assess_with_semaphore(semaphore, tenant.id) for tenant in tenants),
                return_exceptions=True,
            )

            self.job_metrics.finalize()
            self.last_run_time = utc_now()
            metrics = self.job_metrics.to_dict()
            logger.info("Assessment job completed", **metrics)
            return metrics

        except Exception as e:
            logger.error("Assessment job failed", error=str(e), error_type=type(e).__name__)
            self.job_metrics.finalize()
            raise AssessmentJobError(f"Assessment job failed: {e}", operation="run_once") from e

        finally:
            self.is_running = False

    async def _assess_with_semaphore(self, semaphore: asyncio.Semaphore, tenant_id: str):
        async with semaphore:
            await self._assess_tenant(tenant_id)

    async def _assess_tenant(self, tenant_id: str):
        if await self.engine.assessment.is_running(tenant_id):
            # a post-sync or manual run is in progress; it produces the fresh report
            self.job_metrics.tenants_skipped += 1
            return

        try:
            result = await asyncio.wait_for(
                self.engine.assessment.assess(tenant_id, ReportType.SCHEDULED), timeout=ASSESSMENT_TIMEOUT_SECONDS
            )
            self.job_metrics.record_success(tenant_id, result.overall_score)

        except TimeoutError:
            self.job_metrics.record_failure(tenant_id, f"Assessment timed out after {ASSESSMENT_TIMEOUT_SECONDS}s")

        except AssessmentError as e:
            self.job_metrics.record_failure(tenant_id, str(e))

        except Exception as e:
            self.job_metrics.record_failure(tenant_id, f"Unexpected error: {type(e).__name__}: {e}")

    def get_job_status(self) -> dict:
        return {
            "job_name": "infrastructure_assessment",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_hours": settings.ASSESSMENT_INTERVAL_HOURS,
            "last_run_metrics": self.job_metrics.to_dict() if self.last_run_time else None,
        }


async def start_assessment_scheduler():
    """Re-assess every tenant on the configured cadence."""
    job = InfrastructureAssessmentJob()
    interval_seconds = settings.ASSESSMENT_INTERVAL_HOURS * 3600
    logger.info("Starting infrastructure assessment scheduler", interval_hours=settings.ASSESSMENT_INTERVAL_HOURS)

    while True:
        try:
            await job.run_once()
            await asyncio.sleep(interval_seconds)

        except Exception as e:
            logger.error("Error in assessment scheduler", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(60)
