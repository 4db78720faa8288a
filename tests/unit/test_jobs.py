"""
Tests for the periodic graduation and assessment jobs.
"""

import pytest

from app.jobs.assessment_job import InfrastructureAssessmentJob
from app.jobs.healing_job import HealingGraduationJob
from app.models.domain.infrastructure import CampaignStatus, HealthStatus, RecoveryPhase


@pytest.mark.asyncio
async def test_graduation_job_advances_each_entity_once(engine, seed, repository, clock):
    await seed.tenant()
    await seed.domain(clean_dns=True)
    await seed.mailbox(
        "mb-1", recovery_phase=RecoveryPhase.PAUSED, status=HealthStatus.PAUSED, cooldown_until=clock()
    )
    await seed.mailbox("mb-2", recovery_phase=RecoveryPhase.QUARANTINE, status=HealthStatus.PAUSED)
    await seed.mailbox("mb-3")

    job = HealingGraduationJob(engine)
    metrics = await job.run_once()

    assert metrics["tenants_processed"] == 1
    assert metrics["entities_checked"] == 2
    assert metrics["transitions"] == 2
    assert metrics["check_errors"] == 0
    assert (await repository.require_mailbox("mb-1")).recovery_phase is RecoveryPhase.QUARANTINE
    assert (await repository.require_mailbox("mb-2")).recovery_phase is RecoveryPhase.RESTRICTED_SEND
    assert job.is_running is False
    assert job.get_job_status()["last_run_metrics"]["transitions"] == 2


@pytest.mark.asyncio
async def test_graduation_job_returns_restricted_campaign_to_active(engine, seed, repository, criteria):
    await seed.tenant()
    await seed.domain(clean_dns=True)
    await seed.mailbox()
    await seed.campaign(
        mailbox_ids=("mb-1",),
        status=CampaignStatus.WARNING,
        recovery_phase=RecoveryPhase.RESTRICTED_SEND,
        clean_sends_since_phase=criteria.first_offense_clean_sends,
    )

    metrics = await HealingGraduationJob(engine).run_once()

    assert metrics["entities_checked"] == 1
    assert metrics["graduated_to_healthy"] == 1
    assert (await repository.require_campaign("camp-1")).status is CampaignStatus.ACTIVE


@pytest.mark.asyncio
async def test_graduation_job_counts_failures(engine, seed, monkeypatch):
    await seed.tenant()
    await seed.domain(clean_dns=True)
    await seed.mailbox(recovery_phase=RecoveryPhase.PAUSED, status=HealthStatus.PAUSED)

    async def broken(entity_type, entity_id):
        raise RuntimeError("storage hiccup")

    monkeypatch.setattr(engine.healing, "check_graduation", broken)
    metrics = await HealingGraduationJob(engine).run_once()

    assert metrics["check_errors"] == 1
    assert metrics["transitions"] == 0


@pytest.mark.asyncio
async def test_graduation_job_skips_overlapping_run(engine):
    job = HealingGraduationJob(engine)
    job.is_running = True

    assert await job.run_once() == {"skipped": True, "reason": "already_running"}


def test_graduation_job_health_check(engine):
    job = HealingGraduationJob(engine)
    assert job.health_check()["healthy"] is True


@pytest.mark.asyncio
async def test_assessment_job_assesses_every_tenant(engine, seed, resolver, repository):
    await seed.tenant("tenant-1")
    await seed.tenant("tenant-2")
    await seed.domain("dom-1", tenant_id="tenant-1", name="one.example")
    resolver.publish_clean("one.example")

    metrics = await InfrastructureAssessmentJob(engine).run_once()

    assert metrics["tenants_assessed"] == 2
    assert metrics["assessment_failures"] == 0
    assert metrics["average_score"] == 100.0
    latest = await repository.get_latest_report("tenant-1")
    assert latest.report_type.value == "scheduled"


@pytest.mark.asyncio
async def test_assessment_job_isolates_tenant_failures(engine, seed, resolver, repository):
    await seed.tenant("tenant-1")
    await seed.tenant("tenant-2")
    await seed.domain("dom-1", tenant_id="tenant-1", name="one.example")
    resolver.publish_clean("one.example")

    original = engine.assessment.dns_assessor.assess

    async def flaky(domain_name):
        if domain_name == "two.example":
            raise RuntimeError("resolver crashed")
        return await original(domain_name)

    await seed.domain("dom-2", tenant_id="tenant-2", name="two.example")
    engine.assessment.dns_assessor.assess = flaky

    metrics = await InfrastructureAssessmentJob(engine).run_once()

    assert metrics["tenants_assessed"] == 1
    assert metrics["assessment_failures"] == 1
    assert (await repository.require_tenant("tenant-1")).assessment_completed is True
    assert (await repository.require_tenant("tenant-2")).assessment_completed is False
