"""
Tests for campaigns resumed by an operator: the restricted-send cap and the way back to active.
"""

import pytest

from app.models.domain.infrastructure import CampaignStatus, EntityType, HealthStatus, RecoveryPhase


async def paused_campaign(seed, resolver, mailbox_phase=RecoveryPhase.HEALTHY, mailbox_status=HealthStatus.HEALTHY):
    await seed.tenant(assessment_completed=True)
    await seed.report(score=100)
    await seed.domain(clean_dns=True)
    await seed.mailbox(recovery_phase=mailbox_phase, status=mailbox_status)
    resolver.publish_clean("example.com")
    # paused earlier for a 10% bounce rate
    return await seed.campaign(
        mailbox_ids=("mb-1",),
        status=CampaignStatus.PAUSED,
        total_sent=100,
        total_bounced=10,
        paused_reason="High bounce rate",
    )


@pytest.mark.asyncio
async def test_resume_then_clean_sends_return_campaign_to_active(engine, seed, resolver, repository, clock, criteria):
    await paused_campaign(seed, resolver)

    await engine.overrides.resume_campaign("tenant-1", "camp-1", justification="list cleaned")
    assert (await engine.assessment.assess("tenant-1")).overall_score == 67

    sends = 0
    while sends < criteria.first_offense_clean_sends:
        for _ in range(criteria.restricted_base_volume):
            decision = await engine.send_gate.check_send("tenant-1", "mb-1", "camp-1")
            assert decision.allowed is True
            await engine.monitoring.record_sent("mb-1", campaign_id="camp-1")
            sends += 1
        capped = await engine.send_gate.check_send("tenant-1", "mb-1", "camp-1")
        assert capped.allowed is False
        assert "restricted_send" in capped.reason
        clock.advance(days=1)

    results = await engine.healing.run_graduation_pass("tenant-1")

    assert [(r.entity_type, r.to_phase) for r in results] == [(EntityType.CAMPAIGN, RecoveryPhase.HEALTHY)]
    campaign = await repository.require_campaign("camp-1")
    assert campaign.status is CampaignStatus.ACTIVE
    assert campaign.recovery_phase is None

    # lifetime rate is still 10/115, but only sends since the resume are judged
    assert (await engine.assessment.assess("tenant-1")).overall_score == 100
    assert (await repository.require_campaign("camp-1")).status is CampaignStatus.ACTIVE

    decision = await engine.send_gate.check_send("tenant-1", "mb-1", "camp-1")
    assert decision.allowed is True
    assert decision.remaining_today is None


@pytest.mark.asyncio
async def test_bounce_restarts_restricted_streak(engine, seed, resolver, repository):
    await paused_campaign(seed, resolver)
    await engine.overrides.resume_campaign("tenant-1", "camp-1")

    for _ in range(3):
        await engine.monitoring.record_sent("mb-1", campaign_id="camp-1")
    assert (await repository.require_campaign("camp-1")).clean_sends_since_phase == 3

    await engine.monitoring.record_bounce("mb-1", campaign_id="camp-1")

    campaign = await repository.require_campaign("camp-1")
    assert campaign.clean_sends_since_phase == 0
    assert campaign.phase_bounce_count == 1
    assert await engine.healing.check_graduation(EntityType.CAMPAIGN, "camp-1") is None


@pytest.mark.asyncio
async def test_campaign_stays_restricted_until_mailboxes_heal(engine, seed, resolver, repository, criteria, notifier):
    await paused_campaign(seed, resolver, RecoveryPhase.WARM_RECOVERY, HealthStatus.WARNING)
    await engine.overrides.resume_campaign("tenant-1", "camp-1")

    def streak(c):
        c.clean_sends_since_phase = criteria.first_offense_clean_sends

    await repository.update_campaign("camp-1", streak)

    assert await engine.healing.check_graduation(EntityType.CAMPAIGN, "camp-1") is None

    def healed(m):
        m.recovery_phase = RecoveryPhase.HEALTHY
        m.status = HealthStatus.HEALTHY

    await repository.update_mailbox("mb-1", healed)
    result = await engine.healing.check_graduation(EntityType.CAMPAIGN, "camp-1")

    assert result.from_phase is RecoveryPhase.RESTRICTED_SEND
    assert result.resilience_score is None
    assert (await repository.require_campaign("camp-1")).status is CampaignStatus.ACTIVE
    transitions = await repository.list_transitions("tenant-1", entity_id="camp-1")
    assert (transitions[-1].from_state, transitions[-1].to_state) == ("warning", "active")
    assert notifier.sent[-1]["title"] == "Campaign Back To Full Volume"


@pytest.mark.asyncio
async def test_paused_campaign_blocks_sends(engine, seed, resolver):
    await paused_campaign(seed, resolver)

    decision = await engine.send_gate.check_send("tenant-1", "mb-1", "camp-1")

    assert decision.allowed is False
    assert "paused" in decision.reason
    # the mailbox alone may still send for other campaigns
    assert (await engine.send_gate.check_send("tenant-1", "mb-1")).allowed is True


@pytest.mark.asyncio
async def test_ceiling_pause_drops_restricted_mode(engine, seed, resolver, repository):
    await paused_campaign(seed, resolver)
    await engine.overrides.resume_campaign("tenant-1", "camp-1")

    await engine.monitoring.pause_mailbox("mb-1", "Manual pause for list review")

    campaign = await repository.require_campaign("camp-1")
    assert campaign.status is CampaignStatus.PAUSED
    assert campaign.recovery_phase is None
    assert await engine.healing.check_graduation(EntityType.CAMPAIGN, "camp-1") is None
