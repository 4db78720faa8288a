"""
Tests for the graduation side of the recovery state machine.
"""

from datetime import timedelta

import pytest

from app.models.domain.infrastructure import (
    BlacklistName,
    BlacklistStatus,
    EntityType,
    HealingOrigin,
    HealthStatus,
    RecoveryPhase,
    TriggeredBy,
)
from app.services.container import build_engine
from app.services.healing import dns_is_clean

CLEAN_BLACKLISTS = {name: BlacklistStatus.NOT_LISTED for name in BlacklistName}


async def paused_mailbox(seed, clock, **fields):
    await seed.tenant()
    await seed.domain(clean_dns=True)
    fields.setdefault("recovery_phase", RecoveryPhase.PAUSED)
    fields.setdefault("status", HealthStatus.PAUSED)
    fields.setdefault("consecutive_pauses", 1)
    fields.setdefault("cooldown_until", clock() + timedelta(hours=24))
    fields.setdefault("phase_entered_at", clock())
    return await seed.mailbox(**fields)


@pytest.mark.asyncio
async def test_paused_waits_for_cooldown(engine, seed, clock):
    await paused_mailbox(seed, clock)

    assert await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1") is None

    clock.advance(hours=24)
    result = await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1")

    assert result.from_phase is RecoveryPhase.PAUSED
    assert result.to_phase is RecoveryPhase.QUARANTINE


@pytest.mark.asyncio
async def test_pause_without_cooldown_is_held(engine, seed, clock, repository):
    await paused_mailbox(seed, clock, cooldown_until=None)

    clock.advance(days=30)

    assert await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1") is None
    assert (await repository.require_mailbox("mb-1")).recovery_phase is RecoveryPhase.PAUSED


@pytest.mark.asyncio
async def test_one_phase_per_check(engine, seed, clock, repository):
    await paused_mailbox(seed, clock, cooldown_until=clock())

    steps = []
    for _ in range(4):
        result = await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1")
        steps.append(result.to_phase if result else None)

    # quarantine exits on clean DNS, then restricted send waits for clean sends
    assert steps == [RecoveryPhase.QUARANTINE, RecoveryPhase.RESTRICTED_SEND, None, None]

    transitions = await repository.list_transitions("tenant-1", entity_id="mb-1")
    assert [(t.from_state, t.to_state) for t in transitions] == [
        ("paused", "quarantine"),
        ("quarantine", "restricted_send"),
    ]
    assert all(t.triggered_by is TriggeredBy.SYSTEM for t in transitions)


@pytest.mark.asyncio
async def test_quarantine_requires_clean_dns(engine, seed, clock, repository):
    await seed.tenant()
    blacklists = dict(CLEAN_BLACKLISTS)
    blacklists[BlacklistName.SPAMCOP] = BlacklistStatus.UNREACHABLE
    await seed.domain(clean_dns=True, blacklist_results=blacklists)
    await seed.mailbox(recovery_phase=RecoveryPhase.QUARANTINE, status=HealthStatus.PAUSED)

    assert await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1") is None

    def fix(d):
        d.blacklist_results = dict(CLEAN_BLACKLISTS)

    await repository.update_domain("dom-1", fix)
    result = await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1")
    assert result.to_phase is RecoveryPhase.RESTRICTED_SEND


@pytest.mark.asyncio
async def test_quarantine_waits_for_override_hold(engine, seed, clock):
    await paused_mailbox(
        seed, clock, recovery_phase=RecoveryPhase.QUARANTINE, cooldown_until=clock() + timedelta(hours=6)
    )

    assert await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1") is None
    clock.advance(hours=6)
    assert (await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1")).to_phase is (
        RecoveryPhase.RESTRICTED_SEND
    )


@pytest.mark.parametrize("resilience,needed", [(50, 10), (20, 20)])
@pytest.mark.asyncio
async def test_restricted_send_clean_send_requirement(
    repository, platform, notifier, resolver, clock, seed, scenario_d_criteria, resilience, needed
):
    engine = build_engine(
        repository=repository,
        platform=platform,
        notifier=notifier,
        resolver=resolver,
        criteria=scenario_d_criteria,
        clock=clock,
    )
    await paused_mailbox(
        seed,
        clock,
        recovery_phase=RecoveryPhase.RESTRICTED_SEND,
        status=HealthStatus.WARNING,
        resilience_score=resilience,
        clean_sends_since_phase=needed - 1,
    )

    assert await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1") is None

    assert (await engine.monitoring.record_sent("mb-1")).clean_sends_since_phase == needed
    result = await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1")

    assert result.to_phase is RecoveryPhase.WARM_RECOVERY
    mailbox = await repository.require_mailbox("mb-1")
    assert mailbox.clean_sends_since_phase == 0
    assert mailbox.phase_entered_at == clock()


@pytest.mark.asyncio
async def test_clean_sends_only_count_while_sending(engine, seed, clock):
    await paused_mailbox(seed, clock)
    assert (await engine.monitoring.record_sent("mb-1")).clean_sends_since_phase == 0


@pytest.mark.asyncio
async def test_warm_recovery_graduates_to_healthy(engine, seed, clock, repository, notifier, platform):
    await paused_mailbox(
        seed,
        clock,
        recovery_phase=RecoveryPhase.WARM_RECOVERY,
        status=HealthStatus.WARNING,
        phase_entered_at=clock() - timedelta(days=3),
        clean_sends_since_phase=50,
        phase_sent_count=50,
        phase_bounce_count=1,
        relapse_count=1,
        healing_origin=HealingOrigin.RECOVERY,
    )
    await seed.campaign(mailbox_ids=("mb-1",))

    result = await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1")

    assert result.to_phase is RecoveryPhase.HEALTHY
    assert result.resilience_score == 60
    mailbox = await repository.require_mailbox("mb-1")
    assert mailbox.status is HealthStatus.HEALTHY
    assert mailbox.relapse_count == 0
    assert mailbox.healing_origin is None
    assert mailbox.cooldown_until is None
    assert notifier.sent[-1]["level"] == "success"
    assert platform.actions("add_mailbox_to_campaign") == [("add_mailbox_to_campaign", "camp-1", "mb-1")]


@pytest.mark.asyncio
async def test_warm_recovery_needs_minimum_duration(engine, seed, clock):
    await paused_mailbox(
        seed,
        clock,
        recovery_phase=RecoveryPhase.WARM_RECOVERY,
        phase_entered_at=clock() - timedelta(days=2),
        clean_sends_since_phase=80,
        phase_sent_count=80,
    )

    assert await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1") is None
    clock.advance(days=1)
    assert (await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1")).to_phase is RecoveryPhase.HEALTHY


@pytest.mark.asyncio
async def test_warm_recovery_blocked_by_bounce_rate(engine, seed, clock):
    await paused_mailbox(
        seed,
        clock,
        recovery_phase=RecoveryPhase.WARM_RECOVERY,
        phase_entered_at=clock() - timedelta(days=5),
        clean_sends_since_phase=50,
        phase_sent_count=60,
        phase_bounce_count=2,
    )

    assert await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1") is None


@pytest.mark.asyncio
async def test_transient_bounces_hold_back_warm_graduation(engine, seed, clock, repository):
    await paused_mailbox(
        seed,
        clock,
        recovery_phase=RecoveryPhase.WARM_RECOVERY,
        status=HealthStatus.WARNING,
        phase_entered_at=clock() - timedelta(days=5),
        clean_sends_since_phase=50,
        phase_sent_count=50,
    )

    for _ in range(2):
        await engine.monitoring.record_bounce("mb-1", degrades_health=False, reason="mailbox_full")

    mailbox = await repository.require_mailbox("mb-1")
    assert mailbox.recovery_phase is RecoveryPhase.WARM_RECOVERY
    assert mailbox.phase_bounce_count == 2
    assert mailbox.clean_sends_since_phase == 50
    # 2/50 = 4%, over the 2% warm recovery ceiling
    assert await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1") is None


@pytest.mark.asyncio
async def test_rehab_warm_recovery_takes_longer(engine, seed, clock):
    await paused_mailbox(
        seed,
        clock,
        recovery_phase=RecoveryPhase.WARM_RECOVERY,
        healing_origin=HealingOrigin.REHAB,
        phase_entered_at=clock() - timedelta(days=4),
        clean_sends_since_phase=100,
        phase_sent_count=100,
    )

    assert await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1") is None
    clock.advance(hours=12)
    assert (await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1")).to_phase is RecoveryPhase.HEALTHY


@pytest.mark.asyncio
async def test_mailbox_capped_by_domain_on_graduation(engine, seed, clock, repository):
    await seed.tenant()
    await seed.domain(clean_dns=True, status=HealthStatus.WARNING, recovery_phase=RecoveryPhase.WARNING)
    await seed.mailbox(
        recovery_phase=RecoveryPhase.WARM_RECOVERY,
        status=HealthStatus.WARNING,
        phase_entered_at=clock() - timedelta(days=3),
        clean_sends_since_phase=50,
        phase_sent_count=50,
    )

    result = await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1")

    assert result.to_phase is RecoveryPhase.HEALTHY
    assert (await repository.require_mailbox("mb-1")).status is HealthStatus.WARNING


@pytest.mark.asyncio
async def test_domain_graduation_resyncs_mailboxes(engine, seed, clock, repository):
    await seed.tenant()
    await seed.domain(clean_dns=True, recovery_phase=RecoveryPhase.QUARANTINE, status=HealthStatus.PAUSED)
    await seed.mailbox(status=HealthStatus.PAUSED)

    result = await engine.healing.check_graduation(EntityType.DOMAIN, "dom-1")

    assert result.to_phase is RecoveryPhase.RESTRICTED_SEND
    domain = await repository.require_domain("dom-1")
    assert domain.status is HealthStatus.WARNING
    # mailbox phase is healthy; its status follows the domain back up to warning
    assert (await repository.require_mailbox("mb-1")).status is HealthStatus.WARNING


@pytest.mark.asyncio
async def test_healthy_entities_are_not_checked(engine, seed):
    await seed.tenant()
    await seed.domain(clean_dns=True)
    await seed.mailbox()

    assert await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1") is None
    assert await engine.healing.check_graduation(EntityType.DOMAIN, "dom-1") is None


@pytest.mark.asyncio
async def test_graduation_pass_covers_tenant(engine, seed, clock):
    await seed.tenant()
    await seed.domain(clean_dns=True)
    await seed.mailbox("mb-1", recovery_phase=RecoveryPhase.PAUSED, status=HealthStatus.PAUSED, cooldown_until=clock())
    await seed.mailbox("mb-2", recovery_phase=RecoveryPhase.PAUSED, status=HealthStatus.PAUSED, cooldown_until=clock())
    await seed.mailbox("mb-3")

    results = await engine.healing.run_graduation_pass("tenant-1")

    assert sorted(r.entity_id for r in results) == ["mb-1", "mb-2"]


@pytest.mark.asyncio
async def test_recovery_status_lists_non_healthy(engine, seed, clock):
    await paused_mailbox(seed, clock, recovery_phase=RecoveryPhase.RESTRICTED_SEND)
    await seed.mailbox("mb-2")

    entries = await engine.healing.get_recovery_status("tenant-1")

    assert [e.entity_id for e in entries] == ["mb-1"]
    assert entries[0].required_clean_sends == 15
    assert entries[0].daily_volume_limit == 5


def test_dns_is_clean_rules():
    from app.models.domain.infrastructure import Domain

    domain = Domain(id="d", tenant_id="t", domain="example.com", spf_valid=True, dkim_valid=True)
    assert dns_is_clean(domain) is False

    domain.blacklist_results = dict(CLEAN_BLACKLISTS)
    assert dns_is_clean(domain) is True

    domain.spf_valid = None
    assert dns_is_clean(domain) is False
