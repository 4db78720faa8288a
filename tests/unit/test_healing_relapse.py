from datetime import timedelta

import pytest

from app.models.domain.infrastructure import EntityType, HealingOrigin, HealthStatus, RecoveryPhase
from app.services.errors import InvalidPhaseTransitionError


async def restricted_mailbox(seed, **fields):
    await seed.tenant()
    await seed.domain(clean_dns=True)
    fields.setdefault("recovery_phase", RecoveryPhase.RESTRICTED_SEND)
    fields.setdefault("status", HealthStatus.WARNING)
    fields.setdefault("consecutive_pauses", 1)
    fields.setdefault("clean_sends_since_phase", 9)
    return await seed.mailbox(**fields)


async def back_to_restricted(repository, mailbox_id="mb-1"):
    def apply(m):
        m.recovery_phase = RecoveryPhase.RESTRICTED_SEND

    await repository.update_mailbox(mailbox_id, apply)


@pytest.mark.asyncio
async def test_relapse_escalation(engine, seed, clock, repository, notifier):
    await restricted_mailbox(seed, resilience_score=60)

    first = await engine.healing.handle_relapse(EntityType.MAILBOX, "mb-1", "hard bounce")
    mailbox = await repository.require_mailbox("mb-1")
    assert first.to_phase is RecoveryPhase.QUARANTINE
    assert first.requires_manual_intervention is False
    assert mailbox.cooldown_until == clock() + timedelta(hours=48)
    assert mailbox.relapse_count == 1
    assert mailbox.resilience_score == 35
    assert mailbox.clean_sends_since_phase == 0
    assert mailbox.status is HealthStatus.PAUSED
    assert mailbox.healing_origin is HealingOrigin.RECOVERY
    assert notifier.sent[-1]["level"] == "warning"

    await back_to_restricted(repository)
    second = await engine.healing.handle_relapse(EntityType.MAILBOX, "mb-1", "hard bounce")
    mailbox = await repository.require_mailbox("mb-1")
    assert second.to_phase is RecoveryPhase.PAUSED
    assert mailbox.cooldown_until == clock() + timedelta(hours=72)
    assert mailbox.resilience_score == 10
    assert mailbox.manual_intervention_required is False

    await back_to_restricted(repository)
    third = await engine.healing.handle_relapse(EntityType.MAILBOX, "mb-1", "hard bounce")
    mailbox = await repository.require_mailbox("mb-1")
    assert third.to_phase is RecoveryPhase.PAUSED
    assert third.requires_manual_intervention is True
    assert "Manual intervention required" in third.reason
    assert mailbox.cooldown_until == clock() + timedelta(hours=168)
    assert mailbox.resilience_score == 0
    assert mailbox.manual_intervention_required is True
    assert notifier.sent[-1]["level"] == "error"


@pytest.mark.asyncio
async def test_relapse_is_audited(engine, seed, repository):
    await restricted_mailbox(seed)

    await engine.healing.handle_relapse(EntityType.MAILBOX, "mb-1", "spam complaint")

    transitions = await repository.list_transitions("tenant-1", entity_id="mb-1")
    assert [(t.from_state, t.to_state) for t in transitions] == [("restricted_send", "quarantine")]
    actions = [e.action for e in await repository.list_audit_entries("tenant-1")]
    assert "relapse_to_quarantine" in actions


@pytest.mark.asyncio
@pytest.mark.parametrize("phase", [RecoveryPhase.HEALTHY, RecoveryPhase.WARNING, RecoveryPhase.PAUSED])
async def test_relapse_outside_recovery_is_rejected(engine, seed, repository, phase):
    await restricted_mailbox(seed, recovery_phase=phase)

    with pytest.raises(InvalidPhaseTransitionError):
        await engine.healing.handle_relapse(EntityType.MAILBOX, "mb-1", "bounce")

    assert (await repository.require_mailbox("mb-1")).relapse_count == 0


@pytest.mark.asyncio
async def test_relapse_from_warm_recovery(engine, seed, clock):
    await restricted_mailbox(seed, recovery_phase=RecoveryPhase.WARM_RECOVERY)

    result = await engine.healing.handle_relapse(EntityType.MAILBOX, "mb-1", "bounce")

    assert result.from_phase is RecoveryPhase.WARM_RECOVERY
    assert result.to_phase is RecoveryPhase.QUARANTINE


@pytest.mark.asyncio
async def test_domain_relapse_pulls_mailboxes_down(engine, seed, repository):
    await seed.tenant()
    await seed.domain(clean_dns=True, recovery_phase=RecoveryPhase.WARM_RECOVERY, status=HealthStatus.WARNING)
    await seed.mailbox(status=HealthStatus.WARNING)
    await seed.campaign(mailbox_ids=("mb-1",))

    await engine.healing.handle_relapse(EntityType.DOMAIN, "dom-1", "blacklisted again")

    assert (await repository.require_domain("dom-1")).status is HealthStatus.PAUSED
    assert (await repository.require_mailbox("mb-1")).status is HealthStatus.PAUSED
    assert (await repository.require_campaign("camp-1")).status.value == "paused"


@pytest.mark.asyncio
async def test_relapsed_entity_heals_again_from_the_start(engine, seed, clock):
    await restricted_mailbox(seed)

    await engine.healing.handle_relapse(EntityType.MAILBOX, "mb-1", "bounce")
    assert await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1") is None

    clock.advance(hours=48)
    result = await engine.healing.check_graduation(EntityType.MAILBOX, "mb-1")
    assert result.from_phase is RecoveryPhase.QUARANTINE
    assert result.to_phase is RecoveryPhase.RESTRICTED_SEND
