import pytest

from app.services.errors import EntityNotFoundError


@pytest.mark.asyncio
async def test_no_report_denies(engine, seed):
    await seed.tenant()

    decision = await engine.transition_gate.check_gate("tenant-1")

    assert decision.can_transition is False
    assert decision.requires_acknowledgment is False
    assert decision.overall_score == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("score", [60, 75, 100])
async def test_auto_allow(engine, seed, score):
    await seed.tenant()
    await seed.report(score=score)

    decision = await engine.transition_gate.check_gate("tenant-1")

    assert decision.can_transition is True
    assert decision.requires_acknowledgment is False
    assert await engine.transition_gate.acknowledge("tenant-1") is False


@pytest.mark.asyncio
async def test_middle_band_requires_acknowledgment(engine, seed, repository):
    await seed.tenant()
    await seed.report(score=25)

    decision = await engine.transition_gate.check_gate("tenant-1")
    assert decision.can_transition is False
    assert decision.requires_acknowledgment is True

    assert await engine.transition_gate.acknowledge("tenant-1") is True
    assert (await repository.require_tenant("tenant-1")).transition_acknowledged is True
    assert (await engine.transition_gate.check_gate("tenant-1")).can_transition is True
    # acknowledging twice is harmless
    assert await engine.transition_gate.acknowledge("tenant-1") is True

    actions = [e.action for e in await repository.list_audit_entries("tenant-1")]
    assert actions.count("transition_acknowledged") == 1


@pytest.mark.asyncio
async def test_below_floor_cannot_be_overridden(engine, seed, repository):
    await seed.tenant(transition_acknowledged=True)
    await seed.report(score=24)

    decision = await engine.transition_gate.check_gate("tenant-1")
    assert decision.can_transition is False
    assert decision.requires_acknowledgment is False
    assert "Operator override is not available" in decision.message

    assert await engine.transition_gate.acknowledge("tenant-1") is False


@pytest.mark.asyncio
async def test_zero_score_needs_manual_healing(engine, seed):
    await seed.tenant()
    await seed.report(score=0)

    decision = await engine.transition_gate.check_gate("tenant-1")

    assert decision.can_transition is False
    assert "Manual healing required" in decision.message
    assert await engine.transition_gate.acknowledge("tenant-1") is False


@pytest.mark.asyncio
async def test_gate_reads_latest_report(engine, seed, clock):
    await seed.tenant()
    await seed.report(score=90)
    clock.advance(hours=1)
    await seed.report(score=10)

    decision = await engine.transition_gate.check_gate("tenant-1")

    assert decision.overall_score == 10
    assert decision.can_transition is False


@pytest.mark.asyncio
async def test_unknown_tenant(engine):
    with pytest.raises(EntityNotFoundError):
        await engine.transition_gate.check_gate("ghost")
