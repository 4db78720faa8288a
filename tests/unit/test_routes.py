"""
Tests for the assessment and healing HTTP routes against an in-memory engine.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.models.domain.infrastructure import HealthStatus, RecoveryPhase
from app.services.container import get_engine


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def seeded(seed, resolver):
    async def _seed():
        await seed.tenant()
        await seed.domain(clean_dns=True)
        await seed.mailbox()
        await seed.campaign(mailbox_ids=("mb-1",))

    asyncio.run(_seed())
    resolver.publish_clean("example.com")
    return seed


def test_run_assessment_and_fetch_report(client, seeded):
    response = client.post("/tenants/tenant-1/infrastructure/assess")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_score"] == 100
    assert data["report_type"] == "manual_reassessment"
    assert data["summary"]["mailboxes"]["total"] == 1

    latest = client.get("/tenants/tenant-1/infrastructure/report")
    assert latest.status_code == 200
    assert latest.json()["id"] == data["id"]

    history = client.get("/tenants/tenant-1/infrastructure/reports")
    assert history.json()["total_count"] == 1


def test_onboarding_assessment_type(client, seeded):
    response = client.post("/tenants/tenant-1/infrastructure/assess", json={"report_type": "onboarding"})

    assert response.json()["report_type"] == "onboarding"


def test_report_missing(client, seeded):
    response = client.get("/tenants/tenant-1/infrastructure/report")

    assert response.status_code == 404


def test_unknown_tenant(client):
    assert client.post("/tenants/nobody/infrastructure/assess").status_code == 404
    assert client.get("/tenants/nobody/healing/status").status_code == 404


def test_failed_assessment_maps_to_bad_gateway(client, seeded, engine):
    async def broken(domain_name):
        raise RuntimeError("resolver crashed")

    engine.assessment.dns_assessor.assess = broken

    response = client.post("/tenants/tenant-1/infrastructure/assess")

    assert response.status_code == 502
    assert "domains" in response.json()["detail"]


def test_gate_after_assessment(client, seeded):
    client.post("/tenants/tenant-1/infrastructure/assess")

    response = client.get("/tenants/tenant-1/infrastructure/gate")

    assert response.status_code == 200
    data = response.json()
    assert data["can_transition"] is True
    assert data["requires_acknowledgment"] is False


def test_gate_acknowledgment(client, seed):
    async def _seed():
        await seed.tenant()
        await seed.report(score=40)

    asyncio.run(_seed())

    before = client.get("/tenants/tenant-1/infrastructure/gate").json()
    assert before["can_transition"] is False
    assert before["requires_acknowledgment"] is True

    response = client.post("/tenants/tenant-1/infrastructure/gate/acknowledge")
    data = response.json()
    assert data["acknowledged"] is True
    assert data["gate"]["can_transition"] is True


def test_live_dns_check(client, seeded):
    response = client.post("/tenants/tenant-1/infrastructure/domains/dom-1/dns-check")

    assert response.status_code == 200
    data = response.json()
    assert data["score"] == 100
    assert data["spf_valid"] is True
    assert data["dmarc_policy"] == "reject"


def test_live_dns_check_other_tenant(client, seeded):
    response = client.post("/tenants/tenant-2/infrastructure/domains/dom-1/dns-check")

    assert response.status_code == 404


def test_send_events_and_send_check(client, seeded):
    client.post("/tenants/tenant-1/infrastructure/assess")

    sent = client.post("/tenants/tenant-1/healing/events/sent", json={"mailbox_id": "mb-1", "campaign_id": "camp-1"})
    assert sent.status_code == 200
    assert sent.json()["total_sent_count"] == 1
    assert sent.json()["sent_today"] == 1

    check = client.get("/tenants/tenant-1/healing/mailboxes/mb-1/send-check")
    assert check.status_code == 200
    assert check.json()["allowed"] is True


def test_bounce_event(client, seeded):
    response = client.post(
        "/tenants/tenant-1/healing/events/bounce",
        json={"mailbox_id": "mb-1", "degrades_health": False, "reason": "mailbox_full"},
    )

    assert response.status_code == 200
    assert response.json() == {"mailbox_id": "mb-1", "action": "transient"}


def test_events_for_other_tenant_mailbox(client, seeded):
    response = client.post("/tenants/tenant-2/healing/events/sent", json={"mailbox_id": "mb-1"})

    assert response.status_code == 404


def test_override_and_recovery_status(client, seed):
    async def _seed():
        await seed.tenant()
        await seed.domain(clean_dns=True)
        await seed.mailbox(recovery_phase=RecoveryPhase.PAUSED, status=HealthStatus.PAUSED)

    asyncio.run(_seed())

    response = client.post(
        "/tenants/tenant-1/healing/override",
        json={"entity_type": "mailbox", "entity_id": "mb-1", "operator_id": "op-1"},
    )
    assert response.status_code == 200
    assert response.json()["applied"] is True

    status = client.get("/tenants/tenant-1/healing/status").json()
    assert status["total_count"] == 1
    assert status["entities"][0]["recovery_phase"] == "quarantine"


def test_override_rejects_campaign_entity(client, seeded):
    response = client.post(
        "/tenants/tenant-1/healing/override",
        json={"entity_type": "campaign", "entity_id": "camp-1"},
    )

    assert response.status_code == 422


def test_graduation_check_route(client, seed):
    async def _seed():
        await seed.tenant()
        await seed.domain(clean_dns=True)
        await seed.mailbox(
            recovery_phase=RecoveryPhase.PAUSED, status=HealthStatus.PAUSED, cooldown_until=seed.clock()
        )

    asyncio.run(_seed())

    response = client.post("/tenants/tenant-1/healing/mailbox/mb-1/graduation-check")

    assert response.status_code == 200
    data = response.json()
    assert data["transitioned"] is True
    assert data["to_phase"] == "quarantine"


def test_graduation_check_on_active_campaign(client, seeded):
    response = client.post("/tenants/tenant-1/healing/campaign/camp-1/graduation-check")

    assert response.status_code == 200
    assert response.json()["transitioned"] is False


def test_resume_campaign_that_is_not_paused(client, seeded):
    response = client.post("/tenants/tenant-1/healing/campaigns/camp-1/resume")

    assert response.status_code == 200
    assert response.json()["allowed"] is False


def test_sync_complete_runs_post_sync_assessment(client, seeded):
    response = client.post("/tenants/tenant-1/infrastructure/sync-complete")

    assert response.status_code == 200
    assert response.json()["report_type"] == "post_sync"
