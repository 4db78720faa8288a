"""
Healing API Routes
HTTP endpoints for recovery status, graduation checks, operator overrides,
the pre-send check and send/bounce event ingestion.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.infrastructure.observability.logging import get_logger
from app.models.api.infrastructure_request import (
    BounceEventRequest,
    OverrideStateRequest,
    ResumeCampaignRequest,
    SendEventRequest,
)
from app.models.api.infrastructure_response import (
    BounceEventResponse,
    MailboxCountersResponse,
    OverrideResultResponse,
    PhaseTransitionResponse,
    RecoveryStatusListResponse,
    RecoveryStatusResponse,
    SendDecisionResponse,
)
from app.models.domain.infrastructure import EntityType
from app.routes.errors import to_http_exception
from app.services.container import Engine, get_engine
from app.services.operator_override_service import OverrideRequest

logger = get_logger(__name__)

router = APIRouter(prefix="/tenants/{tenant_id}/healing", tags=["healing"])


async def _require_owned_mailbox(engine: Engine, tenant_id: str, mailbox_id: str):
    mailbox = await engine.repository.require_mailbox(mailbox_id)
    if mailbox.tenant_id != tenant_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"mailbox not found: {mailbox_id}")
    return mailbox


@router.get("/status", response_model=RecoveryStatusListResponse)
async def get_recovery_status(tenant_id: str, engine: Engine = Depends(get_engine)):
    """Every domain and mailbox currently outside the healthy phase."""
    try:
        await engine.repository.require_tenant(tenant_id)
        entries = await engine.healing.get_recovery_status(tenant_id)
    except Exception as e:
        raise to_http_exception(e, "get recovery status") from e

    return RecoveryStatusListResponse(
        entities=[RecoveryStatusResponse.from_entry(entry) for entry in entries],
        total_count=len(entries),
    )


@router.post("/{entity_type}/{entity_id}/graduation-check", response_model=PhaseTransitionResponse)
async def check_graduation(tenant_id: str, entity_type: EntityType, entity_id: str, engine: Engine = Depends(get_engine)):
    """Run one graduation check now instead of waiting for the scheduler."""
    try:
        if entity_type is EntityType.DOMAIN:
            entity = await engine.repository.require_domain(entity_id)
        elif entity_type is EntityType.MAILBOX:
            entity = await engine.repository.require_mailbox(entity_id)
        else:
            entity = await engine.repository.require_campaign(entity_id)
        if entity.tenant_id != tenant_id:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail=f"{entity_type.value} not found: {entity_id}"
            )
        result = await engine.healing.check_graduation(entity_type, entity_id)
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_exception(e, "check graduation") from e

    return PhaseTransitionResponse.from_result(entity_type.value, entity_id, result)


@router.post("/override", response_model=OverrideResultResponse)
async def override_entity_state(
    tenant_id: str, request: OverrideStateRequest, engine: Engine = Depends(get_engine)
):
    """Force a paused domain or mailbox into quarantine, subject to the override risk check."""
    try:
        result = await engine.overrides.override_entity_state(
            OverrideRequest(
                tenant_id=tenant_id,
                entity_type=request.entity_type,
                entity_id=request.entity_id,
                target_state=request.target_state,
                justification=request.justification,
                operator_id=request.operator_id,
            )
        )
    except Exception as e:
        raise to_http_exception(e, "override entity state") from e

    logger.info(
        "Override requested via API",
        tenant_id=tenant_id,
        entity_type=request.entity_type.value,
        entity_id=request.entity_id,
        applied=result.applied,
    )
    return OverrideResultResponse.from_result(result)


@router.post("/campaigns/{campaign_id}/resume", response_model=OverrideResultResponse)
async def resume_campaign(
    tenant_id: str,
    campaign_id: str,
    request: ResumeCampaignRequest | None = None,
    engine: Engine = Depends(get_engine),
):
    """Resume a paused campaign in restricted send mode."""
    request = request or ResumeCampaignRequest()
    try:
        result = await engine.overrides.resume_campaign(
            tenant_id, campaign_id, operator_id=request.operator_id, justification=request.justification
        )
    except Exception as e:
        raise to_http_exception(e, "resume campaign") from e
    return OverrideResultResponse.from_result(result)


@router.get("/mailboxes/{mailbox_id}/send-check", response_model=SendDecisionResponse)
async def check_send(
    tenant_id: str,
    mailbox_id: str,
    campaign_id: str | None = Query(None, description="Campaign the send belongs to"),
    engine: Engine = Depends(get_engine),
):
    """May this mailbox send one more email right now?"""
    try:
        decision = await engine.send_gate.check_send(tenant_id, mailbox_id, campaign_id)
    except Exception as e:
        raise to_http_exception(e, "check send") from e
    return SendDecisionResponse.from_decision(decision)


@router.post("/events/sent", response_model=MailboxCountersResponse)
async def record_sent(tenant_id: str, event: SendEventRequest, engine: Engine = Depends(get_engine)):
    """Ingest one successful send."""
    try:
        await _require_owned_mailbox(engine, tenant_id, event.mailbox_id)
        mailbox = await engine.monitoring.record_sent(event.mailbox_id, campaign_id=event.campaign_id)
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_exception(e, "record send") from e

    return MailboxCountersResponse(
        mailbox_id=mailbox.id,
        status=mailbox.status.value,
        recovery_phase=mailbox.recovery_phase.value,
        total_sent_count=mailbox.total_sent_count,
        hard_bounce_count=mailbox.hard_bounce_count,
        window_sent_count=mailbox.window_sent_count,
        window_bounce_count=mailbox.window_bounce_count,
        sent_today=mailbox.sent_today,
    )


@router.post("/events/bounce", response_model=BounceEventResponse)
async def record_bounce(tenant_id: str, event: BounceEventRequest, engine: Engine = Depends(get_engine)):
    """Ingest one bounce."""
    try:
        await _require_owned_mailbox(engine, tenant_id, event.mailbox_id)
        action = await engine.monitoring.record_bounce(
            event.mailbox_id,
            campaign_id=event.campaign_id,
            degrades_health=event.degrades_health,
            reason=event.reason,
        )
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_exception(e, "record bounce") from e

    return BounceEventResponse(mailbox_id=event.mailbox_id, action=action.value)
