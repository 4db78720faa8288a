"""
Assessment API Routes
HTTP endpoints for infrastructure reports, assessment runs, live DNS checks and
the transition gate.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.infrastructure.observability.logging import get_logger
from app.models.api.infrastructure_request import RunAssessmentRequest
from app.models.api.infrastructure_response import (
    AcknowledgeResponse,
    DomainDnsResponse,
    GateDecisionResponse,
    InfrastructureReportResponse,
    ReportsListResponse,
)
from app.routes.errors import to_http_exception
from app.services.container import Engine, get_engine

logger = get_logger(__name__)

router = APIRouter(prefix="/tenants/{tenant_id}/infrastructure", tags=["assessment"])


@router.get("/report", response_model=InfrastructureReportResponse)
async def get_latest_report(tenant_id: str, engine: Engine = Depends(get_engine)):
    """Latest assessment report for the tenant."""
    try:
        await engine.repository.require_tenant(tenant_id)
        report = await engine.assessment.get_latest_report(tenant_id)
    except Exception as e:
        raise to_http_exception(e, "get infrastructure report") from e

    if report is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No infrastructure assessment found")
    return InfrastructureReportResponse.from_report(report)


@router.get("/reports", response_model=ReportsListResponse)
async def list_reports(
    tenant_id: str,
    limit: int = Query(10, ge=1, le=50, description="Maximum reports to return"),
    engine: Engine = Depends(get_engine),
):
    """Report history, newest first."""
    try:
        await engine.repository.require_tenant(tenant_id)
        reports = await engine.assessment.list_reports(tenant_id, limit=limit)
    except Exception as e:
        raise to_http_exception(e, "list infrastructure reports") from e

    return ReportsListResponse(
        reports=[InfrastructureReportResponse.from_report(r) for r in reports],
        total_count=len(reports),
    )


@router.post("/assess", response_model=InfrastructureReportResponse)
async def run_assessment(
    tenant_id: str,
    request: RunAssessmentRequest | None = None,
    engine: Engine = Depends(get_engine),
):
    """Run a full assessment now and return the stored report."""
    report_type = (request or RunAssessmentRequest()).report_type
    if await engine.assessment.is_running(tenant_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Assessment already running for tenant")

    try:
        result = await engine.assessment.assess(tenant_id, report_type)
        report = await engine.assessment.get_latest_report(tenant_id)
    except Exception as e:
        raise to_http_exception(e, "run infrastructure assessment") from e

    logger.info("Assessment run via API", tenant_id=tenant_id, report_id=result.report_id, score=result.overall_score)
    return InfrastructureReportResponse.from_report(report)


@router.post("/domains/{domain_id}/dns-check", response_model=DomainDnsResponse)
async def check_domain_dns(tenant_id: str, domain_id: str, engine: Engine = Depends(get_engine)):
    """Live SPF/DKIM/DMARC/blacklist check for one domain."""
    try:
        domain = await engine.repository.require_domain(domain_id)
        if domain.tenant_id != tenant_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"domain not found: {domain_id}")
        result = await engine.assessment.assess_domain_dns(domain_id)
    except HTTPException:
        raise
    except Exception as e:
        raise to_http_exception(e, "check domain DNS") from e

    return DomainDnsResponse.from_result(domain_id, result)


@router.get("/gate", response_model=GateDecisionResponse)
async def get_transition_gate(tenant_id: str, engine: Engine = Depends(get_engine)):
    """Whether the tenant may move into autonomous operation."""
    try:
        decision = await engine.transition_gate.check_gate(tenant_id)
    except Exception as e:
        raise to_http_exception(e, "check transition gate") from e
    return GateDecisionResponse.from_decision(decision)


@router.post("/gate/acknowledge", response_model=AcknowledgeResponse)
async def acknowledge_transition(tenant_id: str, engine: Engine = Depends(get_engine)):
    """Operator acknowledgment of a score between the hard floor and auto-allow."""
    try:
        acknowledged = await engine.transition_gate.acknowledge(tenant_id)
        decision = await engine.transition_gate.check_gate(tenant_id)
    except Exception as e:
        raise to_http_exception(e, "acknowledge transition") from e

    return AcknowledgeResponse(acknowledged=acknowledged, gate=GateDecisionResponse.from_decision(decision))


@router.post("/sync-complete", response_model=InfrastructureReportResponse)
async def sync_complete(tenant_id: str, engine: Engine = Depends(get_engine)):
    """Called by the sync collaborator once fresh counters are persisted."""
    try:
        result = await engine.assessment.assess_after_sync(tenant_id)
        report = await engine.assessment.get_latest_report(tenant_id)
    except Exception as e:
        raise to_http_exception(e, "run post-sync assessment") from e

    logger.info("Post-sync assessment completed", tenant_id=tenant_id, score=result.overall_score)
    return InfrastructureReportResponse.from_report(report)
