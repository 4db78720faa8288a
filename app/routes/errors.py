"""
Map engine exceptions onto HTTP errors for the infrastructure routes.
"""

from fastapi import HTTPException, status

from app.infrastructure.observability.logging import get_logger
from app.services.errors import (
    AssessmentError,
    EntityNotFoundError,
    GateViolationError,
    HealingEngineError,
    StaleEntityError,
)

logger = get_logger(__name__)


def to_http_exception(e: Exception, operation: str) -> HTTPException:
    if isinstance(e, EntityNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    if isinstance(e, GateViolationError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    if isinstance(e, StaleEntityError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Entity changed concurrently, retry")

    if isinstance(e, AssessmentError):
        logger.error("Assessment request failed", operation=operation, tenant_id=e.tenant_id, step=e.step, error=str(e))
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Assessment failed at step '{e.step}'. Execution gate remains locked.",
        )

    if isinstance(e, HealingEngineError):
        logger.error("Engine request failed", operation=operation, error=str(e))
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"Failed to {operation}")

    logger.error("Unexpected error in infrastructure route", operation=operation, error=str(e), error_type=type(e).__name__)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Failed to {operation}")
