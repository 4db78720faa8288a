"""
Structured logging setup for the infrastructure healing engine.
Provides JSON-formatted logs with consistent fields for production monitoring.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output for production.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_engine_context,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("psycopg.pool").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def _add_engine_context(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Tag every entry with the emitting component."""
    event_dict.setdefault("service", "infra-healing-engine")
    return event_dict


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


# Convenience functions for common log patterns
def log_health_check(service: str, healthy: bool, latency_ms: float, error: str = None):
    """Log health check results with consistent fields."""
    logger = get_logger("health")

    log_data = {
        "service": service,
        "healthy": healthy,
        "latency_ms": latency_ms,
        "check_type": "health_check",
    }

    if error:
        log_data["error"] = error

    if healthy:
        logger.info("Health check passed", **log_data)
    else:
        logger.error("Health check failed", **log_data)


def log_phase_transition(
    entity_type: str,
    entity_id: str,
    from_phase: str,
    to_phase: str,
    reason: str,
    resilience_score: int | None,
):
    """Log a recovery phase change with consistent fields."""
    logger = get_logger("healing")

    logger.info(
        "Recovery phase transition",
        entity_type=entity_type,
        entity_id=entity_id,
        from_phase=from_phase,
        to_phase=to_phase,
        reason=reason,
        resilience_score=resilience_score,
        event_type="phase_transition",
    )


def log_throttle_decision(scope: str, scope_id: str, limit: int | None, **context: Any):
    """Log an aggregate throttle computation."""
    logger = get_logger("throttle")

    if limit is None:
        logger.debug("Aggregate throttle inactive", scope=scope, scope_id=scope_id, **context)
    else:
        logger.info("Aggregate throttle active", scope=scope, scope_id=scope_id, limit=limit, **context)
