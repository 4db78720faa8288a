"""
AuditLogger - append-only trail of engine decisions.

Every state mutation produces:
- a StateTransition row (entity from/to state, reason, who triggered it)
- an audit entry (action + structured details)

Both are written to the repository and to structured logs.

Usage:
    audit = AuditLogger(repository)

    await audit.record_transition(
        tenant_id=tenant_id,
        entity_type=EntityType.MAILBOX,
        entity_id=mailbox.id,
        from_state="restricted_send",
        to_state="warm_recovery",
        reason="Clean sends threshold met",
    )

Design Principles:
- Write to the store (queryable) and structured logs (searchable)
- Never fail the state change if audit logging fails
- Override-risk checks count audit actions, so action names are stable constants
"""

from datetime import datetime
from typing import Any

from app.infrastructure.observability.logging import get_logger
from app.models.domain.infrastructure import AuditEntry, EntityType, StateTransition, TriggeredBy
from app.repositories.base import InfrastructureRepository
from app.utils.clock import Clock, new_id, utc_now

logger = get_logger(__name__)

# Action names counted by the override risk assessor
ACTION_MANUAL_RESUME = "manual_resume"
ACTION_FORCE_STATE_CHANGE = "force_state_change"
OVERRIDE_ACTIONS = (ACTION_MANUAL_RESUME, ACTION_FORCE_STATE_CHANGE)


class AuditLogger:
    """
    Best-effort writer for StateTransition and audit rows.

    Returns True/False from every method and never raises.
    """

    def __init__(self, repository: InfrastructureRepository, clock: Clock = utc_now):
        self.repository = repository
        self.clock = clock

    async def log(
        self,
        tenant_id: str,
        action: str,
        entity_type: EntityType | str,
        entity_id: str | None = None,
        trigger: str = "system",
        details: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> bool:
        """
        Log an audit event to the repository and structured logs.

        Args:
            tenant_id: Owning tenant
            action: Action name (e.g. "phase_graduation", "manual_resume")
            entity_type: Entity the action applies to
            entity_id: Specific entity id (None for tenant-wide events)
            trigger: What caused the action ("system", "assessment", "operator", ...)
            details: Additional JSON-serializable context

        Returns:
            True if stored, False if the store write failed
        """
        entity_type_value = entity_type.value if isinstance(entity_type, EntityType) else entity_type

        logger.info(
            "Audit event",
            audit_action=action,
            tenant_id=tenant_id,
            entity_type=entity_type_value,
            entity_id=entity_id,
            trigger=trigger,
        )

        entry = AuditEntry(
            id=new_id(),
            tenant_id=tenant_id,
            entity_type=entity_type_value,
            entity_id=entity_id,
            trigger=trigger,
            action=action,
            details=details or {},
            created_at=created_at or self.clock(),
        )

        try:
            await self.repository.append_audit(entry)
            return True
        except Exception as e:
            # the mutation already happened; keep enough context to recreate the row
            logger.error(
                "Failed to write audit entry",
                error=str(e),
                error_type=type(e).__name__,
                tenant_id=tenant_id,
                audit_action=action,
                fallback_data={
                    "entity_type": entity_type_value,
                    "entity_id": entity_id,
                    "trigger": trigger,
                    "details": details,
                    "timestamp": entry.created_at.isoformat(),
                },
            )
            return False

    async def record_transition(
        self,
        tenant_id: str,
        entity_type: EntityType,
        entity_id: str,
        from_state: str,
        to_state: str,
        reason: str,
        triggered_by: TriggeredBy = TriggeredBy.SYSTEM,
    ) -> bool:
        """Append an immutable StateTransition row. Never raises."""
        transition = StateTransition(
            id=new_id(),
            tenant_id=tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            from_state=from_state,
            to_state=to_state,
            reason=reason,
            triggered_by=triggered_by,
            created_at=self.clock(),
        )

        logger.info(
            "State transition",
            tenant_id=tenant_id,
            entity_type=entity_type.value,
            entity_id=entity_id,
            from_state=from_state,
            to_state=to_state,
            triggered_by=triggered_by.value,
        )

        try:
            await self.repository.append_transition(transition)
            return True
        except Exception as e:
            logger.error(
                "Failed to write state transition",
                error=str(e),
                error_type=type(e).__name__,
                tenant_id=tenant_id,
                entity_id=entity_id,
                from_state=from_state,
                to_state=to_state,
            )
            return False
