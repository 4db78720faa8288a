"""
Audit trail infrastructure.

StateTransition and audit entries for every engine decision.
"""

from app.infrastructure.audit.audit_logger import (
    ACTION_FORCE_STATE_CHANGE,
    ACTION_MANUAL_RESUME,
    OVERRIDE_ACTIONS,
    AuditLogger,
)

__all__ = ["ACTION_FORCE_STATE_CHANGE", "ACTION_MANUAL_RESUME", "OVERRIDE_ACTIONS", "AuditLogger"]
