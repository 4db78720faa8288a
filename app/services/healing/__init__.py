"""Graduated recovery: criteria arithmetic and the healing state machine."""

from app.services.healing.criteria import (
    DEFAULT_CRITERIA,
    GraduationCriteria,
    clamp_resilience,
    healing_multiplier,
    phase_volume_limit,
)
from app.services.healing.healing_service import HealingService, RecoveryStatusEntry, dns_is_clean

__all__ = [
    "DEFAULT_CRITERIA",
    "GraduationCriteria",
    "HealingService",
    "RecoveryStatusEntry",
    "clamp_resilience",
    "dns_is_clean",
    "healing_multiplier",
    "phase_volume_limit",
]
