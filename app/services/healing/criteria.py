"""
Graduation criteria and the pure arithmetic of the recovery state machine.

Everything here is side-effect free apart from the ``enter_*`` helpers, which
mutate an entity in place and are meant to run inside a repository
``update_*`` mutator.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from app.config import Settings, settings
from app.models.domain.infrastructure import (
    HealableEntity,
    HealingOrigin,
    RecoveryPhase,
)

MIN_RESILIENCE = 0
MAX_RESILIENCE = 100


@dataclass(frozen=True, slots=True)
class GraduationCriteria:
    first_offense_cooldown: timedelta
    repeat_cooldown: timedelta
    third_plus_cooldown: timedelta
    first_offense_clean_sends: int
    repeat_clean_sends: int
    warm_recovery_min_sends: int
    warm_recovery_min_duration: timedelta
    warm_recovery_max_bounce_rate: float
    rehab_send_multiplier: float
    rehab_time_multiplier: float
    graduation_bonus: int
    relapse_penalty: int
    pause_penalty: int
    rehab_start: int
    default_start: int
    restricted_base_volume: int
    warm_base_volume: int

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "GraduationCriteria":
        return cls(
            first_offense_cooldown=timedelta(hours=config.FIRST_OFFENSE_COOLDOWN_HOURS),
            repeat_cooldown=timedelta(hours=config.REPEAT_COOLDOWN_HOURS),
            third_plus_cooldown=timedelta(hours=config.THIRD_PLUS_COOLDOWN_HOURS),
            first_offense_clean_sends=config.FIRST_OFFENSE_CLEAN_SENDS,
            repeat_clean_sends=config.REPEAT_CLEAN_SENDS,
            warm_recovery_min_sends=config.WARM_RECOVERY_MIN_SENDS,
            warm_recovery_min_duration=timedelta(days=config.WARM_RECOVERY_MIN_DAYS),
            warm_recovery_max_bounce_rate=config.WARM_RECOVERY_MAX_BOUNCE_RATE,
            rehab_send_multiplier=config.REHAB_SEND_MULTIPLIER,
            rehab_time_multiplier=config.REHAB_TIME_MULTIPLIER,
            graduation_bonus=config.RESILIENCE_GRADUATION_BONUS,
            relapse_penalty=config.RESILIENCE_RELAPSE_PENALTY,
            pause_penalty=config.RESILIENCE_PAUSE_PENALTY,
            rehab_start=config.RESILIENCE_REHAB_START,
            default_start=config.RESILIENCE_DEFAULT_START,
            restricted_base_volume=config.RESTRICTED_SEND_BASE_VOLUME,
            warm_base_volume=config.WARM_RECOVERY_BASE_VOLUME,
        )


@dataclass(frozen=True, slots=True)
class HealingMultiplier:
    send: float
    time: float


def clamp_resilience(score: float) -> int:
    return int(max(MIN_RESILIENCE, min(MAX_RESILIENCE, score)))


def healing_multiplier(resilience_score: int) -> HealingMultiplier:
    """Low resilience heals slower (more evidence), high resilience faster."""
    if resilience_score <= 30:
        return HealingMultiplier(send=2.0, time=1.5)
    if resilience_score <= 70:
        return HealingMultiplier(send=1.0, time=1.0)
    return HealingMultiplier(send=0.75, time=0.75)


def cooldown_for_offense(criteria: GraduationCriteria, offense_number: int) -> timedelta:
    """Cooldown after the Nth consecutive pause (1-based)."""
    if offense_number <= 1:
        return criteria.first_offense_cooldown
    if offense_number == 2:
        return criteria.repeat_cooldown
    return criteria.third_plus_cooldown


def _rehab_sends(entity: HealableEntity, criteria: GraduationCriteria, base: int) -> int:
    if entity.healing_origin is HealingOrigin.REHAB:
        return math.ceil(base * criteria.rehab_send_multiplier)
    return base


def required_clean_sends(entity: HealableEntity, criteria: GraduationCriteria) -> int:
    """Clean sends needed to leave RESTRICTED_SEND."""
    base = criteria.repeat_clean_sends if entity.consecutive_pauses > 1 else criteria.first_offense_clean_sends
    adjusted = _rehab_sends(entity, criteria, base)
    return math.ceil(adjusted * healing_multiplier(entity.resilience_score).send)


def required_warm_sends(entity: HealableEntity, criteria: GraduationCriteria) -> int:
    """Sends needed during WARM_RECOVERY before graduating to HEALTHY."""
    adjusted = _rehab_sends(entity, criteria, criteria.warm_recovery_min_sends)
    return math.ceil(adjusted * healing_multiplier(entity.resilience_score).send)


def required_warm_duration(entity: HealableEntity, criteria: GraduationCriteria) -> timedelta:
    """Minimum time in WARM_RECOVERY; rehab and resilience multipliers both apply."""
    duration = criteria.warm_recovery_min_duration
    if entity.healing_origin is HealingOrigin.REHAB:
        duration = duration * criteria.rehab_time_multiplier
    return duration * healing_multiplier(entity.resilience_score).time


def phase_volume_limit(
    phase: RecoveryPhase, resilience_score: int, criteria: GraduationCriteria | None = None
) -> int | None:
    """
    Daily send cap for one entity in ``phase``. None means unrestricted.

    RESTRICTED_SEND / WARM_RECOVERY bases are divided by the resilience send
    multiplier, so fragile entities get fewer sends.
    """
    criteria = criteria or DEFAULT_CRITERIA
    multiplier = healing_multiplier(resilience_score).send

    if phase in (RecoveryPhase.PAUSED, RecoveryPhase.QUARANTINE):
        return 0
    if phase is RecoveryPhase.RESTRICTED_SEND:
        return math.floor(criteria.restricted_base_volume / multiplier)
    if phase is RecoveryPhase.WARM_RECOVERY:
        return math.floor(criteria.warm_base_volume / multiplier)
    return None


def enter_phase(entity: HealableEntity, phase: RecoveryPhase, now: datetime) -> None:
    """Move to ``phase`` and reset every per-phase counter."""
    entity.recovery_phase = phase
    entity.phase_entered_at = now
    entity.clean_sends_since_phase = 0
    entity.phase_sent_count = 0
    entity.phase_bounce_count = 0


def enter_paused_phase(
    entity: HealableEntity,
    now: datetime,
    criteria: GraduationCriteria,
    reason: str,
    origin: HealingOrigin,
    resilience_penalty: int = 0,
) -> timedelta:
    """
    Put a freshly degraded entity at the start of the healing pipeline.

    Rehab entities start no higher than the rehab resilience baseline.
    Returns the cooldown that was applied.
    """
    entity.consecutive_pauses += 1
    cooldown = cooldown_for_offense(criteria, entity.consecutive_pauses)

    enter_phase(entity, RecoveryPhase.PAUSED, now)
    entity.cooldown_until = now + cooldown
    entity.healing_origin = entity.healing_origin or origin
    entity.paused_reason = reason
    entity.last_pause_at = now

    score = entity.resilience_score - resilience_penalty
    if entity.healing_origin is HealingOrigin.REHAB:
        score = min(score, criteria.rehab_start)
    entity.resilience_score = clamp_resilience(score)
    return cooldown


DEFAULT_CRITERIA = GraduationCriteria.from_settings()
