"""
Exception taxonomy for the assessment and healing engine.

Routes map these onto HTTP status codes; jobs log and count them.
"""


class HealingEngineError(Exception):
    """Base exception for engine operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class EntityNotFoundError(HealingEngineError):
    """Referenced tenant/domain/mailbox/campaign does not exist. Nothing was mutated."""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type} not found: {entity_id}", operation="lookup", recoverable=False)
        self.entity_type = entity_type
        self.entity_id = entity_id


class GateViolationError(HealingEngineError):
    """Request rejected by a safety gate before any mutation."""

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message, operation=operation, recoverable=False)


class InvalidPhaseTransitionError(GateViolationError):
    """Requested phase change is not permitted from the entity's current phase."""


class StaleEntityError(HealingEngineError):
    """Optimistic-concurrency conflict: the stored version moved since it was read."""

    def __init__(self, entity_type: str, entity_id: str, expected_version: int):
        super().__init__(
            f"{entity_type} {entity_id} changed concurrently (expected version {expected_version})",
            operation="save",
        )
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version


class AssessmentError(HealingEngineError):
    """An assessment run failed. The tenant execution gate stays locked."""

    def __init__(self, message: str, tenant_id: str, step: str | None = None):
        super().__init__(message, operation=step or "assess", recoverable=True)
        self.tenant_id = tenant_id
        self.step = step


class DnsNoDataError(HealingEngineError):
    """Authoritative "no such record" answer (NXDOMAIN or empty answer)."""

    def __init__(self, hostname: str):
        super().__init__(f"No DNS data for {hostname}", operation="dns_lookup")
        self.hostname = hostname


class DnsLookupError(HealingEngineError):
    """DNS resolution failed for a reason other than "no data" (timeout, SERVFAIL, ...)."""

    def __init__(self, hostname: str, reason: str):
        super().__init__(f"DNS lookup failed for {hostname}: {reason}", operation="dns_lookup")
        self.hostname = hostname
        self.reason = reason


class RepositoryError(HealingEngineError):
    """Storage backend failure."""
