"""DNS probing for domain assessment."""

from app.services.dns_assessment.domain_assessor import (
    DomainDnsAssessor,
    compute_domain_score,
    derive_domain_state,
    stored_dns_status,
)
from app.services.dns_assessment.dns_cache import DnsLookupCache
from app.services.dns_assessment.resolver import DnsResolver

__all__ = [
    "DnsLookupCache",
    "DnsResolver",
    "DomainDnsAssessor",
    "compute_domain_score",
    "derive_domain_state",
    "stored_dns_status",
]
