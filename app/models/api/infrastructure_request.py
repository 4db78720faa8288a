# app/models/api/infrastructure_request.py
"""
Infrastructure API request models.
Used by the assessment and healing routes for input validation.
"""

from pydantic import BaseModel, Field, field_validator

from app.models.domain.infrastructure import EntityType, ReportType


class RunAssessmentRequest(BaseModel):
    """Request body for triggering an assessment run."""

    report_type: ReportType = Field(
        default=ReportType.MANUAL_REASSESSMENT, description="Why the assessment is being run"
    )


class OverrideStateRequest(BaseModel):
    """Operator request to force a paused domain or mailbox into quarantine."""

    entity_type: EntityType = Field(..., description="domain or mailbox")
    entity_id: str = Field(..., min_length=1, description="Entity to override")
    target_state: str = Field(default="quarantine", description="Requested target state")
    justification: str | None = Field(None, max_length=2000, description="Operator justification")
    operator_id: str | None = Field(None, description="Operator performing the override")

    @field_validator("entity_type")
    @classmethod
    def validate_entity_type(cls, v: EntityType) -> EntityType:
        if v not in (EntityType.DOMAIN, EntityType.MAILBOX):
            raise ValueError("Only domains and mailboxes can be overridden")
        return v


class ResumeCampaignRequest(BaseModel):
    """Operator request to resume a paused campaign in restricted mode."""

    operator_id: str | None = Field(None, description="Operator performing the resume")
    justification: str | None = Field(None, max_length=2000, description="Operator justification")


class SendEventRequest(BaseModel):
    """A successful send reported by the sync collaborator."""

    mailbox_id: str = Field(..., min_length=1)
    campaign_id: str | None = None


class BounceEventRequest(BaseModel):
    """A bounce reported by the sync collaborator."""

    mailbox_id: str = Field(..., min_length=1)
    campaign_id: str | None = None
    degrades_health: bool = Field(default=True, description="False for transient/soft bounces")
    reason: str = Field(default="hard_bounce", max_length=100)
