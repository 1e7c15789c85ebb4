import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from escrowhouse.common.enums import DisputeStatus, DisputeType, PartyRole


class EvidenceItem(BaseModel):
    ref: str
    submitted_by: PartyRole
    submitted_at: datetime
    note: str | None = None


class DisputeSnapshot(BaseModel):
    """What the rules engine gets to see when a dispute comes up for review."""

    dispute_id: uuid.UUID
    milestone_id: uuid.UUID
    dispute_type: DisputeType
    opened_by: PartyRole
    reason: str
    held_amount: Decimal
    evidence: list[EvidenceItem]

    @property
    def submitters(self) -> set[PartyRole]:
        return {item.submitted_by for item in self.evidence}


class ProposedResolution(BaseModel):
    contractor_percent: Decimal = Field(ge=0, le=100)
    rationale: str
    rule: str


class DeadlineRule(BaseModel):
    from_status: DisputeStatus
    deadline_field: str
    action: str
    notification_message: str
