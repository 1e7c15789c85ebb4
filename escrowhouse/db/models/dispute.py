import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from escrowhouse.common.enums import DisputeStatus, DisputeType, PartyRole
from escrowhouse.db.base import BaseModel


class Dispute(BaseModel):
    __tablename__ = "disputes"

    milestone_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("milestones.id"), nullable=False, index=True
    )
    opened_by: Mapped[PartyRole] = mapped_column(String(20), nullable=False)
    opened_by_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    dispute_type: Mapped[DisputeType] = mapped_column(
        String(30), nullable=False, default=DisputeType.MILESTONE_COMPLETION
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[DisputeStatus] = mapped_column(
        String(30), nullable=False, default=DisputeStatus.OPENED, index=True
    )
    # [{"ref": ..., "submitted_by": "homeowner", "submitted_at": iso, "note": ...}]
    evidence: Mapped[list | None] = mapped_column(JSONB, nullable=True, default=list)
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    evidence_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    escalation_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolution_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Proposal from the rules engine or from one of the parties:
    # {"source": "rules_engine"|"homeowner"|"contractor", "contractor_percent": ..., "rationale": ...}
    proposal: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    proposal_responses: Mapped[dict | None] = mapped_column(JSONB, nullable=True, default=dict)
    review_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    escalated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    history: Mapped[list | None] = mapped_column(JSONB, nullable=True, default=list)


class DisputeMessage(BaseModel):
    __tablename__ = "dispute_messages"

    dispute_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("disputes.id"), nullable=False, index=True
    )
    author_role: Mapped[PartyRole] = mapped_column(String(20), nullable=False)
    author_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
