import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from escrowhouse.common.enums import MediationStatus
from escrowhouse.db.base import BaseModel


class MediationCase(BaseModel):
    __tablename__ = "mediation_cases"

    dispute_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("disputes.id"), nullable=False, unique=True
    )
    milestone_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("milestones.id"), nullable=False, index=True
    )
    mediator_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[MediationStatus] = mapped_column(
        String(20), nullable=False, default=MediationStatus.ASSIGNED, index=True
    )
    assignment_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_assignment_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # {"outcome": ..., "contractor_percent": ..., "homeowner_percent": ..., "notes": ...}
    decision: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    review_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
