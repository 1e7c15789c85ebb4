import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from escrowhouse.common.enums import MilestoneStatus
from escrowhouse.db.base import BaseModel


class Milestone(BaseModel):
    __tablename__ = "milestones"
    __table_args__ = (
        UniqueConstraint("project_id", "sequence", name="uq_milestone_project_sequence"),
        CheckConstraint("amount > 0", name="ck_milestone_positive_amount"),
    )

    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    contract_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="usd", nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    homeowner_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    contractor_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    payer_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Group bids: [{"payee_ref": ..., "share_percent": ...}]; empty means the
    # contractor is the only payee.
    payees: Mapped[list | None] = mapped_column(JSONB, nullable=True, default=list)

    status: Mapped[MilestoneStatus] = mapped_column(
        String(30), nullable=False, default=MilestoneStatus.DRAFT, index=True
    )
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Informational: the homeowner's review target. Nothing fires on it;
    # the deadline sweep only acts on auto_approval_deadline.
    verification_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_approval_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    dispute_window_closes_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    funding_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)
    failure_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class MilestoneTransition(BaseModel):
    __tablename__ = "milestone_transitions"

    milestone_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("milestones.id"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    from_status: Mapped[str] = mapped_column(String(30), nullable=False)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    trigger: Mapped[str] = mapped_column(String(50), nullable=False)
    actor: Mapped[str] = mapped_column(String(255), nullable=False, default="system")
