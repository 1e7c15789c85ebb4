import uuid
from decimal import Decimal

from sqlalchemy import ForeignKey, Numeric, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from escrowhouse.common.enums import DecidedBy, ResolutionOutcome
from escrowhouse.db.base import BaseModel


class Resolution(BaseModel):
    """How the escrowed funds of a milestone are split. Written once, never updated."""

    __tablename__ = "resolutions"

    milestone_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("milestones.id"), nullable=False, unique=True
    )
    dispute_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("disputes.id"), nullable=True, unique=True
    )
    outcome: Mapped[ResolutionOutcome] = mapped_column(String(30), nullable=False)
    held_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    homeowner_share: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    contractor_share: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    # [{"payee_ref": ..., "role": "homeowner"|"contractor", "amount": "1234.00"}]
    shares: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    decided_by: Mapped[DecidedBy] = mapped_column(String(20), nullable=False)
    decided_by_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
