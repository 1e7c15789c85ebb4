import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from escrowhouse.common.enums import HoldState
from escrowhouse.db.base import BaseModel


class EscrowHold(BaseModel):
    __tablename__ = "escrow_holds"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_hold_positive_amount"),
        CheckConstraint("released_amount >= 0", name="ck_hold_released_non_negative"),
        CheckConstraint("released_amount <= amount", name="ck_hold_no_over_release"),
    )

    milestone_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("milestones.id"), nullable=False, unique=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    released_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), default="usd", nullable=False)
    state: Mapped[HoldState] = mapped_column(String(30), nullable=False, default=HoldState.REQUESTED, index=True)
    payer_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_ref: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    # Bumped whenever a failed hold is re-requested; part of the provider
    # idempotency key.
    request_generation: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    frozen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    frozen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_code: Mapped[str | None] = mapped_column(String(100), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    @property
    def remaining_amount(self) -> Decimal:
        return self.amount - self.released_amount

    @property
    def idempotency_key(self) -> str:
        return f"hold:{self.milestone_id}:{self.request_generation}"
