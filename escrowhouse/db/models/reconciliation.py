import uuid

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from escrowhouse.common.enums import ReconciliationAction
from escrowhouse.db.base import BaseModel


class ReconciliationIssue(BaseModel):
    __tablename__ = "reconciliation_issues"

    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(100), nullable=False)
    ledger_state: Mapped[str | None] = mapped_column(String(50), nullable=True)
    provider_state: Mapped[str | None] = mapped_column(String(50), nullable=True)
    action: Mapped[ReconciliationAction] = mapped_column(String(20), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
