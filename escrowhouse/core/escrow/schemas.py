import uuid
from decimal import Decimal

from pydantic import BaseModel, Field

from escrowhouse.common.enums import HoldState, PaymentDirection


class DistributionLine(BaseModel):
    payee_ref: str
    amount: Decimal = Field(gt=0)
    direction: PaymentDirection = PaymentDirection.PAYOUT
    idempotency_key: str | None = None


class HoldSummary(BaseModel):
    id: uuid.UUID
    milestone_id: uuid.UUID
    amount: Decimal
    released_amount: Decimal
    remaining_amount: Decimal
    state: HoldState
    frozen: bool
    provider_ref: str | None

    model_config = {"from_attributes": True}
