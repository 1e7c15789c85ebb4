import uuid
from datetime import date
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator


class GroupPayee(BaseModel):
    payee_ref: str
    share_percent: Decimal = Field(gt=0, le=100)


def _check_parties(homeowner_ref: str, contractor_ref: str, payees: list[GroupPayee]) -> None:
    paid = {contractor_ref} | {p.payee_ref for p in payees}
    if homeowner_ref in paid:
        raise ValueError("The homeowner cannot also be the contractor or a group payee")


class MilestoneDraft(BaseModel):
    sequence: int = Field(ge=1)
    title: str = Field(min_length=1, max_length=500)
    amount: Decimal = Field(gt=0, decimal_places=2)
    due_date: date | None = None
    payees: list[GroupPayee] = Field(default_factory=list)

    @model_validator(mode="after")
    def _group_shares_add_up(self) -> "MilestoneDraft":
        if not self.payees:
            return self
        refs = [p.payee_ref for p in self.payees]
        if len(set(refs)) != len(refs):
            raise ValueError("Each group payee may be listed only once")
        if sum(p.share_percent for p in self.payees) != 100:
            raise ValueError("Group payee shares must add up to 100")
        return self


class MilestoneCreate(MilestoneDraft):
    project_id: uuid.UUID
    contract_id: uuid.UUID | None = None
    homeowner_ref: str
    contractor_ref: str
    payer_ref: str | None = None
    currency: str = Field(default="usd", min_length=3, max_length=3)

    @model_validator(mode="after")
    def _parties_are_distinct(self) -> "MilestoneCreate":
        _check_parties(self.homeowner_ref, self.contractor_ref, self.payees)
        return self


class ContractFinalized(BaseModel):
    """A signed contract, as delivered by the project service."""

    project_id: uuid.UUID
    contract_id: uuid.UUID
    homeowner_ref: str
    contractor_ref: str
    payer_ref: str | None = None
    currency: str = Field(default="usd", min_length=3, max_length=3)
    milestones: list[MilestoneDraft] = Field(min_length=1)

    @model_validator(mode="after")
    def _parties_are_distinct(self) -> "ContractFinalized":
        for draft in self.milestones:
            _check_parties(self.homeowner_ref, self.contractor_ref, draft.payees)
        return self
