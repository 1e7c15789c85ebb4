import uuid
from datetime import date, datetime
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from escrowhouse.api.deps import Actor, ensure_party, get_actor, get_escrow_engine, require_role
from escrowhouse.common.enums import ActorRole, DisputeType
from escrowhouse.core.engine import EscrowEngine
from escrowhouse.core.milestones.schemas import ContractFinalized, MilestoneCreate

router = APIRouter(prefix="/milestones", tags=["Milestones"])


# ---------- Schemas ----------


class FundRequest(BaseModel):
    payer_ref: str | None = None


class DisputeOpenRequest(BaseModel):
    reason: str = Field(min_length=1)
    dispute_type: DisputeType = DisputeType.MILESTONE_COMPLETION
    evidence_refs: list[str] = Field(default_factory=list)
    note: str | None = None


class MilestoneResponse(BaseModel):
    id: uuid.UUID
    project_id: uuid.UUID
    contract_id: uuid.UUID | None
    sequence: int
    title: str
    amount: Decimal
    currency: str
    due_date: date | None
    status: str
    homeowner_ref: str
    contractor_ref: str
    payer_ref: str | None
    payees: list | None
    submitted_at: datetime | None
    verification_deadline: datetime | None
    auto_approval_deadline: datetime | None
    dispute_window_closes_at: datetime | None
    funding_attempts: int
    failure_reason: str | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class TransitionResponse(BaseModel):
    position: int
    from_status: str
    to_status: str
    trigger: str
    actor: str
    created_at: datetime

    model_config = {"from_attributes": True}


class PaymentResponse(BaseModel):
    id: uuid.UUID
    payee_ref: str
    amount: Decimal
    direction: str
    status: str
    idempotency_key: str
    provider_ref: str | None
    failure_code: str | None
    completed_at: datetime | None

    model_config = {"from_attributes": True}


class ResolutionResponse(BaseModel):
    id: uuid.UUID
    milestone_id: uuid.UUID
    dispute_id: uuid.UUID | None
    outcome: str
    held_amount: Decimal
    homeowner_share: Decimal
    contractor_share: Decimal
    shares: list
    decided_by: str
    decided_by_ref: str | None
    created_at: datetime
    payments: list[PaymentResponse] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class DisputeOpenedResponse(BaseModel):
    id: uuid.UUID
    milestone_id: uuid.UUID
    status: str
    dispute_type: str
    evidence_deadline: datetime
    escalation_deadline: datetime

    model_config = {"from_attributes": True}


# ---------- Endpoints ----------


@router.post("", response_model=MilestoneResponse, status_code=201)
async def create_milestone(
    body: MilestoneCreate,
    actor: Actor = Depends(require_role(ActorRole.SYSTEM, ActorRole.ADMIN)),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    return await engine.milestones.create_milestone(body)


@router.post("/from-contract", response_model=list[MilestoneResponse], status_code=201)
async def create_milestones_for_contract(
    body: ContractFinalized,
    actor: Actor = Depends(require_role(ActorRole.SYSTEM, ActorRole.ADMIN)),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    return await engine.milestones.create_milestones_for_contract(body)


@router.get("/{milestone_id}", response_model=MilestoneResponse)
async def get_milestone(
    milestone_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    return await engine.milestones.get_milestone(milestone_id)


@router.get("/{milestone_id}/history", response_model=list[TransitionResponse])
async def get_milestone_history(
    milestone_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    return await engine.milestones.get_history(milestone_id)


@router.get("/{milestone_id}/resolution", response_model=ResolutionResponse | None)
async def get_milestone_resolution(
    milestone_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    resolution, payments = await engine.milestones.get_resolution(milestone_id)
    if resolution is None:
        return None
    response = ResolutionResponse.model_validate(resolution)
    response.payments = [PaymentResponse.model_validate(p) for p in payments]
    return response


@router.post("/{milestone_id}/fund", response_model=MilestoneResponse)
async def fund_milestone(
    milestone_id: uuid.UUID,
    body: FundRequest | None = None,
    actor: Actor = Depends(require_role(ActorRole.HOMEOWNER)),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    ensure_party(await engine.milestones.get_milestone(milestone_id), actor)
    payer_ref = body.payer_ref if body else None
    return await engine.milestones.fund_milestone(milestone_id, payer_ref, actor=actor.ref)


@router.post("/{milestone_id}/mark-complete", response_model=MilestoneResponse)
async def mark_milestone_complete(
    milestone_id: uuid.UUID,
    actor: Actor = Depends(require_role(ActorRole.CONTRACTOR)),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    ensure_party(await engine.milestones.get_milestone(milestone_id), actor)
    return await engine.milestones.mark_complete(milestone_id, actor=actor.ref)


@router.post("/{milestone_id}/approve", response_model=MilestoneResponse)
async def approve_milestone(
    milestone_id: uuid.UUID,
    actor: Actor = Depends(require_role(ActorRole.HOMEOWNER)),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    ensure_party(await engine.milestones.get_milestone(milestone_id), actor)
    return await engine.milestones.approve_milestone(milestone_id, actor=actor.ref)


@router.post("/{milestone_id}/cancel", response_model=MilestoneResponse)
async def cancel_milestone(
    milestone_id: uuid.UUID,
    actor: Actor = Depends(require_role(ActorRole.HOMEOWNER, ActorRole.ADMIN)),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    if actor.role == ActorRole.HOMEOWNER:
        ensure_party(await engine.milestones.get_milestone(milestone_id), actor)
    return await engine.milestones.cancel_milestone(milestone_id, actor=actor.ref)


@router.post("/{milestone_id}/disputes", response_model=DisputeOpenedResponse, status_code=201)
async def open_dispute(
    milestone_id: uuid.UUID,
    body: DisputeOpenRequest,
    actor: Actor = Depends(require_role(ActorRole.HOMEOWNER, ActorRole.CONTRACTOR)),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    party = ensure_party(await engine.milestones.get_milestone(milestone_id), actor)
    return await engine.disputes.open_dispute(
        milestone_id,
        party,
        actor.ref,
        body.reason,
        evidence_refs=body.evidence_refs,
        dispute_type=body.dispute_type,
        note=body.note,
    )
