import uuid
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from escrowhouse.api.deps import Actor, ensure_party, get_actor, get_escrow_engine, require_role
from escrowhouse.common.enums import ActorRole
from escrowhouse.core.engine import EscrowEngine

router = APIRouter(prefix="/disputes", tags=["Disputes"])

PARTIES = (ActorRole.HOMEOWNER, ActorRole.CONTRACTOR)


# ---------- Schemas ----------


class EvidenceRequest(BaseModel):
    refs: list[str] = Field(min_length=1)
    note: str | None = None


class MessageRequest(BaseModel):
    body: str = Field(min_length=1)


class ProposalResponseRequest(BaseModel):
    accept: bool


class SettlementRequest(BaseModel):
    contractor_percent: Decimal = Field(ge=0, le=100)
    rationale: str | None = None


class DisputeResponse(BaseModel):
    id: uuid.UUID
    milestone_id: uuid.UUID
    opened_by: str
    dispute_type: str
    reason: str
    status: str
    evidence: list | None
    opened_at: datetime
    evidence_deadline: datetime
    escalation_deadline: datetime
    resolution_deadline: datetime | None
    proposal: dict | None
    proposal_responses: dict | None
    escalated_at: datetime | None
    resolved_at: datetime | None
    history: list | None

    model_config = {"from_attributes": True}


class MessageResponse(BaseModel):
    id: uuid.UUID
    dispute_id: uuid.UUID
    author_role: str
    author_ref: str
    body: str
    created_at: datetime

    model_config = {"from_attributes": True}


# ---------- Endpoints ----------


@router.get("/{dispute_id}", response_model=DisputeResponse)
async def get_dispute(
    dispute_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    return await engine.disputes.get_dispute(dispute_id)


@router.get("/{dispute_id}/messages", response_model=list[MessageResponse])
async def list_dispute_messages(
    dispute_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    return await engine.disputes.list_messages(dispute_id)


@router.post("/{dispute_id}/evidence", response_model=DisputeResponse)
async def submit_evidence(
    dispute_id: uuid.UUID,
    body: EvidenceRequest,
    actor: Actor = Depends(require_role(*PARTIES)),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    party = ensure_party(await engine.disputes.get_milestone_for(dispute_id), actor)
    return await engine.disputes.submit_evidence(dispute_id, party, body.refs, body.note)


@router.post("/{dispute_id}/messages", response_model=MessageResponse, status_code=201)
async def post_message(
    dispute_id: uuid.UUID,
    body: MessageRequest,
    actor: Actor = Depends(require_role(*PARTIES)),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    party = ensure_party(await engine.disputes.get_milestone_for(dispute_id), actor)
    return await engine.disputes.post_message(dispute_id, party, actor.ref, body.body)


@router.post("/{dispute_id}/proposal-response", response_model=DisputeResponse)
async def respond_to_proposal(
    dispute_id: uuid.UUID,
    body: ProposalResponseRequest,
    actor: Actor = Depends(require_role(*PARTIES)),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    party = ensure_party(await engine.disputes.get_milestone_for(dispute_id), actor)
    await engine.disputes.respond_to_proposal(dispute_id, party, actor.ref, body.accept)
    return await engine.disputes.get_dispute(dispute_id)


@router.post("/{dispute_id}/settlement", response_model=DisputeResponse)
async def propose_settlement(
    dispute_id: uuid.UUID,
    body: SettlementRequest,
    actor: Actor = Depends(require_role(*PARTIES)),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    party = ensure_party(await engine.disputes.get_milestone_for(dispute_id), actor)
    return await engine.disputes.propose_settlement(dispute_id, party, body.contractor_percent, body.rationale)


@router.post("/{dispute_id}/settlement/accept", response_model=DisputeResponse)
async def accept_settlement(
    dispute_id: uuid.UUID,
    actor: Actor = Depends(require_role(*PARTIES)),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    party = ensure_party(await engine.disputes.get_milestone_for(dispute_id), actor)
    await engine.disputes.accept_settlement(dispute_id, party, actor.ref)
    return await engine.disputes.get_dispute(dispute_id)


@router.post("/{dispute_id}/escalate", response_model=DisputeResponse)
async def escalate_dispute(
    dispute_id: uuid.UUID,
    actor: Actor = Depends(require_role(*PARTIES, ActorRole.ADMIN)),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    if actor.role != ActorRole.ADMIN:
        ensure_party(await engine.disputes.get_milestone_for(dispute_id), actor)
    await engine.disputes.escalate_to_mediation(dispute_id, actor.ref)
    return await engine.disputes.get_dispute(dispute_id)
