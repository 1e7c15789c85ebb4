import uuid
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from escrowhouse.api.deps import Actor, get_actor, get_escrow_engine, require_role
from escrowhouse.common.enums import ActorRole, ResolutionOutcome
from escrowhouse.core.engine import EscrowEngine

router = APIRouter(prefix="/mediation", tags=["Mediation"])


# ---------- Schemas ----------


class DecisionRequest(BaseModel):
    outcome: ResolutionOutcome
    contractor_percent: Decimal = Field(ge=0, le=100)
    notes: str | None = None


class MediationCaseResponse(BaseModel):
    id: uuid.UUID
    dispute_id: uuid.UUID
    milestone_id: uuid.UUID
    mediator_ref: str | None
    status: str
    assignment_attempts: int
    blocked: bool
    decision: dict | None
    review_started_at: datetime | None
    decided_at: datetime | None

    model_config = {"from_attributes": True}


# ---------- Endpoints ----------


@router.get("/{case_id}", response_model=MediationCaseResponse)
async def get_case(
    case_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    return await engine.mediation.get_case(case_id)


@router.post("/{case_id}/review", response_model=MediationCaseResponse)
async def start_review(
    case_id: uuid.UUID,
    actor: Actor = Depends(require_role(ActorRole.MEDIATOR)),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    return await engine.mediation.start_review(case_id, actor.ref)


@router.post("/{case_id}/decision", response_model=MediationCaseResponse)
async def record_decision(
    case_id: uuid.UUID,
    body: DecisionRequest,
    actor: Actor = Depends(require_role(ActorRole.MEDIATOR)),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    await engine.mediation.record_decision(
        case_id, actor.ref, body.contractor_percent, outcome=body.outcome, notes=body.notes
    )
    return await engine.mediation.get_case(case_id)
