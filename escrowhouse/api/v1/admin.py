import uuid
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from escrowhouse.api.deps import Actor, get_escrow_engine, require_role
from escrowhouse.api.v1.milestones import MilestoneResponse
from escrowhouse.common.enums import ActorRole
from escrowhouse.common.exceptions import BadRequestError
from escrowhouse.core.engine import EscrowEngine

router = APIRouter(prefix="/admin", tags=["Admin"])


# ---------- Schemas ----------


class SweepResponse(BaseModel):
    sweep: str
    result: Any


class ReconciliationIssueResponse(BaseModel):
    id: uuid.UUID
    entity_type: str
    entity_id: uuid.UUID
    kind: str
    ledger_state: str | None
    provider_state: str | None
    action: str
    attempts: int
    detail: str | None
    resolved: bool
    created_at: datetime

    model_config = {"from_attributes": True}


# ---------- Endpoints ----------


@router.post("/milestones/{milestone_id}/retry-payout", response_model=MilestoneResponse)
async def retry_payout(
    milestone_id: uuid.UUID,
    actor: Actor = Depends(require_role(ActorRole.ADMIN)),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    return await engine.milestones.retry_payout(milestone_id, actor.ref)


@router.post("/sweeps/{name}", response_model=SweepResponse)
async def run_sweep(
    name: str,
    actor: Actor = Depends(require_role(ActorRole.ADMIN, ActorRole.SYSTEM)),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    if name == "milestone-deadlines":
        result = [str(m) for m in await engine.milestones.check_deadlines()]
    elif name == "dispute-deadlines":
        acted = await engine.disputes.check_deadlines()
        result = {action: [str(d) for d in ids] for action, ids in acted.items()}
    elif name == "mediator-assignments":
        result = [str(c) for c in await engine.mediation.retry_unassigned()]
    elif name == "reconciliation":
        result = await engine.reconciliation.sweep()
    else:
        raise BadRequestError(f"Unknown sweep '{name}'")
    return SweepResponse(sweep=name, result=result)


@router.get("/reconciliation-issues", response_model=list[ReconciliationIssueResponse])
async def list_reconciliation_issues(
    include_resolved: bool = False,
    actor: Actor = Depends(require_role(ActorRole.ADMIN)),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    return await engine.reconciliation.list_issues(include_resolved)
