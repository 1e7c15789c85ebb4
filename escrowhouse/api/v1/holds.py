import uuid

from fastapi import APIRouter, Depends

from escrowhouse.api.deps import Actor, get_actor, get_escrow_engine
from escrowhouse.core.engine import EscrowEngine
from escrowhouse.core.escrow.schemas import HoldSummary

router = APIRouter(prefix="/holds", tags=["Escrow Holds"])


@router.get("/{hold_id}", response_model=HoldSummary)
async def get_hold(
    hold_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_escrow_engine),
):
    return await engine.holds.get_hold(hold_id)
