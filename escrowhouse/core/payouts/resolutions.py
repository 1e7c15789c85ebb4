import uuid
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrowhouse.common.clock import to_money
from escrowhouse.common.enums import DecidedBy
from escrowhouse.common.exceptions import InvariantViolation
from escrowhouse.common.logging import get_logger
from escrowhouse.core.ledger.store import LedgerStore
from escrowhouse.core.payouts.splits import build_shares, outcome_for
from escrowhouse.db.models import EscrowHold, Milestone, Resolution

logger = get_logger("payouts.resolutions")


async def record_resolution(
    store: LedgerStore,
    db: AsyncSession,
    milestone: Milestone,
    hold: EscrowHold,
    contractor_percent: Decimal | int | str,
    decided_by: DecidedBy,
    *,
    dispute_id: uuid.UUID | None = None,
    decided_by_ref: str | None = None,
) -> Resolution:
    """Write the one and only resolution for a milestone.

    Shares are computed over what is still held, and must add up to it.
    """
    existing = await store.find_resolution_for_milestone(db, milestone.id)
    if existing is not None:
        raise InvariantViolation(f"Milestone {milestone.id} already has resolution {existing.id}")

    held = to_money(hold.amount) - to_money(hold.released_amount)
    homeowner_share, contractor_share, shares = build_shares(
        held,
        contractor_percent,
        homeowner_ref=milestone.homeowner_ref,
        contractor_ref=milestone.contractor_ref,
        payees=milestone.payees,
    )
    if homeowner_share + contractor_share != held or sum(s.amount for s in shares) != held:
        raise InvariantViolation(f"Resolution shares for milestone {milestone.id} do not add up to ${held}")

    resolution = Resolution(
        milestone_id=milestone.id,
        dispute_id=dispute_id,
        outcome=outcome_for(contractor_percent).value,
        held_amount=held,
        homeowner_share=homeowner_share,
        contractor_share=contractor_share,
        shares=[
            {"payee_ref": s.payee_ref, "role": s.role.value, "amount": str(s.amount)} for s in shares
        ],
        decided_by=decided_by.value,
        decided_by_ref=decided_by_ref,
    )
    db.add(resolution)
    try:
        await db.flush()
    except IntegrityError as e:
        raise InvariantViolation(f"Milestone {milestone.id} already has a resolution") from e

    store.audit(
        db,
        "resolution",
        resolution.id,
        "recorded",
        actor=decided_by_ref or decided_by.value,
        diff={
            "milestone_id": str(milestone.id),
            "outcome": resolution.outcome,
            "homeowner_share": str(homeowner_share),
            "contractor_share": str(contractor_share),
        },
    )
    logger.info(
        "Resolution %s for milestone %s: %s (homeowner $%s, contractor $%s, by %s)",
        resolution.id, milestone.id, resolution.outcome, homeowner_share, contractor_share, decided_by.value,
    )
    return resolution
