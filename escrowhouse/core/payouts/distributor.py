"""Payout Distributor.

Executes the fund movement a Resolution calls for. Callers hold the
milestone lock; the distributor never takes it itself.
"""

from __future__ import annotations

import uuid
from decimal import Decimal

from escrowhouse.common import events
from escrowhouse.common.clock import utcnow
from escrowhouse.common.enums import (
    EventType,
    MilestoneStatus,
    PartyRole,
    PaymentDirection,
    PaymentStatus,
    ResolutionOutcome,
)
from escrowhouse.common.exceptions import ProviderRejected, TransientProviderError
from escrowhouse.common.logging import get_logger
from escrowhouse.core.escrow.hold_manager import EscrowHoldManager
from escrowhouse.core.escrow.schemas import DistributionLine
from escrowhouse.core.ledger.store import LedgerStore
from escrowhouse.core.milestones.state_machine import TERMINAL, apply_transition, can_transition
from escrowhouse.db.models import Payment, Resolution

logger = get_logger("payouts.distributor")


def payment_key(resolution: Resolution, payee_ref: str) -> str:
    scope = resolution.dispute_id or resolution.milestone_id
    return f"payout:{scope}:{payee_ref}:{resolution.id}"


def release_key(resolution: Resolution) -> str:
    return f"release:{resolution.id}"


def distribution_for(resolution: Resolution) -> list[DistributionLine]:
    lines = []
    for share in resolution.shares:
        direction = PaymentDirection.REFUND if share["role"] == PartyRole.HOMEOWNER.value else PaymentDirection.PAYOUT
        lines.append(
            DistributionLine(
                payee_ref=share["payee_ref"],
                amount=Decimal(share["amount"]),
                direction=direction,
                idempotency_key=payment_key(resolution, share["payee_ref"]),
            )
        )
    return lines


class PayoutDistributor:
    def __init__(self, store: LedgerStore, holds: EscrowHoldManager):
        self.store = store
        self.holds = holds

    async def execute(self, resolution_id: uuid.UUID, hold_id: uuid.UUID | None = None) -> list[Payment]:
        """Pay out a resolution.

        Repeated invocation returns the existing payments. Provider failures
        are recorded on the ledger rather than raised: a permanent refusal
        parks the milestone in ``payout_failed`` and an exhausted transient
        failure leaves the payments ``pending`` for the reconciliation sweep.
        """
        async with self.store.transaction() as db:
            resolution = await self.store.get_resolution(db, resolution_id)
            if hold_id is None:
                hold = await self.store.find_hold_for_milestone(db, resolution.milestone_id)
                hold_id = hold.id
            lines = distribution_for(resolution)
            milestone_id, dispute_id = resolution.milestone_id, resolution.dispute_id

        if not lines:
            await self.finalize(resolution_id)
            return []

        try:
            payments = await self.holds.release(
                hold_id,
                lines,
                release_key(resolution),
                allow_frozen=True,
                resolution_id=resolution.id,
                dispute_id=dispute_id,
            )
        except ProviderRejected as e:
            logger.error("Payout for resolution %s refused by provider: %s", resolution_id, e.code)
            await self.mark_payout_failed(milestone_id, e.code, e.message)
            return await self.payments_for(resolution_id)
        except TransientProviderError as e:
            logger.warning(
                "Payout for resolution %s still pending after retries (%s); left for reconciliation",
                resolution_id, e.code,
            )
            return await self.payments_for(resolution_id)

        if payments and all(p.status == PaymentStatus.COMPLETED.value for p in payments):
            await self.finalize(resolution_id)
        elif any(p.status == PaymentStatus.FAILED.value for p in payments):
            await self.mark_payout_failed(milestone_id, "payout_failed", "One or more payouts failed")
        return payments

    async def payments_for(self, resolution_id: uuid.UUID) -> list[Payment]:
        async with self.store.transaction() as db:
            return await self.store.payments_for_resolution(db, resolution_id)

    async def finalize(self, resolution_id: uuid.UUID) -> None:
        """Close the milestone once every payment of its resolution has settled."""
        async with self.store.transaction() as db:
            resolution = await self.store.get_resolution(db, resolution_id)
            milestone = await self.store.get_milestone(db, resolution.milestone_id, for_update=True)
            payments = await self.store.payments_for_resolution(db, resolution_id)
            if any(p.status != PaymentStatus.COMPLETED.value for p in payments):
                return
            if MilestoneStatus(milestone.status) in TERMINAL:
                return

            cancelling = (
                milestone.cancellation_requested_at is not None
                and resolution.dispute_id is None
                and resolution.outcome == ResolutionOutcome.FULL_REFUND.value
            )
            target = MilestoneStatus.CANCELLED if cancelling else MilestoneStatus.COMPLETED
            if not can_transition(milestone.status, target):
                logger.warning(
                    "Resolution %s settled but milestone %s is %s; not finalizing",
                    resolution_id, milestone.id, milestone.status,
                )
                return
            await apply_transition(db, milestone, target, trigger="payout_settled")
            if cancelling:
                milestone.cancelled_at = utcnow()
            else:
                milestone.completed_at = utcnow()
            milestone.failure_reason = None
            milestone_id = milestone.id
            paid = [
                {"payment_id": str(p.id), "payee_ref": p.payee_ref, "amount": str(p.amount), "direction": p.direction}
                for p in payments
            ]

        for payment in paid:
            await events.emit(EventType.PAYMENT_COMPLETED, {"milestone_id": str(milestone_id), **payment})
        event = EventType.MILESTONE_CANCELLED if cancelling else EventType.MILESTONE_COMPLETED
        await events.emit(event, {"milestone_id": str(milestone_id), "resolution_id": str(resolution_id)})

    async def mark_payout_failed(
        self, milestone_id: uuid.UUID, code: str, detail: str | None = None, actor: str = "system"
    ) -> None:
        async with self.store.transaction() as db:
            milestone = await self.store.get_milestone(db, milestone_id, for_update=True)
            if milestone.status != MilestoneStatus.PAYOUT_FAILED.value:
                await apply_transition(db, milestone, MilestoneStatus.PAYOUT_FAILED, trigger=code, actor=actor)
            milestone.failure_reason = code
            milestone.failure_detail = detail
            self.store.audit(
                db, "milestone", milestone.id, "payout_failed", actor=actor, diff={"code": code, "detail": detail}
            )
        logger.error("Milestone %s needs manual intervention: payout failed (%s)", milestone_id, code)
        await events.emit(
            EventType.PAYMENT_FAILED,
            {"milestone_id": str(milestone_id), "code": code, "next_action": "contact_support"},
        )
