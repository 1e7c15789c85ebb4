"""Milestone commands: funding, completion, approval, cancellation."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from escrowhouse.common import events
from escrowhouse.common.clock import as_utc, utcnow
from escrowhouse.common.enums import DecidedBy, EventType, HoldState, MilestoneStatus, PaymentStatus
from escrowhouse.common.exceptions import (
    EscrowError,
    FundingFailed,
    IllegalTransition,
    ManualInterventionRequired,
    ProviderRejected,
    TransientProviderError,
    ValidationError,
)
from escrowhouse.common.logging import get_logger
from escrowhouse.common.retry import retry_transient
from escrowhouse.config import settings
from escrowhouse.core.escrow.hold_manager import EscrowHoldManager, load_milestone_hold
from escrowhouse.core.ledger.store import LedgerStore
from escrowhouse.core.milestones.schemas import ContractFinalized, MilestoneCreate
from escrowhouse.core.milestones.state_machine import apply_transition, ensure_transition
from escrowhouse.core.payouts.distributor import PayoutDistributor
from escrowhouse.core.payouts.resolutions import record_resolution
from escrowhouse.db.models import Milestone, MilestoneTransition, Payment, Resolution

logger = get_logger("milestones.service")


class MilestoneService:
    def __init__(self, store: LedgerStore, holds: EscrowHoldManager, payouts: PayoutDistributor):
        self.store = store
        self.holds = holds
        self.payouts = payouts

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_milestone(self, data: MilestoneCreate) -> Milestone:
        milestone = Milestone(
            project_id=data.project_id,
            contract_id=data.contract_id,
            sequence=data.sequence,
            title=data.title,
            amount=data.amount,
            currency=data.currency,
            due_date=data.due_date,
            homeowner_ref=data.homeowner_ref,
            contractor_ref=data.contractor_ref,
            payer_ref=data.payer_ref,
            payees=[{"payee_ref": p.payee_ref, "share_percent": str(p.share_percent)} for p in data.payees],
            status=MilestoneStatus.DRAFT.value,
        )
        try:
            async with self.store.transaction() as db:
                db.add(milestone)
                await db.flush()
        except IntegrityError as e:
            raise ValidationError(
                f"Project {data.project_id} already has a milestone with sequence {data.sequence}"
            ) from e
        logger.info("Created milestone %s (%s, $%s)", milestone.id, milestone.title, milestone.amount)
        return milestone

    async def create_milestones_for_contract(self, contract: ContractFinalized) -> list[Milestone]:
        """Create the draft milestones of a finalized contract in one transaction."""
        sequences = [m.sequence for m in contract.milestones]
        if len(set(sequences)) != len(sequences):
            raise ValidationError("Milestone sequences must be unique within a contract")

        created = []
        try:
            async with self.store.transaction() as db:
                for draft in sorted(contract.milestones, key=lambda m: m.sequence):
                    milestone = Milestone(
                        project_id=contract.project_id,
                        contract_id=contract.contract_id,
                        sequence=draft.sequence,
                        title=draft.title,
                        amount=draft.amount,
                        currency=contract.currency,
                        due_date=draft.due_date,
                        homeowner_ref=contract.homeowner_ref,
                        contractor_ref=contract.contractor_ref,
                        payer_ref=contract.payer_ref,
                        payees=[
                            {"payee_ref": p.payee_ref, "share_percent": str(p.share_percent)} for p in draft.payees
                        ],
                        status=MilestoneStatus.DRAFT.value,
                    )
                    db.add(milestone)
                    created.append(milestone)
                await db.flush()
        except IntegrityError as e:
            raise ValidationError(f"Project {contract.project_id} already has milestones for this contract") from e
        logger.info("Created %d milestone(s) for contract %s", len(created), contract.contract_id)
        return created

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    async def fund_milestone(
        self, milestone_id: uuid.UUID, payer_ref: str | None = None, actor: str = "homeowner"
    ) -> Milestone:
        async with self.store.locked(milestone_id):
            async with self.store.transaction() as db:
                milestone = await self.store.get_milestone(db, milestone_id, for_update=True)
                _guard_manual(milestone)
                if milestone.status == MilestoneStatus.FUNDED.value:
                    return milestone
                ensure_transition(milestone.status, MilestoneStatus.FUNDED)
                payer_ref = payer_ref or milestone.payer_ref
                if not payer_ref:
                    raise ValidationError("A funding source is required to fund a milestone")
                milestone.payer_ref = payer_ref
                amount = milestone.amount

            attempts = 0

            async def attempt():
                nonlocal attempts
                attempts += 1
                return await self.holds.create_hold(milestone_id, amount, payer_ref)

            try:
                hold = await retry_transient(
                    attempt, attempts=settings.FUNDING_MAX_ATTEMPTS, label=f"fund milestone {milestone_id}"
                )
            except (ProviderRejected, TransientProviderError) as e:
                await self._record_funding_failure(milestone_id, e, attempts)
                raise FundingFailed(e, attempts) from e

            async with self.store.transaction() as db:
                milestone = await self.store.get_milestone(db, milestone_id, for_update=True)
                milestone.funding_attempts += attempts
                milestone.failure_reason = None
                milestone.failure_detail = None
                await apply_transition(db, milestone, MilestoneStatus.FUNDED, trigger="hold_active", actor=actor)

        await events.emit(
            EventType.MILESTONE_FUNDED,
            {"milestone_id": str(milestone_id), "hold_id": str(hold.id), "amount": str(hold.amount)},
        )
        return milestone

    async def _record_funding_failure(self, milestone_id: uuid.UUID, error: EscrowError, attempts: int) -> None:
        async with self.store.transaction() as db:
            milestone = await self.store.get_milestone(db, milestone_id, for_update=True)
            milestone.funding_attempts += attempts
            milestone.failure_reason = error.code
            milestone.failure_detail = error.message
        logger.warning(
            "Funding milestone %s failed after %d attempt(s): %s", milestone_id, attempts, error.code
        )

    # ------------------------------------------------------------------
    # Completion and approval
    # ------------------------------------------------------------------

    async def mark_complete(self, milestone_id: uuid.UUID, actor: str = "contractor") -> Milestone:
        async with self.store.locked(milestone_id):
            async with self.store.transaction() as db:
                milestone = await self.store.get_milestone(db, milestone_id, for_update=True)
                _guard_manual(milestone)
                await apply_transition(
                    db, milestone, MilestoneStatus.PENDING_VERIFICATION, trigger="marked_complete", actor=actor
                )
                now = utcnow()
                milestone.submitted_at = now
                milestone.verification_deadline = now + timedelta(hours=settings.VERIFICATION_WINDOW_HOURS)
                milestone.auto_approval_deadline = now + timedelta(hours=settings.AUTO_APPROVAL_HOURS)
                milestone.dispute_window_closes_at = now + timedelta(days=settings.DISPUTE_WINDOW_DAYS)
        return milestone

    async def approve_milestone(self, milestone_id: uuid.UUID, actor: str = "homeowner") -> Milestone:
        async with self.store.locked(milestone_id):
            await self._approve(milestone_id, actor, trigger="homeowner_approval")
        return await self.get_milestone(milestone_id)

    async def _approve(
        self, milestone_id: uuid.UUID, actor: str, trigger: str, now: datetime | None = None
    ) -> Resolution | None:
        """Verify a milestone and pay the contractor in full. Caller holds the lock.

        With ``now`` set this is the auto-approval path, and quietly skips a
        milestone that changed since the sweep selected it.
        """
        verified = False
        async with self.store.transaction() as db:
            milestone = await self.store.get_milestone(db, milestone_id, for_update=True)
            if now is not None:
                deadline = as_utc(milestone.auto_approval_deadline)
                if milestone.status != MilestoneStatus.PENDING_VERIFICATION.value or deadline is None or deadline > now:
                    return None
            _guard_manual(milestone)

            if milestone.status == MilestoneStatus.VERIFIED.value:
                resolution = await self.store.find_resolution_for_milestone(db, milestone.id)
            else:
                await apply_transition(db, milestone, MilestoneStatus.VERIFIED, trigger=trigger, actor=actor)
                verified = True
                hold = await load_milestone_hold(self.store, db, milestone)
                resolution = await record_resolution(
                    self.store, db, milestone, hold, 100, DecidedBy.AUTO, decided_by_ref=actor
                )
            if resolution is None:
                raise ManualInterventionRequired(f"Verified milestone {milestone.id} has no resolution")

        if verified:
            await events.emit(
                EventType.MILESTONE_VERIFIED,
                {"milestone_id": str(milestone_id), "trigger": trigger, "actor": actor},
            )
        await self.payouts.execute(resolution.id)
        return resolution

    async def check_deadlines(self, now: datetime | None = None) -> list[uuid.UUID]:
        """Auto-approve milestones whose approval deadline passed with no dispute."""
        if not settings.AUTO_APPROVAL_ENABLED:
            return []
        now = now or utcnow()
        async with self.store.transaction() as db:
            result = await db.execute(
                select(Milestone.id).where(
                    Milestone.status == MilestoneStatus.PENDING_VERIFICATION.value,
                    Milestone.auto_approval_deadline <= now,
                )
            )
            due = list(result.scalars().all())

        approved = []
        for milestone_id in due:
            try:
                async with self.store.locked(milestone_id):
                    resolution = await self._approve(milestone_id, "system", trigger="auto_approval", now=now)
            except EscrowError as e:
                logger.warning("Auto-approval of milestone %s failed: %s", milestone_id, e)
                continue
            if resolution is not None:
                approved.append(milestone_id)
        if approved:
            logger.info("Auto-approved %d milestone(s)", len(approved))
        return approved

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_milestone(self, milestone_id: uuid.UUID, actor: str = "homeowner") -> Milestone:
        """Cancel before work is submitted. A funded milestone is refunded in full first."""
        refund = None
        async with self.store.locked(milestone_id):
            async with self.store.transaction() as db:
                milestone = await self.store.get_milestone(db, milestone_id, for_update=True)
                _guard_manual(milestone)
                ensure_transition(milestone.status, MilestoneStatus.CANCELLED)
                if milestone.status == MilestoneStatus.DRAFT.value:
                    hold = await self.store.find_hold_for_milestone(db, milestone.id)
                    if hold is not None and hold.state == HoldState.REQUESTED.value:
                        raise IllegalTransition(
                            f"Milestone {milestone.id} has a funding request in flight; try again shortly"
                        )
                    await apply_transition(db, milestone, MilestoneStatus.CANCELLED, trigger="cancelled", actor=actor)
                    milestone.cancelled_at = utcnow()
                else:
                    milestone.cancellation_requested_at = utcnow()
                    hold = await load_milestone_hold(self.store, db, milestone)
                    refund = await record_resolution(
                        self.store, db, milestone, hold, 0, DecidedBy.AUTO, decided_by_ref=actor
                    )

            if refund is None:
                await events.emit(EventType.MILESTONE_CANCELLED, {"milestone_id": str(milestone_id)})
            else:
                await self.payouts.execute(refund.id)
        return await self.get_milestone(milestone_id)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def retry_payout(self, milestone_id: uuid.UUID, admin_ref: str) -> Milestone:
        """Resubmit the failed payouts of a milestone parked in ``payout_failed``."""
        async with self.store.locked(milestone_id):
            async with self.store.transaction() as db:
                milestone = await self.store.get_milestone(db, milestone_id, for_update=True)
                if milestone.status != MilestoneStatus.PAYOUT_FAILED.value:
                    raise IllegalTransition(f"Milestone {milestone.id} is {milestone.status}, not payout_failed")
                resolution = await self.store.find_resolution_for_milestone(db, milestone.id)
                if resolution is None:
                    raise ManualInterventionRequired(f"Milestone {milestone.id} has no resolution to pay out")
                reset = 0
                for payment in await self.store.payments_for_resolution(db, resolution.id):
                    if payment.status == PaymentStatus.FAILED.value:
                        payment.status = PaymentStatus.PENDING.value
                        payment.failure_code = None
                        reset += 1
                self.store.audit(
                    db, "milestone", milestone.id, "payout_retry", actor=admin_ref, diff={"payments_reset": reset}
                )
            logger.info("Admin %s retrying %d payout(s) for milestone %s", admin_ref, reset, milestone_id)
            await self.payouts.execute(resolution.id)
        return await self.get_milestone(milestone_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_milestone(self, milestone_id: uuid.UUID) -> Milestone:
        async with self.store.transaction() as db:
            return await self.store.get_milestone(db, milestone_id)

    async def get_history(self, milestone_id: uuid.UUID) -> list[MilestoneTransition]:
        async with self.store.transaction() as db:
            await self.store.get_milestone(db, milestone_id)
            return await self.store.transitions_for_milestone(db, milestone_id)

    async def get_resolution(self, milestone_id: uuid.UUID) -> tuple[Resolution | None, list[Payment]]:
        async with self.store.transaction() as db:
            await self.store.get_milestone(db, milestone_id)
            resolution = await self.store.find_resolution_for_milestone(db, milestone_id)
            if resolution is None:
                return None, []
            return resolution, await self.store.payments_for_resolution(db, resolution.id)


def _guard_manual(milestone: Milestone) -> None:
    if milestone.status == MilestoneStatus.PAYOUT_FAILED.value:
        raise ManualInterventionRequired(
            f"Milestone {milestone.id} is awaiting an administrator after a failed payout"
        )
