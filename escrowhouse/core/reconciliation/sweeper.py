"""Reconciliation Sweeper.

Compares in-flight ledger entries with what the escrow provider actually
did, repairs the ledger when the provider has a definite answer, resubmits
idempotent intents the provider never saw, and escalates everything else.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrowhouse.common import events
from escrowhouse.common.clock import to_money, utcnow
from escrowhouse.common.enums import (
    EventType,
    HoldState,
    MilestoneStatus,
    PaymentDirection,
    PaymentStatus,
    ReconciliationAction,
)
from escrowhouse.common.exceptions import ProviderRejected, TransientProviderError
from escrowhouse.common.logging import get_logger
from escrowhouse.config import settings
from escrowhouse.core.escrow.hold_manager import EscrowHoldManager
from escrowhouse.core.escrow.schemas import DistributionLine
from escrowhouse.core.ledger.store import LedgerStore
from escrowhouse.core.milestones.state_machine import apply_transition
from escrowhouse.core.payouts.distributor import PayoutDistributor
from escrowhouse.db.models import EscrowHold, Payment, ReconciliationIssue
from escrowhouse.integrations.escrow_provider import EscrowProviderClient

logger = get_logger("reconciliation.sweeper")


class ReconciliationSweeper:
    def __init__(
        self,
        store: LedgerStore,
        provider: EscrowProviderClient,
        holds: EscrowHoldManager,
        payouts: PayoutDistributor,
    ):
        self.store = store
        self.provider = provider
        self.holds = holds
        self.payouts = payouts

    async def sweep(self, now: datetime | None = None) -> dict[str, int]:
        now = now or utcnow()
        cutoff = now - timedelta(minutes=settings.RECONCILE_GRACE_MINUTES)
        summary: dict[str, int] = defaultdict(int)
        await self._sweep_holds(cutoff, summary)
        await self._sweep_payments(cutoff, summary)
        await self._check_hold_totals(summary)
        logger.info("Reconciliation sweep finished: %s", dict(summary))
        return dict(summary)

    # ------------------------------------------------------------------
    # Holds stuck in ``requested``
    # ------------------------------------------------------------------

    async def _sweep_holds(self, cutoff: datetime, summary: dict[str, int]) -> None:
        async with self.store.transaction() as db:
            result = await db.execute(
                select(EscrowHold.id, EscrowHold.milestone_id).where(
                    EscrowHold.state == HoldState.REQUESTED.value,
                    EscrowHold.updated_at <= cutoff,
                )
            )
            stale = list(result.all())

        for hold_id, milestone_id in stale:
            try:
                async with self.store.locked(milestone_id):
                    summary[await self._reconcile_hold(hold_id, milestone_id)] += 1
            except TransientProviderError as e:
                logger.warning("Provider unavailable while reconciling hold %s: %s", hold_id, e)
                summary["skipped"] += 1

    async def _reconcile_hold(self, hold_id: uuid.UUID, milestone_id: uuid.UUID) -> str:
        async with self.store.transaction() as db:
            hold = await self.store.get_hold(db, hold_id)
            if hold.state != HoldState.REQUESTED.value:
                return "skipped"
            key, amount, payer_ref = hold.idempotency_key, hold.amount, hold.payer_ref

        found = await self.provider.lookup_hold(key)
        if found is not None and found["status"] == "active":
            await self.holds.record_hold_result(hold_id, found)
            await self._finish_funding(milestone_id, hold_id)
            await self._record(
                "escrow_hold", hold_id, "hold_unconfirmed", ReconciliationAction.REPAIRED,
                ledger_state=HoldState.REQUESTED.value, provider_state="active",
            )
            return "repaired"

        if found is not None and found["status"] == "failed":
            async with self.store.transaction() as db:
                hold = await self.store.get_hold(db, hold_id, for_update=True)
                hold.state = HoldState.FAILED.value
                hold.failure_code = "provider_failed"
            await self._record(
                "escrow_hold", hold_id, "hold_unconfirmed", ReconciliationAction.REPAIRED,
                ledger_state=HoldState.REQUESTED.value, provider_state="failed",
            )
            return "repaired"

        if found is not None:
            return "skipped"

        issue = await self._record(
            "escrow_hold", hold_id, "hold_missing", ReconciliationAction.RETRYING,
            ledger_state=HoldState.REQUESTED.value, provider_state=None,
        )
        if issue.attempts > settings.RECONCILE_MAX_ATTEMPTS:
            async with self.store.transaction() as db:
                hold = await self.store.get_hold(db, hold_id, for_update=True)
                hold.state = HoldState.FAILED.value
                hold.failure_code = "reconciliation_exhausted"
            await self._escalate(
                "escrow_hold", hold_id, "hold_missing",
                f"Provider never received hold request after {issue.attempts - 1} resubmission(s)",
                ledger_state=HoldState.REQUESTED.value,
            )
            return "escalated"

        try:
            await self.holds.create_hold(milestone_id, amount, payer_ref)
        except ProviderRejected as e:
            logger.warning("Resubmitted hold %s was rejected: %s", hold_id, e.code)
            return "repaired"
        await self._finish_funding(milestone_id, hold_id)
        return "resubmitted"

    async def _finish_funding(self, milestone_id: uuid.UUID, hold_id: uuid.UUID) -> None:
        async with self.store.transaction() as db:
            milestone = await self.store.get_milestone(db, milestone_id, for_update=True)
            hold = await self.store.get_hold(db, hold_id)
            if milestone.status != MilestoneStatus.DRAFT.value or hold.state != HoldState.ACTIVE.value:
                return
            milestone.failure_reason = None
            milestone.failure_detail = None
            await apply_transition(db, milestone, MilestoneStatus.FUNDED, trigger="reconciled_hold")
        await events.emit(
            EventType.MILESTONE_FUNDED,
            {"milestone_id": str(milestone_id), "hold_id": str(hold_id), "amount": str(hold.amount)},
        )

    # ------------------------------------------------------------------
    # Pending payments
    # ------------------------------------------------------------------

    async def _sweep_payments(self, cutoff: datetime, summary: dict[str, int]) -> None:
        async with self.store.transaction() as db:
            result = await db.execute(
                select(Payment.release_key, Payment.hold_id, Payment.milestone_id)
                .where(Payment.status == PaymentStatus.PENDING.value, Payment.updated_at <= cutoff)
                .distinct()
            )
            batches = list(result.all())

        for release_key, hold_id, milestone_id in batches:
            try:
                async with self.store.locked(milestone_id):
                    summary[await self._reconcile_release(release_key, hold_id, milestone_id)] += 1
            except TransientProviderError as e:
                logger.warning("Provider unavailable while reconciling release %s: %s", release_key, e)
                summary["skipped"] += 1

    async def _reconcile_release(self, release_key: str, hold_id: uuid.UUID, milestone_id: uuid.UUID) -> str:
        async with self.store.transaction() as db:
            hold = await self.store.get_hold(db, hold_id)
            payments = await _release_payments(db, release_key)
            pending = [p for p in payments if p.status == PaymentStatus.PENDING.value]
            if not pending:
                return "skipped"
            hold_ref = hold.provider_ref
            resolution_id = payments[0].resolution_id

        found: dict[str, dict[str, Any]] = {}
        missing: list[Payment] = []
        for payment in pending:
            result = await self.provider.lookup_transfer(hold_ref, payment.idempotency_key, payment.direction)
            if result is None:
                missing.append(payment)
            elif result["status"] != "pending":
                found[payment.idempotency_key] = result

        outcome = "skipped"
        if found:
            await self.holds.apply_provider_results(hold_id, found)
            for key, result in found.items():
                payment = next(p for p in pending if p.idempotency_key == key)
                await self._record(
                    "payment", payment.id, "payment_unconfirmed", ReconciliationAction.REPAIRED,
                    ledger_state=PaymentStatus.PENDING.value, provider_state=result["status"],
                )
            outcome = "repaired"

        failed = [key for key, result in found.items() if result["status"] == "failed"]
        if failed:
            await self._escalate(
                "milestone", milestone_id, "payment_failed_at_provider",
                f"Provider reports {len(failed)} failed transfer(s) for release {release_key}",
                ledger_state=PaymentStatus.PENDING.value, provider_state="failed",
            )
            await self.payouts.mark_payout_failed(milestone_id, "payout_failed", "Provider reported a failed transfer")
            return "escalated"

        if missing:
            outcome = await self._resubmit(release_key, hold_id, milestone_id, payments, missing)

        if resolution_id is not None:
            await self.payouts.finalize(resolution_id)
        return outcome

    async def _resubmit(
        self,
        release_key: str,
        hold_id: uuid.UUID,
        milestone_id: uuid.UUID,
        payments: list[Payment],
        missing: list[Payment],
    ) -> str:
        exhausted = False
        for payment in missing:
            issue = await self._record(
                "payment", payment.id, "payment_missing", ReconciliationAction.RETRYING,
                ledger_state=PaymentStatus.PENDING.value, provider_state=None,
            )
            exhausted = exhausted or issue.attempts > settings.RECONCILE_MAX_ATTEMPTS

        if exhausted:
            async with self.store.transaction() as db:
                for payment in await _release_payments(db, release_key):
                    if payment.status == PaymentStatus.PENDING.value:
                        payment.status = PaymentStatus.FAILED.value
                        payment.failure_code = "reconciliation_exhausted"
            await self._escalate(
                "milestone", milestone_id, "release_missing",
                f"Provider never received release {release_key} after repeated resubmission",
                ledger_state=PaymentStatus.PENDING.value,
            )
            await self.payouts.mark_payout_failed(milestone_id, "reconciliation_exhausted")
            return "escalated"

        first = payments[0]
        lines = [
            DistributionLine(
                payee_ref=p.payee_ref,
                amount=to_money(p.amount),
                direction=PaymentDirection(p.direction),
                idempotency_key=p.idempotency_key,
            )
            for p in payments
        ]
        try:
            await self.holds.release(
                hold_id,
                lines,
                release_key,
                allow_frozen=True,
                resolution_id=first.resolution_id,
                dispute_id=first.dispute_id,
            )
        except ProviderRejected as e:
            await self.payouts.mark_payout_failed(milestone_id, e.code, e.message)
            return "escalated"
        logger.info("Resubmitted release %s (%d transfer(s) unknown to the provider)", release_key, len(missing))
        return "resubmitted"

    # ------------------------------------------------------------------
    # Hold totals
    # ------------------------------------------------------------------

    async def _check_hold_totals(self, summary: dict[str, int]) -> None:
        """Every hold's released amount must equal its completed payments."""
        async with self.store.transaction() as db:
            result = await db.execute(
                select(EscrowHold).where(
                    EscrowHold.state.in_(
                        [
                            HoldState.ACTIVE.value,
                            HoldState.PARTIALLY_RELEASED.value,
                            HoldState.FULLY_RELEASED.value,
                        ]
                    )
                )
            )
            drifted = []
            for hold in result.scalars().all():
                completed = sum(
                    (
                        to_money(p.amount)
                        for p in await self.store.payments_for_hold(db, hold.id)
                        if p.status == PaymentStatus.COMPLETED.value
                    ),
                    Decimal("0.00"),
                )
                released = to_money(hold.released_amount)
                if released != completed or released > to_money(hold.amount):
                    drifted.append((hold.id, released, completed))

        for hold_id, released, completed in drifted:
            if await self._open_issue_exists(hold_id, "hold_drift"):
                continue
            await self._escalate(
                "escrow_hold", hold_id, "hold_drift",
                f"Hold records ${released} released but completed payments total ${completed}",
                ledger_state=str(released), provider_state=str(completed),
            )
            summary["escalated"] += 1

    # ------------------------------------------------------------------
    # Issue bookkeeping
    # ------------------------------------------------------------------

    async def _record(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        kind: str,
        action: ReconciliationAction,
        *,
        ledger_state: str | None = None,
        provider_state: str | None = None,
        detail: str | None = None,
    ) -> ReconciliationIssue:
        async with self.store.transaction() as db:
            issue = await _open_issue(db, entity_id, kind)
            if issue is None:
                issue = ReconciliationIssue(
                    entity_type=entity_type, entity_id=entity_id, kind=kind, attempts=1, action=action.value
                )
                db.add(issue)
            else:
                issue.attempts += 1
                issue.action = action.value
            issue.ledger_state = ledger_state
            issue.provider_state = provider_state
            issue.detail = detail
            issue.resolved = action == ReconciliationAction.REPAIRED
        logger.warning(
            "Reconciliation %s %s: %s (ledger=%s provider=%s) -> %s",
            entity_type, entity_id, kind, ledger_state, provider_state, action.value,
        )
        return issue

    async def _escalate(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        kind: str,
        detail: str,
        *,
        ledger_state: str | None = None,
        provider_state: str | None = None,
    ) -> None:
        await self._record(
            entity_type, entity_id, kind, ReconciliationAction.ESCALATED,
            ledger_state=ledger_state, provider_state=provider_state, detail=detail,
        )
        async with self.store.transaction() as db:
            self.store.audit(db, entity_type, entity_id, f"reconciliation_{kind}", diff={"detail": detail})
        logger.error("Reconciliation escalated %s %s: %s", entity_type, entity_id, detail)
        await events.emit(
            EventType.RECONCILIATION_ESCALATED,
            {"entity_type": entity_type, "entity_id": str(entity_id), "kind": kind, "detail": detail},
        )

    async def _open_issue_exists(self, entity_id: uuid.UUID, kind: str) -> bool:
        async with self.store.transaction() as db:
            return await _open_issue(db, entity_id, kind) is not None

    async def list_issues(self, include_resolved: bool = False) -> list[ReconciliationIssue]:
        async with self.store.transaction() as db:
            query = select(ReconciliationIssue).order_by(ReconciliationIssue.created_at.desc())
            if not include_resolved:
                query = query.where(ReconciliationIssue.resolved.is_(False))
            return list((await db.execute(query)).scalars().all())


async def _open_issue(db: AsyncSession, entity_id: uuid.UUID, kind: str) -> ReconciliationIssue | None:
    result = await db.execute(
        select(ReconciliationIssue).where(
            ReconciliationIssue.entity_id == entity_id,
            ReconciliationIssue.kind == kind,
            ReconciliationIssue.resolved.is_(False),
        )
    )
    return result.scalars().first()


async def _release_payments(db: AsyncSession, release_key: str) -> list[Payment]:
    result = await db.execute(
        select(Payment).where(Payment.release_key == release_key).order_by(Payment.idempotency_key)
    )
    return list(result.scalars().all())
