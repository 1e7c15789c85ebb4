"""Escrow Hold Manager.

Wraps the escrow provider. The ledger records intent before the provider is
called and records the outcome afterwards, so a crash between the two leaves
a ``requested`` hold or ``pending`` payments for the reconciliation sweeper
rather than money the ledger does not know about.
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrowhouse.common.clock import to_money, utcnow
from escrowhouse.common.enums import HoldState, PaymentStatus
from escrowhouse.common.exceptions import (
    HoldFrozen,
    HoldNotActive,
    OverReleaseAttempt,
    ProviderRejected,
    ProviderUnavailable,
    TransientProviderError,
    ValidationError,
)
from escrowhouse.common.logging import get_logger
from escrowhouse.common.retry import retry_transient
from escrowhouse.config import settings
from escrowhouse.core.escrow.schemas import DistributionLine
from escrowhouse.core.ledger.store import LedgerStore
from escrowhouse.db.models import EscrowHold, Milestone, Payment
from escrowhouse.integrations.escrow_provider import EscrowProviderClient

logger = get_logger("escrow.hold_manager")

RELEASABLE = (HoldState.ACTIVE.value, HoldState.PARTIALLY_RELEASED.value)


class EscrowHoldManager:
    def __init__(self, store: LedgerStore, provider: EscrowProviderClient):
        self.store = store
        self.provider = provider

    # ------------------------------------------------------------------
    # Holds
    # ------------------------------------------------------------------

    async def create_hold(self, milestone_id: uuid.UUID, amount: Decimal, payer_ref: str) -> EscrowHold:
        """Reserve ``amount`` from the payer for a milestone.

        Idempotent by milestone: a second call returns the existing hold and
        never charges the payer again.
        """
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Hold amount must be positive")

        async with self.store.locks.lock(f"hold-create:{milestone_id}"):
            async with self.store.transaction() as db:
                hold = await self.store.find_hold_for_milestone(db, milestone_id, for_update=True)
                currency = (await self.store.get_milestone(db, milestone_id)).currency
                if hold is not None and hold.state not in (HoldState.REQUESTED.value, HoldState.FAILED.value):
                    logger.info("Hold for milestone %s already exists (%s)", milestone_id, hold.state)
                    return hold

                if hold is None:
                    hold = EscrowHold(
                        milestone_id=milestone_id,
                        amount=amount,
                        currency=currency,
                        payer_ref=payer_ref,
                        state=HoldState.REQUESTED.value,
                    )
                    db.add(hold)
                elif hold.state == HoldState.FAILED.value:
                    hold.request_generation += 1
                    hold.state = HoldState.REQUESTED.value
                    hold.failure_code = None
                    hold.amount = amount
                    hold.payer_ref = payer_ref
                    hold.currency = currency
                elif hold.payer_ref != payer_ref or to_money(hold.amount) != amount:
                    raise ValidationError(
                        "A hold request for this milestone is already in flight with different terms"
                    )
                await db.flush()
                hold_id, idempotency_key = hold.id, hold.idempotency_key

            try:
                result = await self.provider.hold(
                    amount,
                    payer_ref,
                    idempotency_key,
                    currency=currency,
                    metadata={"milestone_id": str(milestone_id), "hold_id": str(hold_id)},
                )
            except ProviderRejected as e:
                async with self.store.transaction() as db:
                    hold = await self.store.get_hold(db, hold_id, for_update=True)
                    hold.state = HoldState.FAILED.value
                    hold.failure_code = e.code
                logger.warning("Hold for milestone %s rejected: %s", milestone_id, e.code)
                raise

            return await self.record_hold_result(hold_id, result)

    async def record_hold_result(self, hold_id: uuid.UUID, result: dict[str, Any]) -> EscrowHold:
        async with self.store.transaction() as db:
            hold = await self.store.get_hold(db, hold_id, for_update=True)
            hold.provider_ref = result["id"]
            if result["status"] == "active":
                hold.state = HoldState.ACTIVE.value
                hold.activated_at = utcnow()
                logger.info("Hold %s active at provider (%s)", hold.id, hold.provider_ref)
            elif result["status"] == "failed":
                hold.state = HoldState.FAILED.value
                hold.failure_code = "provider_failed"
            pending = hold.state == HoldState.REQUESTED.value

        if pending:
            raise ProviderUnavailable(f"Hold {hold_id} is still pending at the provider")
        return hold

    async def freeze(self, hold_id: uuid.UUID) -> EscrowHold:
        """Mark a hold as subject to dispute. No-op when already frozen."""
        async with self.store.transaction() as db:
            hold = await self.store.get_hold(db, hold_id, for_update=True)
            return self.freeze_in(hold)

    def freeze_in(self, hold: EscrowHold) -> EscrowHold:
        if hold.state not in RELEASABLE:
            raise HoldNotActive(f"Hold {hold.id} is {hold.state}; only active holds can be frozen")
        if not hold.frozen:
            hold.frozen = True
            hold.frozen_at = utcnow()
            logger.info("Hold %s frozen", hold.id)
        return hold

    async def get_hold(self, hold_id: uuid.UUID) -> EscrowHold:
        async with self.store.transaction() as db:
            return await self.store.get_hold(db, hold_id)

    # ------------------------------------------------------------------
    # Releases
    # ------------------------------------------------------------------

    async def release(
        self,
        hold_id: uuid.UUID,
        distribution: list[DistributionLine],
        idempotency_key: str,
        *,
        allow_frozen: bool = False,
        resolution_id: uuid.UUID | None = None,
        dispute_id: uuid.UUID | None = None,
    ) -> list[Payment]:
        """Release funds to one or more payees in a single atomic step.

        At most once per ``idempotency_key``: a repeated call returns the
        payments created by the first one. Calls for the same hold are
        serialized.
        """
        if not distribution:
            raise ValidationError("A release needs at least one payee")

        async with self.store.locks.lock(f"hold:{hold_id}"):
            payments, over_release = await self._record_intent(
                hold_id, distribution, idempotency_key, allow_frozen, resolution_id, dispute_id
            )
            if over_release is not None:
                await self._report_over_release(hold_id, idempotency_key, over_release)

            pending = [p for p in payments if p.status == PaymentStatus.PENDING.value]
            if not pending:
                logger.info("Release %s already settled; nothing to do", idempotency_key)
                return payments

            async with self.store.transaction() as db:
                hold_ref = (await self.store.get_hold(db, hold_id)).provider_ref
            await self._settle(hold_id, hold_ref, pending, idempotency_key)

        async with self.store.transaction() as db:
            return await self._payments_for_release(db, idempotency_key)

    async def _record_intent(
        self,
        hold_id: uuid.UUID,
        distribution: list[DistributionLine],
        release_key: str,
        allow_frozen: bool,
        resolution_id: uuid.UUID | None,
        dispute_id: uuid.UUID | None,
    ) -> tuple[list[Payment], dict[str, str] | None]:
        keyed = [
            (line.idempotency_key or f"{release_key}:{index}:{line.payee_ref}", line)
            for index, line in enumerate(distribution)
        ]
        if len({key for key, _ in keyed}) != len(keyed):
            raise ValidationError(f"Release {release_key} repeats a payment key")

        async with self.store.transaction() as db:
            hold = await self.store.get_hold(db, hold_id, for_update=True)
            existing = await self._payments_for_release(db, release_key)
            if existing:
                if {p.idempotency_key for p in existing} != {key for key, _ in keyed}:
                    raise ValidationError(
                        f"Idempotency key '{release_key}' was already used for a different distribution"
                    )
                return existing, None

            if hold.state not in RELEASABLE:
                raise HoldNotActive(f"Hold {hold.id} is {hold.state}; nothing can be released")
            if hold.frozen and not allow_frozen:
                raise HoldFrozen(f"Hold {hold.id} is frozen pending a dispute resolution")

            requested = sum((to_money(line.amount) for _, line in keyed), Decimal("0.00"))
            available = to_money(hold.amount) - to_money(hold.released_amount) - await self._reserved(db, hold.id)
            if requested > available:
                return [], {"requested": str(requested), "available": str(available)}

            milestone = await self.store.get_milestone(db, hold.milestone_id)
            payments = []
            for key, line in keyed:
                payment = Payment(
                    milestone_id=hold.milestone_id,
                    hold_id=hold.id,
                    dispute_id=dispute_id,
                    resolution_id=resolution_id,
                    payee_ref=line.payee_ref,
                    amount=to_money(line.amount),
                    currency=milestone.currency,
                    direction=line.direction.value,
                    status=PaymentStatus.PENDING.value,
                    idempotency_key=key,
                    release_key=release_key,
                )
                db.add(payment)
                payments.append(payment)
            await db.flush()
            logger.info(
                "Recorded release intent %s on hold %s: %d payment(s), $%s",
                release_key, hold.id, len(payments), requested,
            )
            return payments, None

    async def _reserved(self, db: AsyncSession, hold_id: uuid.UUID) -> Decimal:
        result = await db.execute(
            select(Payment.amount).where(
                Payment.hold_id == hold_id, Payment.status == PaymentStatus.PENDING.value
            )
        )
        return sum((to_money(a) for a in result.scalars().all()), Decimal("0.00"))

    async def _report_over_release(self, hold_id: uuid.UUID, release_key: str, detail: dict[str, str]) -> None:
        logger.error(
            "INVARIANT VIOLATION: release %s on hold %s asks for $%s with $%s available",
            release_key, hold_id, detail["requested"], detail["available"],
        )
        async with self.store.transaction() as db:
            self.store.audit(
                db, "escrow_hold", hold_id, "over_release_attempt", diff={"release_key": release_key, **detail}
            )
        raise OverReleaseAttempt(
            f"Release of ${detail['requested']} exceeds the ${detail['available']} remaining on hold {hold_id}",
            context=detail,
        )

    async def _settle(self, hold_id: uuid.UUID, hold_ref: str | None, pending: list[Payment], release_key: str) -> None:
        remaining = {p.idempotency_key: p for p in pending}

        async def submit() -> list[dict[str, Any]]:
            if not remaining:
                return []
            return await self.provider.release(
                hold_ref, [_transfer(p) for p in remaining.values()], release_key
            )

        async def requery(attempt: int, error: TransientProviderError) -> None:
            # The outcome of the failed call is unknown: learn what landed
            # before resubmitting anything.
            landed = await self._lookup_landed(hold_ref, list(remaining.values()))
            if landed:
                await self.apply_provider_results(hold_id, landed)
                for key in landed:
                    remaining.pop(key, None)

        try:
            results = await retry_transient(
                submit,
                attempts=settings.PAYOUT_MAX_ATTEMPTS,
                label=f"release {release_key}",
                before_retry=requery,
            )
        except ProviderRejected as e:
            landed = await self._lookup_landed(hold_ref, list(remaining.values()))
            if landed:
                await self.apply_provider_results(hold_id, landed)
            await self._mark_failed([k for k in remaining if k not in landed], e.code)
            raise
        except TransientProviderError:
            await self._bump_attempts(list(remaining), settings.PAYOUT_MAX_ATTEMPTS)
            raise

        await self.apply_provider_results(hold_id, {r["idempotency_key"]: r for r in results})

    async def _lookup_landed(self, hold_ref: str | None, payments: list[Payment]) -> dict[str, dict[str, Any]]:
        landed = {}
        for payment in payments:
            try:
                found = await self.provider.lookup_transfer(hold_ref, payment.idempotency_key, payment.direction)
            except TransientProviderError as e:
                logger.warning("Could not re-query transfer %s: %s", payment.idempotency_key, e)
                continue
            if found is not None:
                landed[payment.idempotency_key] = found
        return landed

    async def apply_provider_results(self, hold_id: uuid.UUID, results: dict[str, dict[str, Any]]) -> None:
        """Record provider outcomes for pending payments and update the hold totals."""
        async with self.store.transaction() as db:
            hold = await self.store.get_hold(db, hold_id, for_update=True)
            rows = await db.execute(
                select(Payment).where(Payment.idempotency_key.in_(list(results))).with_for_update()
            )
            for payment in rows.scalars().all():
                if payment.status != PaymentStatus.PENDING.value:
                    continue
                result = results[payment.idempotency_key]
                payment.provider_ref = result.get("id") or payment.provider_ref
                if result["status"] == "completed":
                    payment.status = PaymentStatus.COMPLETED.value
                    payment.completed_at = utcnow()
                    hold.released_amount = to_money(hold.released_amount) + to_money(payment.amount)
                elif result["status"] == "failed":
                    payment.status = PaymentStatus.FAILED.value
                    payment.failure_code = result.get("failure_code") or "provider_failed"

            if to_money(hold.released_amount) > to_money(hold.amount):
                logger.error("INVARIANT VIOLATION: hold %s released beyond its amount", hold.id)
                raise OverReleaseAttempt(f"Hold {hold.id} would be released beyond its amount")
            sync_hold_state(hold)

    async def _mark_failed(self, keys: list[str], code: str) -> None:
        if not keys:
            return
        async with self.store.transaction() as db:
            rows = await db.execute(select(Payment).where(Payment.idempotency_key.in_(keys)))
            for payment in rows.scalars().all():
                if payment.status == PaymentStatus.PENDING.value:
                    payment.status = PaymentStatus.FAILED.value
                    payment.failure_code = code
                    payment.attempts += 1
        logger.warning("Marked %d payment(s) failed: %s", len(keys), code)

    async def _bump_attempts(self, keys: list[str], count: int) -> None:
        async with self.store.transaction() as db:
            rows = await db.execute(select(Payment).where(Payment.idempotency_key.in_(keys)))
            for payment in rows.scalars().all():
                payment.attempts += count

    async def _payments_for_release(self, db: AsyncSession, release_key: str) -> list[Payment]:
        result = await db.execute(
            select(Payment).where(Payment.release_key == release_key).order_by(Payment.idempotency_key)
        )
        return list(result.scalars().all())


def sync_hold_state(hold: EscrowHold) -> None:
    released = to_money(hold.released_amount)
    if released <= 0:
        return
    if released == to_money(hold.amount):
        hold.state = HoldState.FULLY_RELEASED.value
    else:
        hold.state = HoldState.PARTIALLY_RELEASED.value


def _transfer(payment: Payment) -> dict[str, Any]:
    return {
        "payee_ref": payment.payee_ref,
        "amount": str(payment.amount),
        "direction": payment.direction,
        "currency": payment.currency,
        "idempotency_key": payment.idempotency_key,
    }


async def load_milestone_hold(store: LedgerStore, db: AsyncSession, milestone: Milestone) -> EscrowHold:
    hold = await store.find_hold_for_milestone(db, milestone.id, for_update=True)
    if hold is None:
        raise HoldNotActive(f"Milestone {milestone.id} has no escrow hold")
    return hold
