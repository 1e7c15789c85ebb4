from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import select

from escrowhouse.common.enums import DecidedBy, MilestoneStatus, PaymentStatus
from escrowhouse.common.exceptions import (
    IllegalTransition,
    InvariantViolation,
    ManualInterventionRequired,
    ProviderUnavailable,
)
from escrowhouse.core.escrow.hold_manager import load_milestone_hold
from escrowhouse.core.payouts.distributor import distribution_for, payment_key, release_key
from escrowhouse.core.payouts.resolutions import record_resolution
from escrowhouse.db.models import AuditLog
from escrowhouse.integrations import escrow_provider
from escrowhouse.integrations.escrow_provider import MOCK_PAYEE_INVALID


@pytest.mark.asyncio
async def test_rejected_payout_parks_milestone_for_an_admin(escrow, submitted_milestone, emitted):
    milestone = await submitted_milestone(contractor_ref=MOCK_PAYEE_INVALID)

    result = await escrow.milestones.approve_milestone(milestone.id)

    assert result.status == MilestoneStatus.PAYOUT_FAILED.value
    assert result.failure_reason == "payout_destination_invalid"
    _, payments = await escrow.milestones.get_resolution(milestone.id)
    assert [p.status for p in payments] == [PaymentStatus.FAILED.value]
    assert payments[0].failure_code == "payout_destination_invalid"
    failed = [data for name, data in emitted if name == "payment.failed"]
    assert failed[0]["next_action"] == "contact_support"

    with pytest.raises(ManualInterventionRequired):
        await escrow.milestones.cancel_milestone(milestone.id)


@pytest.mark.asyncio
async def test_admin_retry_settles_with_the_same_keys(escrow, provider, submitted_milestone, monkeypatch):
    milestone = await submitted_milestone(contractor_ref=MOCK_PAYEE_INVALID)
    await escrow.milestones.approve_milestone(milestone.id)
    _, before = await escrow.milestones.get_resolution(milestone.id)

    # Payee repaired their payout account at the provider.
    monkeypatch.setattr(escrow_provider, "MOCK_PAYEE_INVALID", "acct_closed_2019")
    retried = await escrow.milestones.retry_payout(milestone.id, "ops-admin")

    assert retried.status == MilestoneStatus.COMPLETED.value
    _, after = await escrow.milestones.get_resolution(milestone.id)
    assert [p.id for p in after] == [p.id for p in before]
    assert [p.idempotency_key for p in after] == [p.idempotency_key for p in before]
    assert after[0].status == PaymentStatus.COMPLETED.value
    assert len(provider.mock_state.transfers) == 1

    async with escrow.store.transaction() as db:
        result = await db.execute(
            select(AuditLog.action).where(AuditLog.entity_id == milestone.id).order_by(AuditLog.created_at)
        )
        actions = list(result.scalars().all())
    assert actions == ["payout_failed", "payout_retry"]


@pytest.mark.asyncio
async def test_retry_payout_requires_payout_failed(escrow, submitted_milestone):
    milestone = await submitted_milestone()
    with pytest.raises(IllegalTransition):
        await escrow.milestones.retry_payout(milestone.id, "ops-admin")


@pytest.mark.asyncio
async def test_execute_is_idempotent(escrow, provider, submitted_milestone):
    milestone = await submitted_milestone()
    await escrow.milestones.approve_milestone(milestone.id)
    resolution, payments = await escrow.milestones.get_resolution(milestone.id)

    again = await escrow.payouts.execute(resolution.id)

    assert [p.id for p in again] == [p.id for p in payments]
    assert len(provider.mock_state.transfers) == 1
    assert (await escrow.milestones.get_milestone(milestone.id)).status == MilestoneStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_payment_keys_are_scoped_to_the_resolution(escrow, submitted_milestone):
    milestone = await submitted_milestone()
    await escrow.milestones.approve_milestone(milestone.id)
    resolution, payments = await escrow.milestones.get_resolution(milestone.id)

    assert payments[0].idempotency_key == payment_key(resolution, "acct_contractor_1")
    assert payments[0].idempotency_key == f"payout:{milestone.id}:acct_contractor_1:{resolution.id}"
    assert payments[0].release_key == release_key(resolution)
    assert [line.payee_ref for line in distribution_for(resolution)] == ["acct_contractor_1"]


@pytest.mark.asyncio
async def test_group_bid_pays_every_payee(escrow, submitted_milestone):
    milestone = await submitted_milestone(
        "1000.01",
        payees=[
            {"payee_ref": "acct_gc", "share_percent": "50"},
            {"payee_ref": "acct_electric", "share_percent": "50"},
        ],
    )

    await escrow.milestones.approve_milestone(milestone.id)

    _, payments = await escrow.milestones.get_resolution(milestone.id)
    assert {p.payee_ref: p.amount for p in payments} == {
        "acct_gc": Decimal("500.01"),
        "acct_electric": Decimal("500.00"),
    }


@pytest.mark.asyncio
async def test_second_resolution_for_a_milestone_is_refused(escrow, submitted_milestone):
    milestone = await submitted_milestone()
    await escrow.milestones.approve_milestone(milestone.id)

    with pytest.raises(InvariantViolation):
        async with escrow.store.transaction() as db:
            row = await escrow.store.get_milestone(db, milestone.id)
            hold = await load_milestone_hold(escrow.store, db, row)
            await record_resolution(escrow.store, db, row, hold, 0, DecidedBy.AUTO)


@pytest.mark.asyncio
async def test_exhausted_transient_failure_leaves_payments_pending(escrow, provider, submitted_milestone):
    milestone = await submitted_milestone()

    with patch.object(provider, "release", side_effect=ProviderUnavailable("provider down")):
        result = await escrow.milestones.approve_milestone(milestone.id)

    assert result.status == MilestoneStatus.VERIFIED.value
    _, payments = await escrow.milestones.get_resolution(milestone.id)
    assert [p.status for p in payments] == [PaymentStatus.PENDING.value]
    assert payments[0].attempts > 0
