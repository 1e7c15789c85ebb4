import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from escrowhouse.common.clock import utcnow
from escrowhouse.common.enums import (
    DecidedBy,
    HoldState,
    MilestoneStatus,
    PartyRole,
    PaymentDirection,
    ResolutionOutcome,
)
from escrowhouse.common.exceptions import (
    FundingFailed,
    IllegalTransition,
    InvalidSplit,
    ProviderUnavailable,
    ValidationError,
)
from escrowhouse.config import settings
from escrowhouse.core.milestones.schemas import ContractFinalized, MilestoneCreate, MilestoneDraft
from escrowhouse.integrations.escrow_provider import MOCK_PAYER_INSUFFICIENT_FUNDS, MOCK_PAYER_INVALID


@pytest.mark.asyncio
async def test_approved_milestone_pays_contractor_in_full(escrow, provider, submitted_milestone, emitted):
    milestone = await submitted_milestone("3000.00")

    approved = await escrow.milestones.approve_milestone(milestone.id, actor="acct_homeowner_1")

    assert approved.status == MilestoneStatus.COMPLETED.value
    assert approved.completed_at is not None
    resolution, payments = await escrow.milestones.get_resolution(milestone.id)
    assert resolution.outcome == ResolutionOutcome.FULL_RELEASE.value
    assert resolution.decided_by == DecidedBy.AUTO.value
    assert [(p.payee_ref, p.amount, p.direction) for p in payments] == [
        ("acct_contractor_1", Decimal("3000.00"), PaymentDirection.PAYOUT.value)
    ]
    assert len(provider.mock_state.transfers) == 1

    names = [name for name, _ in emitted]
    assert names.index("milestone.verified") < names.index("payment.completed") < names.index("milestone.completed")


@pytest.mark.asyncio
async def test_history_records_every_transition_in_order(escrow, submitted_milestone):
    milestone = await submitted_milestone()
    await escrow.milestones.approve_milestone(milestone.id)

    history = await escrow.milestones.get_history(milestone.id)
    assert [(t.position, t.from_status, t.to_status) for t in history] == [
        (1, "draft", "funded"),
        (2, "funded", "pending_verification"),
        (3, "pending_verification", "verified"),
        (4, "verified", "completed"),
    ]


@pytest.mark.asyncio
async def test_mark_complete_sets_deadlines(escrow, funded_milestone):
    milestone = await funded_milestone()
    before = utcnow()

    submitted = await escrow.milestones.mark_complete(milestone.id)

    assert submitted.status == MilestoneStatus.PENDING_VERIFICATION.value
    assert submitted.verification_deadline >= before + timedelta(hours=settings.VERIFICATION_WINDOW_HOURS)
    assert submitted.auto_approval_deadline >= before + timedelta(hours=settings.AUTO_APPROVAL_HOURS)
    assert submitted.dispute_window_closes_at >= before + timedelta(days=settings.DISPUTE_WINDOW_DAYS)


@pytest.mark.asyncio
async def test_draft_cannot_be_marked_complete(escrow, make_milestone):
    milestone = await make_milestone()
    with pytest.raises(IllegalTransition):
        await escrow.milestones.mark_complete(milestone.id)


@pytest.mark.asyncio
async def test_approval_requires_submitted_work(escrow, funded_milestone):
    milestone = await funded_milestone()
    with pytest.raises(IllegalTransition):
        await escrow.milestones.approve_milestone(milestone.id)


@pytest.mark.asyncio
async def test_auto_approval_after_deadline(escrow, submitted_milestone):
    milestone = await submitted_milestone()

    assert await escrow.milestones.check_deadlines(utcnow() + timedelta(hours=1)) == []

    approved = await escrow.milestones.check_deadlines(
        utcnow() + timedelta(hours=settings.AUTO_APPROVAL_HOURS + 1)
    )
    assert approved == [milestone.id]

    current = await escrow.milestones.get_milestone(milestone.id)
    assert current.status == MilestoneStatus.COMPLETED.value
    history = await escrow.milestones.get_history(milestone.id)
    assert history[2].trigger == "auto_approval"
    assert history[2].actor == "system"


@pytest.mark.asyncio
async def test_auto_approval_can_be_disabled(escrow, submitted_milestone, monkeypatch):
    milestone = await submitted_milestone()
    monkeypatch.setattr(settings, "AUTO_APPROVAL_ENABLED", False)

    assert await escrow.milestones.check_deadlines(utcnow() + timedelta(days=30)) == []
    current = await escrow.milestones.get_milestone(milestone.id)
    assert current.status == MilestoneStatus.PENDING_VERIFICATION.value


@pytest.mark.asyncio
async def test_disputed_milestone_is_not_auto_approved(escrow, submitted_milestone):
    milestone = await submitted_milestone()
    await escrow.disputes.open_dispute(
        milestone.id, PartyRole.HOMEOWNER, "acct_homeowner_1", "Cabinets are crooked"
    )

    assert await escrow.milestones.check_deadlines(utcnow() + timedelta(days=4)) == []


@pytest.mark.asyncio
async def test_funding_is_idempotent(escrow, provider, funded_milestone):
    milestone = await funded_milestone()

    again = await escrow.milestones.fund_milestone(milestone.id)

    assert again.status == MilestoneStatus.FUNDED.value
    assert provider.mock_state.charge_count == 1


@pytest.mark.asyncio
async def test_funding_without_payer_is_rejected(escrow, make_milestone):
    milestone = await make_milestone(payer_ref=None)
    with pytest.raises(ValidationError):
        await escrow.milestones.fund_milestone(milestone.id)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payer_ref,code,next_action",
    [
        (MOCK_PAYER_INSUFFICIENT_FUNDS, "insufficient_funds", "retry_funding"),
        (MOCK_PAYER_INVALID, "payer_method_invalid", "update_payment_method"),
    ],
)
async def test_rejected_funding_stays_draft(escrow, make_milestone, payer_ref, code, next_action):
    milestone = await make_milestone(payer_ref=payer_ref)

    with pytest.raises(FundingFailed) as exc_info:
        await escrow.milestones.fund_milestone(milestone.id)

    assert exc_info.value.code == code
    assert exc_info.value.next_action == next_action
    assert exc_info.value.attempts == 1
    current = await escrow.milestones.get_milestone(milestone.id)
    assert current.status == MilestoneStatus.DRAFT.value
    assert current.failure_reason == code


@pytest.mark.asyncio
async def test_funding_can_be_retried_with_a_new_source(escrow, make_milestone):
    milestone = await make_milestone(payer_ref=MOCK_PAYER_INSUFFICIENT_FUNDS)
    with pytest.raises(FundingFailed):
        await escrow.milestones.fund_milestone(milestone.id)

    funded = await escrow.milestones.fund_milestone(milestone.id, payer_ref="pm_card_mastercard")

    assert funded.status == MilestoneStatus.FUNDED.value
    assert funded.failure_reason is None
    assert funded.funding_attempts == 2


@pytest.mark.asyncio
async def test_transient_funding_failure_exhausts_retries(escrow, provider, make_milestone):
    milestone = await make_milestone()

    with patch.object(provider, "hold", side_effect=ProviderUnavailable("provider down")):
        with pytest.raises(FundingFailed) as exc_info:
            await escrow.milestones.fund_milestone(milestone.id)

    assert exc_info.value.code == "provider_unavailable"
    assert exc_info.value.attempts == settings.FUNDING_MAX_ATTEMPTS
    current = await escrow.milestones.get_milestone(milestone.id)
    assert current.status == MilestoneStatus.DRAFT.value
    assert current.funding_attempts == settings.FUNDING_MAX_ATTEMPTS

    # The request may still land at the provider, so the draft stays locked in.
    with pytest.raises(IllegalTransition):
        await escrow.milestones.cancel_milestone(milestone.id)


@pytest.mark.asyncio
async def test_cancel_draft(escrow, make_milestone, emitted):
    milestone = await make_milestone()

    cancelled = await escrow.milestones.cancel_milestone(milestone.id)

    assert cancelled.status == MilestoneStatus.CANCELLED.value
    assert cancelled.cancelled_at is not None
    assert ("milestone.cancelled", {"milestone_id": str(milestone.id)}) in emitted


@pytest.mark.asyncio
async def test_cancel_funded_refunds_homeowner(escrow, provider, funded_milestone):
    milestone = await funded_milestone("1500.00")

    cancelled = await escrow.milestones.cancel_milestone(milestone.id)

    assert cancelled.status == MilestoneStatus.CANCELLED.value
    resolution, payments = await escrow.milestones.get_resolution(milestone.id)
    assert resolution.outcome == ResolutionOutcome.FULL_REFUND.value
    assert [(p.payee_ref, p.amount, p.direction) for p in payments] == [
        ("acct_homeowner_1", Decimal("1500.00"), PaymentDirection.REFUND.value)
    ]
    async with escrow.store.transaction() as db:
        hold = await escrow.store.find_hold_for_milestone(db, milestone.id)
    assert hold.state == HoldState.FULLY_RELEASED.value


@pytest.mark.asyncio
async def test_submitted_milestone_cannot_be_cancelled(escrow, submitted_milestone):
    milestone = await submitted_milestone()
    with pytest.raises(IllegalTransition):
        await escrow.milestones.cancel_milestone(milestone.id)


@pytest.mark.asyncio
async def test_create_milestones_for_contract(escrow):
    contract = ContractFinalized(
        project_id=uuid.uuid4(),
        contract_id=uuid.uuid4(),
        homeowner_ref="acct_homeowner_1",
        contractor_ref="acct_contractor_1",
        payer_ref="pm_card_visa",
        milestones=[
            MilestoneDraft(sequence=2, title="Drywall", amount=Decimal("4000.00")),
            MilestoneDraft(sequence=1, title="Framing", amount=Decimal("6000.00")),
        ],
    )

    created = await escrow.milestones.create_milestones_for_contract(contract)

    assert [(m.sequence, m.title) for m in created] == [(1, "Framing"), (2, "Drywall")]
    assert all(m.status == MilestoneStatus.DRAFT.value for m in created)
    assert all(m.contract_id == contract.contract_id for m in created)


@pytest.mark.asyncio
async def test_duplicate_sequence_is_rejected(escrow, make_milestone):
    project_id = uuid.uuid4()
    await make_milestone(project_id=project_id, sequence=1)
    with pytest.raises(ValidationError):
        await make_milestone(project_id=project_id, sequence=1)


def test_group_payee_shares_must_add_up():
    with pytest.raises(ValueError):
        MilestoneDraft(
            sequence=1,
            title="Roof",
            amount=Decimal("100.00"),
            payees=[
                {"payee_ref": "acct_a", "share_percent": "60"},
                {"payee_ref": "acct_b", "share_percent": "30"},
            ],
        )


def test_group_payees_must_be_distinct():
    with pytest.raises(ValueError):
        MilestoneDraft(
            sequence=1,
            title="Roof",
            amount=Decimal("100.00"),
            payees=[
                {"payee_ref": "acct_a", "share_percent": "50"},
                {"payee_ref": "acct_a", "share_percent": "50"},
            ],
        )


@pytest.mark.parametrize(
    "overrides",
    [
        {"contractor_ref": "acct_homeowner_1"},
        {
            "payees": [
                {"payee_ref": "acct_homeowner_1", "share_percent": "40"},
                {"payee_ref": "acct_contractor_1", "share_percent": "60"},
            ]
        },
    ],
)
def test_homeowner_cannot_be_paid_as_contractor(overrides):
    data = {
        "project_id": uuid.uuid4(),
        "sequence": 1,
        "title": "Deck",
        "amount": Decimal("800.00"),
        "homeowner_ref": "acct_homeowner_1",
        "contractor_ref": "acct_contractor_1",
    }
    data.update(overrides)
    with pytest.raises(ValueError):
        MilestoneCreate(**data)


def test_contract_parties_are_checked_per_milestone():
    with pytest.raises(ValueError):
        ContractFinalized(
            project_id=uuid.uuid4(),
            contract_id=uuid.uuid4(),
            homeowner_ref="acct_homeowner_1",
            contractor_ref="acct_contractor_1",
            milestones=[
                MilestoneDraft(
                    sequence=1,
                    title="Siding",
                    amount=Decimal("900.00"),
                    payees=[
                        {"payee_ref": "acct_contractor_1", "share_percent": "50"},
                        {"payee_ref": "acct_homeowner_1", "share_percent": "50"},
                    ],
                )
            ],
        )


@pytest.mark.asyncio
async def test_approval_with_colliding_payees_changes_nothing(escrow, submitted_milestone):
    milestone = await submitted_milestone(
        payees=[
            {"payee_ref": "acct_gc", "share_percent": "50"},
            {"payee_ref": "acct_sub", "share_percent": "50"},
        ]
    )
    # Rows written before payee checks existed.
    async with escrow.store.transaction() as db:
        row = await escrow.store.get_milestone(db, milestone.id)
        row.payees = [
            {"payee_ref": "acct_gc", "share_percent": "50"},
            {"payee_ref": "acct_gc", "share_percent": "50"},
        ]

    with pytest.raises(InvalidSplit):
        await escrow.milestones.approve_milestone(milestone.id)

    current = await escrow.milestones.get_milestone(milestone.id)
    resolution, payments = await escrow.milestones.get_resolution(milestone.id)
    assert current.status == MilestoneStatus.PENDING_VERIFICATION.value
    assert resolution is None
    assert payments == []


@pytest.mark.asyncio
async def test_hold_uses_milestone_currency(escrow, provider, make_milestone):
    milestone = await make_milestone(currency="eur")

    with patch.object(provider, "hold", wraps=provider.hold) as hold_call:
        await escrow.milestones.fund_milestone(milestone.id)

    assert hold_call.call_args.kwargs["currency"] == "eur"
    async with escrow.store.transaction() as db:
        hold = await escrow.store.find_hold_for_milestone(db, milestone.id)
    assert hold.currency == "eur"
    assert provider.mock_state.holds[hold.provider_ref]["currency"] == "eur"


@pytest.mark.asyncio
async def test_verification_deadline_does_not_trigger_approval(escrow, submitted_milestone, monkeypatch):
    monkeypatch.setattr(settings, "VERIFICATION_WINDOW_HOURS", 1)
    monkeypatch.setattr(settings, "AUTO_APPROVAL_HOURS", 48)
    milestone = await submitted_milestone()
    assert milestone.verification_deadline < milestone.auto_approval_deadline

    assert await escrow.milestones.check_deadlines(utcnow() + timedelta(hours=2)) == []
    current = await escrow.milestones.get_milestone(milestone.id)
    assert current.status == MilestoneStatus.PENDING_VERIFICATION.value

    assert await escrow.milestones.check_deadlines(utcnow() + timedelta(hours=49)) == [milestone.id]
