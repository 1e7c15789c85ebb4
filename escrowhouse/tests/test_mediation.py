from datetime import timedelta
from decimal import Decimal

import pytest

from escrowhouse.common.clock import utcnow
from escrowhouse.common.enums import (
    DecidedBy,
    DisputeStatus,
    HoldState,
    MediationStatus,
    MilestoneStatus,
    PartyRole,
    ResolutionOutcome,
)
from escrowhouse.common.exceptions import IllegalTransition, InvalidSplit, ValidationError
from escrowhouse.config import settings
from escrowhouse.integrations import MediatorAssignmentClient

HOMEOWNER = "acct_homeowner_1"
CONTRACTOR = "acct_contractor_1"
MEDIATOR = "mediator-1"


@pytest.fixture
def in_mediation(escrow, submitted_milestone):
    async def _in_mediation(amount="5000.00"):
        milestone = await submitted_milestone(amount)
        dispute = await escrow.disputes.open_dispute(
            milestone.id, PartyRole.HOMEOWNER, HOMEOWNER, "Tile work does not match the spec sheet"
        )
        await escrow.disputes.escalate_to_mediation(dispute.id, HOMEOWNER)
        async with escrow.store.transaction() as db:
            case = await escrow.store.find_case_for_dispute(db, dispute.id)
        return milestone, dispute, case

    return _in_mediation


@pytest.mark.asyncio
async def test_stalled_negotiation_is_mediated_into_a_split(escrow, submitted_milestone, emitted):
    milestone = await submitted_milestone("5000.00")
    dispute = await escrow.disputes.open_dispute(
        milestone.id, PartyRole.HOMEOWNER, HOMEOWNER, "Tile work does not match the spec sheet",
        evidence_refs=["photo-tile-1"],
    )
    await escrow.disputes.submit_evidence(dispute.id, PartyRole.CONTRACTOR, ["spec-sheet-v2"])
    await escrow.disputes.propose_settlement(dispute.id, PartyRole.HOMEOWNER, Decimal("30"))

    acted = await escrow.disputes.check_deadlines(
        utcnow() + timedelta(days=settings.MEDIATION_ESCALATION_DAYS, hours=1)
    )
    assert acted["escalate"] == [dispute.id]

    async with escrow.store.transaction() as db:
        case = await escrow.store.find_case_for_dispute(db, dispute.id)
    assert case.mediator_ref == MEDIATOR
    assert (await escrow.milestones.get_milestone(milestone.id)).status == MilestoneStatus.MEDIATION.value

    await escrow.mediation.start_review(case.id, MEDIATOR)
    resolution = await escrow.mediation.record_decision(
        case.id, MEDIATOR, Decimal("60"), outcome=ResolutionOutcome.PARTIAL_RELEASE, notes="Rework two rows"
    )

    assert resolution.decided_by == DecidedBy.MEDIATION.value
    assert resolution.decided_by_ref == MEDIATOR
    _, payments = await escrow.milestones.get_resolution(milestone.id)
    by_payee = {p.payee_ref: p for p in payments}
    assert by_payee[CONTRACTOR].amount == Decimal("3000.00")
    assert by_payee[CONTRACTOR].direction == "payout"
    assert by_payee[HOMEOWNER].amount == Decimal("2000.00")
    assert by_payee[HOMEOWNER].direction == "refund"
    assert sum(p.amount for p in payments) == Decimal("5000.00")

    decided = await escrow.mediation.get_case(case.id)
    assert decided.status == MediationStatus.DECIDED.value
    assert decided.decision["homeowner_percent"] == "40"
    assert (await escrow.disputes.get_dispute(dispute.id)).status == DisputeStatus.RESOLVED.value
    assert (await escrow.milestones.get_milestone(milestone.id)).status == MilestoneStatus.COMPLETED.value
    async with escrow.store.transaction() as db:
        hold = await escrow.store.find_hold_for_milestone(db, milestone.id)
    assert hold.state == HoldState.FULLY_RELEASED.value

    resolved = [data for name, data in emitted if name == "dispute.resolved"]
    assert resolved == [
        {
            "dispute_id": str(dispute.id),
            "milestone_id": str(milestone.id),
            "decided_by": "mediation",
            "outcome": "partial_release",
        }
    ]


@pytest.mark.asyncio
async def test_decision_requires_review_by_assigned_mediator(escrow, in_mediation):
    _, _, case = await in_mediation()

    with pytest.raises(IllegalTransition):
        await escrow.mediation.record_decision(case.id, MEDIATOR, Decimal("50"))
    with pytest.raises(ValidationError):
        await escrow.mediation.start_review(case.id, "mediator-7")

    reviewing = await escrow.mediation.start_review(case.id, MEDIATOR)
    assert reviewing.status == MediationStatus.IN_REVIEW.value
    assert reviewing.review_started_at is not None


@pytest.mark.asyncio
async def test_decision_percentage_must_match_outcome(escrow, in_mediation):
    _, _, case = await in_mediation()
    await escrow.mediation.start_review(case.id, MEDIATOR)

    with pytest.raises(InvalidSplit):
        await escrow.mediation.record_decision(case.id, MEDIATOR, Decimal("60"), outcome=ResolutionOutcome.FULL_RELEASE)
    with pytest.raises(InvalidSplit):
        await escrow.mediation.record_decision(case.id, MEDIATOR, Decimal("120"))


@pytest.mark.asyncio
async def test_case_is_decided_once(escrow, in_mediation):
    milestone, _, case = await in_mediation("1000.00")
    await escrow.mediation.start_review(case.id, MEDIATOR)
    await escrow.mediation.record_decision(case.id, MEDIATOR, Decimal("100"))

    with pytest.raises(IllegalTransition):
        await escrow.mediation.record_decision(case.id, MEDIATOR, Decimal("0"))
    resolution, _ = await escrow.milestones.get_resolution(milestone.id)
    assert resolution.outcome == ResolutionOutcome.FULL_RELEASE.value


@pytest.mark.asyncio
async def test_unstaffed_case_is_blocked_then_assigned(escrow, in_mediation, emitted):
    escrow.mediation.assigner = MediatorAssignmentClient(pool=[])
    _, _, case = await in_mediation()
    assert case.mediator_ref is None

    for _ in range(settings.MEDIATOR_ASSIGNMENT_ALERT_ATTEMPTS - 1):
        assert await escrow.mediation.retry_unassigned() == []

    blocked = await escrow.mediation.get_case(case.id)
    assert blocked.blocked is True
    assert blocked.assignment_attempts == settings.MEDIATOR_ASSIGNMENT_ALERT_ATTEMPTS
    assert blocked.last_assignment_error == "No mediator available"
    assert len([name for name, _ in emitted if name == "mediation.blocked"]) == 1

    escrow.mediation.assigner = MediatorAssignmentClient(pool=["mediator-9"])
    assert await escrow.mediation.retry_unassigned() == [case.id]
    staffed = await escrow.mediation.get_case(case.id)
    assert staffed.mediator_ref == "mediator-9"
    assert staffed.blocked is False


@pytest.mark.asyncio
async def test_dispute_in_mediation_without_case_gets_one(escrow, submitted_milestone):
    milestone = await submitted_milestone()
    dispute = await escrow.disputes.open_dispute(milestone.id, PartyRole.HOMEOWNER, HOMEOWNER, "Leaking sink")
    async with escrow.store.transaction() as db:
        row = await escrow.store.get_dispute(db, dispute.id)
        row.status = DisputeStatus.MEDIATION.value

    assigned = await escrow.mediation.retry_unassigned()

    async with escrow.store.transaction() as db:
        case = await escrow.store.find_case_for_dispute(db, dispute.id)
    assert assigned == [case.id]
    assert case.mediator_ref == MEDIATOR
