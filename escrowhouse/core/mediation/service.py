"""Mediation Workflow: human arbitration of disputes that could not be settled."""

from __future__ import annotations

import uuid
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrowhouse.common import events
from escrowhouse.common.clock import to_money, utcnow
from escrowhouse.common.enums import (
    DecidedBy,
    DisputeStatus,
    EventType,
    MediationStatus,
    ResolutionOutcome,
)
from escrowhouse.common.exceptions import (
    IllegalTransition,
    InvalidSplit,
    TransientProviderError,
    ValidationError,
)
from escrowhouse.common.logging import get_logger
from escrowhouse.config import settings
from escrowhouse.core.disputes.workflow import append_history
from escrowhouse.core.escrow.hold_manager import load_milestone_hold
from escrowhouse.core.ledger.store import LedgerStore
from escrowhouse.core.payouts.distributor import PayoutDistributor
from escrowhouse.core.payouts.resolutions import record_resolution
from escrowhouse.core.payouts.splits import outcome_for
from escrowhouse.db.models import Dispute, MediationCase, Resolution
from escrowhouse.integrations.mediators import MediatorAssignmentClient

logger = get_logger("mediation.service")


class MediationWorkflow:
    def __init__(self, store: LedgerStore, payouts: PayoutDistributor, assigner: MediatorAssignmentClient):
        self.store = store
        self.payouts = payouts
        self.assigner = assigner

    def create_case_in(self, db: AsyncSession, dispute: Dispute) -> MediationCase:
        case = MediationCase(
            dispute_id=dispute.id,
            milestone_id=dispute.milestone_id,
            status=MediationStatus.ASSIGNED.value,
        )
        db.add(case)
        logger.info("Opened mediation case for dispute %s", dispute.id)
        return case

    async def open_case(self, dispute_id: uuid.UUID) -> MediationCase:
        """Create the case for a dispute in mediation, if missing, and try to staff it."""
        milestone_id = await self.store.milestone_id_for_dispute(dispute_id)
        async with self.store.locked(milestone_id):
            async with self.store.transaction() as db:
                dispute = await self.store.get_dispute(db, dispute_id)
                if dispute.status != DisputeStatus.MEDIATION.value:
                    raise IllegalTransition(f"Dispute {dispute.id} is {dispute.status}, not in mediation")
                case = await self.store.find_case_for_dispute(db, dispute.id)
                if case is None:
                    case = self.create_case_in(db, dispute)
                    await db.flush()
                case_id = case.id
        return await self.assign(case_id)

    async def assign(self, case_id: uuid.UUID) -> MediationCase:
        async with self.store.locks.lock(f"mediation:{case_id}"):
            async with self.store.transaction() as db:
                case = await self.store.get_case(db, case_id)
                if case.mediator_ref is not None:
                    return case
                dispute = await self.store.get_dispute(db, case.dispute_id)
                summary = {
                    "dispute_id": str(dispute.id),
                    "milestone_id": str(dispute.milestone_id),
                    "dispute_type": dispute.dispute_type,
                    "opened_by": dispute.opened_by,
                }

            mediator_ref, error = None, None
            try:
                mediator_ref = await self.assigner.assign(case_id, summary)
            except TransientProviderError as e:
                error = e.message
            if mediator_ref is None and error is None:
                error = "No mediator available"

            newly_blocked = False
            async with self.store.transaction() as db:
                case = await self.store.get_case(db, case_id, for_update=True)
                case.assignment_attempts += 1
                if mediator_ref is not None:
                    case.mediator_ref = mediator_ref
                    case.last_assignment_error = None
                    case.blocked = False
                    logger.info("Mediator %s assigned to case %s", mediator_ref, case.id)
                else:
                    case.last_assignment_error = error
                    logger.warning(
                        "Mediator assignment for case %s failed (attempt %d): %s",
                        case.id, case.assignment_attempts, error,
                    )
                    if not case.blocked and case.assignment_attempts >= settings.MEDIATOR_ASSIGNMENT_ALERT_ATTEMPTS:
                        case.blocked = True
                        newly_blocked = True
                        self.store.audit(
                            db,
                            "mediation_case",
                            case.id,
                            "mediation_blocked",
                            diff={"attempts": case.assignment_attempts, "error": error},
                        )

        if newly_blocked:
            logger.error("Mediation case %s blocked: no mediator after %d attempts", case_id, case.assignment_attempts)
            await events.emit(
                EventType.MEDIATION_BLOCKED,
                {"case_id": str(case_id), "dispute_id": str(case.dispute_id), "attempts": case.assignment_attempts},
            )
        return case

    async def retry_unassigned(self) -> list[uuid.UUID]:
        """Staff every case still waiting for a mediator. Returns the cases assigned."""
        async with self.store.transaction() as db:
            orphaned = await db.execute(
                select(Dispute.id).where(
                    Dispute.status == DisputeStatus.MEDIATION.value,
                    ~Dispute.id.in_(select(MediationCase.dispute_id)),
                )
            )
            orphaned_ids = list(orphaned.scalars().all())
            waiting = await db.execute(
                select(MediationCase.id).where(
                    MediationCase.status == MediationStatus.ASSIGNED.value,
                    MediationCase.mediator_ref.is_(None),
                )
            )
            case_ids = list(waiting.scalars().all())

        assigned = []
        for dispute_id in orphaned_ids:
            case = await self.open_case(dispute_id)
            if case.mediator_ref:
                assigned.append(case.id)
        for case_id in case_ids:
            case = await self.assign(case_id)
            if case.mediator_ref:
                assigned.append(case.id)
        return assigned

    async def start_review(self, case_id: uuid.UUID, mediator_ref: str) -> MediationCase:
        milestone_id = await self.store.milestone_id_for_case(case_id)
        async with self.store.locked(milestone_id):
            async with self.store.transaction() as db:
                case = await self.store.get_case(db, case_id, for_update=True)
                _check_mediator(case, mediator_ref)
                if case.status != MediationStatus.ASSIGNED.value:
                    raise IllegalTransition(f"Mediation case {case.id} is {case.status}")
                case.status = MediationStatus.IN_REVIEW.value
                case.review_started_at = utcnow()
        logger.info("Mediator %s started review of case %s", mediator_ref, case_id)
        return case

    async def record_decision(
        self,
        case_id: uuid.UUID,
        mediator_ref: str,
        contractor_percent: Decimal,
        outcome: ResolutionOutcome | None = None,
        notes: str | None = None,
    ) -> Resolution:
        percent = Decimal(str(contractor_percent))
        if percent < 0 or percent > 100:
            raise InvalidSplit(f"Contractor percentage must be between 0 and 100, got {percent}")
        if outcome is not None and outcome_for(percent) != outcome:
            raise InvalidSplit(f"A {outcome.value} decision cannot give the contractor {percent}%")

        milestone_id = await self.store.milestone_id_for_case(case_id)
        async with self.store.locked(milestone_id):
            async with self.store.transaction() as db:
                case = await self.store.get_case(db, case_id, for_update=True)
                _check_mediator(case, mediator_ref)
                if case.status != MediationStatus.IN_REVIEW.value:
                    raise IllegalTransition(f"Mediation case {case.id} is {case.status}; start the review first")
                dispute = await self.store.get_dispute(db, case.dispute_id, for_update=True)
                milestone = await self.store.get_milestone(db, case.milestone_id, for_update=True)
                hold = await load_milestone_hold(self.store, db, milestone)

                resolution = await record_resolution(
                    self.store,
                    db,
                    milestone,
                    hold,
                    percent,
                    DecidedBy.MEDIATION,
                    dispute_id=dispute.id,
                    decided_by_ref=mediator_ref,
                )
                now = utcnow()
                case.status = MediationStatus.DECIDED.value
                case.decided_at = now
                case.decision = {
                    "outcome": resolution.outcome,
                    "contractor_percent": str(percent),
                    "homeowner_percent": str(100 - percent),
                    "notes": notes,
                }
                dispute.status = DisputeStatus.RESOLVED.value
                dispute.resolved_at = now
                append_history(
                    dispute,
                    "mediation_decided",
                    mediator=mediator_ref,
                    outcome=resolution.outcome,
                    contractor_share=str(to_money(resolution.contractor_share)),
                    homeowner_share=str(to_money(resolution.homeowner_share)),
                )

            await events.emit(
                EventType.DISPUTE_RESOLVED,
                {
                    "dispute_id": str(dispute.id),
                    "milestone_id": str(milestone_id),
                    "decided_by": DecidedBy.MEDIATION.value,
                    "outcome": resolution.outcome,
                },
            )
            await self.payouts.execute(resolution.id, hold.id)
        return resolution

    async def get_case(self, case_id: uuid.UUID) -> MediationCase:
        async with self.store.transaction() as db:
            return await self.store.get_case(db, case_id)


def _check_mediator(case: MediationCase, mediator_ref: str) -> None:
    if case.mediator_ref is None:
        raise IllegalTransition(f"Mediation case {case.id} has no mediator yet")
    if case.mediator_ref != mediator_ref:
        raise ValidationError(f"Mediation case {case.id} is assigned to another mediator")
