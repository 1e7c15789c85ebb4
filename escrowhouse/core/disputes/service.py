"""Dispute Coordinator.

Collects evidence, tries an automatic resolution once the evidence window
closes, and hands anything ambiguous or stalled to mediation.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrowhouse.common import events
from escrowhouse.common.clock import as_utc, to_money, utcnow
from escrowhouse.common.enums import (
    DecidedBy,
    DisputeStatus,
    DisputeType,
    EventType,
    MilestoneStatus,
    PartyRole,
    ProposalResponse,
)
from escrowhouse.common.exceptions import (
    DeadlineExpired,
    DisputeWindowClosed,
    EscrowError,
    IllegalTransition,
    InvalidSplit,
    ManualInterventionRequired,
    TransientProviderError,
    ValidationError,
)
from escrowhouse.common.logging import get_logger
from escrowhouse.config import settings
from escrowhouse.core.disputes.policy import ResolutionPolicy
from escrowhouse.core.disputes.workflow import (
    ESCALATABLE,
    ESCALATE,
    NEGOTIABLE,
    OPEN_STATUSES,
    PROPOSAL_TIMEOUT,
    REVIEW,
    append_history,
    build_snapshot,
    due_rule,
    has_conflicting_evidence,
    other_party,
)
from escrowhouse.core.escrow.hold_manager import EscrowHoldManager, load_milestone_hold
from escrowhouse.core.ledger.store import LedgerStore
from escrowhouse.core.mediation.service import MediationWorkflow
from escrowhouse.core.milestones.state_machine import DISPUTABLE, apply_transition
from escrowhouse.core.payouts.distributor import PayoutDistributor
from escrowhouse.core.payouts.resolutions import record_resolution
from escrowhouse.db.models import Dispute, DisputeMessage, MediationCase, Milestone, Resolution

logger = get_logger("disputes.service")


class DisputeCoordinator:
    def __init__(
        self,
        store: LedgerStore,
        holds: EscrowHoldManager,
        payouts: PayoutDistributor,
        mediation: MediationWorkflow,
        policy: ResolutionPolicy,
    ):
        self.store = store
        self.holds = holds
        self.payouts = payouts
        self.mediation = mediation
        self.policy = policy

    # ------------------------------------------------------------------
    # Opening and evidence
    # ------------------------------------------------------------------

    async def open_dispute(
        self,
        milestone_id: uuid.UUID,
        opened_by: PartyRole,
        opened_by_ref: str,
        reason: str,
        evidence_refs: list[str] | None = None,
        dispute_type: DisputeType = DisputeType.MILESTONE_COMPLETION,
        note: str | None = None,
    ) -> Dispute:
        """Dispute a funded or submitted milestone.

        The hold is frozen in the same transaction and before the dispute row
        is written, so no reader can see an open dispute over releasable funds.
        """
        if not reason.strip():
            raise ValidationError("A dispute needs a reason")

        async with self.store.locked(milestone_id):
            async with self.store.transaction() as db:
                milestone = await self.store.get_milestone(db, milestone_id, for_update=True)
                if milestone.status == MilestoneStatus.PAYOUT_FAILED.value:
                    raise ManualInterventionRequired(f"Milestone {milestone.id} is awaiting an administrator")
                if MilestoneStatus(milestone.status) not in DISPUTABLE:
                    raise IllegalTransition(f"A {milestone.status} milestone cannot be disputed")
                now = utcnow()
                closes_at = as_utc(milestone.dispute_window_closes_at)
                if closes_at is not None and now > closes_at:
                    raise DisputeWindowClosed(f"The dispute window for milestone {milestone.id} closed at {closes_at}")

                hold = await load_milestone_hold(self.store, db, milestone)
                self.holds.freeze_in(hold)
                await db.flush()

                evidence = [
                    {"ref": ref, "submitted_by": opened_by.value, "submitted_at": now.isoformat(), "note": note}
                    for ref in evidence_refs or []
                ]
                dispute = Dispute(
                    milestone_id=milestone.id,
                    opened_by=opened_by.value,
                    opened_by_ref=opened_by_ref,
                    dispute_type=dispute_type.value,
                    reason=reason,
                    status=DisputeStatus.OPENED.value,
                    evidence=evidence,
                    opened_at=now,
                    last_activity_at=now,
                    evidence_deadline=now + timedelta(hours=settings.EVIDENCE_WINDOW_HOURS),
                    escalation_deadline=now + timedelta(days=settings.MEDIATION_ESCALATION_DAYS),
                    proposal_responses={},
                    history=[{"action": "opened", "by": opened_by.value, "at": now.isoformat()}],
                )
                db.add(dispute)
                await db.flush()
                dispute.status = DisputeStatus.EVIDENCE_COLLECTION.value
                append_history(dispute, "evidence_collection", until=dispute.evidence_deadline.isoformat())
                await apply_transition(
                    db, milestone, MilestoneStatus.DISPUTED, trigger="dispute_opened", actor=opened_by_ref
                )

        await events.emit(
            EventType.MILESTONE_DISPUTED,
            {
                "milestone_id": str(milestone_id),
                "dispute_id": str(dispute.id),
                "opened_by": opened_by.value,
                "dispute_type": dispute_type.value,
            },
        )
        return dispute

    async def submit_evidence(
        self,
        dispute_id: uuid.UUID,
        party: PartyRole,
        refs: list[str],
        note: str | None = None,
    ) -> Dispute:
        if not refs:
            raise ValidationError("At least one evidence reference is required")
        milestone_id = await self.store.milestone_id_for_dispute(dispute_id)
        async with self.store.locked(milestone_id):
            async with self.store.transaction() as db:
                dispute = await self.store.get_dispute(db, dispute_id, for_update=True)
                if dispute.status != DisputeStatus.EVIDENCE_COLLECTION.value:
                    raise IllegalTransition(f"Dispute {dispute.id} is {dispute.status}; evidence is closed")
                now = utcnow()
                if now >= as_utc(dispute.evidence_deadline):
                    raise DeadlineExpired(f"The evidence window for dispute {dispute.id} has closed")
                dispute.evidence = [
                    *(dispute.evidence or []),
                    *(
                        {"ref": ref, "submitted_by": party.value, "submitted_at": now.isoformat(), "note": note}
                        for ref in refs
                    ),
                ]
                _touch(dispute, now)
                append_history(dispute, "evidence_submitted", by=party.value, count=len(refs))
        return dispute

    async def post_message(
        self, dispute_id: uuid.UUID, author_role: PartyRole, author_ref: str, body: str
    ) -> DisputeMessage:
        if not body.strip():
            raise ValidationError("Message body is empty")
        milestone_id = await self.store.milestone_id_for_dispute(dispute_id)
        async with self.store.locked(milestone_id):
            async with self.store.transaction() as db:
                dispute = await self.store.get_dispute(db, dispute_id, for_update=True)
                if DisputeStatus(dispute.status) not in OPEN_STATUSES:
                    raise IllegalTransition(f"Dispute {dispute.id} is {dispute.status}; the conversation is closed")
                message = DisputeMessage(
                    dispute_id=dispute.id, author_role=author_role.value, author_ref=author_ref, body=body
                )
                db.add(message)
                _touch(dispute, utcnow())
        return message

    async def list_messages(self, dispute_id: uuid.UUID) -> list[DisputeMessage]:
        async with self.store.transaction() as db:
            await self.store.get_dispute(db, dispute_id)
            result = await db.execute(
                select(DisputeMessage)
                .where(DisputeMessage.dispute_id == dispute_id)
                .order_by(DisputeMessage.created_at)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Direct resolution
    # ------------------------------------------------------------------

    async def propose_settlement(
        self, dispute_id: uuid.UUID, party: PartyRole, contractor_percent: Decimal, rationale: str | None = None
    ) -> Dispute:
        percent = Decimal(str(contractor_percent))
        if percent < 0 or percent > 100:
            raise InvalidSplit(f"Contractor percentage must be between 0 and 100, got {percent}")
        milestone_id = await self.store.milestone_id_for_dispute(dispute_id)
        async with self.store.locked(milestone_id):
            async with self.store.transaction() as db:
                dispute = await self.store.get_dispute(db, dispute_id, for_update=True)
                if DisputeStatus(dispute.status) not in NEGOTIABLE:
                    raise IllegalTransition(f"Dispute {dispute.id} is {dispute.status}; settlement is closed")
                dispute.status = DisputeStatus.DIRECT_RESOLUTION.value
                dispute.proposal = {
                    "source": party.value,
                    "contractor_percent": str(percent),
                    "rationale": rationale,
                }
                dispute.proposal_responses = {party.value: ProposalResponse.ACCEPTED.value}
                _touch(dispute, utcnow())
                append_history(dispute, "settlement_proposed", by=party.value, contractor_percent=str(percent))
        return dispute

    async def accept_settlement(self, dispute_id: uuid.UUID, party: PartyRole, party_ref: str) -> Resolution:
        milestone_id = await self.store.milestone_id_for_dispute(dispute_id)
        async with self.store.locked(milestone_id):
            async with self.store.transaction() as db:
                dispute = await self.store.get_dispute(db, dispute_id, for_update=True)
                if dispute.status != DisputeStatus.DIRECT_RESOLUTION.value or not dispute.proposal:
                    raise IllegalTransition(f"Dispute {dispute.id} has no settlement offer to accept")
                if dispute.proposal["source"] == party.value:
                    raise ValidationError("A settlement offer must be accepted by the other party")
                dispute.proposal_responses = {
                    **(dispute.proposal_responses or {}),
                    party.value: ProposalResponse.ACCEPTED.value,
                }
                resolution = await self._resolve(
                    db,
                    dispute,
                    Decimal(dispute.proposal["contractor_percent"]),
                    DecidedBy.NEGOTIATION,
                    party_ref,
                )
            await self._after_resolution(dispute, resolution)
        return resolution

    # ------------------------------------------------------------------
    # Automatic resolution
    # ------------------------------------------------------------------

    async def respond_to_proposal(
        self, dispute_id: uuid.UUID, party: PartyRole, party_ref: str, accept: bool
    ) -> Dispute:
        milestone_id = await self.store.milestone_id_for_dispute(dispute_id)
        resolution, case_id = None, None
        async with self.store.locked(milestone_id):
            async with self.store.transaction() as db:
                dispute = await self.store.get_dispute(db, dispute_id, for_update=True)
                if dispute.status != DisputeStatus.AUTO_RESOLVED.value:
                    raise IllegalTransition(f"Dispute {dispute.id} has no pending proposal")
                now = utcnow()
                if dispute.resolution_deadline is not None and now >= as_utc(dispute.resolution_deadline):
                    raise DeadlineExpired(f"The response window for dispute {dispute.id} has closed")

                answer = ProposalResponse.ACCEPTED if accept else ProposalResponse.REJECTED
                responses = {**(dispute.proposal_responses or {}), party.value: answer.value}
                dispute.proposal_responses = responses
                dispute.last_activity_at = now
                append_history(dispute, "proposal_response", by=party.value, response=answer.value)

                if not accept:
                    case_id = await self._escalate(db, dispute, "proposal_rejected", party_ref)
                elif responses.get(other_party(party).value) == ProposalResponse.ACCEPTED.value:
                    resolution = await self._resolve(
                        db, dispute, Decimal(dispute.proposal["contractor_percent"]), DecidedBy.AUTO, "rules_engine"
                    )

            if resolution is not None:
                await self._after_resolution(dispute, resolution)
        if case_id is not None:
            await self._after_escalation(dispute, case_id, "proposal_rejected")
        return dispute

    async def escalate_to_mediation(self, dispute_id: uuid.UUID, requested_by: str) -> Dispute:
        milestone_id = await self.store.milestone_id_for_dispute(dispute_id)
        async with self.store.locked(milestone_id):
            async with self.store.transaction() as db:
                dispute = await self.store.get_dispute(db, dispute_id, for_update=True)
                case_id = await self._escalate(db, dispute, "requested", requested_by)
        await self._after_escalation(dispute, case_id, "requested")
        return dispute

    async def check_deadlines(self, now: datetime | None = None) -> dict[str, list[uuid.UUID]]:
        """Apply every elapsed dispute deadline. Returns the disputes acted on, by action."""
        now = now or utcnow()
        async with self.store.transaction() as db:
            result = await db.execute(
                select(Dispute).where(Dispute.status.in_([s.value for s in OPEN_STATUSES]))
            )
            due = [(d.id, d.milestone_id, rule) for d in result.scalars().all() if (rule := due_rule(d, now))]

        acted: dict[str, list[uuid.UUID]] = {REVIEW: [], ESCALATE: [], PROPOSAL_TIMEOUT: []}
        for dispute_id, milestone_id, rule in due:
            try:
                if rule.action == REVIEW:
                    done = await self._review(dispute_id, milestone_id, now)
                elif rule.action == ESCALATE:
                    done = await self._escalate_stalled(dispute_id, milestone_id, now)
                else:
                    done = await self._proposal_timeout(dispute_id, milestone_id, now)
            except EscrowError as e:
                logger.warning("Deadline action %s on dispute %s failed: %s", rule.action, dispute_id, e)
                continue
            if done:
                logger.info("Dispute %s: %s", dispute_id, rule.notification_message)
                acted[rule.action].append(dispute_id)
        return acted

    async def _review(self, dispute_id: uuid.UUID, milestone_id: uuid.UUID, now: datetime) -> bool:
        async with self.store.locked(milestone_id):
            async with self.store.transaction() as db:
                dispute = await self.store.get_dispute(db, dispute_id, for_update=True)
                if due_rule(dispute, now) is None or DisputeStatus(dispute.status) not in (
                    DisputeStatus.EVIDENCE_COLLECTION,
                    DisputeStatus.UNDER_REVIEW,
                ):
                    return False
                if dispute.status == DisputeStatus.EVIDENCE_COLLECTION.value:
                    dispute.status = DisputeStatus.UNDER_REVIEW.value
                    append_history(dispute, "under_review", at=now.isoformat())
                dispute.review_attempts += 1
                hold = await self.store.find_hold_for_milestone(db, milestone_id)
                snapshot = build_snapshot(dispute, to_money(hold.amount) - to_money(hold.released_amount))

            if has_conflicting_evidence(snapshot):
                proposal, reason = None, "conflicting_evidence"
            else:
                try:
                    proposal = await self.policy.evaluate(snapshot)
                except TransientProviderError as e:
                    logger.warning("Rules engine unavailable for dispute %s; will retry: %s", dispute_id, e)
                    return False
                reason = "unresolvable"

            case_id = None
            async with self.store.transaction() as db:
                dispute = await self.store.get_dispute(db, dispute_id, for_update=True)
                if proposal is None:
                    case_id = await self._escalate(db, dispute, reason, "rules_engine")
                else:
                    dispute.status = DisputeStatus.AUTO_RESOLVED.value
                    dispute.proposal = {
                        "source": "rules_engine",
                        "contractor_percent": str(proposal.contractor_percent),
                        "rationale": proposal.rationale,
                        "rule": proposal.rule,
                    }
                    dispute.proposal_responses = {}
                    dispute.resolution_deadline = now + timedelta(hours=settings.PROPOSAL_RESPONSE_HOURS)
                    append_history(
                        dispute,
                        "auto_proposal",
                        rule=proposal.rule,
                        contractor_percent=str(proposal.contractor_percent),
                    )
        if case_id is not None:
            await self._after_escalation(dispute, case_id, reason)
        return True

    async def _escalate_stalled(self, dispute_id: uuid.UUID, milestone_id: uuid.UUID, now: datetime) -> bool:
        async with self.store.locked(milestone_id):
            async with self.store.transaction() as db:
                dispute = await self.store.get_dispute(db, dispute_id, for_update=True)
                rule = due_rule(dispute, now)
                if rule is None or rule.action != ESCALATE:
                    return False
                case_id = await self._escalate(db, dispute, "inactivity", "system")
        await self._after_escalation(dispute, case_id, "inactivity")
        return True

    async def _proposal_timeout(self, dispute_id: uuid.UUID, milestone_id: uuid.UUID, now: datetime) -> bool:
        resolution, case_id = None, None
        async with self.store.locked(milestone_id):
            async with self.store.transaction() as db:
                dispute = await self.store.get_dispute(db, dispute_id, for_update=True)
                rule = due_rule(dispute, now)
                if rule is None or rule.action != PROPOSAL_TIMEOUT:
                    return False
                responses = dict(dispute.proposal_responses or {})
                rejected = ProposalResponse.REJECTED.value in responses.values()
                if settings.PROPOSAL_SILENCE_IS_ACCEPTANCE and not rejected:
                    for party in PartyRole:
                        responses.setdefault(party.value, ProposalResponse.ACCEPTED.value)
                    dispute.proposal_responses = responses
                    append_history(dispute, "silence_accepted", at=now.isoformat())
                    resolution = await self._resolve(
                        db, dispute, Decimal(dispute.proposal["contractor_percent"]), DecidedBy.AUTO, "rules_engine"
                    )
                else:
                    case_id = await self._escalate(db, dispute, "proposal_unanswered", "system")
            if resolution is not None:
                await self._after_resolution(dispute, resolution)
        if case_id is not None:
            await self._after_escalation(dispute, case_id, "proposal_unanswered")
        return True

    # ------------------------------------------------------------------
    # Shared steps (caller holds the milestone lock and an open transaction)
    # ------------------------------------------------------------------

    async def _escalate(self, db: AsyncSession, dispute: Dispute, reason: str, actor: str) -> uuid.UUID:
        if DisputeStatus(dispute.status) not in ESCALATABLE:
            raise IllegalTransition(f"Dispute {dispute.id} is {dispute.status} and cannot go to mediation")
        milestone = await self.store.get_milestone(db, dispute.milestone_id, for_update=True)
        now = utcnow()
        dispute.status = DisputeStatus.MEDIATION.value
        dispute.escalated_at = now
        append_history(dispute, "escalated", reason=reason, by=actor, at=now.isoformat())
        await apply_transition(db, milestone, MilestoneStatus.MEDIATION, trigger=f"escalated:{reason}", actor=actor)
        case = await self.store.find_case_for_dispute(db, dispute.id)
        if case is None:
            case = self.mediation.create_case_in(db, dispute)
            await db.flush()
        return case.id

    async def _after_escalation(self, dispute: Dispute, case_id: uuid.UUID, reason: str) -> MediationCase:
        await events.emit(
            EventType.DISPUTE_ESCALATED,
            {
                "dispute_id": str(dispute.id),
                "milestone_id": str(dispute.milestone_id),
                "case_id": str(case_id),
                "reason": reason,
            },
        )
        return await self.mediation.assign(case_id)

    async def _resolve(
        self, db: AsyncSession, dispute: Dispute, contractor_percent: Decimal, decided_by: DecidedBy, actor: str
    ) -> Resolution:
        milestone = await self.store.get_milestone(db, dispute.milestone_id, for_update=True)
        hold = await load_milestone_hold(self.store, db, milestone)
        resolution = await record_resolution(
            self.store,
            db,
            milestone,
            hold,
            contractor_percent,
            decided_by,
            dispute_id=dispute.id,
            decided_by_ref=actor,
        )
        dispute.status = DisputeStatus.RESOLVED.value
        dispute.resolved_at = utcnow()
        append_history(dispute, "resolved", decided_by=decided_by.value, outcome=resolution.outcome)
        return resolution

    async def _after_resolution(self, dispute: Dispute, resolution: Resolution) -> None:
        await events.emit(
            EventType.DISPUTE_RESOLVED,
            {
                "dispute_id": str(dispute.id),
                "milestone_id": str(dispute.milestone_id),
                "decided_by": resolution.decided_by,
                "outcome": resolution.outcome,
            },
        )
        await self.payouts.execute(resolution.id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_dispute(self, dispute_id: uuid.UUID) -> Dispute:
        async with self.store.transaction() as db:
            return await self.store.get_dispute(db, dispute_id)

    async def get_milestone_for(self, dispute_id: uuid.UUID) -> Milestone:
        async with self.store.transaction() as db:
            dispute = await self.store.get_dispute(db, dispute_id)
            return await self.store.get_milestone(db, dispute.milestone_id)


def _touch(dispute: Dispute, now: datetime) -> None:
    dispute.last_activity_at = now
    dispute.escalation_deadline = now + timedelta(days=settings.MEDIATION_ESCALATION_DAYS)
