"""Milestone lifecycle graph.

draft -> funded -> pending_verification -> {verified | disputed} -> completed
disputed -> mediation -> completed

``payout_failed`` is the holding state for payouts the provider refused
permanently; only an administrator retry moves a milestone out of it.
"""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from escrowhouse.common.enums import MilestoneStatus
from escrowhouse.common.exceptions import IllegalTransition
from escrowhouse.common.logging import get_logger
from escrowhouse.db.models import Milestone, MilestoneTransition

logger = get_logger("milestones.state_machine")

S = MilestoneStatus

TRANSITIONS: dict[MilestoneStatus, frozenset[MilestoneStatus]] = {
    S.DRAFT: frozenset({S.FUNDED, S.CANCELLED}),
    S.FUNDED: frozenset({S.PENDING_VERIFICATION, S.DISPUTED, S.CANCELLED, S.PAYOUT_FAILED}),
    S.PENDING_VERIFICATION: frozenset({S.VERIFIED, S.DISPUTED}),
    S.VERIFIED: frozenset({S.COMPLETED, S.PAYOUT_FAILED}),
    S.DISPUTED: frozenset({S.MEDIATION, S.COMPLETED, S.PAYOUT_FAILED}),
    S.MEDIATION: frozenset({S.COMPLETED, S.PAYOUT_FAILED}),
    S.PAYOUT_FAILED: frozenset({S.COMPLETED, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
}

TERMINAL = frozenset(status for status, targets in TRANSITIONS.items() if not targets)

# States in which the escrowed funds may be disputed.
DISPUTABLE = frozenset({S.FUNDED, S.PENDING_VERIFICATION})


def can_transition(current: MilestoneStatus | str, target: MilestoneStatus | str) -> bool:
    return MilestoneStatus(target) in TRANSITIONS[MilestoneStatus(current)]


def ensure_transition(current: MilestoneStatus | str, target: MilestoneStatus | str) -> None:
    if not can_transition(current, target):
        raise IllegalTransition(
            f"Milestone cannot move from '{MilestoneStatus(current).value}' to '{MilestoneStatus(target).value}'"
        )


def is_valid_path(statuses: Iterable[MilestoneStatus | str]) -> bool:
    """True when ``statuses`` walks the graph from ``draft`` one edge at a time."""
    path = [MilestoneStatus(s) for s in statuses]
    if not path or path[0] != S.DRAFT:
        return False
    return all(can_transition(a, b) for a, b in zip(path, path[1:]))


async def apply_transition(
    db: AsyncSession,
    milestone: Milestone,
    target: MilestoneStatus,
    *,
    trigger: str,
    actor: str = "system",
) -> MilestoneTransition:
    current = MilestoneStatus(milestone.status)
    ensure_transition(current, target)

    position = (
        await db.execute(
            select(func.count())
            .select_from(MilestoneTransition)
            .where(MilestoneTransition.milestone_id == milestone.id)
        )
    ).scalar_one()

    milestone.status = target.value
    record = MilestoneTransition(
        milestone_id=milestone.id,
        position=position + 1,
        from_status=current.value,
        to_status=target.value,
        trigger=trigger,
        actor=actor,
    )
    db.add(record)
    logger.info(
        "Milestone %s: %s -> %s (%s by %s)", milestone.id, current.value, target.value, trigger, actor
    )
    return record
