from datetime import datetime
from decimal import Decimal
from typing import Any

from escrowhouse.common.clock import as_utc
from escrowhouse.common.enums import DisputeStatus, PartyRole
from escrowhouse.common.logging import get_logger
from escrowhouse.core.disputes.schemas import DeadlineRule, DisputeSnapshot, EvidenceItem
from escrowhouse.db.models import Dispute

logger = get_logger("disputes.workflow")

REVIEW = "review"
ESCALATE = "escalate"
PROPOSAL_TIMEOUT = "proposal_timeout"

# Checked in order; the first elapsed deadline wins.
DEADLINE_RULES = [
    DeadlineRule(
        from_status=DisputeStatus.EVIDENCE_COLLECTION,
        deadline_field="evidence_deadline",
        action=REVIEW,
        notification_message="Evidence window closed. Dispute is under review.",
    ),
    DeadlineRule(
        from_status=DisputeStatus.UNDER_REVIEW,
        deadline_field="escalation_deadline",
        action=ESCALATE,
        notification_message="No resolution reached. Escalating to mediation.",
    ),
    DeadlineRule(
        from_status=DisputeStatus.UNDER_REVIEW,
        deadline_field="evidence_deadline",
        action=REVIEW,
        notification_message="Retrying automated review.",
    ),
    DeadlineRule(
        from_status=DisputeStatus.DIRECT_RESOLUTION,
        deadline_field="escalation_deadline",
        action=ESCALATE,
        notification_message="Direct resolution stalled. Escalating to mediation.",
    ),
    DeadlineRule(
        from_status=DisputeStatus.AUTO_RESOLVED,
        deadline_field="resolution_deadline",
        action=PROPOSAL_TIMEOUT,
        notification_message="Proposed resolution was not answered in time.",
    ),
]

OPEN_STATUSES = frozenset(
    {
        DisputeStatus.OPENED,
        DisputeStatus.EVIDENCE_COLLECTION,
        DisputeStatus.UNDER_REVIEW,
        DisputeStatus.DIRECT_RESOLUTION,
        DisputeStatus.AUTO_RESOLVED,
    }
)

ESCALATABLE = OPEN_STATUSES - {DisputeStatus.OPENED}

NEGOTIABLE = frozenset(
    {DisputeStatus.EVIDENCE_COLLECTION, DisputeStatus.UNDER_REVIEW, DisputeStatus.DIRECT_RESOLUTION}
)


def due_rule(dispute: Dispute, now: datetime) -> DeadlineRule | None:
    for rule in DEADLINE_RULES:
        if rule.from_status != dispute.status:
            continue
        deadline = as_utc(getattr(dispute, rule.deadline_field))
        if deadline is not None and now >= deadline:
            return rule
    return None


def append_history(dispute: Dispute, action: str, **details: Any) -> None:
    # Reassign so the JSON column is flagged dirty.
    dispute.history = [*(dispute.history or []), {"action": action, **details}]


def evidence_items(dispute: Dispute) -> list[EvidenceItem]:
    return [EvidenceItem.model_validate(item) for item in dispute.evidence or []]


def build_snapshot(dispute: Dispute, held_amount: Decimal) -> DisputeSnapshot:
    return DisputeSnapshot(
        dispute_id=dispute.id,
        milestone_id=dispute.milestone_id,
        dispute_type=dispute.dispute_type,
        opened_by=dispute.opened_by,
        reason=dispute.reason,
        held_amount=held_amount,
        evidence=evidence_items(dispute),
    )


def has_conflicting_evidence(snapshot: DisputeSnapshot) -> bool:
    return snapshot.submitters == {PartyRole.HOMEOWNER, PartyRole.CONTRACTOR}


def other_party(party: PartyRole) -> PartyRole:
    return PartyRole.CONTRACTOR if party == PartyRole.HOMEOWNER else PartyRole.HOMEOWNER
