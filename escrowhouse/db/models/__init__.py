from escrowhouse.db.models.audit import AuditLog
from escrowhouse.db.models.dispute import Dispute, DisputeMessage
from escrowhouse.db.models.escrow_hold import EscrowHold
from escrowhouse.db.models.mediation import MediationCase
from escrowhouse.db.models.milestone import Milestone, MilestoneTransition
from escrowhouse.db.models.payment import Payment
from escrowhouse.db.models.reconciliation import ReconciliationIssue
from escrowhouse.db.models.resolution import Resolution

__all__ = [
    "AuditLog",
    "Dispute",
    "DisputeMessage",
    "EscrowHold",
    "MediationCase",
    "Milestone",
    "MilestoneTransition",
    "Payment",
    "ReconciliationIssue",
    "Resolution",
]
