import enum


class PartyRole(str, enum.Enum):
    HOMEOWNER = "homeowner"
    CONTRACTOR = "contractor"


class ActorRole(str, enum.Enum):
    HOMEOWNER = "homeowner"
    CONTRACTOR = "contractor"
    MEDIATOR = "mediator"
    ADMIN = "admin"
    SYSTEM = "system"


class MilestoneStatus(str, enum.Enum):
    DRAFT = "draft"
    FUNDED = "funded"
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED = "verified"
    DISPUTED = "disputed"
    MEDIATION = "mediation"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PAYOUT_FAILED = "payout_failed"


class HoldState(str, enum.Enum):
    REQUESTED = "requested"
    ACTIVE = "active"
    PARTIALLY_RELEASED = "partially_released"
    FULLY_RELEASED = "fully_released"
    FAILED = "failed"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentDirection(str, enum.Enum):
    PAYOUT = "payout"
    REFUND = "refund"


class DisputeStatus(str, enum.Enum):
    OPENED = "opened"
    EVIDENCE_COLLECTION = "evidence_collection"
    UNDER_REVIEW = "under_review"
    AUTO_RESOLVED = "auto_resolved"
    DIRECT_RESOLUTION = "direct_resolution"
    MEDIATION = "mediation"
    RESOLVED = "resolved"


class DisputeType(str, enum.Enum):
    MILESTONE_COMPLETION = "milestone_completion"
    QUALITY_ISSUE = "quality_issue"
    SCOPE_DISAGREEMENT = "scope_disagreement"
    TIMELINE_DELAY = "timeline_delay"
    MATERIAL_DIFFERENCE = "material_difference"
    PAYMENT_AMOUNT = "payment_amount"
    OTHER = "other"


class ProposalResponse(str, enum.Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class MediationStatus(str, enum.Enum):
    ASSIGNED = "assigned"
    IN_REVIEW = "in_review"
    DECIDED = "decided"


class ResolutionOutcome(str, enum.Enum):
    FULL_RELEASE = "full_release"
    PARTIAL_RELEASE = "partial_release"
    FULL_REFUND = "full_refund"


class DecidedBy(str, enum.Enum):
    AUTO = "auto"
    NEGOTIATION = "negotiation"
    MEDIATION = "mediation"


class ReconciliationAction(str, enum.Enum):
    REPAIRED = "repaired"
    RETRYING = "retrying"
    ESCALATED = "escalated"


class EventType(str, enum.Enum):
    MILESTONE_FUNDED = "milestone.funded"
    MILESTONE_VERIFIED = "milestone.verified"
    MILESTONE_DISPUTED = "milestone.disputed"
    MILESTONE_COMPLETED = "milestone.completed"
    MILESTONE_CANCELLED = "milestone.cancelled"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    DISPUTE_ESCALATED = "dispute.escalated"
    DISPUTE_RESOLVED = "dispute.resolved"
    MEDIATION_BLOCKED = "mediation.blocked"
    RECONCILIATION_ESCALATED = "reconciliation.escalated"
