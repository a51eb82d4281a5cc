"""Domain enumerations for the marketplace escrow core.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class WorkOrderStatus(enum.StrEnum):
    """Lifecycle of a posted job."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CLOSED = "closed"


class BidStatus(enum.StrEnum):
    """Lifecycle states of a provider's bid.

    Transitions are enforced by BidStateMachine (domain/state_machine.py).
    """

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    WITHDRAWN = "withdrawn"

    @classmethod
    def active(cls) -> tuple["BidStatus", ...]:
        """Statuses that count toward the one-bid-per-provider rule."""
        return (cls.PENDING, cls.ACCEPTED)


class EscrowStatus(enum.StrEnum):
    """Lifecycle states of an escrow hold.

    RELEASED and REFUNDED are terminal. RELEASE_FAILED marks a hold whose
    payout exhausted its retries and needs an operator.
    """

    FUNDED = "funded"
    HELD = "held"
    DISPUTED = "disputed"
    RELEASED = "released"
    REFUNDED = "refunded"
    RELEASE_FAILED = "release_failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EscrowStatus.RELEASED, EscrowStatus.REFUNDED)


class EventType(enum.StrEnum):
    """Types of audit events recorded in the escrow_events table.

    Every escrow status transition MUST produce exactly one event.
    """

    HOLD_FUNDED = "HOLD_FUNDED"
    CAPTURE_CONFIRMED = "CAPTURE_CONFIRMED"
    MILESTONE_COMPLETED = "MILESTONE_COMPLETED"

    HOLD_FROZEN = "HOLD_FROZEN"
    HOLD_UNFROZEN = "HOLD_UNFROZEN"

    PAYMENT_RELEASED = "PAYMENT_RELEASED"
    PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
    PAYMENT_SPLIT = "PAYMENT_SPLIT"

    RELEASE_ATTEMPT_FAILED = "RELEASE_ATTEMPT_FAILED"
    MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"
    RELEASE_REQUEUED = "RELEASE_REQUEUED"


class SignerRole(enum.StrEnum):
    PROVIDER = "provider"
    REQUESTER = "requester"


class SignaturePolicy(enum.StrEnum):
    """How many parties must sign a milestone that requires a signature."""

    ANY = "any"
    BOTH = "both"


class EvidenceChannel(enum.StrEnum):
    """Independent evidence channels checked by the verification gate."""

    SIGNATURE = "signature"
    PHOTOS = "photos"
    GPS = "gps"


class DisputeType(enum.StrEnum):
    PAYMENT = "payment"
    QUALITY = "quality"
    TIMELINE = "timeline"
    SCOPE = "scope"
    COMMUNICATION = "communication"
    OTHER = "other"


class DisputeStatus(enum.StrEnum):
    """Lifecycle states of a dispute. RESOLVED, CLOSED and CANCELLED are terminal."""

    OPEN = "open"
    UNDER_REVIEW = "under_review"
    MEDIATION = "mediation"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    CLOSED = "closed"
    CANCELLED = "cancelled"

    @classmethod
    def terminal(cls) -> tuple["DisputeStatus", ...]:
        return (cls.RESOLVED, cls.CLOSED, cls.CANCELLED)

    @classmethod
    def active(cls) -> tuple["DisputeStatus", ...]:
        return (cls.OPEN, cls.UNDER_REVIEW, cls.MEDIATION, cls.ESCALATED)


class DisputePriority(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class DisputeOutcome(enum.StrEnum):
    """How an arbiter resolves a dispute."""

    RELEASE_TO_PROVIDER = "release_to_provider"
    REFUND_TO_REQUESTER = "refund_to_requester"
    SPLIT = "split"


class UnfreezeResolution(enum.StrEnum):
    """Branch taken by the escrow ledger when a disputed hold is unfrozen."""

    CONTINUE = "continue"
    PAY_PROVIDER = "pay_provider"
    REFUND_REQUESTER = "refund_requester"
    SPLIT = "split"

    @classmethod
    def for_outcome(cls, outcome: DisputeOutcome) -> "UnfreezeResolution":
        return {
            DisputeOutcome.RELEASE_TO_PROVIDER: cls.PAY_PROVIDER,
            DisputeOutcome.REFUND_TO_REQUESTER: cls.REFUND_REQUESTER,
            DisputeOutcome.SPLIT: cls.SPLIT,
        }[outcome]


class TimelineAction(enum.StrEnum):
    """Actions recorded in a dispute's append-only timeline."""

    DISPUTE_FILED = "dispute_filed"
    STATUS_CHANGED = "status_changed"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


class NotificationKind(enum.StrEnum):
    """Kinds of outbound notifications handed to the notifier."""

    BID_RECEIVED = "bid_received"
    BID_WITHDRAWN = "bid_withdrawn"
    BID_ACCEPTED = "bid_accepted"
    BID_REJECTED = "bid_rejected"
    ESCROW_FUNDED = "escrow_funded"
    JOB_COMPLETED = "job_completed"
    PAYMENT_RELEASED = "payment_released"
    PAYMENT_AUTO_RELEASED = "payment_auto_released"
    PAYMENT_REFUNDED = "payment_refunded"
    RELEASE_FAILED = "release_failed"
    DISPUTE_FILED = "dispute_filed"
    DISPUTE_UPDATE = "dispute_update"
