"""Domain exceptions for the marketplace escrow core.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware.

Every rejected action names the specific unmet condition so the calling
surface can show actionable guidance.
"""

from __future__ import annotations


class MarketplaceError(Exception):
    """Base exception for all domain errors."""

    def __init__(
        self,
        message: str,
        code: str = "MARKETPLACE_ERROR",
        details: dict | None = None,
    ) -> None:
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class EntityNotFoundError(MarketplaceError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            message=f"{entity} not found: {entity_id}",
            code=f"{entity.upper().replace(' ', '_')}_NOT_FOUND",
        )
        self.entity = entity
        self.entity_id = entity_id


# --- Authorization ---


class AuthorizationError(MarketplaceError):
    """Raised when the wrong party attempts an action."""

    def __init__(self, actor_id: str, action: str, reason: str) -> None:
        super().__init__(
            message=f"{actor_id} may not {action}: {reason}",
            code="NOT_AUTHORIZED",
            details={"actor_id": actor_id, "action": action},
        )
        self.actor_id = actor_id
        self.action = action


# --- State transition errors ---


class InvalidStateTransitionError(MarketplaceError):
    """Raised when an entity is not in a state that permits the requested action.

    Example: a released escrow hold cannot be frozen.
    """

    def __init__(
        self,
        entity: str,
        current_state: str,
        attempted: str,
        code: str = "INVALID_STATE_TRANSITION",
    ) -> None:
        super().__init__(
            message=f"Invalid {entity} transition: cannot {attempted} from '{current_state}'",
            code=code,
            details={"current_state": current_state, "attempted": attempted},
        )
        self.entity = entity
        self.current_state = current_state
        self.attempted_state = attempted


class InvalidBidStateError(InvalidStateTransitionError):
    def __init__(self, current_state: str, attempted: str) -> None:
        super().__init__("bid", current_state, attempted, code="INVALID_BID_STATE")


class InvalidEscrowStateError(InvalidStateTransitionError):
    def __init__(self, current_state: str, attempted: str) -> None:
        super().__init__("escrow hold", current_state, attempted, code="INVALID_ESCROW_STATE")


class IllegalDisputeTransitionError(InvalidStateTransitionError):
    def __init__(self, current_state: str, attempted: str) -> None:
        super().__init__(
            "dispute", current_state, attempted, code="ILLEGAL_DISPUTE_TRANSITION"
        )


class InvalidWorkOrderStateError(InvalidStateTransitionError):
    def __init__(self, current_state: str, attempted: str) -> None:
        super().__init__(
            "work order", current_state, attempted, code="INVALID_WORK_ORDER_STATE"
        )


# --- Preconditions ---


class PreconditionNotMetError(MarketplaceError):
    """Raised when a deadline, evidence requirement or dispute blocks an action."""

    def __init__(
        self,
        message: str,
        code: str = "PRECONDITION_NOT_MET",
        details: dict | None = None,
    ) -> None:
        super().__init__(message=message, code=code, details=details)


class BiddingClosedError(PreconditionNotMetError):
    def __init__(self, work_order_id: str, reason: str) -> None:
        super().__init__(
            message=f"Bidding is closed for work order {work_order_id}: {reason}",
            code="BIDDING_CLOSED",
            details={"work_order_id": work_order_id, "reason": reason},
        )


class AmountMismatchError(PreconditionNotMetError):
    def __init__(self, expected: str, received: str) -> None:
        super().__init__(
            message=f"Escrow amount must equal the accepted bid amount {expected}, got {received}",
            code="AMOUNT_MISMATCH",
            details={"expected": expected, "received": received},
        )


class MilestoneIncompleteError(PreconditionNotMetError):
    """Raised when a milestone is marked complete without its required evidence."""

    def __init__(self, milestone_id: str, missing: list[str]) -> None:
        super().__init__(
            message=f"Milestone {milestone_id} is incomplete: " + "; ".join(missing),
            code="MILESTONE_INCOMPLETE",
            details={"milestone_id": milestone_id, "missing": missing},
        )
        self.missing = missing


class NotReleaseEligibleError(PreconditionNotMetError):
    """Raised when an escrow hold cannot be released yet.

    ``shortfalls`` maps milestone ids to their unmet requirements; ``reason``
    is set when the blocker is the hold itself (e.g. an open dispute).
    """

    def __init__(
        self,
        hold_id: str,
        shortfalls: dict[str, list[str]] | None = None,
        reason: str | None = None,
    ) -> None:
        shortfalls = shortfalls or {}
        parts = [reason] if reason else []
        parts += [f"{m}: {', '.join(missing)}" for m, missing in shortfalls.items()]
        super().__init__(
            message=f"Escrow hold {hold_id} is not release eligible: " + "; ".join(parts),
            code="NOT_RELEASE_ELIGIBLE",
            details={"hold_id": hold_id, "shortfalls": shortfalls, "reason": reason},
        )
        self.shortfalls = shortfalls
        self.reason = reason


class JobNotCompletedError(PreconditionNotMetError):
    def __init__(self, work_order_id: str, status: str) -> None:
        super().__init__(
            message=f"Work order {work_order_id} is '{status}'; disputes require a completed job",
            code="JOB_NOT_COMPLETED",
            details={"work_order_id": work_order_id, "status": status},
        )


class EvidenceNotRequiredError(PreconditionNotMetError):
    """Raised when evidence is recorded on a channel the milestone does not require."""

    def __init__(self, milestone_id: str, channel: str, code: str) -> None:
        super().__init__(
            message=f"Milestone {milestone_id} does not require {channel}",
            code=code,
            details={"milestone_id": milestone_id, "channel": channel},
        )


class SignatureNotRequiredError(EvidenceNotRequiredError):
    def __init__(self, milestone_id: str) -> None:
        super().__init__(milestone_id, "a signature", "SIGNATURE_NOT_REQUIRED")


class PhotosNotRequiredError(EvidenceNotRequiredError):
    def __init__(self, milestone_id: str) -> None:
        super().__init__(milestone_id, "photos", "PHOTOS_NOT_REQUIRED")


class GPSNotRequiredError(EvidenceNotRequiredError):
    def __init__(self, milestone_id: str) -> None:
        super().__init__(milestone_id, "a GPS fix", "GPS_NOT_REQUIRED")


class InvalidEvidenceError(PreconditionNotMetError):
    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="INVALID_EVIDENCE")


# --- External dependencies ---


class PaymentError(MarketplaceError):
    """Raised when the payment processor rejects or fails a request."""

    def __init__(self, message: str, operation: str, idempotency_key: str | None = None) -> None:
        super().__init__(
            message=message,
            code="PAYMENT_ERROR",
            details={"operation": operation, "idempotency_key": idempotency_key},
        )
        self.operation = operation
        self.idempotency_key = idempotency_key


class TransientPaymentError(PaymentError):
    """A payment failure worth retrying (timeouts, 5xx, rate limits)."""

    def __init__(self, message: str, operation: str, idempotency_key: str | None = None) -> None:
        super().__init__(message, operation, idempotency_key)
        self.code = "PAYMENT_UNAVAILABLE"


# --- Idempotency ---


class DuplicateOperationError(MarketplaceError):
    """Raised when a concurrent duplicate request loses the race."""

    def __init__(self, key: str) -> None:
        super().__init__(
            message=f"Duplicate operation detected for key: {key}",
            code="DUPLICATE_OPERATION",
        )
