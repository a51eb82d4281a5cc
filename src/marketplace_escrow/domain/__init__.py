"""Domain layer: pure business logic with zero framework dependencies."""

from marketplace_escrow.domain.enums import (
    BidStatus,
    DisputeOutcome,
    DisputeStatus,
    EscrowStatus,
    EventType,
    WorkOrderStatus,
)
from marketplace_escrow.domain.exceptions import (
    AuthorizationError,
    EntityNotFoundError,
    InvalidStateTransitionError,
    MarketplaceError,
    PreconditionNotMetError,
)
from marketplace_escrow.domain.state_machine import (
    BidStateMachine,
    DisputeStateMachine,
    EscrowStateMachine,
    WorkOrderStateMachine,
    validate_transition,
)
from marketplace_escrow.domain.verifier_protocol import (
    EvidenceCheck,
    EvidenceSnapshot,
    MilestoneRequirements,
)

__all__ = [
    "BidStatus",
    "DisputeOutcome",
    "DisputeStatus",
    "EscrowStatus",
    "EventType",
    "WorkOrderStatus",
    "AuthorizationError",
    "EntityNotFoundError",
    "InvalidStateTransitionError",
    "MarketplaceError",
    "PreconditionNotMetError",
    "BidStateMachine",
    "DisputeStateMachine",
    "EscrowStateMachine",
    "WorkOrderStateMachine",
    "validate_transition",
    "EvidenceCheck",
    "EvidenceSnapshot",
    "MilestoneRequirements",
]
