"""Database infrastructure: engine, ORM models, and repositories."""

from marketplace_escrow.infrastructure.database.engine import (
    close_db,
    get_async_session,
    get_session_factory,
    init_db,
)
from marketplace_escrow.infrastructure.database.orm_models import (
    Base,
    Bid,
    Dispute,
    DisputeTimelineEntry,
    EscrowEvent,
    EscrowHold,
    Milestone,
    MilestonePhoto,
    WorkOrder,
)
from marketplace_escrow.infrastructure.database.repositories import (
    BidRepository,
    DisputeRepository,
    EscrowRepository,
    EventRepository,
    MilestoneRepository,
    WorkOrderRepository,
)

__all__ = [
    "Base",
    "Bid",
    "Dispute",
    "DisputeTimelineEntry",
    "EscrowEvent",
    "EscrowHold",
    "Milestone",
    "MilestonePhoto",
    "WorkOrder",
    "BidRepository",
    "DisputeRepository",
    "EscrowRepository",
    "EventRepository",
    "MilestoneRepository",
    "WorkOrderRepository",
    "get_async_session",
    "get_session_factory",
    "init_db",
    "close_db",
]
