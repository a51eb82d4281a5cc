"""Application services: use case orchestration."""

from marketplace_escrow.services.bid_service import BidService
from marketplace_escrow.services.dispute_service import DisputeService
from marketplace_escrow.services.escrow_service import EscrowService
from marketplace_escrow.services.milestone_service import MilestoneService
from marketplace_escrow.services.notification_service import NotificationService
from marketplace_escrow.services.payment_service import PaymentService
from marketplace_escrow.services.release_scheduler import ReleaseScheduler, SweepSummary
from marketplace_escrow.services.work_order_service import WorkOrderService

__all__ = [
    "BidService",
    "DisputeService",
    "EscrowService",
    "MilestoneService",
    "NotificationService",
    "PaymentService",
    "ReleaseScheduler",
    "SweepSummary",
    "WorkOrderService",
]
