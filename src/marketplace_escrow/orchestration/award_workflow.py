"""Award workflow: accept a bid, then fund its escrow.

The two steps commit separately. If the process dies or the capture fails
between them, the bid stays accepted with no hold; fund() is idempotent on
the bid id, and the scheduler's reconciliation sweep retries it later.

Usage:
    from marketplace_escrow.orchestration.award_workflow import run_award_workflow

    state = await run_award_workflow(
        bid_id=bid.id,
        requester_id="req-1",
        session_factory=session_factory,
        payments=payments,
        notifications=notifications,
        settings=settings,
    )
"""

from __future__ import annotations

from typing import TYPE_CHECKING, TypedDict

from marketplace_escrow.domain.exceptions import MarketplaceError
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.bid_service import BidService
from marketplace_escrow.services.escrow_service import EscrowService

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from marketplace_escrow.config import Settings
    from marketplace_escrow.services.notification_service import NotificationService
    from marketplace_escrow.services.payment_service import PaymentService

logger = get_logger(__name__)


class AwardWorkflowState(TypedDict, total=False):
    """Outcome of an award: what was accepted and whether funding landed."""

    bid_id: str
    requester_id: str
    accepted: bool
    hold_id: str
    hold_status: str
    final_status: str
    error: str


async def run_award_workflow(
    bid_id: uuid.UUID,
    requester_id: str,
    session_factory: async_sessionmaker[AsyncSession],
    payments: PaymentService,
    notifications: NotificationService,
    settings: Settings,
) -> AwardWorkflowState:
    """Accept the bid (commit 1), then fund the escrow (commit 2).

    Acceptance errors propagate. A funding error is reported in the returned
    state with final_status "awaiting_funding"; the accepted bid remains.
    """
    state: AwardWorkflowState = {
        "bid_id": str(bid_id),
        "requester_id": requester_id,
        "accepted": False,
        "hold_id": "",
        "hold_status": "",
        "final_status": "",
        "error": "",
    }

    # --- Step 1: Accept ---
    logger.info("workflow.accept", bid_id=str(bid_id))
    async with session_factory() as session:
        async with session.begin():
            await BidService(session, notifications).accept_bid(bid_id, requester_id)
    state["accepted"] = True

    # --- Step 2: Fund ---
    logger.info("workflow.fund", bid_id=str(bid_id))
    try:
        async with session_factory() as session:
            async with session.begin():
                hold = await EscrowService(session, payments, notifications, settings).fund(
                    bid_id, actor_id=requester_id
                )
        state["hold_id"] = str(hold.id)
        state["hold_status"] = hold.status
        state["final_status"] = "funded"
        logger.info("workflow.completed", bid_id=str(bid_id), hold_id=str(hold.id))
    except MarketplaceError as exc:
        state["error"] = exc.message
        state["final_status"] = "awaiting_funding"
        logger.warning("workflow.funding_deferred", bid_id=str(bid_id), error=exc.message)

    return state
