"""Work Order Service: lifecycle of posted jobs.

Work order status is the job-status source the dispute arbiter and the
release scheduler read: disputes need a completed job, and the contest
window is measured from completed_at.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from statemachine.exceptions import TransitionNotAllowed

from marketplace_escrow.domain.enums import NotificationKind, WorkOrderStatus
from marketplace_escrow.domain.exceptions import (
    AuthorizationError,
    EntityNotFoundError,
    InvalidWorkOrderStateError,
)
from marketplace_escrow.domain.state_machine import WorkOrderStateMachine, validate_transition
from marketplace_escrow.infrastructure.database.orm_models import WorkOrder
from marketplace_escrow.infrastructure.database.repositories import (
    BidRepository,
    WorkOrderRepository,
)
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.services.notification_service import NotificationService

logger = get_logger(__name__)


class WorkOrderService:
    def __init__(self, session: AsyncSession, notifications: NotificationService) -> None:
        self._session = session
        self._orders = WorkOrderRepository(session)
        self._bids = BidRepository(session)
        self._notifications = notifications

    async def create_work_order(
        self,
        requester_id: str,
        title: str,
        description: str | None = None,
        bid_deadline: datetime | None = None,
    ) -> WorkOrder:
        order = WorkOrder(
            requester_id=requester_id,
            title=title,
            description=description,
            bid_deadline=bid_deadline,
            is_open_for_bids=True,
            status=WorkOrderStatus.OPEN.value,
        )
        order = await self._orders.create(order)
        logger.info("work_order.created", work_order_id=str(order.id), requester=requester_id)
        return order

    async def get(self, order_id: uuid.UUID) -> WorkOrder:
        order = await self._orders.get_by_id(order_id)
        if order is None:
            raise EntityNotFoundError("work order", str(order_id))
        return order

    async def close_bidding(self, order_id: uuid.UUID, actor_id: str) -> WorkOrder:
        """Stop accepting new bids. Existing bids are untouched."""
        order = await self.get(order_id)
        if actor_id != order.requester_id:
            raise AuthorizationError(
                actor_id, "close bidding", "only the requester may close bidding"
            )
        order.is_open_for_bids = False
        await self._session.flush()
        logger.info("work_order.bidding_closed", work_order_id=str(order_id))
        return order

    async def start(self, order: WorkOrder) -> WorkOrder:
        """open -> in_progress. Called when a bid is accepted; no-op otherwise."""
        if order.status != WorkOrderStatus.OPEN.value:
            return order
        self._fire_transition(order, "start_work")
        return await self._orders.update_status(order, WorkOrderStatus.IN_PROGRESS.value)

    async def mark_completed(self, order_id: uuid.UUID, actor_id: str) -> WorkOrder:
        """in_progress -> completed. Starts the contest window."""
        order = await self.get(order_id)
        accepted = await self._bids.get_accepted_for_order(order.id)
        parties = {order.requester_id}
        if accepted is not None:
            parties.add(accepted.provider_id)
        if actor_id not in parties:
            raise AuthorizationError(
                actor_id, "complete the job", "only the requester or the hired provider may"
            )

        self._fire_transition(order, "complete")
        now = datetime.now(UTC)
        await self._orders.update_status(order, WorkOrderStatus.COMPLETED.value, completed_at=now)

        for party in parties - {actor_id}:
            await self._notifications.send(
                party,
                NotificationKind.JOB_COMPLETED,
                {"work_order_id": str(order.id), "title": order.title},
                dedup_key=str(order.id),
            )
        logger.info("work_order.completed", work_order_id=str(order.id), by=actor_id)
        return order

    async def close(self, order_id: uuid.UUID, actor_id: str) -> WorkOrder:
        """completed -> closed. Closed orders are immutable."""
        order = await self.get(order_id)
        if actor_id != order.requester_id:
            raise AuthorizationError(actor_id, "close the work order", "only the requester may")
        self._fire_transition(order, "close")
        await self._orders.update_status(
            order,
            WorkOrderStatus.CLOSED.value,
            closed_at=datetime.now(UTC),
            is_open_for_bids=False,
        )
        logger.info("work_order.closed", work_order_id=str(order.id))
        return order

    def _fire_transition(self, order: WorkOrder, event_name: str) -> None:
        try:
            validate_transition(WorkOrderStateMachine, order.status, event_name)
        except TransitionNotAllowed as err:
            raise InvalidWorkOrderStateError(order.status, event_name) from err
