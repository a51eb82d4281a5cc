"""Bid Service: the bid ledger.

Accepts, updates and withdraws provider bids against open work orders and
records the requester's accept/decline decisions. One active (pending or
accepted) bid per provider per order: a resubmission updates the pending
row in place, and a partial unique index backs the rule up under races.

Accepting a bid does not fund escrow; that is a separate step (see
orchestration/award_workflow.py) so a capture failure never undoes the
acceptance.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError
from statemachine.exceptions import TransitionNotAllowed

from marketplace_escrow.domain.enums import BidStatus, NotificationKind, WorkOrderStatus
from marketplace_escrow.domain.exceptions import (
    AuthorizationError,
    BiddingClosedError,
    DuplicateOperationError,
    EntityNotFoundError,
    InvalidBidStateError,
    PreconditionNotMetError,
)
from marketplace_escrow.domain.state_machine import BidStateMachine, validate_transition
from marketplace_escrow.domain.verifier_protocol import MilestoneRequirements
from marketplace_escrow.infrastructure.database.orm_models import Bid, WorkOrder
from marketplace_escrow.infrastructure.database.repositories import (
    BidRepository,
    WorkOrderRepository,
)
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.work_order_service import WorkOrderService

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.services.notification_service import NotificationService

logger = get_logger(__name__)


def _plan_percentage(title: str, value: object) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 100:
        raise PreconditionNotMetError(
            f"Milestone '{title}': percentage must be a whole number from 1 to 100",
            code="INVALID_MILESTONE_PLAN",
            details={"percentage": repr(value)},
        )
    return value


def normalize_milestone_plan(plan: list[dict] | None) -> list[dict] | None:
    """Validate a proposed milestone plan and return it in stored form.

    Percentages are optional, but when any milestone carries one they must
    all do, each must be a whole number from 1 to 100, and they must add up
    to 100.
    """
    if not plan:
        return None

    normalized = []
    for index, item in enumerate(plan):
        title = (item.get("title") or "").strip()
        if not title:
            raise PreconditionNotMetError(
                f"Milestone {index + 1} needs a title", code="INVALID_MILESTONE_PLAN"
            )
        require_photos = bool(item.get("require_photos", False))
        try:
            requirements = MilestoneRequirements(
                require_signature=bool(item.get("require_signature", False)),
                require_photos=require_photos,
                min_photos=int(item.get("min_photos", 1 if require_photos else 0)),
                require_gps=bool(item.get("require_gps", False)),
            )
        except (TypeError, ValueError) as exc:
            raise PreconditionNotMetError(
                f"Milestone '{title}': {exc}", code="INVALID_MILESTONE_PLAN"
            ) from exc
        normalized.append(
            {
                "title": title,
                "description": item.get("description"),
                "percentage": _plan_percentage(title, item.get("percentage")),
                "require_signature": requirements.require_signature,
                "require_photos": requirements.require_photos,
                "min_photos": requirements.min_photos,
                "require_gps": requirements.require_gps,
            }
        )

    percentages = [m["percentage"] for m in normalized]
    if any(p is not None for p in percentages):
        if any(p is None for p in percentages) or sum(percentages) != 100:
            raise PreconditionNotMetError(
                "Milestone percentages must be set on every milestone and total 100",
                code="INVALID_MILESTONE_PLAN",
                details={"percentages": percentages},
            )
    return normalized


class BidService:
    """Manages the bid lifecycle."""

    def __init__(self, session: AsyncSession, notifications: NotificationService) -> None:
        self._session = session
        self._bids = BidRepository(session)
        self._orders = WorkOrderRepository(session)
        self._work_orders = WorkOrderService(session, notifications)
        self._notifications = notifications

    # ------------------------------------------------------------------
    # Provider actions
    # ------------------------------------------------------------------

    async def submit_or_update_bid(
        self,
        order_id: uuid.UUID,
        provider_id: str,
        amount: Decimal,
        estimated_duration: str | None = None,
        proposed_start: datetime | None = None,
        message: str | None = None,
        milestone_plan: list[dict] | None = None,
    ) -> tuple[Bid, bool]:
        """Create the provider's bid, or update it while still pending.

        Returns (bid, created).
        """
        order = await self._get_order_or_raise(order_id)
        if provider_id == order.requester_id:
            raise AuthorizationError(
                provider_id, "bid", "requesters cannot bid on their own work order"
            )
        self._ensure_bidding_open(order)
        if amount <= Decimal("0"):
            raise PreconditionNotMetError("Bid amount must be positive", code="INVALID_AMOUNT")
        plan = normalize_milestone_plan(milestone_plan)

        bid = await self._bids.get_active(order.id, provider_id)
        created = bid is None
        if bid is not None:
            if bid.status != BidStatus.PENDING.value:
                raise InvalidBidStateError(bid.status, "update")
            bid.amount = amount
            bid.estimated_duration = estimated_duration
            bid.proposed_start = proposed_start
            bid.message = message
            bid.milestone_plan = plan
            await self._session.flush()
        else:
            bid = Bid(
                work_order_id=order.id,
                provider_id=provider_id,
                amount=amount,
                estimated_duration=estimated_duration,
                proposed_start=proposed_start,
                message=message,
                milestone_plan=plan,
                status=BidStatus.PENDING.value,
            )
            try:
                bid = await self._bids.create(bid)
            except IntegrityError as err:
                raise DuplicateOperationError(f"bid:{order.id}:{provider_id}") from err

        await self._notifications.send(
            order.requester_id,
            NotificationKind.BID_RECEIVED,
            {
                "work_order_id": str(order.id),
                "bid_id": str(bid.id),
                "provider_id": provider_id,
                "amount": str(amount),
                "updated": not created,
            },
        )
        logger.info(
            "bid.submitted" if created else "bid.updated",
            bid_id=str(bid.id),
            work_order_id=str(order.id),
            provider=provider_id,
            amount=str(amount),
        )
        return bid, created

    async def withdraw_bid(self, bid_id: uuid.UUID, provider_id: str) -> Bid:
        bid = await self._get_bid_or_raise(bid_id)
        if bid.provider_id != provider_id:
            raise AuthorizationError(
                provider_id, "withdraw this bid", "only the bidding provider may"
            )
        order = await self._get_order_or_raise(bid.work_order_id)
        if order.status != WorkOrderStatus.OPEN.value:
            raise InvalidBidStateError(bid.status, "withdraw")

        self._fire_transition(bid, "withdraw")
        await self._bids.update_status(bid, BidStatus.WITHDRAWN, withdrawn_at=datetime.now(UTC))

        await self._notifications.send(
            order.requester_id,
            NotificationKind.BID_WITHDRAWN,
            {"work_order_id": str(order.id), "bid_id": str(bid.id), "provider_id": provider_id},
        )
        logger.info("bid.withdrawn", bid_id=str(bid.id), provider=provider_id)
        return bid

    # ------------------------------------------------------------------
    # Requester decisions
    # ------------------------------------------------------------------

    async def accept_bid(self, bid_id: uuid.UUID, requester_id: str) -> Bid:
        """Accept a pending bid. Sibling bids are left as they are."""
        bid = await self._get_bid_or_raise(bid_id)
        order = await self._get_order_or_raise(bid.work_order_id)
        self._ensure_owner(order, requester_id, "accept this bid")

        self._fire_transition(bid, "accept")
        await self._bids.update_status(bid, BidStatus.ACCEPTED, accepted_at=datetime.now(UTC))
        await self._work_orders.start(order)

        await self._notifications.send(
            bid.provider_id,
            NotificationKind.BID_ACCEPTED,
            {"work_order_id": str(order.id), "bid_id": str(bid.id), "amount": str(bid.amount)},
        )
        logger.info("bid.accepted", bid_id=str(bid.id), work_order_id=str(order.id))
        return bid

    async def decline_bid(
        self, bid_id: uuid.UUID, requester_id: str, reason: str | None = None
    ) -> Bid:
        bid = await self._get_bid_or_raise(bid_id)
        order = await self._get_order_or_raise(bid.work_order_id)
        self._ensure_owner(order, requester_id, "decline this bid")

        self._fire_transition(bid, "decline")
        await self._bids.update_status(
            bid,
            BidStatus.DECLINED,
            declined_at=datetime.now(UTC),
            decline_reason=reason,
        )

        await self._notifications.send(
            bid.provider_id,
            NotificationKind.BID_REJECTED,
            {"work_order_id": str(order.id), "bid_id": str(bid.id), "reason": reason},
        )
        logger.info("bid.declined", bid_id=str(bid.id), reason=reason)
        return bid

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_bid(self, bid_id: uuid.UUID) -> Bid:
        return await self._get_bid_or_raise(bid_id)

    async def list_bids(self, order_id: uuid.UUID) -> list[Bid]:
        await self._get_order_or_raise(order_id)
        return await self._bids.list_for_order(order_id)

    async def list_unfunded_accepted(self, accepted_before: datetime) -> list[Bid]:
        return await self._bids.list_unfunded_accepted(accepted_before)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_bid_or_raise(self, bid_id: uuid.UUID) -> Bid:
        bid = await self._bids.get_by_id(bid_id)
        if bid is None:
            raise EntityNotFoundError("bid", str(bid_id))
        return bid

    async def _get_order_or_raise(self, order_id: uuid.UUID) -> WorkOrder:
        order = await self._orders.get_by_id(order_id)
        if order is None:
            raise EntityNotFoundError("work order", str(order_id))
        return order

    @staticmethod
    def _ensure_owner(order: WorkOrder, requester_id: str, action: str) -> None:
        if order.requester_id != requester_id:
            raise AuthorizationError(
                requester_id, action, "the work order belongs to another requester"
            )

    @staticmethod
    def _ensure_bidding_open(order: WorkOrder) -> None:
        if order.status != WorkOrderStatus.OPEN.value:
            raise BiddingClosedError(str(order.id), f"work order is {order.status}")
        if not order.is_open_for_bids:
            raise BiddingClosedError(str(order.id), "the requester closed bidding")
        if order.bid_deadline is not None and datetime.now(UTC) >= order.bid_deadline:
            raise BiddingClosedError(
                str(order.id), f"the deadline {order.bid_deadline.isoformat()} has passed"
            )

    def _fire_transition(self, bid: Bid, event_name: str) -> None:
        """Validate a bid transition, raising InvalidBidStateError if illegal."""
        try:
            validate_transition(BidStateMachine, bid.status, event_name)
        except TransitionNotAllowed as err:
            raise InvalidBidStateError(bid.status, event_name) from err
