"""Tests for the bid ledger and work order lifecycle."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from conftest import OTHER_PROVIDER, PROVIDER, REQUESTER, Marketplace, RecordingNotifier

from marketplace_escrow.domain.enums import BidStatus, NotificationKind, WorkOrderStatus
from marketplace_escrow.domain.exceptions import (
    AuthorizationError,
    BiddingClosedError,
    InvalidBidStateError,
    InvalidWorkOrderStateError,
    PreconditionNotMetError,
)
from marketplace_escrow.services.bid_service import normalize_milestone_plan


class TestNormalizeMilestonePlan:
    def test_empty_plan_is_none(self) -> None:
        assert normalize_milestone_plan(None) is None
        assert normalize_milestone_plan([]) is None

    def test_photos_default_to_one(self) -> None:
        (item,) = normalize_milestone_plan([{"title": "Tiles", "require_photos": True}])
        assert item["min_photos"] == 1
        assert item["require_signature"] is False

    def test_percentages_must_total_100(self) -> None:
        with pytest.raises(PreconditionNotMetError) as exc_info:
            normalize_milestone_plan(
                [{"title": "A", "percentage": 50}, {"title": "B", "percentage": 40}]
            )
        assert exc_info.value.code == "INVALID_MILESTONE_PLAN"

    def test_percentage_out_of_range_rejected(self) -> None:
        with pytest.raises(PreconditionNotMetError) as exc_info:
            normalize_milestone_plan(
                [{"title": "A", "percentage": 150}, {"title": "B", "percentage": -50}]
            )
        assert exc_info.value.code == "INVALID_MILESTONE_PLAN"

    @pytest.mark.parametrize("value", ["50", 50.0, True])
    def test_percentage_must_be_whole_number(self, value: object) -> None:
        with pytest.raises(PreconditionNotMetError, match="whole number"):
            normalize_milestone_plan(
                [{"title": "A", "percentage": value}, {"title": "B", "percentage": 50}]
            )

    def test_non_numeric_photo_minimum(self) -> None:
        with pytest.raises(PreconditionNotMetError) as exc_info:
            normalize_milestone_plan([{"title": "A", "require_photos": True, "min_photos": None}])
        assert exc_info.value.code == "INVALID_MILESTONE_PLAN"

    def test_percentages_all_or_none(self) -> None:
        with pytest.raises(PreconditionNotMetError):
            normalize_milestone_plan([{"title": "A", "percentage": 100}, {"title": "B"}])

    def test_title_required(self) -> None:
        with pytest.raises(PreconditionNotMetError, match="needs a title"):
            normalize_milestone_plan([{"title": "  "}])

    def test_invalid_photo_minimum(self) -> None:
        with pytest.raises(PreconditionNotMetError, match="min_photos"):
            normalize_milestone_plan([{"title": "A", "require_photos": True, "min_photos": 0}])


class TestSubmitBid:
    @pytest.mark.asyncio
    async def test_new_bid_is_pending_and_requester_notified(
        self, market: Marketplace, notifier: RecordingNotifier
    ) -> None:
        order = await market.post_order()
        bid = await market.bid(order.id)

        assert bid.status == BidStatus.PENDING
        assert bid.amount == Decimal("500.00")
        assert NotificationKind.BID_RECEIVED.value in notifier.kinds_for(REQUESTER)

    @pytest.mark.asyncio
    async def test_resubmission_updates_in_place(self, market: Marketplace) -> None:
        order = await market.post_order()
        first = await market.bid(order.id, amount=Decimal("500.00"))

        async with market.transaction() as session:
            second, created = await market.bids(session).submit_or_update_bid(
                order.id, PROVIDER, Decimal("450.00"), message="Can start Monday"
            )

        assert created is False
        assert second.id == first.id
        assert second.amount == Decimal("450.00")
        async with market.transaction() as session:
            assert len(await market.bids(session).list_bids(order.id)) == 1

    @pytest.mark.asyncio
    async def test_requester_cannot_bid_on_own_order(self, market: Marketplace) -> None:
        order = await market.post_order()
        with pytest.raises(AuthorizationError):
            await market.bid(order.id, provider=REQUESTER)

    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected(self, market: Marketplace) -> None:
        order = await market.post_order()
        with pytest.raises(PreconditionNotMetError, match="positive"):
            await market.bid(order.id, amount=Decimal("0"))

    @pytest.mark.asyncio
    async def test_deadline_passed(self, market: Marketplace) -> None:
        order = await market.post_order(bid_deadline=datetime.now(UTC) - timedelta(minutes=1))
        with pytest.raises(BiddingClosedError):
            await market.bid(order.id)

    @pytest.mark.asyncio
    async def test_bidding_closed_by_requester(self, market: Marketplace) -> None:
        order = await market.post_order()
        async with market.transaction() as session:
            await market.work_orders(session).close_bidding(order.id, REQUESTER)
        with pytest.raises(BiddingClosedError, match="closed bidding"):
            await market.bid(order.id)

    @pytest.mark.asyncio
    async def test_cannot_bid_once_work_started(self, market: Marketplace) -> None:
        order = await market.post_order()
        bid = await market.bid(order.id)
        await market.accept(bid.id)
        with pytest.raises(BiddingClosedError):
            await market.bid(order.id, provider=OTHER_PROVIDER)

    @pytest.mark.asyncio
    async def test_new_bid_allowed_after_withdrawal(self, market: Marketplace) -> None:
        order = await market.post_order()
        first = await market.bid(order.id)
        async with market.transaction() as session:
            await market.bids(session).withdraw_bid(first.id, PROVIDER)

        second = await market.bid(order.id, amount=Decimal("480.00"))
        assert second.id != first.id
        assert second.status == BidStatus.PENDING


class TestBidDecisions:
    @pytest.mark.asyncio
    async def test_accept_starts_the_work_order(
        self, market: Marketplace, notifier: RecordingNotifier
    ) -> None:
        order = await market.post_order()
        bid = await market.bid(order.id)
        accepted = await market.accept(bid.id)

        assert accepted.status == BidStatus.ACCEPTED
        assert accepted.accepted_at is not None
        async with market.transaction() as session:
            order = await market.work_orders(session).get(order.id)
        assert order.status == WorkOrderStatus.IN_PROGRESS
        assert NotificationKind.BID_ACCEPTED.value in notifier.kinds_for(PROVIDER)

    @pytest.mark.asyncio
    async def test_sibling_bids_are_left_pending(self, market: Marketplace) -> None:
        order = await market.post_order()
        bid = await market.bid(order.id)
        sibling = await market.bid(order.id, provider=OTHER_PROVIDER, amount=Decimal("520.00"))
        await market.accept(bid.id)

        async with market.transaction() as session:
            sibling = await market.bids(session).get_bid(sibling.id)
        assert sibling.status == BidStatus.PENDING

    @pytest.mark.asyncio
    async def test_only_owner_can_accept(self, market: Marketplace) -> None:
        order = await market.post_order()
        bid = await market.bid(order.id)
        with pytest.raises(AuthorizationError):
            await market.accept(bid.id, requester="someone-else")

    @pytest.mark.asyncio
    async def test_decline_records_reason(
        self, market: Marketplace, notifier: RecordingNotifier
    ) -> None:
        order = await market.post_order()
        bid = await market.bid(order.id)
        async with market.transaction() as session:
            declined = await market.bids(session).decline_bid(bid.id, REQUESTER, "Too expensive")

        assert declined.status == BidStatus.DECLINED
        assert declined.decline_reason == "Too expensive"
        assert NotificationKind.BID_REJECTED.value in notifier.kinds_for(PROVIDER)

    @pytest.mark.asyncio
    async def test_declined_bid_cannot_be_accepted(self, market: Marketplace) -> None:
        order = await market.post_order()
        bid = await market.bid(order.id)
        async with market.transaction() as session:
            await market.bids(session).decline_bid(bid.id, REQUESTER)
        with pytest.raises(InvalidBidStateError):
            await market.accept(bid.id)

    @pytest.mark.asyncio
    async def test_only_bidder_can_withdraw(self, market: Marketplace) -> None:
        order = await market.post_order()
        bid = await market.bid(order.id)
        async with market.transaction() as session:
            with pytest.raises(AuthorizationError):
                await market.bids(session).withdraw_bid(bid.id, OTHER_PROVIDER)

    @pytest.mark.asyncio
    async def test_accepted_bid_cannot_be_withdrawn(self, market: Marketplace) -> None:
        order = await market.post_order()
        bid = await market.bid(order.id)
        await market.accept(bid.id)
        async with market.transaction() as session:
            with pytest.raises(InvalidBidStateError):
                await market.bids(session).withdraw_bid(bid.id, PROVIDER)


class TestWorkOrderLifecycle:
    @pytest.mark.asyncio
    async def test_complete_and_close(
        self, market: Marketplace, notifier: RecordingNotifier
    ) -> None:
        order = await market.post_order()
        bid = await market.bid(order.id)
        await market.accept(bid.id)

        completed = await market.complete_job(order.id, actor=PROVIDER)
        assert completed.status == WorkOrderStatus.COMPLETED
        assert completed.completed_at is not None
        assert NotificationKind.JOB_COMPLETED.value in notifier.kinds_for(REQUESTER)

        async with market.transaction() as session:
            closed = await market.work_orders(session).close(order.id, REQUESTER)
        assert closed.status == WorkOrderStatus.CLOSED
        assert closed.is_open_for_bids is False

    @pytest.mark.asyncio
    async def test_open_order_cannot_be_completed(self, market: Marketplace) -> None:
        order = await market.post_order()
        with pytest.raises(InvalidWorkOrderStateError):
            await market.complete_job(order.id, actor=REQUESTER)

    @pytest.mark.asyncio
    async def test_outsider_cannot_complete(self, market: Marketplace) -> None:
        order = await market.post_order()
        bid = await market.bid(order.id)
        await market.accept(bid.id)
        with pytest.raises(AuthorizationError):
            await market.complete_job(order.id, actor=OTHER_PROVIDER)
