"""Work order and bid REST API routes.

Routes:
    POST   /api/v1/work-orders                      Post a work order
    GET    /api/v1/work-orders/{id}                 Get a work order
    POST   /api/v1/work-orders/{id}/close-bidding   Stop accepting bids
    POST   /api/v1/work-orders/{id}/complete        Mark the job completed
    POST   /api/v1/work-orders/{id}/close           Close a completed job
    POST   /api/v1/work-orders/{id}/bids            Submit or update a bid
    GET    /api/v1/work-orders/{id}/bids            List bids
    GET    /api/v1/bids/{id}                        Get a bid
    POST   /api/v1/bids/{id}/withdraw               Provider withdraws
    POST   /api/v1/bids/{id}/accept                 Accept and fund escrow
    POST   /api/v1/bids/{id}/decline                Requester declines
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_escrow.api.deps import (
    get_actor_id,
    get_app_settings,
    get_bid_service,
    get_db_session_factory,
    get_notifications,
    get_payments,
    get_work_order_service,
)
from marketplace_escrow.config import Settings
from marketplace_escrow.orchestration.award_workflow import run_award_workflow
from marketplace_escrow.schemas.bids import (
    AwardResponse,
    BidResponse,
    CreateWorkOrderRequest,
    DeclineBidRequest,
    SubmitBidRequest,
    SubmitBidResponse,
    WorkOrderResponse,
)
from marketplace_escrow.services.bid_service import BidService
from marketplace_escrow.services.notification_service import NotificationService
from marketplace_escrow.services.payment_service import PaymentService
from marketplace_escrow.services.work_order_service import WorkOrderService

router = APIRouter(prefix="/api/v1", tags=["Work Orders"])


# ---------------------------------------------------------------------------
# Work orders
# ---------------------------------------------------------------------------


@router.post(
    "/work-orders",
    response_model=WorkOrderResponse,
    status_code=201,
    summary="Post a work order",
)
async def create_work_order(
    request: CreateWorkOrderRequest,
    actor_id: str = Depends(get_actor_id),
    svc: WorkOrderService = Depends(get_work_order_service),
) -> WorkOrderResponse:
    order = await svc.create_work_order(
        requester_id=actor_id,
        title=request.title,
        description=request.description,
        bid_deadline=request.bid_deadline,
    )
    return WorkOrderResponse.model_validate(order)


@router.get("/work-orders/{order_id}", response_model=WorkOrderResponse)
async def get_work_order(
    order_id: uuid.UUID,
    svc: WorkOrderService = Depends(get_work_order_service),
) -> WorkOrderResponse:
    return WorkOrderResponse.model_validate(await svc.get(order_id))


@router.post("/work-orders/{order_id}/close-bidding", response_model=WorkOrderResponse)
async def close_bidding(
    order_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    svc: WorkOrderService = Depends(get_work_order_service),
) -> WorkOrderResponse:
    return WorkOrderResponse.model_validate(await svc.close_bidding(order_id, actor_id))


@router.post(
    "/work-orders/{order_id}/complete",
    response_model=WorkOrderResponse,
    summary="Mark the job completed",
)
async def complete_work_order(
    order_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    svc: WorkOrderService = Depends(get_work_order_service),
) -> WorkOrderResponse:
    """Starts the contest window; the scheduler releases payment once it passes."""
    return WorkOrderResponse.model_validate(await svc.mark_completed(order_id, actor_id))


@router.post("/work-orders/{order_id}/close", response_model=WorkOrderResponse)
async def close_work_order(
    order_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    svc: WorkOrderService = Depends(get_work_order_service),
) -> WorkOrderResponse:
    return WorkOrderResponse.model_validate(await svc.close(order_id, actor_id))


# ---------------------------------------------------------------------------
# Bids
# ---------------------------------------------------------------------------


@router.post(
    "/work-orders/{order_id}/bids",
    response_model=SubmitBidResponse,
    summary="Submit or update a bid",
)
async def submit_bid(
    order_id: uuid.UUID,
    request: SubmitBidRequest,
    response: Response,
    actor_id: str = Depends(get_actor_id),
    svc: BidService = Depends(get_bid_service),
) -> SubmitBidResponse:
    """Creates a bid (201) or updates the provider's pending bid in place (200)."""
    bid, created = await svc.submit_or_update_bid(
        order_id=order_id,
        provider_id=actor_id,
        amount=request.amount,
        estimated_duration=request.estimated_duration,
        proposed_start=request.proposed_start,
        message=request.message,
        milestone_plan=request.plan_as_dicts(),
    )
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return SubmitBidResponse(bid=BidResponse.model_validate(bid), created=created)


@router.get("/work-orders/{order_id}/bids", response_model=list[BidResponse])
async def list_bids(
    order_id: uuid.UUID,
    svc: BidService = Depends(get_bid_service),
) -> list[BidResponse]:
    return [BidResponse.model_validate(b) for b in await svc.list_bids(order_id)]


@router.get("/bids/{bid_id}", response_model=BidResponse)
async def get_bid(
    bid_id: uuid.UUID,
    svc: BidService = Depends(get_bid_service),
) -> BidResponse:
    return BidResponse.model_validate(await svc.get_bid(bid_id))


@router.post("/bids/{bid_id}/withdraw", response_model=BidResponse)
async def withdraw_bid(
    bid_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    svc: BidService = Depends(get_bid_service),
) -> BidResponse:
    return BidResponse.model_validate(await svc.withdraw_bid(bid_id, actor_id))


@router.post(
    "/bids/{bid_id}/accept",
    response_model=AwardResponse,
    summary="Accept a bid and fund its escrow",
)
async def accept_bid(
    bid_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    payments: PaymentService = Depends(get_payments),
    notifications: NotificationService = Depends(get_notifications),
    settings: Settings = Depends(get_app_settings),
) -> AwardResponse:
    """Acceptance and funding commit separately.

    A failed capture leaves the bid accepted with final_status
    "awaiting_funding"; retry with POST /api/v1/bids/{bid_id}/fund.
    """
    state = await run_award_workflow(
        bid_id=bid_id,
        requester_id=actor_id,
        session_factory=session_factory,
        payments=payments,
        notifications=notifications,
        settings=settings,
    )
    return AwardResponse(
        bid_id=bid_id,
        accepted=state["accepted"],
        hold_id=state["hold_id"] or None,
        hold_status=state["hold_status"] or None,
        final_status=state["final_status"],
        error=state["error"] or None,
    )


@router.post("/bids/{bid_id}/decline", response_model=BidResponse)
async def decline_bid(
    bid_id: uuid.UUID,
    request: DeclineBidRequest,
    actor_id: str = Depends(get_actor_id),
    svc: BidService = Depends(get_bid_service),
) -> BidResponse:
    return BidResponse.model_validate(await svc.decline_bid(bid_id, actor_id, request.reason))
