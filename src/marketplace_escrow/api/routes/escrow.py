"""Escrow hold REST API routes.

These endpoints provide the HTTP interface for funding, releasing and
inspecting escrow holds. The MCP tools in mcp_server/tools.py call the
same service layer.

Routes:
    POST   /api/v1/bids/{bid_id}/fund                     Fund an accepted bid
    GET    /api/v1/escrow/{id}                            Get hold details
    GET    /api/v1/escrow/by-bid/{bid_id}                 Get the hold of a bid
    GET    /api/v1/escrow/{id}/status                     Status + release shortfalls
    GET    /api/v1/escrow/{id}/events                     Audit trail
    GET    /api/v1/escrow/{id}/milestones                 Milestones of the hold
    POST   /api/v1/escrow/{id}/milestones/{mid}/complete  Mark a milestone complete
    POST   /api/v1/escrow/{id}/release                    Requester releases early
    POST   /api/v1/escrow/{id}/requeue                    Operator requeues a failed release
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends

from marketplace_escrow.api.deps import get_actor_id, get_escrow_service
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.schemas.escrow import (
    EscrowEventResponse,
    EscrowHoldResponse,
    FundEscrowRequest,
    HoldStatusResponse,
    MilestoneResponse,
)
from marketplace_escrow.services.escrow_service import EscrowService

router = APIRouter(prefix="/api/v1", tags=["Escrow"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Fund
# ---------------------------------------------------------------------------


@router.post(
    "/bids/{bid_id}/fund",
    response_model=EscrowHoldResponse,
    summary="Fund the escrow of an accepted bid",
)
async def fund_escrow(
    bid_id: uuid.UUID,
    request: FundEscrowRequest,
    actor_id: str = Depends(get_actor_id),
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowHoldResponse:
    """Capture the bid amount and hold it. Replays return the existing hold."""
    hold = await svc.fund(bid_id, amount=request.amount, actor_id=actor_id)
    return EscrowHoldResponse.model_validate(hold)


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------


@router.get("/escrow/by-bid/{bid_id}", response_model=EscrowHoldResponse)
async def get_escrow_by_bid(
    bid_id: uuid.UUID,
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowHoldResponse:
    return EscrowHoldResponse.model_validate(await svc.get_hold_by_bid(bid_id))


@router.get(
    "/escrow/{hold_id}",
    response_model=EscrowHoldResponse,
    summary="Get escrow hold details",
)
async def get_escrow(
    hold_id: uuid.UUID,
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowHoldResponse:
    return EscrowHoldResponse.model_validate(await svc.get_hold(hold_id))


@router.get(
    "/escrow/{hold_id}/status",
    response_model=HoldStatusResponse,
    summary="Lightweight status check",
)
async def get_status(
    hold_id: uuid.UUID,
    svc: EscrowService = Depends(get_escrow_service),
) -> HoldStatusResponse:
    """Current status, allowed state machine events and unmet evidence."""
    return HoldStatusResponse(**(await svc.get_status(hold_id)))


@router.get(
    "/escrow/{hold_id}/events",
    response_model=list[EscrowEventResponse],
    summary="Get audit trail",
)
async def get_events(
    hold_id: uuid.UUID,
    svc: EscrowService = Depends(get_escrow_service),
) -> list[EscrowEventResponse]:
    events = await svc.get_events(hold_id)
    return [EscrowEventResponse.model_validate(e) for e in events]


@router.get("/escrow/{hold_id}/milestones", response_model=list[MilestoneResponse])
async def list_milestones(
    hold_id: uuid.UUID,
    svc: EscrowService = Depends(get_escrow_service),
) -> list[MilestoneResponse]:
    return [MilestoneResponse.model_validate(m) for m in await svc.list_milestones(hold_id)]


# ---------------------------------------------------------------------------
# Milestone completion + release
# ---------------------------------------------------------------------------


@router.post(
    "/escrow/{hold_id}/milestones/{milestone_id}/complete",
    response_model=MilestoneResponse,
    summary="Mark a milestone complete",
)
async def complete_milestone(
    hold_id: uuid.UUID,
    milestone_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    svc: EscrowService = Depends(get_escrow_service),
) -> MilestoneResponse:
    """Rejected with the list of unmet requirements when evidence is missing."""
    milestone = await svc.mark_milestone_complete(hold_id, milestone_id, actor_id)
    return MilestoneResponse.model_validate(milestone)


@router.post(
    "/escrow/{hold_id}/release",
    response_model=EscrowHoldResponse,
    summary="Release payment to the provider",
)
async def release_escrow(
    hold_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowHoldResponse:
    """Requester-initiated release ahead of the contest window. Idempotent."""
    hold = await svc.release(hold_id, actor_id=actor_id)
    logger.info("api.escrow_released", hold_id=str(hold_id), status=hold.status)
    return EscrowHoldResponse.model_validate(hold)


@router.post(
    "/escrow/{hold_id}/requeue",
    response_model=EscrowHoldResponse,
    summary="Requeue a failed release",
)
async def requeue_release(
    hold_id: uuid.UUID,
    actor_id: str = Depends(get_actor_id),
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowHoldResponse:
    return EscrowHoldResponse.model_validate(await svc.requeue_release(hold_id, actor_id))
