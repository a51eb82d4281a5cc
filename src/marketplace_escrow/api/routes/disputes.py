"""Dispute REST API routes.

Routes:
    POST   /api/v1/disputes                         File a dispute (freezes the hold)
    GET    /api/v1/disputes/{id}                    Get a dispute
    GET    /api/v1/disputes/{id}/timeline           Case timeline
    POST   /api/v1/disputes/{id}/status             Move the case along
    POST   /api/v1/disputes/{id}/resolve            Arbiter ruling
    GET    /api/v1/providers/{id}/complaints        Upheld complaint history
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends

from marketplace_escrow.api.deps import get_actor_id, get_dispute_service
from marketplace_escrow.schemas.disputes import (
    AdvanceDisputeRequest,
    ComplaintHistoryResponse,
    DisputeResponse,
    FileDisputeRequest,
    ResolveDisputeRequest,
    TimelineEntryResponse,
)
from marketplace_escrow.services.dispute_service import DisputeService

router = APIRouter(prefix="/api/v1", tags=["Disputes"])


@router.post(
    "/disputes",
    response_model=DisputeResponse,
    status_code=201,
    summary="File a dispute",
)
async def file_dispute(
    request: FileDisputeRequest,
    actor_id: str = Depends(get_actor_id),
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    """Opens a case and freezes the escrow hold until it is resolved or dropped."""
    dispute = await svc.file_dispute(
        hold_id=request.escrow_hold_id,
        filer_id=actor_id,
        respondent_id=request.respondent_id,
        dispute_type=request.type,
        description=request.description,
        amount=request.amount,
        priority=request.priority,
        desired_resolution=request.desired_resolution,
    )
    return DisputeResponse.model_validate(dispute)


@router.get("/disputes/{dispute_id}", response_model=DisputeResponse)
async def get_dispute(
    dispute_id: uuid.UUID,
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    return DisputeResponse.model_validate(await svc.get_dispute(dispute_id))


@router.get("/disputes/{dispute_id}/timeline", response_model=list[TimelineEntryResponse])
async def get_timeline(
    dispute_id: uuid.UUID,
    svc: DisputeService = Depends(get_dispute_service),
) -> list[TimelineEntryResponse]:
    return [TimelineEntryResponse.model_validate(e) for e in await svc.get_timeline(dispute_id)]


@router.post(
    "/disputes/{dispute_id}/status",
    response_model=DisputeResponse,
    summary="Advance a dispute",
)
async def advance_dispute(
    dispute_id: uuid.UUID,
    request: AdvanceDisputeRequest,
    actor_id: str = Depends(get_actor_id),
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    """Review, mediation, escalation, closing or cancelling. Use /resolve to rule."""
    dispute = await svc.advance(dispute_id, request.status, actor_id, note=request.note)
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/disputes/{dispute_id}/resolve",
    response_model=DisputeResponse,
    summary="Resolve a dispute",
)
async def resolve_dispute(
    dispute_id: uuid.UUID,
    request: ResolveDisputeRequest,
    actor_id: str = Depends(get_actor_id),
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    dispute = await svc.resolve(
        dispute_id,
        request.outcome,
        actor_id,
        note=request.note,
        refund_amount=request.refund_amount,
    )
    return DisputeResponse.model_validate(dispute)


@router.get(
    "/providers/{provider_id}/complaints",
    response_model=ComplaintHistoryResponse,
)
async def get_complaint_history(
    provider_id: str,
    svc: DisputeService = Depends(get_dispute_service),
) -> ComplaintHistoryResponse:
    return ComplaintHistoryResponse(**(await svc.provider_complaint_history(provider_id)))
