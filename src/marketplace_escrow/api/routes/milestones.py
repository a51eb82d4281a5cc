"""Milestone evidence REST API routes.

Routes:
    GET    /api/v1/milestones/{id}               Get a milestone
    POST   /api/v1/milestones/{id}/signature     Record a signature
    POST   /api/v1/milestones/{id}/photos        Record a photo
    POST   /api/v1/milestones/{id}/gps           Record a GPS fix
    GET    /api/v1/milestones/{id}/eligibility   Unmet requirements
    GET    /api/v1/milestones/{id}/evidence      Temporary evidence URLs
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends

from marketplace_escrow.api.deps import get_actor_id, get_milestone_service
from marketplace_escrow.schemas.escrow import (
    EvidenceUrlsResponse,
    MilestoneEligibilityResponse,
    MilestoneResponse,
    RecordGPSRequest,
    RecordPhotoRequest,
    RecordSignatureRequest,
)
from marketplace_escrow.services.milestone_service import MilestoneService

router = APIRouter(prefix="/api/v1/milestones", tags=["Milestones"])


@router.get("/{milestone_id}", response_model=MilestoneResponse)
async def get_milestone(
    milestone_id: uuid.UUID,
    svc: MilestoneService = Depends(get_milestone_service),
) -> MilestoneResponse:
    return MilestoneResponse.model_validate(await svc.get_milestone(milestone_id))


@router.post(
    "/{milestone_id}/signature",
    response_model=MilestoneResponse,
    summary="Record a signature",
)
async def record_signature(
    milestone_id: uuid.UUID,
    request: RecordSignatureRequest,
    actor_id: str = Depends(get_actor_id),
    svc: MilestoneService = Depends(get_milestone_service),
) -> MilestoneResponse:
    """The first signature per role is kept; later ones are ignored."""
    milestone = await svc.record_signature(
        milestone_id,
        role=request.role,
        evidence_ref=request.evidence_ref,
        signer_name=request.signer_name,
        actor_id=actor_id,
    )
    return MilestoneResponse.model_validate(milestone)


@router.post("/{milestone_id}/photos", response_model=MilestoneResponse)
async def record_photo(
    milestone_id: uuid.UUID,
    request: RecordPhotoRequest,
    actor_id: str = Depends(get_actor_id),
    svc: MilestoneService = Depends(get_milestone_service),
) -> MilestoneResponse:
    milestone = await svc.record_photo(milestone_id, request.evidence_ref, actor_id=actor_id)
    return MilestoneResponse.model_validate(milestone)


@router.post("/{milestone_id}/gps", response_model=MilestoneResponse)
async def record_gps(
    milestone_id: uuid.UUID,
    request: RecordGPSRequest,
    actor_id: str = Depends(get_actor_id),
    svc: MilestoneService = Depends(get_milestone_service),
) -> MilestoneResponse:
    milestone = await svc.record_gps(
        milestone_id,
        lat=request.lat,
        lng=request.lng,
        address=request.address,
        actor_id=actor_id,
    )
    return MilestoneResponse.model_validate(milestone)


@router.get("/{milestone_id}/eligibility", response_model=MilestoneEligibilityResponse)
async def get_eligibility(
    milestone_id: uuid.UUID,
    svc: MilestoneService = Depends(get_milestone_service),
) -> MilestoneEligibilityResponse:
    shortfalls = await svc.evaluate(milestone_id)
    return MilestoneEligibilityResponse(
        milestone_id=milestone_id, eligible=not shortfalls, shortfalls=shortfalls
    )


@router.get("/{milestone_id}/evidence", response_model=EvidenceUrlsResponse)
async def get_evidence_urls(
    milestone_id: uuid.UUID,
    svc: MilestoneService = Depends(get_milestone_service),
) -> EvidenceUrlsResponse:
    return EvidenceUrlsResponse(**(await svc.evidence_urls(milestone_id)))
