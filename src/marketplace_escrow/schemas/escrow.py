"""Pydantic schemas for escrow holds, milestones and evidence.

These schemas define the request/response shapes for the REST API. They
are separate from the ORM models to keep the API and database layers
apart.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - resolved at runtime by pydantic
from datetime import datetime  # noqa: TC003
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from marketplace_escrow.domain.enums import SignerRole  # noqa: TC001

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class FundEscrowRequest(BaseModel):
    """Request body for funding the escrow of an accepted bid."""

    amount: Decimal | None = Field(
        default=None,
        gt=0,
        description="Must equal the accepted bid amount when given",
    )


class RecordSignatureRequest(BaseModel):
    role: SignerRole
    evidence_ref: str = Field(..., min_length=1, max_length=500)
    signer_name: str = Field(..., min_length=1, max_length=200)


class RecordPhotoRequest(BaseModel):
    evidence_ref: str = Field(..., min_length=1, max_length=500)


class RecordGPSRequest(BaseModel):
    """GPS fix taken at the job site."""

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: str | None = Field(default=None, max_length=500)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class EscrowHoldResponse(BaseModel):
    """Response schema for an escrow hold."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    bid_id: uuid.UUID
    work_order_id: uuid.UUID
    requester_id: str
    provider_id: str
    amount: Decimal
    released_amount: Decimal | None
    refunded_amount: Decimal | None
    status: str
    capture_ref: str | None
    payout_ref: str | None
    refund_ref: str | None
    dispute_id: uuid.UUID | None
    release_attempts: int
    last_release_error: str | None
    next_release_attempt_at: datetime | None
    created_at: datetime
    updated_at: datetime
    funded_at: datetime | None
    released_at: datetime | None
    refunded_at: datetime | None


class MilestoneResponse(BaseModel):
    """Response schema for a milestone and the evidence recorded against it."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    escrow_hold_id: uuid.UUID
    position: int
    title: str
    description: str | None
    percentage: int | None
    amount: Decimal | None
    require_signature: bool
    require_photos: bool
    min_photos: int
    require_gps: bool
    provider_signer_name: str | None
    provider_signed_at: datetime | None
    requester_signer_name: str | None
    requester_signed_at: datetime | None
    photo_count: int
    gps_lat: float | None
    gps_lng: float | None
    gps_address: str | None
    gps_verified_at: datetime | None
    completed_at: datetime | None


class MilestoneEligibilityResponse(BaseModel):
    milestone_id: uuid.UUID
    eligible: bool
    shortfalls: list[str]


class EvidenceUrlsResponse(BaseModel):
    """Short-lived URLs for a milestone's stored evidence."""

    milestone_id: uuid.UUID
    provider_signature: str | None
    requester_signature: str | None
    photos: list[str]


class EscrowEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: uuid.UUID
    escrow_hold_id: uuid.UUID
    event_type: str
    old_status: str | None
    new_status: str
    actor: str
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class HoldStatusResponse(BaseModel):
    """Lightweight status check response."""

    hold_id: uuid.UUID
    status: str
    release_attempts: int
    allowed_events: list[str] = Field(
        description="State machine events that can fire from the current status"
    )
    shortfalls: dict[str, list[str]] = Field(
        description="Unmet evidence requirements keyed by milestone"
    )


class SweepResponse(BaseModel):
    """Counts from one scheduler run."""

    funding: dict
    release: dict


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"


class ErrorResponse(BaseModel):
    error: str
    message: str
    details: dict | None = None
