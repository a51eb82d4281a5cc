"""Pydantic schemas for work orders and bids."""

from __future__ import annotations

import uuid  # noqa: TC003 - resolved at runtime by pydantic
from datetime import datetime  # noqa: TC003
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateWorkOrderRequest(BaseModel):
    """Request body for posting a new work order."""

    title: str = Field(..., min_length=3, max_length=200, examples=["Replace kitchen faucet"])
    description: str | None = Field(default=None, max_length=5000)
    bid_deadline: datetime | None = Field(
        default=None,
        description="Bids are rejected after this instant (timezone-aware)",
    )


class MilestonePlanItem(BaseModel):
    """One proposed milestone and the evidence it needs before release."""

    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    percentage: int | None = Field(default=None, ge=1, le=100)
    require_signature: bool = False
    require_photos: bool = False
    min_photos: int | None = Field(default=None, ge=0)
    require_gps: bool = False


class SubmitBidRequest(BaseModel):
    """Request body for submitting or updating a bid."""

    amount: Decimal = Field(..., gt=0, decimal_places=2, examples=[250.00])
    estimated_duration: str | None = Field(default=None, max_length=100, examples=["2 days"])
    proposed_start: datetime | None = None
    message: str | None = Field(default=None, max_length=2000)
    milestone_plan: list[MilestonePlanItem] | None = None

    def plan_as_dicts(self) -> list[dict] | None:
        if self.milestone_plan is None:
            return None
        return [item.model_dump(exclude_none=True) for item in self.milestone_plan]


class DeclineBidRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class WorkOrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    requester_id: str
    title: str
    description: str | None
    is_open_for_bids: bool
    bid_deadline: datetime | None
    status: str
    completed_at: datetime | None
    closed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class BidResponse(BaseModel):
    """Response schema for a bid."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    work_order_id: uuid.UUID
    provider_id: str
    amount: Decimal
    estimated_duration: str | None
    proposed_start: datetime | None
    message: str | None
    milestone_plan: list | None
    status: str
    decline_reason: str | None
    created_at: datetime
    updated_at: datetime
    accepted_at: datetime | None
    declined_at: datetime | None
    withdrawn_at: datetime | None


class SubmitBidResponse(BaseModel):
    bid: BidResponse
    created: bool = Field(description="False when an existing pending bid was updated")


class AwardResponse(BaseModel):
    """Outcome of accepting a bid and funding its escrow."""

    bid_id: uuid.UUID
    accepted: bool
    hold_id: uuid.UUID | None = None
    hold_status: str | None = None
    final_status: str = Field(description='"funded" or "awaiting_funding"')
    error: str | None = None
