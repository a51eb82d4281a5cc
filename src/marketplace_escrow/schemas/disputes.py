"""Pydantic schemas for disputes and their timelines."""

from __future__ import annotations

import uuid  # noqa: TC003 - resolved at runtime by pydantic
from datetime import datetime  # noqa: TC003
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from marketplace_escrow.domain.enums import (  # noqa: TC001
    DisputeOutcome,
    DisputePriority,
    DisputeStatus,
    DisputeType,
)


class FileDisputeRequest(BaseModel):
    """Request body for filing a dispute against an escrow hold."""

    escrow_hold_id: uuid.UUID
    respondent_id: str = Field(..., min_length=1)
    type: DisputeType
    description: str = Field(..., min_length=10, max_length=5000)
    amount: Decimal | None = Field(
        default=None,
        gt=0,
        description="Disputed amount; defaults to the full hold amount",
    )
    priority: DisputePriority = DisputePriority.MEDIUM
    desired_resolution: str | None = Field(default=None, max_length=2000)


class AdvanceDisputeRequest(BaseModel):
    status: DisputeStatus
    note: str | None = Field(default=None, max_length=2000)


class ResolveDisputeRequest(BaseModel):
    """Arbiter's ruling on a dispute."""

    outcome: DisputeOutcome
    note: str | None = Field(default=None, max_length=2000)
    refund_amount: Decimal | None = Field(
        default=None,
        gt=0,
        description="Requester's share for a split; defaults to half the hold",
    )


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    case_number: str
    escrow_hold_id: uuid.UUID
    work_order_id: uuid.UUID
    type: str
    status: str
    priority: str
    filed_by: str
    respondent_id: str
    disputed_amount: Decimal
    description: str
    desired_resolution: str | None
    outcome: str | None
    resolution_note: str | None
    refund_amount: Decimal | None
    response_deadline: datetime
    resolution_deadline: datetime
    resolved_by: str | None
    resolved_at: datetime | None
    created_at: datetime
    updated_at: datetime


class TimelineEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: uuid.UUID
    dispute_id: uuid.UUID
    action: str
    description: str
    previous_value: str | None
    new_value: str | None
    performed_by: str
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class ComplaintHistoryResponse(BaseModel):
    """Upheld complaints against a provider inside the lookback window."""

    provider_id: str
    upheld_complaints: int
    window_days: int
    flagged: bool
    case_numbers: list[str]
