"""Pydantic API schemas."""

from marketplace_escrow.schemas.bids import (
    AwardResponse,
    BidResponse,
    CreateWorkOrderRequest,
    DeclineBidRequest,
    MilestonePlanItem,
    SubmitBidRequest,
    SubmitBidResponse,
    WorkOrderResponse,
)
from marketplace_escrow.schemas.disputes import (
    AdvanceDisputeRequest,
    ComplaintHistoryResponse,
    DisputeResponse,
    FileDisputeRequest,
    ResolveDisputeRequest,
    TimelineEntryResponse,
)
from marketplace_escrow.schemas.escrow import (
    ErrorResponse,
    EscrowEventResponse,
    EscrowHoldResponse,
    EvidenceUrlsResponse,
    FundEscrowRequest,
    HealthResponse,
    HoldStatusResponse,
    MilestoneEligibilityResponse,
    MilestoneResponse,
    RecordGPSRequest,
    RecordPhotoRequest,
    RecordSignatureRequest,
    SweepResponse,
)

__all__ = [
    "AdvanceDisputeRequest",
    "AwardResponse",
    "BidResponse",
    "ComplaintHistoryResponse",
    "CreateWorkOrderRequest",
    "DeclineBidRequest",
    "DisputeResponse",
    "ErrorResponse",
    "EscrowEventResponse",
    "EscrowHoldResponse",
    "EvidenceUrlsResponse",
    "FileDisputeRequest",
    "FundEscrowRequest",
    "HealthResponse",
    "HoldStatusResponse",
    "MilestoneEligibilityResponse",
    "MilestonePlanItem",
    "MilestoneResponse",
    "RecordGPSRequest",
    "RecordPhotoRequest",
    "RecordSignatureRequest",
    "ResolveDisputeRequest",
    "SubmitBidRequest",
    "SubmitBidResponse",
    "TimelineEntryResponse",
    "WorkOrderResponse",
]
