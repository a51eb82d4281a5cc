"""MCP tool definitions for the marketplace escrow.

These tools expose the marketplace through the Model Context Protocol so
agents acting for requesters, providers or arbiters can discover and call
them programmatically.

Tools:
    - post_work_order: Post a job open for bids
    - submit_bid: Submit or update a bid on a job
    - award_bid: Accept a bid and fund its escrow
    - record_signature / record_photo / record_gps: Attach completion evidence
    - complete_milestone: Mark a milestone complete
    - complete_job: Mark the whole job completed
    - release_payment: Requester releases payment early
    - check_status: Hold status with unmet evidence requirements
    - file_dispute / advance_dispute / resolve_dispute: Dispute handling
    - run_scheduler: Run funding reconciliation and the release sweep once

The MCP server is mounted into FastAPI at /mcp via app.mount().
Each tool manages its own database session (no FastAPI Depends available).
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import TYPE_CHECKING

from mcp.server.fastmcp import FastMCP

from marketplace_escrow.config import get_settings
from marketplace_escrow.domain.enums import (
    DisputeOutcome,
    DisputePriority,
    DisputeStatus,
    DisputeType,
    SignerRole,
)
from marketplace_escrow.domain.exceptions import MarketplaceError
from marketplace_escrow.infrastructure.database.engine import get_session_factory
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.orchestration.award_workflow import run_award_workflow
from marketplace_escrow.services.bid_service import BidService
from marketplace_escrow.services.dispute_service import DisputeService
from marketplace_escrow.services.escrow_service import EscrowService
from marketplace_escrow.services.milestone_service import MilestoneService
from marketplace_escrow.services.providers import (
    get_evidence_store,
    get_notification_service,
    get_payment_service,
)
from marketplace_escrow.services.release_scheduler import ReleaseScheduler
from marketplace_escrow.services.work_order_service import WorkOrderService

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

# Initialize the MCP server
# This will be mounted into the FastAPI app in main.py
mcp = FastMCP(
    "Marketplace Escrow",
    json_response=True,
)


@asynccontextmanager
async def _transaction() -> AsyncGenerator[AsyncSession, None]:
    """A session with an open transaction, committed when the block exits cleanly."""
    async with get_session_factory()() as session:
        async with session.begin():
            yield session


def _error(tool: str, exc: Exception) -> dict:
    if isinstance(exc, MarketplaceError):
        logger.warning(f"mcp.{tool}.rejected", code=exc.code, error=exc.message)
        return {"error": exc.code, "message": exc.message, "details": exc.details}
    logger.exception(f"mcp.{tool}.error")
    return {"error": "INTERNAL_ERROR", "message": str(exc)}


def _escrow(session: AsyncSession) -> EscrowService:
    return EscrowService(
        session,
        get_payment_service(),
        get_notification_service(),
        get_settings(),
        get_evidence_store(),
    )


def _milestone_dict(milestone) -> dict:
    return {
        "milestone_id": str(milestone.id),
        "title": milestone.title,
        "photo_count": milestone.photo_count,
        "gps_verified": milestone.gps_verified_at is not None,
        "completed": milestone.completed_at is not None,
    }


@mcp.tool()
async def post_work_order(
    requester_id: str,
    title: str,
    description: str = "",
) -> dict:
    """Post a job that providers can bid on.

    Args:
        requester_id: Your user id.
        title: Short job title.
        description: What needs doing.

    Returns:
        The work order id you will need to review bids.
    """
    try:
        async with _transaction() as session:
            order = await WorkOrderService(session, get_notification_service()).create_work_order(
                requester_id=requester_id,
                title=title,
                description=description or None,
            )
        return {"work_order_id": str(order.id), "status": order.status}
    except Exception as exc:
        return _error("post_work_order", exc)


@mcp.tool()
async def submit_bid(
    work_order_id: str,
    provider_id: str,
    amount: str,
    message: str = "",
    milestone_plan: list[dict] | None = None,
) -> dict:
    """Submit a bid, or update your pending bid, on an open work order.

    Args:
        work_order_id: UUID of the work order.
        provider_id: Your user id.
        amount: Bid amount as a decimal string, e.g. "250.00".
        message: Optional note to the requester.
        milestone_plan: Optional list of milestones, each with a title and
            optional percentage, require_signature, require_photos,
            min_photos and require_gps.
    """
    try:
        async with _transaction() as session:
            bids = BidService(session, get_notification_service())
            bid, created = await bids.submit_or_update_bid(
                order_id=uuid.UUID(work_order_id),
                provider_id=provider_id,
                amount=Decimal(amount),
                message=message or None,
                milestone_plan=milestone_plan,
            )
        return {"bid_id": str(bid.id), "status": bid.status, "created": created}
    except Exception as exc:
        return _error("submit_bid", exc)


@mcp.tool()
async def award_bid(bid_id: str, requester_id: str) -> dict:
    """Accept a bid and capture its amount into escrow.

    If the capture fails the bid stays accepted and final_status is
    "awaiting_funding"; funding is retried by the scheduler.
    """
    try:
        return dict(
            await run_award_workflow(
                bid_id=uuid.UUID(bid_id),
                requester_id=requester_id,
                session_factory=get_session_factory(),
                payments=get_payment_service(),
                notifications=get_notification_service(),
                settings=get_settings(),
            )
        )
    except Exception as exc:
        return _error("award_bid", exc)


@mcp.tool()
async def record_signature(
    milestone_id: str,
    actor_id: str,
    role: str,
    evidence_ref: str,
    signer_name: str,
) -> dict:
    """Record a completion signature. role is "provider" or "requester"."""
    try:
        async with _transaction() as session:
            milestone = await MilestoneService(
                session, get_settings(), get_evidence_store()
            ).record_signature(
                uuid.UUID(milestone_id),
                role=SignerRole(role),
                evidence_ref=evidence_ref,
                signer_name=signer_name,
                actor_id=actor_id,
            )
        return _milestone_dict(milestone)
    except Exception as exc:
        return _error("record_signature", exc)


@mcp.tool()
async def record_photo(milestone_id: str, actor_id: str, evidence_ref: str) -> dict:
    """Attach a completion photo to a milestone."""
    try:
        async with _transaction() as session:
            milestone = await MilestoneService(
                session, get_settings(), get_evidence_store()
            ).record_photo(uuid.UUID(milestone_id), evidence_ref, actor_id=actor_id)
        return _milestone_dict(milestone)
    except Exception as exc:
        return _error("record_photo", exc)


@mcp.tool()
async def record_gps(
    milestone_id: str,
    actor_id: str,
    lat: float,
    lng: float,
    address: str = "",
) -> dict:
    """Attach a job-site GPS fix to a milestone."""
    try:
        async with _transaction() as session:
            milestone = await MilestoneService(
                session, get_settings(), get_evidence_store()
            ).record_gps(
                uuid.UUID(milestone_id), lat, lng, address=address or None, actor_id=actor_id
            )
        return _milestone_dict(milestone)
    except Exception as exc:
        return _error("record_gps", exc)


@mcp.tool()
async def complete_milestone(hold_id: str, milestone_id: str, actor_id: str) -> dict:
    """Mark a milestone complete; rejected with the unmet requirements otherwise."""
    try:
        async with _transaction() as session:
            milestone = await _escrow(session).mark_milestone_complete(
                uuid.UUID(hold_id), uuid.UUID(milestone_id), actor_id
            )
        return _milestone_dict(milestone)
    except Exception as exc:
        return _error("complete_milestone", exc)


@mcp.tool()
async def complete_job(work_order_id: str, actor_id: str) -> dict:
    """Mark the job completed. Payment auto-releases after the contest window."""
    try:
        async with _transaction() as session:
            order = await WorkOrderService(session, get_notification_service()).mark_completed(
                uuid.UUID(work_order_id), actor_id
            )
        return {
            "work_order_id": str(order.id),
            "status": order.status,
            "contest_window_days": get_settings().contest_window_days,
        }
    except Exception as exc:
        return _error("complete_job", exc)


@mcp.tool()
async def release_payment(hold_id: str, requester_id: str) -> dict:
    """Release the held payment to the provider before the contest window ends."""
    try:
        async with _transaction() as session:
            hold = await _escrow(session).release(uuid.UUID(hold_id), actor_id=requester_id)
        return {"hold_id": str(hold.id), "status": hold.status, "payout_ref": hold.payout_ref}
    except Exception as exc:
        return _error("release_payment", exc)


@mcp.tool()
async def check_status(hold_id: str) -> dict:
    """Check an escrow hold's status and what evidence is still missing."""
    try:
        async with _transaction() as session:
            return await _escrow(session).get_status(uuid.UUID(hold_id))
    except Exception as exc:
        return _error("check_status", exc)


@mcp.tool()
async def file_dispute(
    hold_id: str,
    filer_id: str,
    respondent_id: str,
    dispute_type: str,
    description: str,
    amount: str = "",
    priority: str = "medium",
) -> dict:
    """File a dispute; the escrow hold is frozen until the case ends.

    Args:
        dispute_type: payment, quality, timeline, scope, communication or other.
        amount: Disputed amount; defaults to the full hold.
        priority: low, medium, high or urgent. Sets the response deadlines.
    """
    try:
        async with _transaction() as session:
            dispute = await DisputeService(
                session, get_payment_service(), get_notification_service(), get_settings()
            ).file_dispute(
                hold_id=uuid.UUID(hold_id),
                filer_id=filer_id,
                respondent_id=respondent_id,
                dispute_type=DisputeType(dispute_type),
                description=description,
                amount=Decimal(amount) if amount else None,
                priority=DisputePriority(priority),
            )
        return {
            "dispute_id": str(dispute.id),
            "case_number": dispute.case_number,
            "status": dispute.status,
            "response_deadline": dispute.response_deadline.isoformat(),
        }
    except Exception as exc:
        return _error("file_dispute", exc)


@mcp.tool()
async def advance_dispute(dispute_id: str, actor_id: str, status: str, note: str = "") -> dict:
    """Move a dispute to under_review, mediation, escalated, closed or cancelled."""
    try:
        async with _transaction() as session:
            dispute = await DisputeService(
                session, get_payment_service(), get_notification_service(), get_settings()
            ).advance(uuid.UUID(dispute_id), DisputeStatus(status), actor_id, note=note or None)
        return {
            "dispute_id": str(dispute.id),
            "status": dispute.status,
            "priority": dispute.priority,
        }
    except Exception as exc:
        return _error("advance_dispute", exc)


@mcp.tool()
async def resolve_dispute(
    dispute_id: str,
    arbiter_id: str,
    outcome: str,
    note: str = "",
    refund_amount: str = "",
) -> dict:
    """Rule on a dispute and move the money.

    Args:
        outcome: release_to_provider, refund_to_requester or split.
        refund_amount: Requester's share for a split; defaults to half.
    """
    try:
        async with _transaction() as session:
            dispute = await DisputeService(
                session, get_payment_service(), get_notification_service(), get_settings()
            ).resolve(
                uuid.UUID(dispute_id),
                DisputeOutcome(outcome),
                arbiter_id,
                note=note or None,
                refund_amount=Decimal(refund_amount) if refund_amount else None,
            )
        return {"dispute_id": str(dispute.id), "status": dispute.status, "outcome": dispute.outcome}
    except Exception as exc:
        return _error("resolve_dispute", exc)


@mcp.tool()
async def run_scheduler() -> dict:
    """Run funding reconciliation and the auto-release sweep once."""
    try:
        scheduler = ReleaseScheduler(
            get_session_factory(),
            get_payment_service(),
            get_notification_service(),
            get_settings(),
        )
        return await scheduler.run_all()
    except Exception as exc:
        return _error("run_scheduler", exc)
