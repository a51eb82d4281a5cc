"""SQLAlchemy 2.0 ORM models for the marketplace escrow core.

Tables:
    1. work_orders       - Jobs posted by requesters.
    2. bids              - Provider offers against a work order.
    3. escrow_holds      - Funds captured for an accepted bid.
    4. milestones        - Verification units of a hold, with their evidence.
    5. milestone_photos  - Append-only proof photo references.
    6. disputes          - Contested holds.
    7. dispute_timeline  - Append-only history of a dispute.
    8. escrow_events     - Append-only audit log of every hold transition.

Design decisions:
    - UUIDs as primary keys; party ids are opaque strings from the identity system.
    - Numeric(12, 2) for money (no floating point rounding errors).
    - Timestamps are stored and returned as timezone-aware UTC.
    - JSON columns (JSONB on PostgreSQL) for the bid milestone plan and event metadata.
    - A partial unique index keeps one active bid per (work order, provider).
    - Statuses are CHECK-constrained strings mirroring the domain enums.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime column that always round-trips as UTC.

    SQLite stores datetimes without an offset; values read back are naive and
    are re-tagged as UTC here so comparisons against aware datetimes work.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # noqa: ANN001, ANN201
        if value is not None:
            if value.tzinfo is None:
                raise ValueError("naive datetime bound to a UTC column")
            value = value.astimezone(UTC)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):  # noqa: ANN001, ANN201
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# 1. work_orders
# ---------------------------------------------------------------------------
class WorkOrder(Base):
    """A job posted by a requester."""

    __tablename__ = "work_orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    requester_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_open_for_bids: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    bid_deadline: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="open",
        comment="open -> in_progress -> completed -> closed",
    )
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'in_progress', 'completed', 'closed')",
            name="ck_work_order_valid_status",
        ),
        Index("idx_work_order_requester", "requester_id"),
        Index("idx_work_order_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<WorkOrder id={self.id} status={self.status}>"


# ---------------------------------------------------------------------------
# 2. bids
# ---------------------------------------------------------------------------
class Bid(Base):
    """A provider's offer to perform a work order."""

    __tablename__ = "bids"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    work_order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("work_orders.id"), nullable=False
    )
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    estimated_duration: Mapped[str | None] = mapped_column(String(100), nullable=True)
    proposed_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    milestone_plan: Mapped[list | None] = mapped_column(
        JSONType,
        nullable=True,
        default=None,
        comment="Milestones (title, requirement flags, percentage) materialised on funding",
    )

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    decline_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
    accepted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    declined_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    withdrawn_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'accepted', 'declined', 'withdrawn')",
            name="ck_bid_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_bid_positive_amount"),
        Index(
            "uq_bid_active_provider",
            "work_order_id",
            "provider_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'accepted')"),
            sqlite_where=text("status IN ('pending', 'accepted')"),
        ),
        Index("idx_bid_work_order", "work_order_id"),
        Index("idx_bid_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Bid id={self.id} provider={self.provider_id} status={self.status}>"


# ---------------------------------------------------------------------------
# 3. escrow_holds
# ---------------------------------------------------------------------------
class EscrowHold(Base):
    """Funds captured from the requester for one accepted bid."""

    __tablename__ = "escrow_holds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    bid_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bids.id"), nullable=False, unique=True
    )
    work_order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("work_orders.id"), nullable=False
    )
    requester_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    released_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    refunded_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="funded",
        comment="Current lifecycle state (guarded by EscrowStateMachine)",
    )
    capture_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payout_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    refund_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    dispute_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    release_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_release_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_release_attempt_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
    funded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('funded', 'held', 'disputed', 'released', 'refunded', "
            "'release_failed')",
            name="ck_escrow_hold_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_escrow_hold_positive_amount"),
        CheckConstraint("release_attempts >= 0", name="ck_escrow_hold_attempts"),
        Index("idx_escrow_hold_status", "status"),
        Index("idx_escrow_hold_work_order", "work_order_id"),
    )

    def __repr__(self) -> str:
        return f"<EscrowHold id={self.id} status={self.status} amount={self.amount}>"


# ---------------------------------------------------------------------------
# 4. milestones / 5. milestone_photos
# ---------------------------------------------------------------------------
class Milestone(Base):
    """A verification unit of an escrow hold and the evidence recorded against it.

    Signatures are partitioned by role, photos are append-only rows counted
    in photo_count, and GPS keeps the last fix.
    """

    __tablename__ = "milestones"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_hold_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_holds.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    percentage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    # --- Requirements ---
    require_signature: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    require_photos: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    min_photos: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    require_gps: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # --- Signature evidence ---
    provider_signature_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    provider_signer_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    provider_signed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    requester_signature_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    requester_signer_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    requester_signed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # --- Photo evidence ---
    photo_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # --- GPS evidence ---
    gps_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    gps_lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    gps_address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    gps_verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("min_photos >= 0", name="ck_milestone_min_photos"),
        CheckConstraint("photo_count >= 0", name="ck_milestone_photo_count"),
        Index("idx_milestone_hold", "escrow_hold_id"),
    )

    def __repr__(self) -> str:
        return f"<Milestone id={self.id} title={self.title!r} hold={self.escrow_hold_id}>"


class MilestonePhoto(Base):
    """One proof photo reference. Rows are never updated or deleted."""

    __tablename__ = "milestone_photos"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    milestone_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("milestones.id", ondelete="CASCADE"), nullable=False
    )
    evidence_ref: Mapped[str] = mapped_column(String(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("idx_milestone_photo_milestone", "milestone_id"),)


# ---------------------------------------------------------------------------
# 6. disputes / 7. dispute_timeline
# ---------------------------------------------------------------------------
class Dispute(Base):
    """A contested escrow hold and the arbitration case around it."""

    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    case_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    escrow_hold_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_holds.id"), nullable=False
    )
    work_order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("work_orders.id"), nullable=False
    )

    type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default="medium")

    filed_by: Mapped[str] = mapped_column(String(64), nullable=False)
    respondent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    disputed_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    desired_resolution: Mapped[str | None] = mapped_column(Text, nullable=True)

    outcome: Mapped[str | None] = mapped_column(String(30), nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    response_deadline: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    resolution_deadline: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'under_review', 'mediation', 'escalated', "
            "'resolved', 'closed', 'cancelled')",
            name="ck_dispute_valid_status",
        ),
        CheckConstraint("disputed_amount > 0", name="ck_dispute_positive_amount"),
        Index("idx_dispute_hold", "escrow_hold_id"),
        Index("idx_dispute_status", "status"),
        Index("idx_dispute_respondent", "respondent_id"),
    )

    def __repr__(self) -> str:
        return f"<Dispute {self.case_number} status={self.status}>"


class DisputeTimelineEntry(Base):
    """Append-only history entry of a dispute."""

    __tablename__ = "dispute_timeline"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("disputes.id", ondelete="CASCADE"), nullable=False
    )
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    previous_value: Mapped[str | None] = mapped_column(String(64), nullable=True)
    new_value: Mapped[str | None] = mapped_column(String(64), nullable=True)
    performed_by: Mapped[str] = mapped_column(String(64), nullable=False)
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True, default=None
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("idx_timeline_dispute", "dispute_id"),)


# ---------------------------------------------------------------------------
# 8. escrow_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class EscrowEvent(Base):
    """Immutable audit record of every status transition of an escrow hold.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level.
    """

    __tablename__ = "escrow_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_hold_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_holds.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
        comment="Hold status before this event (null for creation)",
    )
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="SYSTEM",
        comment="Party id, arbiter id or SYSTEM for scheduler actions",
    )
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
        default=None,
        comment="Payment references, shortfalls, error text",
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_event_hold", "escrow_hold_id"),
        Index("idx_event_type", "event_type"),
        Index("idx_event_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowEvent id={self.id} type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )
