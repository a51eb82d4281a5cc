"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Status changes on escrow holds and evidence writes on milestones are
conditional UPDATEs: the WHERE clause carries the expected current value,
and a zero row count tells the caller a concurrent writer got there first.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import and_, exists, func, or_, select, update

from marketplace_escrow.domain.enums import BidStatus, DisputeStatus, EscrowStatus
from marketplace_escrow.infrastructure.database.orm_models import (
    Bid,
    Dispute,
    DisputeTimelineEntry,
    EscrowEvent,
    EscrowHold,
    Milestone,
    MilestonePhoto,
    WorkOrder,
)

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.enums import EventType, SignerRole, TimelineAction


class WorkOrderRepository:
    """Data access for work orders. Also the job-status source for disputes and sweeps."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, order: WorkOrder) -> WorkOrder:
        self._session.add(order)
        await self._session.flush()
        return order

    async def get_by_id(self, order_id: uuid.UUID) -> WorkOrder | None:
        result = await self._session.execute(
            select(WorkOrder).where(WorkOrder.id == order_id)
        )
        return result.scalar_one_or_none()

    async def update_status(
        self, order: WorkOrder, new_status: str, **values: object
    ) -> WorkOrder:
        """Set the status (call AFTER the transition has been checked)."""
        order.status = new_status
        for name, value in values.items():
            setattr(order, name, value)
        await self._session.flush()
        return order


class BidRepository:
    """Data access for bids."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, bid: Bid) -> Bid:
        self._session.add(bid)
        await self._session.flush()
        return bid

    async def get_by_id(self, bid_id: uuid.UUID) -> Bid | None:
        result = await self._session.execute(select(Bid).where(Bid.id == bid_id))
        return result.scalar_one_or_none()

    async def get_active(self, order_id: uuid.UUID, provider_id: str) -> Bid | None:
        """The provider's pending or accepted bid on an order, if any."""
        result = await self._session.execute(
            select(Bid).where(
                Bid.work_order_id == order_id,
                Bid.provider_id == provider_id,
                Bid.status.in_([s.value for s in BidStatus.active()]),
            )
        )
        return result.scalar_one_or_none()

    async def get_accepted_for_order(self, order_id: uuid.UUID) -> Bid | None:
        result = await self._session.execute(
            select(Bid)
            .where(Bid.work_order_id == order_id, Bid.status == BidStatus.ACCEPTED.value)
            .order_by(Bid.accepted_at.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_for_order(self, order_id: uuid.UUID) -> list[Bid]:
        result = await self._session.execute(
            select(Bid).where(Bid.work_order_id == order_id).order_by(Bid.created_at.asc())
        )
        return list(result.scalars().all())

    async def update_status(self, bid: Bid, new_status: BidStatus, **values: object) -> Bid:
        """Set the status (call AFTER state machine validation)."""
        bid.status = new_status.value
        for name, value in values.items():
            setattr(bid, name, value)
        await self._session.flush()
        return bid

    async def list_unfunded_accepted(self, accepted_before: datetime) -> list[Bid]:
        """Accepted bids older than the cutoff that still have no escrow hold."""
        result = await self._session.execute(
            select(Bid)
            .where(
                Bid.status == BidStatus.ACCEPTED.value,
                Bid.accepted_at <= accepted_before,
                ~exists().where(EscrowHold.bid_id == Bid.id),
            )
            .order_by(Bid.accepted_at.asc())
        )
        return list(result.scalars().all())


class EscrowRepository:
    """Data access for escrow holds."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, hold: EscrowHold) -> EscrowHold:
        self._session.add(hold)
        await self._session.flush()
        return hold

    async def get_by_id(self, hold_id: uuid.UUID) -> EscrowHold | None:
        result = await self._session.execute(
            select(EscrowHold).where(EscrowHold.id == hold_id)
        )
        return result.scalar_one_or_none()

    async def get_by_bid(self, bid_id: uuid.UUID) -> EscrowHold | None:
        result = await self._session.execute(
            select(EscrowHold).where(EscrowHold.bid_id == bid_id)
        )
        return result.scalar_one_or_none()

    async def refresh(self, hold: EscrowHold) -> EscrowHold:
        await self._session.refresh(hold)
        return hold

    async def transition_status(
        self,
        hold: EscrowHold,
        expected: EscrowStatus,
        new_status: EscrowStatus,
        **values: object,
    ) -> bool:
        """Move a hold from `expected` to `new_status` if nobody else moved it first.

        Returns False when the row was no longer in `expected`; the in-session
        object is then refreshed so the caller sees the winning status.
        """
        values["updated_at"] = datetime.now(UTC)
        result = await self._session.execute(
            update(EscrowHold)
            .where(EscrowHold.id == hold.id, EscrowHold.status == expected.value)
            .values(status=new_status.value, **values)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            await self._session.refresh(hold)
            return False
        await self._session.refresh(hold)
        return True

    async def update_fields(self, hold: EscrowHold, **values: object) -> EscrowHold:
        """Update non-status bookkeeping columns (retry counters, references)."""
        for name, value in values.items():
            setattr(hold, name, value)
        hold.updated_at = datetime.now(UTC)
        await self._session.flush()
        return hold

    async def list_release_candidates(
        self, completed_before: datetime, now: datetime
    ) -> list[uuid.UUID]:
        """Ids of held escrows whose job finished before the contest-window cutoff.

        Excludes holds with a non-terminal dispute and holds still backing off
        from a failed payout.
        """
        open_dispute = exists().where(
            Dispute.escrow_hold_id == EscrowHold.id,
            Dispute.status.in_([s.value for s in DisputeStatus.active()]),
        )
        result = await self._session.execute(
            select(EscrowHold.id)
            .join(WorkOrder, WorkOrder.id == EscrowHold.work_order_id)
            .where(
                EscrowHold.status == EscrowStatus.HELD.value,
                WorkOrder.status.in_(["completed", "closed"]),
                WorkOrder.completed_at <= completed_before,
                ~open_dispute,
                or_(
                    EscrowHold.next_release_attempt_at.is_(None),
                    EscrowHold.next_release_attempt_at <= now,
                ),
            )
            .order_by(WorkOrder.completed_at.asc())
        )
        return list(result.scalars().all())


class MilestoneRepository:
    """Data access for milestones and their evidence."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_many(self, milestones: list[Milestone]) -> list[Milestone]:
        self._session.add_all(milestones)
        await self._session.flush()
        return milestones

    async def get_by_id(self, milestone_id: uuid.UUID) -> Milestone | None:
        result = await self._session.execute(
            select(Milestone).where(Milestone.id == milestone_id)
        )
        return result.scalar_one_or_none()

    async def list_for_hold(self, hold_id: uuid.UUID) -> list[Milestone]:
        result = await self._session.execute(
            select(Milestone)
            .where(Milestone.escrow_hold_id == hold_id)
            .order_by(Milestone.position.asc())
        )
        return list(result.scalars().all())

    async def refresh(self, milestone: Milestone) -> Milestone:
        await self._session.refresh(milestone)
        return milestone

    async def set_signature_if_empty(
        self,
        milestone: Milestone,
        role: SignerRole,
        evidence_ref: str,
        signer_name: str,
        signed_at: datetime,
    ) -> bool:
        """Record a role's signature unless that role has already signed."""
        ref_column = getattr(Milestone, f"{role.value}_signature_ref")
        result = await self._session.execute(
            update(Milestone)
            .where(Milestone.id == milestone.id, ref_column.is_(None))
            .values(
                {
                    f"{role.value}_signature_ref": evidence_ref,
                    f"{role.value}_signer_name": signer_name,
                    f"{role.value}_signed_at": signed_at,
                }
            )
            .execution_options(synchronize_session="fetch")
        )
        await self._session.refresh(milestone)
        return result.rowcount == 1

    async def add_photo(self, milestone: Milestone, evidence_ref: str) -> MilestonePhoto:
        """Append a photo row and bump the counter in the same statement batch."""
        photo = MilestonePhoto(milestone_id=milestone.id, evidence_ref=evidence_ref)
        self._session.add(photo)
        await self._session.flush()
        await self._session.execute(
            update(Milestone)
            .where(Milestone.id == milestone.id)
            .values(photo_count=Milestone.photo_count + 1)
            .execution_options(synchronize_session="fetch")
        )
        await self._session.refresh(milestone)
        return photo

    async def list_photos(self, milestone_id: uuid.UUID) -> list[MilestonePhoto]:
        result = await self._session.execute(
            select(MilestonePhoto)
            .where(MilestonePhoto.milestone_id == milestone_id)
            .order_by(MilestonePhoto.created_at.asc())
        )
        return list(result.scalars().all())

    async def set_gps(
        self,
        milestone: Milestone,
        lat: float,
        lng: float,
        address: str | None,
        verified_at: datetime,
    ) -> Milestone:
        milestone.gps_lat = lat
        milestone.gps_lng = lng
        milestone.gps_address = address
        milestone.gps_verified_at = verified_at
        await self._session.flush()
        return milestone

    async def mark_completed(self, milestone: Milestone, completed_at: datetime) -> Milestone:
        if milestone.completed_at is None:
            milestone.completed_at = completed_at
            await self._session.flush()
        return milestone


class DisputeRepository:
    """Data access for disputes and their timeline."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, dispute: Dispute) -> Dispute:
        self._session.add(dispute)
        await self._session.flush()
        return dispute

    async def get_by_id(self, dispute_id: uuid.UUID) -> Dispute | None:
        result = await self._session.execute(select(Dispute).where(Dispute.id == dispute_id))
        return result.scalar_one_or_none()

    async def get_active_for_hold(self, hold_id: uuid.UUID) -> Dispute | None:
        result = await self._session.execute(
            select(Dispute).where(
                Dispute.escrow_hold_id == hold_id,
                Dispute.status.in_([s.value for s in DisputeStatus.active()]),
            )
        )
        return result.scalar_one_or_none()

    async def count_filed_on(self, day_start: datetime, day_end: datetime) -> int:
        result = await self._session.execute(
            select(func.count(Dispute.id)).where(
                and_(Dispute.created_at >= day_start, Dispute.created_at < day_end)
            )
        )
        return int(result.scalar_one())

    async def update_fields(self, dispute: Dispute, **values: object) -> Dispute:
        for name, value in values.items():
            setattr(dispute, name, value)
        dispute.updated_at = datetime.now(UTC)
        await self._session.flush()
        return dispute

    async def list_upheld_against(
        self, provider_id: str, outcomes: list[str], since: datetime
    ) -> list[Dispute]:
        """Resolved disputes against a provider with one of the given outcomes."""
        result = await self._session.execute(
            select(Dispute)
            .join(EscrowHold, EscrowHold.id == Dispute.escrow_hold_id)
            .where(
                EscrowHold.provider_id == provider_id,
                Dispute.status == DisputeStatus.RESOLVED.value,
                Dispute.outcome.in_(outcomes),
                Dispute.resolved_at >= since,
            )
            .order_by(Dispute.resolved_at.desc())
        )
        return list(result.scalars().all())

    async def add_timeline_entry(
        self,
        dispute_id: uuid.UUID,
        action: TimelineAction,
        description: str,
        performed_by: str,
        previous_value: str | None = None,
        new_value: str | None = None,
        metadata: dict | None = None,
    ) -> DisputeTimelineEntry:
        """Append a timeline entry. Entries are never updated or deleted."""
        entry = DisputeTimelineEntry(
            dispute_id=dispute_id,
            action=action.value,
            description=description,
            previous_value=previous_value,
            new_value=new_value,
            performed_by=performed_by,
            metadata_json=metadata,
        )
        self._session.add(entry)
        await self._session.flush()
        return entry

    async def get_timeline(self, dispute_id: uuid.UUID) -> list[DisputeTimelineEntry]:
        result = await self._session.execute(
            select(DisputeTimelineEntry)
            .where(DisputeTimelineEntry.dispute_id == dispute_id)
            .order_by(DisputeTimelineEntry.created_at.asc())
        )
        return list(result.scalars().all())


class EventRepository:
    """Data access for the append-only escrow audit log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        hold_id: uuid.UUID,
        event_type: EventType,
        old_status: EscrowStatus | None,
        new_status: EscrowStatus,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
    ) -> EscrowEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = EscrowEvent(
            escrow_hold_id=hold_id,
            event_type=event_type.value,
            old_status=old_status.value if old_status else None,
            new_status=new_status.value,
            actor=actor,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_hold(self, hold_id: uuid.UUID) -> list[EscrowEvent]:
        """Fetch all events for a hold in chronological order."""
        result = await self._session.execute(
            select(EscrowEvent)
            .where(EscrowEvent.escrow_hold_id == hold_id)
            .order_by(EscrowEvent.created_at.asc())
        )
        return list(result.scalars().all())
