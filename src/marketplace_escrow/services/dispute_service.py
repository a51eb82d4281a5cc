"""Dispute Service: the dispute arbiter.

Filing a dispute freezes the hold; the case then moves through
open -> under_review -> {mediation, escalated} until it is resolved, closed
or cancelled. Every move appends to the case timeline. Closing or
cancelling hands the hold back to the normal release path; resolving picks
the money branch (pay provider, refund requester, or split).
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError
from statemachine.exceptions import TransitionNotAllowed

from marketplace_escrow.domain.enums import (
    DisputeOutcome,
    DisputePriority,
    DisputeStatus,
    DisputeType,
    EscrowStatus,
    NotificationKind,
    TimelineAction,
    UnfreezeResolution,
    WorkOrderStatus,
)
from marketplace_escrow.domain.exceptions import (
    AuthorizationError,
    DuplicateOperationError,
    EntityNotFoundError,
    IllegalDisputeTransitionError,
    InvalidEscrowStateError,
    JobNotCompletedError,
    PreconditionNotMetError,
)
from marketplace_escrow.domain.state_machine import (
    DISPUTE_EVENT_FOR_TARGET,
    DisputeStateMachine,
    validate_transition,
)
from marketplace_escrow.infrastructure.database.orm_models import Dispute
from marketplace_escrow.infrastructure.database.repositories import (
    DisputeRepository,
    EscrowRepository,
    WorkOrderRepository,
)
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.escrow_service import EscrowService

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.config import Settings
    from marketplace_escrow.infrastructure.database.orm_models import (
        DisputeTimelineEntry,
        EscrowHold,
    )
    from marketplace_escrow.services.notification_service import NotificationService
    from marketplace_escrow.services.payment_service import PaymentService

logger = get_logger(__name__)

# (response window, resolution window) by priority
DEADLINES: dict[DisputePriority, tuple[timedelta, timedelta]] = {
    DisputePriority.URGENT: (timedelta(hours=24), timedelta(days=3)),
    DisputePriority.HIGH: (timedelta(hours=48), timedelta(days=7)),
    DisputePriority.MEDIUM: (timedelta(hours=72), timedelta(days=14)),
    DisputePriority.LOW: (timedelta(hours=72), timedelta(days=14)),
}

COMPLAINT_HISTORY_WINDOW = timedelta(days=90)
CASE_NUMBER_ATTEMPTS = 5
COMPLAINT_FLAG_THRESHOLD = 3
UPHELD_OUTCOMES = (DisputeOutcome.REFUND_TO_REQUESTER, DisputeOutcome.SPLIT)


class DisputeService:
    """Manages the dispute lifecycle and its effect on the escrow hold."""

    def __init__(
        self,
        session: AsyncSession,
        payments: PaymentService,
        notifications: NotificationService,
        settings: Settings,
    ) -> None:
        self._session = session
        self._disputes = DisputeRepository(session)
        self._holds = EscrowRepository(session)
        self._orders = WorkOrderRepository(session)
        self._escrow = EscrowService(session, payments, notifications, settings)
        self._notifications = notifications

    # ------------------------------------------------------------------
    # Filing
    # ------------------------------------------------------------------

    async def file_dispute(
        self,
        hold_id: uuid.UUID,
        filer_id: str,
        respondent_id: str,
        dispute_type: DisputeType,
        description: str,
        amount: Decimal | None = None,
        priority: DisputePriority = DisputePriority.MEDIUM,
        desired_resolution: str | None = None,
    ) -> Dispute:
        """Open a dispute between the two parties of a hold and freeze the hold."""
        hold = await self._holds.get_by_id(hold_id)
        if hold is None:
            raise EntityNotFoundError("escrow hold", str(hold_id))

        parties = {hold.requester_id, hold.provider_id}
        if filer_id not in parties:
            raise AuthorizationError(
                filer_id, "file a dispute", "filer is not a party to this escrow"
            )
        if respondent_id not in parties or respondent_id == filer_id:
            raise AuthorizationError(
                filer_id, "file a dispute", "respondent must be the other party to this escrow"
            )
        if hold.status != EscrowStatus.HELD.value:
            raise InvalidEscrowStateError(hold.status, "dispute_filed")

        order = await self._orders.get_by_id(hold.work_order_id)
        if order is None:
            raise EntityNotFoundError("work order", str(hold.work_order_id))
        if order.status != WorkOrderStatus.COMPLETED.value:
            raise JobNotCompletedError(str(order.id), order.status)

        disputed_amount = hold.amount if amount is None else Decimal(amount)
        if not Decimal("0") < disputed_amount <= hold.amount:
            raise PreconditionNotMetError(
                f"Disputed amount must be between 0 and {hold.amount}",
                code="INVALID_DISPUTE_AMOUNT",
                details={"hold_amount": str(hold.amount), "amount": str(disputed_amount)},
            )
        if not description or not description.strip():
            raise PreconditionNotMetError(
                "A dispute needs a description", code="DESCRIPTION_REQUIRED"
            )

        priority = DisputePriority(priority)
        now = datetime.now(UTC)
        response_window, resolution_window = DEADLINES[priority]
        dispute = await self._insert_with_case_number(
            now,
            escrow_hold_id=hold.id,
            work_order_id=order.id,
            type=DisputeType(dispute_type).value,
            status=DisputeStatus.OPEN.value,
            priority=priority.value,
            filed_by=filer_id,
            respondent_id=respondent_id,
            disputed_amount=disputed_amount,
            description=description.strip(),
            desired_resolution=desired_resolution,
            response_deadline=now + response_window,
            resolution_deadline=now + resolution_window,
        )
        await self._disputes.add_timeline_entry(
            dispute.id,
            TimelineAction.DISPUTE_FILED,
            f"Dispute filed: {dispute.type}",
            performed_by=filer_id,
            new_value=DisputeStatus.OPEN.value,
            metadata={"amount": str(disputed_amount), "priority": priority.value},
        )

        await self._escrow.freeze(hold.id, dispute.id, actor_id=filer_id)

        await self._notifications.send(
            respondent_id,
            NotificationKind.DISPUTE_FILED,
            {
                "dispute_id": str(dispute.id),
                "case_number": dispute.case_number,
                "response_deadline": dispute.response_deadline.isoformat(),
            },
            dedup_key=str(dispute.id),
        )
        logger.info(
            "dispute.filed",
            dispute_id=str(dispute.id),
            case_number=dispute.case_number,
            hold_id=str(hold.id),
            filed_by=filer_id,
            priority=priority.value,
        )
        return dispute

    async def _insert_with_case_number(self, now: datetime, **fields: object) -> Dispute:
        """Insert the dispute under the next free DSP-YYYYMMDD-NNNN number.

        The daily count only sees committed filings, so a concurrent filing
        can take the same number first; the insert then moves to the next one.
        """
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        filed_today = await self._disputes.count_filed_on(day_start, day_start + timedelta(days=1))
        case_number = ""
        for sequence in range(filed_today + 1, filed_today + 1 + CASE_NUMBER_ATTEMPTS):
            case_number = f"DSP-{now:%Y%m%d}-{sequence:04d}"
            try:
                async with self._session.begin_nested():
                    return await self._disputes.create(Dispute(case_number=case_number, **fields))
            except IntegrityError:
                logger.info("dispute.case_number_taken", case_number=case_number)
        raise DuplicateOperationError(f"dispute:{case_number}")

    # ------------------------------------------------------------------
    # Arbitration
    # ------------------------------------------------------------------

    async def advance(
        self,
        dispute_id: uuid.UUID,
        new_status: DisputeStatus,
        actor_id: str,
        note: str | None = None,
    ) -> Dispute:
        """Move a dispute to an adjacent status.

        Only the filer may cancel; every other move belongs to an arbiter who
        is not a party. Use resolve() to reach resolved.
        """
        dispute = await self._get_dispute_or_raise(dispute_id)
        new_status = DisputeStatus(new_status)
        if new_status == DisputeStatus.RESOLVED:
            raise IllegalDisputeTransitionError(dispute.status, "resolve without an outcome")

        hold = await self._get_hold(dispute)
        if new_status == DisputeStatus.CANCELLED:
            if actor_id != dispute.filed_by:
                raise AuthorizationError(
                    actor_id, "cancel this dispute", "only the filer may cancel"
                )
        else:
            self._ensure_arbiter(hold, actor_id, f"move this dispute to {new_status.value}")

        previous = dispute.status
        self._fire_transition(dispute, DISPUTE_EVENT_FOR_TARGET[new_status.value])

        values: dict = {"status": new_status.value}
        if new_status == DisputeStatus.ESCALATED:
            values["priority"] = DisputePriority.URGENT.value
        if new_status in (DisputeStatus.CLOSED, DisputeStatus.CANCELLED):
            values["resolved_by"] = actor_id
            values["resolved_at"] = datetime.now(UTC)
            values["resolution_note"] = note
        await self._disputes.update_fields(dispute, **values)

        await self._disputes.add_timeline_entry(
            dispute.id,
            TimelineAction.ESCALATED
            if new_status == DisputeStatus.ESCALATED
            else TimelineAction.STATUS_CHANGED,
            note or f"Status changed from {previous} to {new_status.value}",
            performed_by=actor_id,
            previous_value=previous,
            new_value=new_status.value,
        )

        if new_status in (DisputeStatus.CLOSED, DisputeStatus.CANCELLED):
            await self._escrow.unfreeze(hold.id, UnfreezeResolution.CONTINUE, actor_id=actor_id)

        await self._notify_parties(dispute, {"status": new_status.value})
        logger.info(
            "dispute.advanced",
            dispute_id=str(dispute.id),
            from_status=previous,
            to_status=new_status.value,
            by=actor_id,
        )
        return dispute

    async def resolve(
        self,
        dispute_id: uuid.UUID,
        outcome: DisputeOutcome,
        actor_id: str,
        note: str | None = None,
        refund_amount: Decimal | None = None,
    ) -> Dispute:
        """Resolve a dispute and settle the hold along the outcome's branch."""
        dispute = await self._get_dispute_or_raise(dispute_id)
        outcome = DisputeOutcome(outcome)
        hold = await self._get_hold(dispute)
        self._ensure_arbiter(hold, actor_id, "resolve this dispute")

        previous = dispute.status
        self._fire_transition(dispute, DISPUTE_EVENT_FOR_TARGET[DisputeStatus.RESOLVED.value])

        settled = await self._escrow.unfreeze(
            hold.id,
            UnfreezeResolution.for_outcome(outcome),
            refund_amount=refund_amount if outcome == DisputeOutcome.SPLIT else None,
            actor_id=actor_id,
        )
        # the split's rounded share as the ledger settled it
        refund_amount = settled.refunded_amount

        await self._disputes.update_fields(
            dispute,
            status=DisputeStatus.RESOLVED.value,
            outcome=outcome.value,
            refund_amount=refund_amount,
            resolution_note=note,
            resolved_by=actor_id,
            resolved_at=datetime.now(UTC),
        )
        await self._disputes.add_timeline_entry(
            dispute.id,
            TimelineAction.RESOLVED,
            note or f"Resolved: {outcome.value}",
            performed_by=actor_id,
            previous_value=previous,
            new_value=DisputeStatus.RESOLVED.value,
            metadata={
                "outcome": outcome.value,
                "refund_amount": str(refund_amount) if refund_amount is not None else None,
            },
        )

        await self._notify_parties(dispute, {"status": "resolved", "outcome": outcome.value})
        logger.info(
            "dispute.resolved",
            dispute_id=str(dispute.id),
            outcome=outcome.value,
            by=actor_id,
        )
        return dispute

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_dispute(self, dispute_id: uuid.UUID) -> Dispute:
        return await self._get_dispute_or_raise(dispute_id)

    async def get_timeline(self, dispute_id: uuid.UUID) -> list[DisputeTimelineEntry]:
        await self._get_dispute_or_raise(dispute_id)
        return await self._disputes.get_timeline(dispute_id)

    async def provider_complaint_history(self, provider_id: str) -> dict:
        """Upheld complaints against a provider in the last 90 days."""
        since = datetime.now(UTC) - COMPLAINT_HISTORY_WINDOW
        upheld = await self._disputes.list_upheld_against(
            provider_id, [o.value for o in UPHELD_OUTCOMES], since
        )
        return {
            "provider_id": provider_id,
            "upheld_complaints": len(upheld),
            "window_days": COMPLAINT_HISTORY_WINDOW.days,
            "flagged": len(upheld) >= COMPLAINT_FLAG_THRESHOLD,
            "case_numbers": [d.case_number for d in upheld],
        }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_dispute_or_raise(self, dispute_id: uuid.UUID) -> Dispute:
        dispute = await self._disputes.get_by_id(dispute_id)
        if dispute is None:
            raise EntityNotFoundError("dispute", str(dispute_id))
        return dispute

    async def _get_hold(self, dispute: Dispute) -> EscrowHold:
        hold = await self._holds.get_by_id(dispute.escrow_hold_id)
        if hold is None:
            raise EntityNotFoundError("escrow hold", str(dispute.escrow_hold_id))
        return hold

    @staticmethod
    def _ensure_arbiter(hold: EscrowHold, actor_id: str, action: str) -> None:
        if actor_id in (hold.requester_id, hold.provider_id):
            raise AuthorizationError(actor_id, action, "parties cannot arbitrate their own dispute")

    def _fire_transition(self, dispute: Dispute, event_name: str) -> None:
        try:
            validate_transition(DisputeStateMachine, dispute.status, event_name)
        except TransitionNotAllowed as err:
            raise IllegalDisputeTransitionError(dispute.status, event_name) from err

    async def _notify_parties(self, dispute: Dispute, payload: dict) -> None:
        for party in (dispute.filed_by, dispute.respondent_id):
            await self._notifications.send(
                party,
                NotificationKind.DISPUTE_UPDATE,
                {"dispute_id": str(dispute.id), "case_number": dispute.case_number, **payload},
            )
