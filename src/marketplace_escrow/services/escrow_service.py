"""Escrow Service: the escrow ledger.

This is the application layer that coordinates between:
    - Domain state machine (transition guard)
    - Repositories (data access, conditional status updates)
    - The milestone verification gate (release eligibility)
    - PaymentService (the only path to money movement)
    - Event log (audit trail)

REST routes, MCP tools, the dispute arbiter and the release scheduler all
call into this service, so every rule about holds lives here.

Every status change is a conditional UPDATE keyed on the expected current
status. release() claims the hold (held -> released) before asking for the
payout inside the same transaction: if the payout fails the claim rolls
back with it, and if a concurrent freeze won the race the claim fails and
no payout is requested.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError
from statemachine.exceptions import TransitionNotAllowed

from marketplace_escrow.domain.enums import (
    BidStatus,
    EscrowStatus,
    EventType,
    NotificationKind,
    UnfreezeResolution,
)
from marketplace_escrow.domain.exceptions import (
    AmountMismatchError,
    AuthorizationError,
    DuplicateOperationError,
    EntityNotFoundError,
    InvalidBidStateError,
    InvalidEscrowStateError,
    NotReleaseEligibleError,
    PreconditionNotMetError,
)
from marketplace_escrow.domain.state_machine import EscrowStateMachine, validate_transition
from marketplace_escrow.infrastructure.database.orm_models import EscrowHold, Milestone
from marketplace_escrow.infrastructure.database.repositories import (
    BidRepository,
    EscrowRepository,
    EventRepository,
    MilestoneRepository,
    WorkOrderRepository,
)
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.milestone_service import MilestoneService

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.config import Settings
    from marketplace_escrow.infrastructure.database.orm_models import Bid, EscrowEvent
    from marketplace_escrow.services.evidence_store import EvidenceStore
    from marketplace_escrow.services.notification_service import NotificationService
    from marketplace_escrow.services.payment_service import PaymentService

logger = get_logger(__name__)

DEFAULT_MILESTONE_TITLE = "Job completion"
CENT = Decimal("0.01")


def compute_release_backoff(attempt: int, base_minutes: int, max_minutes: int) -> timedelta:
    """Delay before release attempt number `attempt + 1`: base * 2^(attempt-1), capped."""
    minutes = base_minutes * (2 ** max(attempt - 1, 0))
    return timedelta(minutes=min(minutes, max_minutes))


def capture_key(bid_id: uuid.UUID) -> str:
    return f"capture:{bid_id}"


def release_key(hold_id: uuid.UUID) -> str:
    return f"release:{hold_id}"


def refund_key(hold_id: uuid.UUID) -> str:
    return f"refund:{hold_id}"


def split_refund(hold_amount: Decimal, refund_amount: Decimal | None = None) -> Decimal:
    """Requester's share of a split in whole cents, half the hold unless given."""
    refund = hold_amount / 2 if refund_amount is None else Decimal(refund_amount)
    return refund.quantize(CENT, rounding=ROUND_HALF_UP)


class EscrowService:
    """Manages the escrow hold lifecycle."""

    def __init__(
        self,
        session: AsyncSession,
        payments: PaymentService,
        notifications: NotificationService,
        settings: Settings,
        evidence_store: EvidenceStore | None = None,
    ) -> None:
        self._session = session
        self._payments = payments
        self._notifications = notifications
        self._settings = settings
        self._holds = EscrowRepository(session)
        self._bids = BidRepository(session)
        self._orders = WorkOrderRepository(session)
        self._milestones = MilestoneRepository(session)
        self._events = EventRepository(session)
        self._gate = MilestoneService(session, settings, evidence_store)

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    async def fund(
        self,
        bid_id: uuid.UUID,
        amount: Decimal | None = None,
        actor_id: str = "SYSTEM",
    ) -> EscrowHold:
        """Capture the accepted bid amount and open a held escrow.

        Idempotent on bid id: a funded bid returns its existing hold without
        a second capture. If the capture fails no hold is created.
        """
        bid = await self._bids.get_by_id(bid_id)
        if bid is None:
            raise EntityNotFoundError("bid", str(bid_id))
        if bid.status != BidStatus.ACCEPTED.value:
            raise InvalidBidStateError(bid.status, "fund")
        if amount is not None and Decimal(amount) != bid.amount:
            raise AmountMismatchError(str(bid.amount), str(amount))

        order = await self._orders.get_by_id(bid.work_order_id)
        if order is None:
            raise EntityNotFoundError("work order", str(bid.work_order_id))
        if actor_id != "SYSTEM" and actor_id != order.requester_id:
            raise AuthorizationError(actor_id, "fund this bid", "only the requester may")

        existing = await self._holds.get_by_bid(bid.id)
        if existing is not None:
            logger.info("escrow.fund_replayed", bid_id=str(bid.id), hold_id=str(existing.id))
            return existing

        key = capture_key(bid.id)
        receipt = await self._payments.capture(bid.amount, order.requester_id, key)

        hold = EscrowHold(
            bid_id=bid.id,
            work_order_id=order.id,
            requester_id=order.requester_id,
            provider_id=bid.provider_id,
            amount=bid.amount,
            status=EscrowStatus.FUNDED.value,
            capture_ref=receipt.reference,
            funded_at=datetime.now(UTC),
        )
        try:
            async with self._session.begin_nested():
                hold = await self._holds.create(hold)
        except IntegrityError as err:
            # a concurrent fund for the same bid inserted first
            winner = await self._holds.get_by_bid(bid.id)
            if winner is None:
                raise DuplicateOperationError(key) from err
            logger.info("escrow.fund_race_lost", bid_id=str(bid.id), hold_id=str(winner.id))
            return winner

        await self._events.record(
            hold_id=hold.id,
            event_type=EventType.HOLD_FUNDED,
            old_status=None,
            new_status=EscrowStatus.FUNDED,
            actor=actor_id,
            metadata={"capture_ref": receipt.reference, "amount": str(hold.amount)},
        )

        self._fire_transition(hold, "capture_confirmed")
        await self._holds.transition_status(hold, EscrowStatus.FUNDED, EscrowStatus.HELD)
        await self._events.record(
            hold_id=hold.id,
            event_type=EventType.CAPTURE_CONFIRMED,
            old_status=EscrowStatus.FUNDED,
            new_status=EscrowStatus.HELD,
            actor="SYSTEM",
        )

        milestones = await self._materialize_milestones(hold, bid)

        await self._notifications.send(
            hold.provider_id,
            NotificationKind.ESCROW_FUNDED,
            {"hold_id": str(hold.id), "amount": str(hold.amount), "milestones": len(milestones)},
            dedup_key=str(hold.id),
        )
        logger.info(
            "escrow.funded",
            hold_id=str(hold.id),
            bid_id=str(bid.id),
            amount=str(hold.amount),
            milestones=len(milestones),
        )
        return hold

    async def _materialize_milestones(self, hold: EscrowHold, bid: Bid) -> list[Milestone]:
        plan = bid.milestone_plan or [{"title": DEFAULT_MILESTONE_TITLE}]
        milestones = []
        for position, item in enumerate(plan):
            percentage = item.get("percentage")
            milestones.append(
                Milestone(
                    escrow_hold_id=hold.id,
                    position=position,
                    title=item["title"],
                    description=item.get("description"),
                    percentage=percentage,
                    amount=(
                        (hold.amount * Decimal(percentage) / 100).quantize(CENT)
                        if percentage is not None
                        else None
                    ),
                    require_signature=bool(item.get("require_signature", False)),
                    require_photos=bool(item.get("require_photos", False)),
                    min_photos=int(item.get("min_photos", 0)),
                    require_gps=bool(item.get("require_gps", False)),
                )
            )
        return await self._milestones.create_many(milestones)

    # ------------------------------------------------------------------
    # Milestones
    # ------------------------------------------------------------------

    async def mark_milestone_complete(
        self, hold_id: uuid.UUID, milestone_id: uuid.UUID, actor_id: str = "SYSTEM"
    ) -> Milestone:
        hold = await self._get_hold_or_raise(hold_id)
        milestone = await self._gate.get_milestone(milestone_id)
        if milestone.escrow_hold_id != hold.id:
            raise EntityNotFoundError("milestone", str(milestone_id))
        return await self._gate.mark_complete(milestone.id, actor_id)

    # ------------------------------------------------------------------
    # Dispute freeze / unfreeze
    # ------------------------------------------------------------------

    async def freeze(
        self, hold_id: uuid.UUID, dispute_id: uuid.UUID, actor_id: str = "SYSTEM"
    ) -> EscrowHold:
        """held -> disputed. Blocks release until the dispute unfreezes the hold."""
        hold = await self._get_hold_or_raise(hold_id)
        self._fire_transition(hold, "dispute_filed")
        claimed = await self._holds.transition_status(
            hold, EscrowStatus.HELD, EscrowStatus.DISPUTED, dispute_id=dispute_id
        )
        if not claimed:
            raise InvalidEscrowStateError(hold.status, "dispute_filed")

        await self._events.record(
            hold_id=hold.id,
            event_type=EventType.HOLD_FROZEN,
            old_status=EscrowStatus.HELD,
            new_status=EscrowStatus.DISPUTED,
            actor=actor_id,
            metadata={"dispute_id": str(dispute_id)},
        )
        logger.info("escrow.frozen", hold_id=str(hold.id), dispute_id=str(dispute_id))
        return hold

    async def unfreeze(
        self,
        hold_id: uuid.UUID,
        resolution: UnfreezeResolution,
        refund_amount: Decimal | None = None,
        actor_id: str = "SYSTEM",
    ) -> EscrowHold:
        """Leave the disputed state along the branch the dispute outcome picked.

        continue         -> held (release is possible again)
        pay_provider     -> released, full payout
        refund_requester -> refunded, full refund
        split            -> released, partial refund (default half) and payout of the rest
        """
        resolution = UnfreezeResolution(resolution)
        hold = await self._get_hold_or_raise(hold_id)
        if hold.status != EscrowStatus.DISPUTED.value:
            raise InvalidEscrowStateError(hold.status, f"unfreeze ({resolution.value})")

        if resolution == UnfreezeResolution.CONTINUE:
            await self._unfreeze_continue(hold, actor_id)
        elif resolution == UnfreezeResolution.PAY_PROVIDER:
            await self._unfreeze_pay_provider(hold, actor_id)
        elif resolution == UnfreezeResolution.REFUND_REQUESTER:
            await self._unfreeze_refund(hold, actor_id)
        else:
            await self._unfreeze_split(hold, refund_amount, actor_id)
        return hold

    async def _unfreeze_continue(self, hold: EscrowHold, actor_id: str) -> None:
        self._fire_transition(hold, "dispute_withdrawn")
        await self._claim(hold, EscrowStatus.DISPUTED, EscrowStatus.HELD, "dispute_withdrawn")
        await self._events.record(
            hold_id=hold.id,
            event_type=EventType.HOLD_UNFROZEN,
            old_status=EscrowStatus.DISPUTED,
            new_status=EscrowStatus.HELD,
            actor=actor_id,
            metadata={"dispute_id": str(hold.dispute_id) if hold.dispute_id else None},
        )
        logger.info("escrow.unfrozen", hold_id=str(hold.id))

    async def _unfreeze_pay_provider(self, hold: EscrowHold, actor_id: str) -> None:
        self._fire_transition(hold, "dispute_paid_out")
        await self._claim(
            hold,
            EscrowStatus.DISPUTED,
            EscrowStatus.RELEASED,
            "dispute_paid_out",
            released_at=datetime.now(UTC),
            released_amount=hold.amount,
        )
        receipt = await self._payments.payout(hold.amount, hold.provider_id, release_key(hold.id))
        await self._holds.update_fields(hold, payout_ref=receipt.reference)
        await self._events.record(
            hold_id=hold.id,
            event_type=EventType.PAYMENT_RELEASED,
            old_status=EscrowStatus.DISPUTED,
            new_status=EscrowStatus.RELEASED,
            actor=actor_id,
            metadata={"payout_ref": receipt.reference, "amount": str(hold.amount)},
        )
        await self._notify_payout(hold, NotificationKind.PAYMENT_RELEASED, hold.amount)
        logger.info("escrow.released_by_dispute", hold_id=str(hold.id), amount=str(hold.amount))

    async def _unfreeze_refund(self, hold: EscrowHold, actor_id: str) -> None:
        self._fire_transition(hold, "dispute_refunded")
        await self._claim(
            hold,
            EscrowStatus.DISPUTED,
            EscrowStatus.REFUNDED,
            "dispute_refunded",
            refunded_at=datetime.now(UTC),
            refunded_amount=hold.amount,
        )
        receipt = await self._payments.refund(hold.capture_ref, hold.amount, refund_key(hold.id))
        await self._holds.update_fields(hold, refund_ref=receipt.reference)
        await self._events.record(
            hold_id=hold.id,
            event_type=EventType.PAYMENT_REFUNDED,
            old_status=EscrowStatus.DISPUTED,
            new_status=EscrowStatus.REFUNDED,
            actor=actor_id,
            metadata={"refund_ref": receipt.reference, "amount": str(hold.amount)},
        )
        await self._notify_refund(hold, hold.amount)
        logger.info("escrow.refunded", hold_id=str(hold.id), amount=str(hold.amount))

    async def _unfreeze_split(
        self, hold: EscrowHold, refund_amount: Decimal | None, actor_id: str
    ) -> None:
        refund = split_refund(hold.amount, refund_amount)
        if not Decimal("0") < refund < hold.amount:
            raise PreconditionNotMetError(
                f"Split refund must be between 0 and {hold.amount}, got {refund}",
                code="INVALID_SPLIT",
                details={"hold_amount": str(hold.amount), "refund_amount": str(refund)},
            )
        payout = hold.amount - refund
        now = datetime.now(UTC)

        self._fire_transition(hold, "dispute_paid_out")
        await self._claim(
            hold,
            EscrowStatus.DISPUTED,
            EscrowStatus.RELEASED,
            "dispute_paid_out",
            released_at=now,
            released_amount=payout,
            refunded_at=now,
            refunded_amount=refund,
        )
        refund_receipt = await self._payments.refund(hold.capture_ref, refund, refund_key(hold.id))
        payout_receipt = await self._payments.payout(payout, hold.provider_id, release_key(hold.id))
        await self._holds.update_fields(
            hold, refund_ref=refund_receipt.reference, payout_ref=payout_receipt.reference
        )
        await self._events.record(
            hold_id=hold.id,
            event_type=EventType.PAYMENT_SPLIT,
            old_status=EscrowStatus.DISPUTED,
            new_status=EscrowStatus.RELEASED,
            actor=actor_id,
            metadata={
                "refund_ref": refund_receipt.reference,
                "payout_ref": payout_receipt.reference,
                "refunded": str(refund),
                "paid_out": str(payout),
            },
        )
        await self._notify_payout(hold, NotificationKind.PAYMENT_RELEASED, payout)
        await self._notify_refund(hold, refund)
        logger.info(
            "escrow.split", hold_id=str(hold.id), refunded=str(refund), paid_out=str(payout)
        )

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release(
        self,
        hold_id: uuid.UUID,
        actor_id: str | None = None,
        auto: bool = False,
    ) -> EscrowHold:
        """held -> released once every milestone is eligible. Idempotent.

        actor_id is None for system (scheduler) releases; otherwise only the
        requester who funded the hold may release it early.

        Raises:
            NotReleaseEligibleError: A milestone lacks evidence or the hold is disputed.
            InvalidEscrowStateError: The hold is in any other non-held state.
            PaymentError: The payout failed; the claim is rolled back with the session.
        """
        hold = await self._get_hold_or_raise(hold_id)
        if actor_id is not None and actor_id != hold.requester_id:
            raise AuthorizationError(actor_id, "release this escrow", "only the requester may")

        if hold.status == EscrowStatus.RELEASED.value:
            logger.info("escrow.release_replayed", hold_id=str(hold.id))
            return hold
        if hold.status == EscrowStatus.DISPUTED.value:
            raise NotReleaseEligibleError(str(hold.id), reason="the hold is frozen by a dispute")
        if hold.status != EscrowStatus.HELD.value:
            raise InvalidEscrowStateError(hold.status, "release")

        shortfalls = await self._gate.shortfalls_for_hold(hold.id)
        if shortfalls:
            raise NotReleaseEligibleError(str(hold.id), shortfalls=shortfalls)

        self._fire_transition(hold, "payout_confirmed")
        claimed = await self._holds.transition_status(
            hold,
            EscrowStatus.HELD,
            EscrowStatus.RELEASED,
            released_at=datetime.now(UTC),
            released_amount=hold.amount,
            next_release_attempt_at=None,
        )
        if not claimed:
            if hold.status == EscrowStatus.RELEASED.value:
                return hold
            if hold.status == EscrowStatus.DISPUTED.value:
                raise NotReleaseEligibleError(
                    str(hold.id), reason="the hold is frozen by a dispute"
                )
            raise InvalidEscrowStateError(hold.status, "release")

        receipt = await self._payments.payout(hold.amount, hold.provider_id, release_key(hold.id))
        await self._holds.update_fields(hold, payout_ref=receipt.reference, last_release_error=None)
        await self._events.record(
            hold_id=hold.id,
            event_type=EventType.PAYMENT_RELEASED,
            old_status=EscrowStatus.HELD,
            new_status=EscrowStatus.RELEASED,
            actor=actor_id or "SYSTEM",
            metadata={"payout_ref": receipt.reference, "amount": str(hold.amount), "auto": auto},
        )
        await self._notify_payout(
            hold,
            NotificationKind.PAYMENT_AUTO_RELEASED if auto else NotificationKind.PAYMENT_RELEASED,
            hold.amount,
        )
        logger.info("escrow.released", hold_id=str(hold.id), amount=str(hold.amount), auto=auto)
        return hold

    async def record_release_failure(self, hold_id: uuid.UUID, error: str) -> EscrowHold:
        """Count a failed payout and schedule the next attempt with backoff.

        After release_max_attempts the hold moves to release_failed and
        waits for an operator to requeue it.
        """
        hold = await self._get_hold_or_raise(hold_id)
        if hold.status != EscrowStatus.HELD.value:
            return hold

        attempts = hold.release_attempts + 1
        if attempts >= self._settings.release_max_attempts:
            self._fire_transition(hold, "retries_exhausted")
            await self._claim(
                hold,
                EscrowStatus.HELD,
                EscrowStatus.RELEASE_FAILED,
                "retries_exhausted",
                release_attempts=attempts,
                last_release_error=error,
                next_release_attempt_at=None,
            )
            await self._events.record(
                hold_id=hold.id,
                event_type=EventType.MAX_RETRIES_EXCEEDED,
                old_status=EscrowStatus.HELD,
                new_status=EscrowStatus.RELEASE_FAILED,
                metadata={"attempts": attempts, "error": error},
            )
            await self._notifications.send(
                hold.provider_id,
                NotificationKind.RELEASE_FAILED,
                {"hold_id": str(hold.id), "attempts": attempts},
            )
            logger.error(
                "escrow.release_failed", hold_id=str(hold.id), attempts=attempts, error=error
            )
            return hold

        delay = compute_release_backoff(
            attempts,
            self._settings.release_backoff_base_minutes,
            self._settings.release_backoff_max_minutes,
        )
        next_attempt = datetime.now(UTC) + delay
        await self._holds.update_fields(
            hold,
            release_attempts=attempts,
            last_release_error=error,
            next_release_attempt_at=next_attempt,
        )
        await self._events.record(
            hold_id=hold.id,
            event_type=EventType.RELEASE_ATTEMPT_FAILED,
            old_status=EscrowStatus.HELD,
            new_status=EscrowStatus.HELD,
            metadata={
                "attempt": attempts,
                "error": error,
                "next_attempt_at": next_attempt.isoformat(),
            },
        )
        logger.warning(
            "escrow.release_attempt_failed",
            hold_id=str(hold.id),
            attempt=attempts,
            next_attempt_at=next_attempt.isoformat(),
            error=error,
        )
        return hold

    async def requeue_release(self, hold_id: uuid.UUID, actor_id: str) -> EscrowHold:
        """Operator action: release_failed -> held, with fresh retry counters.

        Neither party to the hold may requeue its release.
        """
        hold = await self._get_hold_or_raise(hold_id)
        if actor_id in (hold.requester_id, hold.provider_id):
            raise AuthorizationError(
                actor_id, "requeue this release", "parties cannot requeue their own release"
            )
        self._fire_transition(hold, "release_requeued")
        await self._claim(
            hold,
            EscrowStatus.RELEASE_FAILED,
            EscrowStatus.HELD,
            "release_requeued",
            release_attempts=0,
            last_release_error=None,
            next_release_attempt_at=None,
        )
        await self._events.record(
            hold_id=hold.id,
            event_type=EventType.RELEASE_REQUEUED,
            old_status=EscrowStatus.RELEASE_FAILED,
            new_status=EscrowStatus.HELD,
            actor=actor_id,
        )
        logger.info("escrow.release_requeued", hold_id=str(hold.id), by=actor_id)
        return hold

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_hold(self, hold_id: uuid.UUID) -> EscrowHold:
        return await self._get_hold_or_raise(hold_id)

    async def get_hold_by_bid(self, bid_id: uuid.UUID) -> EscrowHold:
        hold = await self._holds.get_by_bid(bid_id)
        if hold is None:
            raise EntityNotFoundError("escrow hold", f"bid {bid_id}")
        return hold

    async def get_status(self, hold_id: uuid.UUID) -> dict:
        """Hold status with allowed events and outstanding milestone shortfalls."""
        hold = await self._get_hold_or_raise(hold_id)
        sm = EscrowStateMachine(current_status=hold.status)
        return {
            "hold_id": str(hold.id),
            "status": hold.status,
            "release_attempts": hold.release_attempts,
            "allowed_events": sm.get_allowed_events(),
            "shortfalls": await self._gate.shortfalls_for_hold(hold.id),
        }

    async def get_events(self, hold_id: uuid.UUID) -> list[EscrowEvent]:
        await self._get_hold_or_raise(hold_id)
        return await self._events.get_by_hold(hold_id)

    async def list_milestones(self, hold_id: uuid.UUID) -> list[Milestone]:
        await self._get_hold_or_raise(hold_id)
        return await self._gate.list_for_hold(hold_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_hold_or_raise(self, hold_id: uuid.UUID) -> EscrowHold:
        hold = await self._holds.get_by_id(hold_id)
        if hold is None:
            raise EntityNotFoundError("escrow hold", str(hold_id))
        return hold

    async def _claim(
        self,
        hold: EscrowHold,
        expected: EscrowStatus,
        new_status: EscrowStatus,
        event_name: str,
        **values: object,
    ) -> None:
        if not await self._holds.transition_status(hold, expected, new_status, **values):
            raise InvalidEscrowStateError(hold.status, event_name)

    def _fire_transition(self, hold: EscrowHold, event_name: str) -> None:
        """Validate a hold transition.

        Raises InvalidEscrowStateError if the transition is illegal.
        """
        try:
            validate_transition(EscrowStateMachine, hold.status, event_name)
        except TransitionNotAllowed as err:
            raise InvalidEscrowStateError(hold.status, event_name) from err

    async def _notify_payout(
        self, hold: EscrowHold, kind: NotificationKind, amount: Decimal
    ) -> None:
        await self._notifications.send(
            hold.provider_id,
            kind,
            {"hold_id": str(hold.id), "amount": str(amount)},
            dedup_key=str(hold.id),
        )

    async def _notify_refund(self, hold: EscrowHold, amount: Decimal) -> None:
        await self._notifications.send(
            hold.requester_id,
            NotificationKind.PAYMENT_REFUNDED,
            {"hold_id": str(hold.id), "amount": str(amount)},
            dedup_key=str(hold.id),
        )
