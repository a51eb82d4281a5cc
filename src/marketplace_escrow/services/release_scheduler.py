"""Release Scheduler: the periodic sweep that releases money nobody contested.

The sweep is stateless and safe to run concurrently with itself: candidate
ids are read in one session, then each hold is released in its own session
and transaction, so one failing payout never blocks the rest and a hold a
concurrent run already released is simply skipped.

A sibling sweep reconciles bids that were accepted but never funded (the
process died between acceptance and capture), retrying fund() with the
bid's stable idempotency key.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from marketplace_escrow.domain.exceptions import (
    InvalidStateTransitionError,
    MarketplaceError,
    NotReleaseEligibleError,
    PaymentError,
)
from marketplace_escrow.infrastructure.database.repositories import (
    BidRepository,
    EscrowRepository,
)
from marketplace_escrow.logging_config import get_logger, log_context
from marketplace_escrow.services.escrow_service import EscrowService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from marketplace_escrow.config import Settings
    from marketplace_escrow.services.notification_service import NotificationService
    from marketplace_escrow.services.payment_service import PaymentService

logger = get_logger(__name__)


@dataclass
class SweepSummary:
    """Outcome counts of one sweep; errors maps entity id to the failure text."""

    found: int = 0
    released: int = 0
    skipped: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ReconciliationSummary:
    found: int = 0
    funded: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


class ReleaseScheduler:
    """Time-based release and funding reconciliation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payments: PaymentService,
        notifications: NotificationService,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._payments = payments
        self._notifications = notifications
        self._settings = settings

    def _escrow(self, session: AsyncSession) -> EscrowService:
        return EscrowService(session, self._payments, self._notifications, self._settings)

    async def run_release_sweep(self, now: datetime | None = None) -> SweepSummary:
        """Release every held escrow whose contest window has passed."""
        now = now or datetime.now(UTC)
        cutoff = now - self._settings.contest_window
        summary = SweepSummary()

        with log_context(sweep_id=uuid.uuid4().hex[:12], sweep="release"):
            async with self._session_factory() as session:
                candidates = await EscrowRepository(session).list_release_candidates(cutoff, now)
            summary.found = len(candidates)
            logger.info(
                "scheduler.sweep_started", candidates=summary.found, cutoff=cutoff.isoformat()
            )

            for hold_id in candidates:
                await self._release_one(hold_id, summary)

            logger.info(
                "scheduler.sweep_completed",
                found=summary.found,
                released=summary.released,
                skipped=summary.skipped,
                failed=summary.failed,
            )
        return summary

    async def _release_one(self, hold_id: uuid.UUID, summary: SweepSummary) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    escrow = self._escrow(session)
                    status_before = (await escrow.get_hold(hold_id)).status
                    hold = await escrow.release(hold_id, auto=True)
            if hold.status != status_before:
                summary.released += 1
            else:
                summary.skipped += 1
        except (NotReleaseEligibleError, InvalidStateTransitionError) as exc:
            summary.skipped += 1
            logger.info("scheduler.hold_skipped", hold_id=str(hold_id), reason=exc.message)
        except PaymentError as exc:
            summary.failed += 1
            summary.errors[str(hold_id)] = exc.message
            await self._record_failure(hold_id, exc.message)
        except Exception as exc:
            summary.failed += 1
            summary.errors[str(hold_id)] = str(exc)
            logger.exception("scheduler.hold_release_crashed", hold_id=str(hold_id))

    async def _record_failure(self, hold_id: uuid.UUID, error: str) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await self._escrow(session).record_release_failure(hold_id, error)
        except Exception:
            logger.exception("scheduler.failure_not_recorded", hold_id=str(hold_id))

    async def run_funding_reconciliation(
        self, now: datetime | None = None
    ) -> ReconciliationSummary:
        """Retry fund() for accepted bids still unfunded after the grace period."""
        now = now or datetime.now(UTC)
        summary = ReconciliationSummary()

        with log_context(sweep_id=uuid.uuid4().hex[:12], sweep="funding"):
            async with self._session_factory() as session:
                bids = await BidRepository(session).list_unfunded_accepted(
                    now - self._settings.funding_grace
                )
                bid_ids = [bid.id for bid in bids]
            summary.found = len(bid_ids)

            for bid_id in bid_ids:
                logger.warning("scheduler.unfunded_bid", bid_id=str(bid_id))
                try:
                    async with self._session_factory() as session:
                        async with session.begin():
                            await self._escrow(session).fund(bid_id)
                    summary.funded += 1
                except MarketplaceError as exc:
                    summary.failed += 1
                    summary.errors[str(bid_id)] = exc.message
                    logger.error(
                        "scheduler.funding_retry_failed", bid_id=str(bid_id), error=exc.message
                    )

            logger.info(
                "scheduler.reconciliation_completed",
                found=summary.found,
                funded=summary.funded,
                failed=summary.failed,
            )
        return summary

    async def run_all(self, now: datetime | None = None) -> dict:
        """Run funding reconciliation, then the release sweep."""
        funding = await self.run_funding_reconciliation(now)
        release = await self.run_release_sweep(now)
        return {"funding": funding.to_dict(), "release": release.to_dict()}
