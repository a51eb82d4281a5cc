"""Shared test fixtures for the marketplace escrow test suite.

Provides:
    - A throwaway SQLite database per test (aiosqlite), schema via create_all
    - Settings with zero retry waits so failure paths run instantly
    - The simulated payment processor and a recording notifier
    - A Marketplace driver that walks work orders through bidding, funding
      and completion so tests can start from any point of the lifecycle
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import TYPE_CHECKING

import pytest
import pytest_asyncio

from marketplace_escrow.config import Settings
from marketplace_escrow.infrastructure.database.engine import build_engine, build_session_factory
from marketplace_escrow.infrastructure.database.orm_models import Base
from marketplace_escrow.services.bid_service import BidService
from marketplace_escrow.services.dispute_service import DisputeService
from marketplace_escrow.services.escrow_service import EscrowService
from marketplace_escrow.services.evidence_store import SimulatedEvidenceStore
from marketplace_escrow.services.milestone_service import MilestoneService
from marketplace_escrow.services.notification_service import NotificationService
from marketplace_escrow.services.payment_service import PaymentService, SimulatedPaymentProcessor
from marketplace_escrow.services.release_scheduler import ReleaseScheduler
from marketplace_escrow.services.work_order_service import WorkOrderService

if TYPE_CHECKING:
    import uuid
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from marketplace_escrow.infrastructure.database.orm_models import (
        Bid,
        EscrowHold,
        WorkOrder,
    )

REQUESTER = "req-alice"
PROVIDER = "prov-bob"
OTHER_PROVIDER = "prov-carol"
ARBITER = "arb-dave"


class RecordingNotifier:
    """Notifier that keeps every delivered notification in memory."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []
        self.failures_left = 0

    async def notify(self, user_id: str, kind: str, payload: dict) -> None:
        if self.failures_left:
            self.failures_left -= 1
            raise ConnectionError("notification channel down")
        self.sent.append((user_id, kind, payload))

    def kinds_for(self, user_id: str) -> list[str]:
        return [kind for uid, kind, _ in self.sent if uid == user_id]


# ---------------------------------------------------------------------------
# Infrastructure fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:  # noqa: ANN001
    return Settings(
        _env_file=None,
        app_env="development",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}",
        payment_retry_attempts=3,
        payment_retry_wait_min=0,
        payment_retry_wait_max=0,
        notification_retry_attempts=2,
        release_max_attempts=3,
        contest_window_days=7,
        funding_grace_minutes=15,
    )


@pytest_asyncio.fixture
async def session_factory(
    settings: Settings,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = build_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def processor() -> SimulatedPaymentProcessor:
    return SimulatedPaymentProcessor()


@pytest.fixture
def payments(processor: SimulatedPaymentProcessor, settings: Settings) -> PaymentService:
    return PaymentService(processor, settings)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def notifications(notifier: RecordingNotifier, settings: Settings) -> NotificationService:
    return NotificationService(notifier, settings)


@pytest.fixture
def evidence_store() -> SimulatedEvidenceStore:
    return SimulatedEvidenceStore("https://evidence.test", ttl_seconds=600, secret="test")


# ---------------------------------------------------------------------------
# Lifecycle driver
# ---------------------------------------------------------------------------


class Marketplace:
    """Builds marketplace state through the real services, one commit per step."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payments: PaymentService,
        notifications: NotificationService,
        settings: Settings,
        evidence_store: SimulatedEvidenceStore,
    ) -> None:
        self.session_factory = session_factory
        self.payments = payments
        self.notifications = notifications
        self.settings = settings
        self.evidence_store = evidence_store

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        async with self.session_factory() as session:
            async with session.begin():
                yield session

    # --- service constructors ---

    def work_orders(self, session: AsyncSession) -> WorkOrderService:
        return WorkOrderService(session, self.notifications)

    def bids(self, session: AsyncSession) -> BidService:
        return BidService(session, self.notifications)

    def escrow(self, session: AsyncSession) -> EscrowService:
        return EscrowService(
            session, self.payments, self.notifications, self.settings, self.evidence_store
        )

    def milestones(self, session: AsyncSession) -> MilestoneService:
        return MilestoneService(session, self.settings, self.evidence_store)

    def disputes(self, session: AsyncSession) -> DisputeService:
        return DisputeService(session, self.payments, self.notifications, self.settings)

    def scheduler(self) -> ReleaseScheduler:
        return ReleaseScheduler(
            self.session_factory, self.payments, self.notifications, self.settings
        )

    # --- lifecycle steps ---

    async def post_order(self, requester: str = REQUESTER, **kwargs: object) -> WorkOrder:
        async with self.transaction() as session:
            return await self.work_orders(session).create_work_order(
                requester_id=requester, title=kwargs.pop("title", "Fix the roof"), **kwargs
            )

    async def bid(
        self,
        order_id: uuid.UUID,
        provider: str = PROVIDER,
        amount: Decimal = Decimal("500.00"),
        milestone_plan: list[dict] | None = None,
    ) -> Bid:
        async with self.transaction() as session:
            bid, _ = await self.bids(session).submit_or_update_bid(
                order_id, provider, amount, milestone_plan=milestone_plan
            )
            return bid

    async def accept(self, bid_id: uuid.UUID, requester: str = REQUESTER) -> Bid:
        async with self.transaction() as session:
            return await self.bids(session).accept_bid(bid_id, requester)

    async def fund(self, bid_id: uuid.UUID, requester: str = REQUESTER) -> EscrowHold:
        async with self.transaction() as session:
            return await self.escrow(session).fund(bid_id, actor_id=requester)

    async def complete_job(self, order_id: uuid.UUID, actor: str = PROVIDER) -> WorkOrder:
        async with self.transaction() as session:
            return await self.work_orders(session).mark_completed(order_id, actor)

    async def funded_hold(
        self,
        amount: Decimal = Decimal("500.00"),
        milestone_plan: list[dict] | None = None,
    ) -> tuple[WorkOrder, Bid, EscrowHold]:
        order = await self.post_order()
        bid = await self.bid(order.id, amount=amount, milestone_plan=milestone_plan)
        await self.accept(bid.id)
        hold = await self.fund(bid.id)
        return order, bid, hold

    async def completed_hold(
        self,
        amount: Decimal = Decimal("500.00"),
        milestone_plan: list[dict] | None = None,
    ) -> tuple[WorkOrder, Bid, EscrowHold]:
        order, bid, hold = await self.funded_hold(amount, milestone_plan)
        await self.complete_job(order.id)
        return order, bid, hold

    async def get_hold(self, hold_id: uuid.UUID) -> EscrowHold:
        async with self.transaction() as session:
            return await self.escrow(session).get_hold(hold_id)


@pytest.fixture
def market(
    session_factory: async_sessionmaker[AsyncSession],
    payments: PaymentService,
    notifications: NotificationService,
    settings: Settings,
    evidence_store: SimulatedEvidenceStore,
) -> Marketplace:
    return Marketplace(session_factory, payments, notifications, settings, evidence_store)
