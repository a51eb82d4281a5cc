"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
services, the calling party's identity and configuration. Tests replace
get_db_session, get_db_session_factory and the collaborator providers
through app.dependency_overrides.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.infrastructure.database.engine import (
    get_async_session,
    get_session_factory,
)
from marketplace_escrow.services import providers
from marketplace_escrow.services.bid_service import BidService
from marketplace_escrow.services.dispute_service import DisputeService
from marketplace_escrow.services.escrow_service import EscrowService
from marketplace_escrow.services.evidence_store import EvidenceStore
from marketplace_escrow.services.milestone_service import MilestoneService
from marketplace_escrow.services.notification_service import NotificationService
from marketplace_escrow.services.payment_service import PaymentService
from marketplace_escrow.services.release_scheduler import ReleaseScheduler
from marketplace_escrow.services.work_order_service import WorkOrderService


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


def get_db_session_factory() -> async_sessionmaker[AsyncSession]:
    """Provide the session factory for workflows that commit in several steps."""
    return get_session_factory()


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


def get_payments() -> PaymentService:
    return providers.get_payment_service()


def get_notifications() -> NotificationService:
    return providers.get_notification_service()


def get_evidence_store() -> EvidenceStore:
    return providers.get_evidence_store()


def get_actor_id(x_actor_id: str = Header(..., min_length=1)) -> str:
    """Identity of the calling party, set by the authenticating gateway."""
    return x_actor_id


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def get_work_order_service(
    session: AsyncSession = Depends(get_db_session),
    notifications: NotificationService = Depends(get_notifications),
) -> WorkOrderService:
    return WorkOrderService(session, notifications)


def get_bid_service(
    session: AsyncSession = Depends(get_db_session),
    notifications: NotificationService = Depends(get_notifications),
) -> BidService:
    return BidService(session, notifications)


def get_escrow_service(
    session: AsyncSession = Depends(get_db_session),
    payments: PaymentService = Depends(get_payments),
    notifications: NotificationService = Depends(get_notifications),
    settings: Settings = Depends(get_app_settings),
    evidence_store: EvidenceStore = Depends(get_evidence_store),
) -> EscrowService:
    return EscrowService(session, payments, notifications, settings, evidence_store)


def get_milestone_service(
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
    evidence_store: EvidenceStore = Depends(get_evidence_store),
) -> MilestoneService:
    return MilestoneService(session, settings, evidence_store)


def get_dispute_service(
    session: AsyncSession = Depends(get_db_session),
    payments: PaymentService = Depends(get_payments),
    notifications: NotificationService = Depends(get_notifications),
    settings: Settings = Depends(get_app_settings),
) -> DisputeService:
    return DisputeService(session, payments, notifications, settings)


def get_release_scheduler(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    payments: PaymentService = Depends(get_payments),
    notifications: NotificationService = Depends(get_notifications),
    settings: Settings = Depends(get_app_settings),
) -> ReleaseScheduler:
    return ReleaseScheduler(session_factory, payments, notifications, settings)
