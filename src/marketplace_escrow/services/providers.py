"""Process-wide collaborator singletons shared by the API, MCP tools and CLI.

Collaborators are built once from settings. Tests swap them out through
FastAPI dependency overrides or by constructing services directly.
"""

from __future__ import annotations

from functools import lru_cache

from marketplace_escrow.config import get_settings
from marketplace_escrow.services.evidence_store import EvidenceStore, SimulatedEvidenceStore
from marketplace_escrow.services.notification_service import LogNotifier, NotificationService
from marketplace_escrow.services.payment_service import PaymentService, build_payment_processor


@lru_cache(maxsize=1)
def get_payment_service() -> PaymentService:
    settings = get_settings()
    return PaymentService(build_payment_processor(settings), settings)


@lru_cache(maxsize=1)
def get_notification_service() -> NotificationService:
    return NotificationService(LogNotifier(), get_settings())


@lru_cache(maxsize=1)
def get_evidence_store() -> EvidenceStore:
    settings = get_settings()
    return SimulatedEvidenceStore(
        settings.evidence_base_url, ttl_seconds=settings.evidence_url_ttl_seconds
    )
