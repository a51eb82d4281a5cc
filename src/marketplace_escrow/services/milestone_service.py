"""Milestone Service: the verification gate in front of every release.

Records evidence against milestones and decides, per milestone, whether it
is release eligible. Each evidence channel is an independent sub-record with
its own conflict rule:

    - signatures: partitioned by role; a role's signature is never overwritten
    - photos:     append-only rows plus an atomically incremented counter
    - GPS:        last fix wins

so writes from either party may arrive in any order without conflict, and
adding evidence can never make an eligible milestone ineligible.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from marketplace_escrow.domain.enums import EscrowStatus, EventType, SignerRole
from marketplace_escrow.domain.exceptions import (
    AuthorizationError,
    EntityNotFoundError,
    GPSNotRequiredError,
    InvalidEscrowStateError,
    InvalidEvidenceError,
    MilestoneIncompleteError,
    PhotosNotRequiredError,
    SignatureNotRequiredError,
)
from marketplace_escrow.domain.verifier_protocol import EvidenceSnapshot, MilestoneRequirements
from marketplace_escrow.infrastructure.database.repositories import (
    EscrowRepository,
    EventRepository,
    MilestoneRepository,
)
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.verifiers import evaluate_milestone

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.config import Settings
    from marketplace_escrow.infrastructure.database.orm_models import EscrowHold, Milestone
    from marketplace_escrow.services.evidence_store import EvidenceStore

logger = get_logger(__name__)


def requirements_of(milestone: Milestone) -> MilestoneRequirements:
    return MilestoneRequirements(
        require_signature=milestone.require_signature,
        require_photos=milestone.require_photos,
        min_photos=milestone.min_photos,
        require_gps=milestone.require_gps,
    )


def evidence_of(milestone: Milestone) -> EvidenceSnapshot:
    return EvidenceSnapshot(
        provider_signed=milestone.provider_signature_ref is not None,
        requester_signed=milestone.requester_signature_ref is not None,
        photo_count=milestone.photo_count,
        gps_verified=milestone.gps_verified_at is not None,
    )


def milestone_label(milestone: Milestone) -> str:
    return f"Milestone {milestone.position + 1} '{milestone.title}'"


class MilestoneService:
    """Evidence recording and release eligibility for milestones."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        evidence_store: EvidenceStore | None = None,
    ) -> None:
        self._session = session
        self._settings = settings
        self._milestones = MilestoneRepository(session)
        self._holds = EscrowRepository(session)
        self._events = EventRepository(session)
        self._evidence_store = evidence_store

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    def shortfalls(self, milestone: Milestone) -> list[str]:
        """Unmet requirements of an already loaded milestone."""
        return evaluate_milestone(
            requirements_of(milestone),
            evidence_of(milestone),
            self._settings.signature_policy,
        )

    async def evaluate(self, milestone_id: uuid.UUID) -> list[str]:
        milestone = await self._get_milestone_or_raise(milestone_id)
        return self.shortfalls(milestone)

    async def is_release_eligible(self, milestone_id: uuid.UUID) -> bool:
        return not await self.evaluate(milestone_id)

    async def shortfalls_for_hold(self, hold_id: uuid.UUID) -> dict[str, list[str]]:
        """Shortfalls of every ineligible milestone of a hold, keyed by label."""
        result = {}
        for milestone in await self._milestones.list_for_hold(hold_id):
            missing = self.shortfalls(milestone)
            if missing:
                result[milestone_label(milestone)] = missing
        return result

    async def mark_complete(
        self, milestone_id: uuid.UUID, actor_id: str = "SYSTEM"
    ) -> Milestone:
        """Stamp completed_at once all required evidence is in. Idempotent."""
        milestone = await self._get_milestone_or_raise(milestone_id)
        missing = self.shortfalls(milestone)
        if missing:
            raise MilestoneIncompleteError(str(milestone.id), missing)
        if milestone.completed_at is not None:
            return milestone

        hold = await self._get_hold(milestone)
        await self._milestones.mark_completed(milestone, datetime.now(UTC))
        await self._events.record(
            hold_id=hold.id,
            event_type=EventType.MILESTONE_COMPLETED,
            old_status=EscrowStatus(hold.status),
            new_status=EscrowStatus(hold.status),
            actor=actor_id,
            metadata={"milestone_id": str(milestone.id), "title": milestone.title},
        )
        logger.info("milestone.completed", milestone_id=str(milestone.id), hold_id=str(hold.id))
        return milestone

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    async def record_signature(
        self,
        milestone_id: uuid.UUID,
        role: SignerRole,
        evidence_ref: str,
        signer_name: str,
        actor_id: str | None = None,
    ) -> Milestone:
        """Record one party's signature. Re-signing by the same role is a no-op."""
        milestone = await self._get_milestone_or_raise(milestone_id)
        if not milestone.require_signature:
            raise SignatureNotRequiredError(str(milestone.id))
        hold = await self._get_writable_hold(milestone)
        role = SignerRole(role)
        if actor_id is not None:
            expected = hold.provider_id if role == SignerRole.PROVIDER else hold.requester_id
            if actor_id != expected:
                raise AuthorizationError(
                    actor_id, f"sign as {role.value}", "signer is not that party"
                )
        if not evidence_ref or not signer_name.strip():
            raise InvalidEvidenceError("A signature needs an evidence reference and a signer name")

        written = await self._milestones.set_signature_if_empty(
            milestone, role, evidence_ref, signer_name.strip(), datetime.now(UTC)
        )
        logger.info(
            "milestone.signature_recorded" if written else "milestone.signature_already_present",
            milestone_id=str(milestone.id),
            role=role.value,
        )
        return milestone

    async def record_photo(
        self, milestone_id: uuid.UUID, evidence_ref: str, actor_id: str | None = None
    ) -> Milestone:
        milestone = await self._get_milestone_or_raise(milestone_id)
        if not milestone.require_photos:
            raise PhotosNotRequiredError(str(milestone.id))
        hold = await self._get_writable_hold(milestone)
        self._ensure_party(hold, actor_id, "add a photo")
        if not evidence_ref:
            raise InvalidEvidenceError("A photo needs an evidence reference")

        await self._milestones.add_photo(milestone, evidence_ref)
        logger.info(
            "milestone.photo_recorded",
            milestone_id=str(milestone.id),
            photo_count=milestone.photo_count,
            min_photos=milestone.min_photos,
        )
        return milestone

    async def record_gps(
        self,
        milestone_id: uuid.UUID,
        lat: float,
        lng: float,
        address: str | None = None,
        actor_id: str | None = None,
    ) -> Milestone:
        """Record a GPS fix. A later fix replaces an earlier one."""
        milestone = await self._get_milestone_or_raise(milestone_id)
        if not milestone.require_gps:
            raise GPSNotRequiredError(str(milestone.id))
        hold = await self._get_writable_hold(milestone)
        self._ensure_party(hold, actor_id, "record a GPS fix")
        if not -90.0 <= lat <= 90.0 or not -180.0 <= lng <= 180.0:
            raise InvalidEvidenceError(f"GPS fix out of range: lat={lat}, lng={lng}")

        await self._milestones.set_gps(milestone, lat, lng, address, datetime.now(UTC))
        logger.info("milestone.gps_recorded", milestone_id=str(milestone.id))
        return milestone

    async def evidence_urls(self, milestone_id: uuid.UUID) -> dict:
        """Temporary URLs for every stored evidence reference of a milestone."""
        milestone = await self._get_milestone_or_raise(milestone_id)
        if self._evidence_store is None:
            raise RuntimeError("No evidence store configured")

        async def _resolve(ref: str | None) -> str | None:
            return await self._evidence_store.resolve(ref) if ref else None

        photos = await self._milestones.list_photos(milestone.id)
        return {
            "milestone_id": str(milestone.id),
            "provider_signature": await _resolve(milestone.provider_signature_ref),
            "requester_signature": await _resolve(milestone.requester_signature_ref),
            "photos": [await self._evidence_store.resolve(p.evidence_ref) for p in photos],
        }

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_milestone(self, milestone_id: uuid.UUID) -> Milestone:
        return await self._get_milestone_or_raise(milestone_id)

    async def list_for_hold(self, hold_id: uuid.UUID) -> list[Milestone]:
        return await self._milestones.list_for_hold(hold_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_milestone_or_raise(self, milestone_id: uuid.UUID) -> Milestone:
        milestone = await self._milestones.get_by_id(milestone_id)
        if milestone is None:
            raise EntityNotFoundError("milestone", str(milestone_id))
        return milestone

    async def _get_hold(self, milestone: Milestone) -> EscrowHold:
        hold = await self._holds.get_by_id(milestone.escrow_hold_id)
        if hold is None:
            raise EntityNotFoundError("escrow hold", str(milestone.escrow_hold_id))
        return hold

    async def _get_writable_hold(self, milestone: Milestone) -> EscrowHold:
        hold = await self._get_hold(milestone)
        if EscrowStatus(hold.status).is_terminal:
            raise InvalidEscrowStateError(hold.status, "record evidence")
        return hold

    @staticmethod
    def _ensure_party(hold: EscrowHold, actor_id: str | None, action: str) -> None:
        if actor_id is not None and actor_id not in (hold.provider_id, hold.requester_id):
            raise AuthorizationError(actor_id, action, "only the parties of the escrow hold may")
