"""Milestone evidence check protocol.

Defines the tagged requirement config, the evidence snapshot a check reads, and
the interface every per-channel check implements. This is a Protocol
(structural subtyping) so concrete checks don't need to inherit from a base
class, they just need to match the shape.

The domain layer has ZERO imports from SQLAlchemy or any external service:
services build an EvidenceSnapshot from the ORM row and hand it over.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from marketplace_escrow.domain.enums import EvidenceChannel


@dataclass(frozen=True)
class MilestoneRequirements:
    """Which evidence a milestone needs before it is release eligible.

    Attributes:
        require_signature: A signature is required (policy decides whose).
        require_photos: Photographic proof is required.
        min_photos: Minimum photo count when require_photos is set.
        require_gps: A GPS fix is required.
    """

    require_signature: bool = False
    require_photos: bool = False
    min_photos: int = 0
    require_gps: bool = False

    def __post_init__(self) -> None:
        if self.min_photos < 0:
            raise ValueError("min_photos cannot be negative")
        if self.require_photos and self.min_photos < 1:
            raise ValueError("min_photos must be at least 1 when photos are required")

    @property
    def channels(self) -> list[EvidenceChannel]:
        """Evidence channels this milestone requires, in a stable order."""
        required = []
        if self.require_signature:
            required.append(EvidenceChannel.SIGNATURE)
        if self.require_photos:
            required.append(EvidenceChannel.PHOTOS)
        if self.require_gps:
            required.append(EvidenceChannel.GPS)
        return required


@dataclass(frozen=True)
class EvidenceSnapshot:
    """Evidence captured so far for one milestone."""

    provider_signed: bool = False
    requester_signed: bool = False
    photo_count: int = 0
    gps_verified: bool = False


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one evidence channel check.

    Attributes:
        channel: The channel that was checked.
        is_satisfied: Whether the requirement is met.
        shortfall: Human-readable description of what is still missing.
    """

    channel: EvidenceChannel
    is_satisfied: bool
    shortfall: str | None = None


@runtime_checkable
class EvidenceCheck(Protocol):
    """Protocol that all evidence channel checks must satisfy.

    Concrete implementations:
        - verifiers/signature.py
        - verifiers/photos.py
        - verifiers/gps.py
    """

    channel: EvidenceChannel

    def check(
        self, requirements: MilestoneRequirements, evidence: EvidenceSnapshot
    ) -> CheckResult:
        """Check one channel's evidence against the milestone requirements."""
        ...
