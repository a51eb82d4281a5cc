"""Unit tests for the VerifierFactory."""

from __future__ import annotations

import pytest

from marketplace_escrow.domain.enums import SignaturePolicy
from marketplace_escrow.verifiers import (
    GPSFixCheck,
    MilestoneRequirements,
    PhotoCountCheck,
    SignatureCheck,
    VerifierFactory,
)


class TestVerifierFactory:
    def test_create_signature(self) -> None:
        assert isinstance(VerifierFactory.create("signature"), SignatureCheck)

    def test_create_photos(self) -> None:
        assert isinstance(VerifierFactory.create("photos"), PhotoCountCheck)

    def test_create_gps(self) -> None:
        assert isinstance(VerifierFactory.create("gps"), GPSFixCheck)

    def test_unknown_channel_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown evidence channel"):
            VerifierFactory.create("fingerprint")

    def test_get_supported_channels(self) -> None:
        assert VerifierFactory.get_supported_channels() == ["signature", "photos", "gps"]

    def test_for_requirements_builds_only_flagged_checks(self) -> None:
        reqs = MilestoneRequirements(require_photos=True, min_photos=2, require_gps=True)
        checks = VerifierFactory.for_requirements(reqs)
        assert [type(c) for c in checks] == [PhotoCountCheck, GPSFixCheck]

    def test_for_requirements_without_flags_is_empty(self) -> None:
        assert VerifierFactory.for_requirements(MilestoneRequirements()) == []

    def test_signature_policy_is_passed_through(self) -> None:
        reqs = MilestoneRequirements(require_signature=True)
        (check,) = VerifierFactory.for_requirements(reqs, SignaturePolicy.BOTH)
        assert isinstance(check, SignatureCheck)
        assert check._policy == SignaturePolicy.BOTH
