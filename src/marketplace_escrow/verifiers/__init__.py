"""Evidence channel checks and factory.

Three checks, one per evidence channel:
    - SignatureCheck:   party signatures, governed by a SignaturePolicy
    - PhotoCountCheck:  minimum number of proof photos
    - GPSFixCheck:      on-site GPS fix

The VerifierFactory builds the checks a milestone's requirement flags call
for; evaluate_milestone() is the pure release-eligibility function the
verification gate is built on.
"""

from marketplace_escrow.domain.enums import EvidenceChannel, SignaturePolicy
from marketplace_escrow.domain.verifier_protocol import (
    CheckResult,
    EvidenceCheck,
    EvidenceSnapshot,
    MilestoneRequirements,
)
from marketplace_escrow.verifiers.gps import GPSFixCheck
from marketplace_escrow.verifiers.photos import PhotoCountCheck
from marketplace_escrow.verifiers.signature import SignatureCheck


class VerifierFactory:
    """Factory that creates the checks a milestone's requirements call for.

    Usage:
        checks = VerifierFactory.for_requirements(requirements, SignaturePolicy.BOTH)
        results = [c.check(requirements, evidence) for c in checks]
    """

    _registry: dict[str, type] = {
        EvidenceChannel.SIGNATURE.value: SignatureCheck,
        EvidenceChannel.PHOTOS.value: PhotoCountCheck,
        EvidenceChannel.GPS.value: GPSFixCheck,
    }

    @classmethod
    def create(
        cls,
        channel: str,
        signature_policy: SignaturePolicy = SignaturePolicy.ANY,
    ) -> EvidenceCheck:
        """Create the check for one evidence channel.

        Raises:
            ValueError: If the channel is unknown.
        """
        check_class = cls._registry.get(channel)
        if check_class is None:
            raise ValueError(
                f"Unknown evidence channel: '{channel}'. "
                f"Valid channels: {list(cls._registry.keys())}"
            )
        if check_class is SignatureCheck:
            return SignatureCheck(policy=signature_policy)
        return check_class()

    @classmethod
    def for_requirements(
        cls,
        requirements: MilestoneRequirements,
        signature_policy: SignaturePolicy = SignaturePolicy.ANY,
    ) -> list[EvidenceCheck]:
        """Return one check per channel the requirements flag."""
        return [cls.create(ch.value, signature_policy) for ch in requirements.channels]

    @classmethod
    def get_supported_channels(cls) -> list[str]:
        return list(cls._registry.keys())


def evaluate_milestone(
    requirements: MilestoneRequirements,
    evidence: EvidenceSnapshot,
    signature_policy: SignaturePolicy = SignaturePolicy.ANY,
) -> list[str]:
    """Return the unmet requirements of a milestone; empty means release eligible.

    A milestone with no requirement flags is trivially eligible. Adding
    evidence can only shrink the result, so eligibility is monotonic.
    """
    results = [
        check.check(requirements, evidence)
        for check in VerifierFactory.for_requirements(requirements, signature_policy)
    ]
    return [r.shortfall or r.channel.value for r in results if not r.is_satisfied]


__all__ = [
    "CheckResult",
    "EvidenceCheck",
    "EvidenceSnapshot",
    "GPSFixCheck",
    "MilestoneRequirements",
    "PhotoCountCheck",
    "SignatureCheck",
    "VerifierFactory",
    "evaluate_milestone",
]
