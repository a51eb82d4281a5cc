"""SignatureCheck: validates that the required parties have signed a milestone.

Whether one signature is enough or both parties must sign is a policy
decision (Settings.signature_policy), not something hard-coded here.
"""

from __future__ import annotations

from marketplace_escrow.domain.enums import EvidenceChannel, SignaturePolicy
from marketplace_escrow.domain.verifier_protocol import (
    CheckResult,
    EvidenceSnapshot,
    MilestoneRequirements,
)


class SignatureCheck:
    """Check that a milestone carries the signatures its policy demands."""

    channel = EvidenceChannel.SIGNATURE

    def __init__(self, policy: SignaturePolicy = SignaturePolicy.ANY) -> None:
        self._policy = SignaturePolicy(policy)

    def check(
        self, requirements: MilestoneRequirements, evidence: EvidenceSnapshot
    ) -> CheckResult:
        if not requirements.require_signature:
            return CheckResult(channel=self.channel, is_satisfied=True)

        if self._policy == SignaturePolicy.BOTH:
            missing = [
                role
                for role, signed in (
                    ("provider", evidence.provider_signed),
                    ("requester", evidence.requester_signed),
                )
                if not signed
            ]
            if missing:
                return CheckResult(
                    channel=self.channel,
                    is_satisfied=False,
                    shortfall=f"signature required from {' and '.join(missing)}",
                )
            return CheckResult(channel=self.channel, is_satisfied=True)

        if evidence.provider_signed or evidence.requester_signed:
            return CheckResult(channel=self.channel, is_satisfied=True)
        return CheckResult(
            channel=self.channel,
            is_satisfied=False,
            shortfall="signature required from either party",
        )
