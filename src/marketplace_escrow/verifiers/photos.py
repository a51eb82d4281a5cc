"""PhotoCountCheck: validates the minimum number of proof photos."""

from __future__ import annotations

from marketplace_escrow.domain.enums import EvidenceChannel
from marketplace_escrow.domain.verifier_protocol import (
    CheckResult,
    EvidenceSnapshot,
    MilestoneRequirements,
)


class PhotoCountCheck:
    channel = EvidenceChannel.PHOTOS

    def check(
        self, requirements: MilestoneRequirements, evidence: EvidenceSnapshot
    ) -> CheckResult:
        if not requirements.require_photos or evidence.photo_count >= requirements.min_photos:
            return CheckResult(channel=self.channel, is_satisfied=True)

        remaining = requirements.min_photos - evidence.photo_count
        return CheckResult(
            channel=self.channel,
            is_satisfied=False,
            shortfall=(
                f"{remaining} more photo(s) required "
                f"({evidence.photo_count}/{requirements.min_photos})"
            ),
        )
