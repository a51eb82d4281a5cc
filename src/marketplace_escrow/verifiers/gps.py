"""GPSFixCheck: validates that an on-site GPS fix was captured."""

from __future__ import annotations

from marketplace_escrow.domain.enums import EvidenceChannel
from marketplace_escrow.domain.verifier_protocol import (
    CheckResult,
    EvidenceSnapshot,
    MilestoneRequirements,
)


class GPSFixCheck:
    channel = EvidenceChannel.GPS

    def check(
        self, requirements: MilestoneRequirements, evidence: EvidenceSnapshot
    ) -> CheckResult:
        if not requirements.require_gps or evidence.gps_verified:
            return CheckResult(channel=self.channel, is_satisfied=True)
        return CheckResult(
            channel=self.channel,
            is_satisfied=False,
            shortfall="GPS location verification required",
        )
