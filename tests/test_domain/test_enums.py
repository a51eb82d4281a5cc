"""Tests for domain enumerations."""

from __future__ import annotations

from marketplace_escrow.domain.enums import (
    BidStatus,
    DisputeOutcome,
    DisputeStatus,
    EscrowStatus,
    UnfreezeResolution,
)


class TestEscrowStatus:
    def test_all_statuses_exist(self) -> None:
        expected = {"funded", "held", "disputed", "released", "refunded", "release_failed"}
        assert {s.value for s in EscrowStatus} == expected

    def test_status_is_str_enum(self) -> None:
        assert isinstance(EscrowStatus.HELD, str)
        assert EscrowStatus.HELD == "held"

    def test_terminal_statuses(self) -> None:
        assert EscrowStatus.RELEASED.is_terminal
        assert EscrowStatus.REFUNDED.is_terminal
        assert not EscrowStatus.RELEASE_FAILED.is_terminal
        assert not EscrowStatus.DISPUTED.is_terminal


class TestBidStatus:
    def test_active_statuses_back_the_one_bid_rule(self) -> None:
        assert set(BidStatus.active()) == {BidStatus.PENDING, BidStatus.ACCEPTED}


class TestDisputeStatus:
    def test_active_and_terminal_partition_all_statuses(self) -> None:
        active = set(DisputeStatus.active())
        terminal = set(DisputeStatus.terminal())
        assert not active & terminal
        assert active | terminal == set(DisputeStatus)


class TestUnfreezeResolution:
    def test_every_outcome_maps_to_a_money_branch(self) -> None:
        assert UnfreezeResolution.for_outcome(DisputeOutcome.RELEASE_TO_PROVIDER) == (
            UnfreezeResolution.PAY_PROVIDER
        )
        assert UnfreezeResolution.for_outcome(DisputeOutcome.REFUND_TO_REQUESTER) == (
            UnfreezeResolution.REFUND_REQUESTER
        )
        assert UnfreezeResolution.for_outcome(DisputeOutcome.SPLIT) == UnfreezeResolution.SPLIT
