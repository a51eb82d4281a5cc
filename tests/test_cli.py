"""Tests for the escrow-sweep command."""

from __future__ import annotations

import pytest
from conftest import Marketplace

from marketplace_escrow import cli
from marketplace_escrow.domain.enums import EscrowStatus


async def _noop() -> None:
    return None


@pytest.fixture
def wired(market: Marketplace, monkeypatch: pytest.MonkeyPatch) -> Marketplace:
    monkeypatch.setattr(cli, "get_settings", lambda: market.settings)
    monkeypatch.setattr(cli, "get_session_factory", lambda: market.session_factory)
    monkeypatch.setattr(cli, "get_payment_service", lambda: market.payments)
    monkeypatch.setattr(cli, "get_notification_service", lambda: market.notifications)
    monkeypatch.setattr(cli, "init_redis", _noop)
    monkeypatch.setattr(cli, "close_redis", _noop)
    monkeypatch.setattr(cli, "close_db", _noop)
    return market


class TestParser:
    def test_defaults_to_both_sweeps(self) -> None:
        assert cli.build_parser().parse_args([]).only is None

    def test_rejects_unknown_sweep(self) -> None:
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["--only", "payouts"])


class TestRun:
    @pytest.mark.asyncio
    async def test_runs_both_sweeps(self, wired: Marketplace) -> None:
        result = await cli.run()
        assert set(result) == {"funding", "release"}

    @pytest.mark.asyncio
    async def test_release_only(self, wired: Marketplace) -> None:
        _, _, hold = await wired.completed_hold()
        # completed just now, so the contest window is still open
        result = await cli.run("release")

        assert set(result) == {"release"}
        assert result["release"]["found"] == 0
        assert (await wired.get_hold(hold.id)).status == EscrowStatus.HELD

    @pytest.mark.asyncio
    async def test_funding_only(self, wired: Marketplace) -> None:
        order = await wired.post_order()
        bid = await wired.bid(order.id)
        await wired.accept(bid.id)

        result = await cli.run("funding")

        assert set(result) == {"funding"}
        # accepted inside the grace period, so nothing is due yet
        assert result["funding"]["found"] == 0
