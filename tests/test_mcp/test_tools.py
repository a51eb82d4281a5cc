"""Tests for the MCP tool functions.

The tools open their own sessions through module-level providers, which are
pointed at the test database and collaborators with monkeypatch.
"""

from __future__ import annotations

import uuid

import pytest
from conftest import PROVIDER, REQUESTER, Marketplace

from marketplace_escrow.mcp_server import tools


@pytest.fixture
def wired(market: Marketplace, monkeypatch: pytest.MonkeyPatch) -> Marketplace:
    monkeypatch.setattr(tools, "get_session_factory", lambda: market.session_factory)
    monkeypatch.setattr(tools, "get_settings", lambda: market.settings)
    monkeypatch.setattr(tools, "get_payment_service", lambda: market.payments)
    monkeypatch.setattr(tools, "get_notification_service", lambda: market.notifications)
    monkeypatch.setattr(tools, "get_evidence_store", lambda: market.evidence_store)
    return market


class TestMcpTools:
    @pytest.mark.asyncio
    async def test_job_from_post_to_release(self, wired: Marketplace) -> None:
        order = await tools.post_work_order(REQUESTER, "Hang three shelves")
        bid = await tools.submit_bid(
            order["work_order_id"],
            PROVIDER,
            "120.00",
            milestone_plan=[{"title": "Shelves up", "require_photos": True, "min_photos": 1}],
        )
        assert bid["created"] is True

        award = await tools.award_bid(bid["bid_id"], REQUESTER)
        assert award["final_status"] == "funded"
        hold_id = award["hold_id"]

        status = await tools.check_status(hold_id)
        assert status["status"] == "held"
        assert len(status["shortfalls"]) == 1

        async with wired.transaction() as session:
            (milestone,) = await wired.escrow(session).list_milestones(uuid.UUID(hold_id))
        photo = await tools.record_photo(str(milestone.id), PROVIDER, "photos/shelves.jpg")
        assert photo["photo_count"] == 1

        done = await tools.complete_milestone(hold_id, str(milestone.id), PROVIDER)
        assert done["completed"] is True

        released = await tools.release_payment(hold_id, REQUESTER)
        assert released["status"] == "released"
        assert released["payout_ref"]

    @pytest.mark.asyncio
    async def test_domain_errors_are_returned_not_raised(self, wired: Marketplace) -> None:
        result = await tools.check_status(str(uuid.uuid4()))

        assert result["error"] == "ESCROW_HOLD_NOT_FOUND"
        assert "message" in result

    @pytest.mark.asyncio
    async def test_dispute_round_trip(self, wired: Marketplace) -> None:
        _, _, hold = await wired.completed_hold()

        filed = await tools.file_dispute(
            str(hold.id), REQUESTER, PROVIDER, "quality", "Shelves are not level at all"
        )
        assert filed["case_number"].startswith("DSP-")

        reviewed = await tools.advance_dispute(filed["dispute_id"], "arb-dave", "under_review")
        assert reviewed["status"] == "under_review"

        resolved = await tools.resolve_dispute(
            filed["dispute_id"], "arb-dave", "release_to_provider"
        )
        assert resolved["status"] == "resolved"
        assert (await wired.get_hold(hold.id)).status == "released"

    @pytest.mark.asyncio
    async def test_run_scheduler(self, wired: Marketplace) -> None:
        result = await tools.run_scheduler()
        assert set(result) == {"funding", "release"}
