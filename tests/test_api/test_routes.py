"""HTTP-level tests for the REST API.

The app is driven in-process through httpx's ASGI transport. Database,
payment, notification and evidence providers are swapped for the test
fixtures via dependency_overrides, so every request hits the same
throwaway SQLite database the Marketplace driver uses.
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import TYPE_CHECKING

import httpx
import pytest
import pytest_asyncio
from conftest import ARBITER, OTHER_PROVIDER, PROVIDER, REQUESTER, Marketplace

from marketplace_escrow.api import deps
from marketplace_escrow.api.routes import health
from marketplace_escrow.domain.enums import EventType
from marketplace_escrow.main import create_app

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.services.payment_service import SimulatedPaymentProcessor


def as_(actor: str) -> dict[str, str]:
    return {"X-Actor-Id": actor}


@pytest_asyncio.fixture
async def client(market: Marketplace) -> AsyncGenerator[httpx.AsyncClient, None]:
    app = create_app()

    async def session_override() -> AsyncGenerator[AsyncSession, None]:
        async with market.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[deps.get_db_session] = session_override
    app.dependency_overrides[deps.get_db_session_factory] = lambda: market.session_factory
    app.dependency_overrides[deps.get_app_settings] = lambda: market.settings
    app.dependency_overrides[deps.get_payments] = lambda: market.payments
    app.dependency_overrides[deps.get_notifications] = lambda: market.notifications
    app.dependency_overrides[deps.get_evidence_store] = lambda: market.evidence_store

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def post_order(client: httpx.AsyncClient, title: str = "Repaint the porch") -> dict:
    resp = await client.post("/api/v1/work-orders", json={"title": title}, headers=as_(REQUESTER))
    assert resp.status_code == 201
    return resp.json()


async def submit_bid(
    client: httpx.AsyncClient,
    order_id: str,
    provider: str = PROVIDER,
    amount: str = "400.00",
    **extra: object,
) -> httpx.Response:
    return await client.post(
        f"/api/v1/work-orders/{order_id}/bids",
        json={"amount": amount, **extra},
        headers=as_(provider),
    )


async def awarded_hold(client: httpx.AsyncClient, **bid_extra: object) -> tuple[dict, dict]:
    """Post, bid and award; returns (order, award response)."""
    order = await post_order(client)
    bid = (await submit_bid(client, order["id"], **bid_extra)).json()["bid"]
    resp = await client.post(f"/api/v1/bids/{bid['id']}/accept", headers=as_(REQUESTER))
    assert resp.status_code == 200
    return order, resp.json()


class TestWorkOrdersAndBids:
    @pytest.mark.asyncio
    async def test_post_and_fetch_work_order(self, client: httpx.AsyncClient) -> None:
        order = await post_order(client)

        assert order["requester_id"] == REQUESTER
        assert order["status"] == "open"
        assert order["is_open_for_bids"] is True

        resp = await client.get(f"/api/v1/work-orders/{order['id']}")
        assert resp.status_code == 200
        assert resp.json()["title"] == "Repaint the porch"

    @pytest.mark.asyncio
    async def test_bid_created_then_updated(self, client: httpx.AsyncClient) -> None:
        order = await post_order(client)

        first = await submit_bid(client, order["id"], amount="400.00")
        second = await submit_bid(client, order["id"], amount="380.00", message="Can start Monday")

        assert first.status_code == 201
        assert first.json()["created"] is True
        assert second.status_code == 200
        body = second.json()
        assert body["created"] is False
        assert body["bid"]["id"] == first.json()["bid"]["id"]
        assert Decimal(body["bid"]["amount"]) == Decimal("380.00")

        listing = await client.get(f"/api/v1/work-orders/{order['id']}/bids")
        assert len(listing.json()) == 1

    @pytest.mark.asyncio
    async def test_decline_and_withdraw(self, client: httpx.AsyncClient) -> None:
        order = await post_order(client)
        bob = (await submit_bid(client, order["id"])).json()["bid"]
        carol = (await submit_bid(client, order["id"], provider=OTHER_PROVIDER)).json()["bid"]

        declined = await client.post(
            f"/api/v1/bids/{bob['id']}/decline",
            json={"reason": "Too expensive"},
            headers=as_(REQUESTER),
        )
        withdrawn = await client.post(
            f"/api/v1/bids/{carol['id']}/withdraw", headers=as_(OTHER_PROVIDER)
        )

        assert declined.json()["status"] == "declined"
        assert declined.json()["decline_reason"] == "Too expensive"
        assert withdrawn.json()["status"] == "withdrawn"

    @pytest.mark.asyncio
    async def test_requester_cannot_bid_on_own_order(self, client: httpx.AsyncClient) -> None:
        order = await post_order(client)
        resp = await submit_bid(client, order["id"], provider=REQUESTER)
        assert resp.status_code == 403
        assert resp.json()["error"] == "NOT_AUTHORIZED"

    @pytest.mark.asyncio
    async def test_bidding_closed(self, client: httpx.AsyncClient) -> None:
        order = await post_order(client)
        closed = await client.post(
            f"/api/v1/work-orders/{order['id']}/close-bidding", headers=as_(REQUESTER)
        )
        assert closed.json()["is_open_for_bids"] is False

        resp = await submit_bid(client, order["id"])
        assert resp.status_code == 422
        assert resp.json()["error"] == "BIDDING_CLOSED"


class TestAwardAndFunding:
    @pytest.mark.asyncio
    async def test_accept_funds_the_escrow(self, client: httpx.AsyncClient) -> None:
        _, award = await awarded_hold(client)

        assert award["accepted"] is True
        assert award["final_status"] == "funded"
        assert award["hold_status"] == "held"
        assert award["error"] is None

        hold = (await client.get(f"/api/v1/escrow/{award['hold_id']}")).json()
        assert hold["status"] == "held"
        assert Decimal(hold["amount"]) == Decimal("400.00")
        assert hold["capture_ref"]

        by_bid = await client.get(f"/api/v1/escrow/by-bid/{award['bid_id']}")
        assert by_bid.json()["id"] == award["hold_id"]

    @pytest.mark.asyncio
    async def test_capture_failure_then_manual_fund(
        self, client: httpx.AsyncClient, processor: SimulatedPaymentProcessor
    ) -> None:
        processor.fail_next("capture")
        order = await post_order(client)
        bid = (await submit_bid(client, order["id"])).json()["bid"]

        award = (await client.post(f"/api/v1/bids/{bid['id']}/accept", headers=as_(REQUESTER)))
        body = award.json()
        assert body["final_status"] == "awaiting_funding"
        assert body["hold_id"] is None
        assert "simulated capture failure" in body["error"]

        funded = await client.post(
            f"/api/v1/bids/{bid['id']}/fund", json={}, headers=as_(REQUESTER)
        )
        assert funded.status_code == 200
        assert funded.json()["status"] == "held"

    @pytest.mark.asyncio
    async def test_fund_amount_mismatch(
        self, client: httpx.AsyncClient, processor: SimulatedPaymentProcessor
    ) -> None:
        processor.fail_next("capture")
        order = await post_order(client)
        bid = (await submit_bid(client, order["id"])).json()["bid"]
        await client.post(f"/api/v1/bids/{bid['id']}/accept", headers=as_(REQUESTER))

        resp = await client.post(
            f"/api/v1/bids/{bid['id']}/fund", json={"amount": "10.00"}, headers=as_(REQUESTER)
        )

        assert resp.status_code == 422
        assert resp.json()["error"] == "AMOUNT_MISMATCH"

    @pytest.mark.asyncio
    async def test_payment_failure_maps_to_bad_gateway(
        self, client: httpx.AsyncClient, processor: SimulatedPaymentProcessor
    ) -> None:
        processor.fail_next("capture", times=2)
        order = await post_order(client)
        bid = (await submit_bid(client, order["id"])).json()["bid"]
        await client.post(f"/api/v1/bids/{bid['id']}/accept", headers=as_(REQUESTER))

        resp = await client.post(
            f"/api/v1/bids/{bid['id']}/fund", json={}, headers=as_(REQUESTER)
        )

        assert resp.status_code == 502
        assert resp.json()["error"] == "PAYMENT_ERROR"


class TestMilestonesAndRelease:
    PLAN = [
        {"title": "Prep", "percentage": 40, "require_photos": True, "min_photos": 1},
        {"title": "Finish", "percentage": 60, "require_signature": True, "require_gps": True},
    ]

    @pytest.mark.asyncio
    async def test_evidence_then_release(self, client: httpx.AsyncClient) -> None:
        order, award = await awarded_hold(client, milestone_plan=self.PLAN)
        hold_id = award["hold_id"]
        prep, finish = (await client.get(f"/api/v1/escrow/{hold_id}/milestones")).json()
        assert Decimal(prep["amount"]) == Decimal("160.00")

        eligibility = (await client.get(f"/api/v1/milestones/{finish['id']}/eligibility")).json()
        assert eligibility["eligible"] is False
        assert len(eligibility["shortfalls"]) == 2

        await client.post(
            f"/api/v1/milestones/{prep['id']}/photos",
            json={"evidence_ref": "photos/prep-1.jpg"},
            headers=as_(PROVIDER),
        )
        await client.post(
            f"/api/v1/milestones/{finish['id']}/signature",
            json={"role": "requester", "evidence_ref": "sig/req.png", "signer_name": "Alice"},
            headers=as_(REQUESTER),
        )
        gps = await client.post(
            f"/api/v1/milestones/{finish['id']}/gps",
            json={"lat": 40.7128, "lng": -74.006, "address": "1 Main St"},
            headers=as_(PROVIDER),
        )
        assert gps.json()["gps_verified_at"] is not None

        evidence = (await client.get(f"/api/v1/milestones/{prep['id']}/evidence")).json()
        assert len(evidence["photos"]) == 1
        assert evidence["photos"][0].startswith("https://evidence.test/")

        completed = await client.post(
            f"/api/v1/escrow/{hold_id}/milestones/{prep['id']}/complete", headers=as_(PROVIDER)
        )
        assert completed.json()["completed_at"] is not None

        await client.post(f"/api/v1/work-orders/{order['id']}/complete", headers=as_(PROVIDER))
        status = (await client.get(f"/api/v1/escrow/{hold_id}/status")).json()
        assert status["shortfalls"] == {}

        released = await client.post(f"/api/v1/escrow/{hold_id}/release", headers=as_(REQUESTER))
        assert released.status_code == 200
        assert released.json()["status"] == "released"
        assert Decimal(released.json()["released_amount"]) == Decimal("400.00")

        events = [
            e["event_type"] for e in (await client.get(f"/api/v1/escrow/{hold_id}/events")).json()
        ]
        assert events[-1] == EventType.PAYMENT_RELEASED.value

    @pytest.mark.asyncio
    async def test_release_blocked_by_missing_evidence(self, client: httpx.AsyncClient) -> None:
        _, award = await awarded_hold(client, milestone_plan=self.PLAN)

        resp = await client.post(
            f"/api/v1/escrow/{award['hold_id']}/release", headers=as_(REQUESTER)
        )

        assert resp.status_code == 422
        body = resp.json()
        assert body["error"] == "NOT_RELEASE_ELIGIBLE"
        assert len(body["details"]["shortfalls"]) == 2

    @pytest.mark.asyncio
    async def test_completion_without_evidence_is_rejected(
        self, client: httpx.AsyncClient
    ) -> None:
        _, award = await awarded_hold(client, milestone_plan=self.PLAN)
        prep, _ = (await client.get(f"/api/v1/escrow/{award['hold_id']}/milestones")).json()

        resp = await client.post(
            f"/api/v1/escrow/{award['hold_id']}/milestones/{prep['id']}/complete",
            headers=as_(PROVIDER),
        )

        assert resp.status_code == 422
        assert resp.json()["error"] == "MILESTONE_INCOMPLETE"

    @pytest.mark.asyncio
    async def test_only_the_requester_releases(self, client: httpx.AsyncClient) -> None:
        _, award = await awarded_hold(client)
        resp = await client.post(
            f"/api/v1/escrow/{award['hold_id']}/release", headers=as_(PROVIDER)
        )
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_provider_cannot_requeue(self, client: httpx.AsyncClient) -> None:
        _, award = await awarded_hold(client)
        resp = await client.post(
            f"/api/v1/escrow/{award['hold_id']}/requeue", headers=as_(PROVIDER)
        )
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_requeue_requires_a_failed_release(self, client: httpx.AsyncClient) -> None:
        _, award = await awarded_hold(client)
        resp = await client.post(
            f"/api/v1/escrow/{award['hold_id']}/requeue", headers=as_("ops-erin")
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "INVALID_ESCROW_STATE"


class TestDisputes:
    @pytest.mark.asyncio
    async def test_file_review_and_split(self, client: httpx.AsyncClient) -> None:
        order, award = await awarded_hold(client)
        hold_id = award["hold_id"]
        await client.post(f"/api/v1/work-orders/{order['id']}/complete", headers=as_(PROVIDER))

        filed = await client.post(
            "/api/v1/disputes",
            json={
                "escrow_hold_id": hold_id,
                "respondent_id": PROVIDER,
                "type": "quality",
                "description": "Paint is peeling after two days",
            },
            headers=as_(REQUESTER),
        )
        assert filed.status_code == 201
        dispute = filed.json()
        assert dispute["case_number"].startswith("DSP-")
        assert dispute["status"] == "open"

        frozen = await client.post(f"/api/v1/escrow/{hold_id}/release", headers=as_(REQUESTER))
        assert frozen.status_code == 422

        reviewed = await client.post(
            f"/api/v1/disputes/{dispute['id']}/status",
            json={"status": "under_review"},
            headers=as_(ARBITER),
        )
        assert reviewed.json()["status"] == "under_review"

        resolved = await client.post(
            f"/api/v1/disputes/{dispute['id']}/resolve",
            json={"outcome": "split", "refund_amount": "100.00"},
            headers=as_(ARBITER),
        )
        assert resolved.status_code == 200
        assert resolved.json()["status"] == "resolved"

        hold = (await client.get(f"/api/v1/escrow/{hold_id}")).json()
        assert Decimal(hold["refunded_amount"]) == Decimal("100.00")
        assert Decimal(hold["released_amount"]) == Decimal("300.00")

        timeline = (await client.get(f"/api/v1/disputes/{dispute['id']}/timeline")).json()
        assert len(timeline) >= 3

    @pytest.mark.asyncio
    async def test_illegal_transition_conflicts(self, client: httpx.AsyncClient) -> None:
        order, award = await awarded_hold(client)
        await client.post(f"/api/v1/work-orders/{order['id']}/complete", headers=as_(PROVIDER))
        dispute = (
            await client.post(
                "/api/v1/disputes",
                json={
                    "escrow_hold_id": award["hold_id"],
                    "respondent_id": PROVIDER,
                    "type": "scope",
                    "description": "Only the front was painted",
                },
                headers=as_(REQUESTER),
            )
        ).json()

        resp = await client.post(
            f"/api/v1/disputes/{dispute['id']}/status",
            json={"status": "mediation"},
            headers=as_(ARBITER),
        )

        assert resp.status_code == 409
        assert resp.json()["error"] == "ILLEGAL_DISPUTE_TRANSITION"

    @pytest.mark.asyncio
    async def test_complaint_history(self, client: httpx.AsyncClient) -> None:
        resp = await client.get(f"/api/v1/providers/{PROVIDER}/complaints")
        body = resp.json()
        assert body["provider_id"] == PROVIDER
        assert body["upheld_complaints"] == 0
        assert body["flagged"] is False


class TestScheduler:
    @pytest.mark.asyncio
    async def test_run_reports_both_passes(self, client: httpx.AsyncClient) -> None:
        resp = await client.post("/api/v1/scheduler/run", headers=as_("ops-erin"))
        assert resp.status_code == 200
        body = resp.json()
        assert body["funding"]["found"] == 0
        assert body["release"]["found"] == 0


class TestErrorsAndMiddleware:
    @pytest.mark.asyncio
    async def test_unknown_hold_is_404(self, client: httpx.AsyncClient) -> None:
        resp = await client.get(f"/api/v1/escrow/{uuid.uuid4()}")
        assert resp.status_code == 404
        assert resp.json()["error"] == "ESCROW_HOLD_NOT_FOUND"
        assert "details" not in resp.json()

    @pytest.mark.asyncio
    async def test_missing_actor_header_is_422(self, client: httpx.AsyncClient) -> None:
        resp = await client.post("/api/v1/work-orders", json={"title": "Fix the sink"})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client: httpx.AsyncClient) -> None:
        resp = await client.get(
            f"/api/v1/escrow/{uuid.uuid4()}", headers={"X-Request-ID": "trace-123"}
        )
        assert resp.headers["X-Request-ID"] == "trace-123"

    @pytest.mark.asyncio
    async def test_request_id_is_generated(self, client: httpx.AsyncClient) -> None:
        resp = await client.get(f"/api/v1/providers/{PROVIDER}/complaints")
        assert uuid.UUID(resp.headers["X-Request-ID"])

    @pytest.mark.asyncio
    async def test_health_without_redis_is_degraded(
        self,
        client: httpx.AsyncClient,
        market: Marketplace,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        engine = market.session_factory.kw["bind"]
        monkeypatch.setattr(health, "get_engine", lambda: engine)

        body = (await client.get("/health")).json()

        assert body["database"] == "healthy"
        assert body["redis"] == "not_configured"
        assert body["status"] == "degraded"
