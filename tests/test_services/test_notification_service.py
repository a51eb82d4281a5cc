"""Tests for bounded-retry notification delivery."""

from __future__ import annotations

import pytest
from conftest import RecordingNotifier

from marketplace_escrow.domain.enums import NotificationKind
from marketplace_escrow.services.notification_service import (
    LogNotifier,
    NotificationService,
    Notifier,
)


class TestNotificationService:
    def test_log_notifier_satisfies_protocol(self) -> None:
        assert isinstance(LogNotifier(), Notifier)

    @pytest.mark.asyncio
    async def test_delivers(
        self, notifications: NotificationService, notifier: RecordingNotifier
    ) -> None:
        delivered = await notifications.send(
            "prov-bob", NotificationKind.ESCROW_FUNDED, {"hold_id": "h1"}
        )

        assert delivered is True
        assert notifier.sent == [("prov-bob", "escrow_funded", {"hold_id": "h1"})]

    @pytest.mark.asyncio
    async def test_retries_a_flaky_channel(
        self, notifications: NotificationService, notifier: RecordingNotifier
    ) -> None:
        notifier.failures_left = 1
        assert await notifications.send("req-alice", NotificationKind.BID_RECEIVED, {})
        assert notifier.kinds_for("req-alice") == ["bid_received"]

    @pytest.mark.asyncio
    async def test_gives_up_without_raising(
        self, notifications: NotificationService, notifier: RecordingNotifier
    ) -> None:
        notifier.failures_left = 10
        delivered = await notifications.send("req-alice", NotificationKind.BID_RECEIVED, {})

        assert delivered is False
        assert notifier.sent == []
        assert notifier.failures_left == 8
