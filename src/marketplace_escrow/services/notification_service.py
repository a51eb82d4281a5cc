"""Notification Service: tells parties about bid, escrow and dispute events.

Delivery is an external concern behind the Notifier protocol. A failed
notification never rolls back the financial transition that triggered it:
sends are retried a bounded number of times, then logged and discarded.
When Redis is available, a notification key is claimed first so replays
(e.g. a re-run sweep) do not notify twice.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_exponential

from marketplace_escrow.infrastructure.redis_client import claim_idempotency, is_redis_ready
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from marketplace_escrow.config import Settings
    from marketplace_escrow.domain.enums import NotificationKind

logger = get_logger(__name__)


@runtime_checkable
class Notifier(Protocol):
    async def notify(self, user_id: str, kind: str, payload: dict) -> None: ...


class LogNotifier:
    """Default notifier: writes the notification to the structured log."""

    async def notify(self, user_id: str, kind: str, payload: dict) -> None:
        logger.info("notification.sent", user_id=user_id, kind=kind, **payload)


class NotificationService:
    """Bounded-retry, fire-and-forget wrapper around a Notifier."""

    def __init__(self, notifier: Notifier, settings: Settings) -> None:
        self._notifier = notifier
        self._settings = settings

    async def send(
        self,
        user_id: str,
        kind: NotificationKind,
        payload: dict,
        dedup_key: str | None = None,
    ) -> bool:
        """Deliver a notification. Returns False if it was dropped or de-duplicated."""
        if dedup_key and is_redis_ready():
            try:
                if not await claim_idempotency(f"notify:{kind.value}:{user_id}:{dedup_key}"):
                    logger.debug("notification.duplicate", user_id=user_id, kind=kind.value)
                    return False
            except Exception as exc:  # noqa: BLE001 - Redis outage must not block delivery
                logger.warning("notification.dedup_unavailable", error=str(exc))

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._settings.notification_retry_attempts),
            wait=wait_exponential(multiplier=0.5, max=4),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._notifier.notify(user_id, kind.value, payload)
        except RetryError as exc:
            logger.error(
                "notification.failed",
                user_id=user_id,
                kind=kind.value,
                attempts=self._settings.notification_retry_attempts,
                error=str(exc.last_attempt.exception()),
            )
            return False
        return True
