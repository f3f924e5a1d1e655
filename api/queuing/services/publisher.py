from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

import redis

from ..config import MATCH_EVENT_CHANNEL, OUTBOX_DRAIN_LIMIT, OUTBOX_MAX_ATTEMPTS
from ..domain import MatchEvent
from ..errors import TransientStoreError
from .queue_store import QueueStore

logger = logging.getLogger(__name__)


class RedisEventPublisher:
    """Publishes match events on a Redis pub/sub channel.

    Delivery is at-least-once; consumers must be idempotent on ``matchId``.
    """

    def __init__(self, client: redis.Redis, channel: str = MATCH_EVENT_CHANNEL) -> None:
        self.client = client
        self.channel = channel

    def publish(self, event: MatchEvent) -> int:
        return int(self.client.publish(self.channel, json.dumps(event.to_payload())) or 0)


class OutboxRelay:
    """Moves pending rows of the match event outbox onto the event publisher."""

    def __init__(
        self,
        store: QueueStore,
        publisher: RedisEventPublisher,
        *,
        max_attempts: int = OUTBOX_MAX_ATTEMPTS,
    ) -> None:
        self.store = store
        self.publisher = publisher
        self.max_attempts = max_attempts

    def drain(self, limit: int = OUTBOX_DRAIN_LIMIT) -> dict[str, Any]:
        processed = 0
        sent = 0
        failed = 0
        for row in self.store.fetch_pending_events(limit=limit):
            processed += 1
            now = datetime.now(timezone.utc)
            try:
                event = MatchEvent.from_payload(row["payload"] or {})
                self.publisher.publish(event)
            except (redis.RedisError, KeyError, TypeError, ValueError) as exc:
                status = self.store.mark_event_failed(
                    row["id"], str(exc), max_attempts=self.max_attempts, now=now
                )
                failed += 1
                logger.warning(
                    "[PUBLISH] match event %s not delivered (attempt=%s status=%s): %s",
                    row["match_id"],
                    row["attempt_count"] + 1,
                    status,
                    exc,
                )
                continue
            try:
                self.store.mark_event_sent(row["id"], now)
            except TransientStoreError:
                # Already published; it will be published again next drain.
                logger.exception("[PUBLISH] could not mark match event %s as sent", row["match_id"])
            sent += 1
            logger.debug("[PUBLISH] match event %s delivered", row["match_id"])

        return {"processed": processed, "sent": sent, "failed": failed}
