from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from ..config import HISTORY_PAGE_LIMIT, QUEUE_TTL_SECONDS
from ..domain import JoinRequest, QueueStats, QueueStatus, WaitingEntry
from ..errors import AlreadyQueued, NotFound, TransientStoreError
from .queue_store import QueueStore
from .state_machine import is_expired
from .waiting_index import WaitingIndex

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class QueueManager:
    """Join/Leave/Status/Stats over the durable store and the waiting index.

    The store is the source of truth. Every write goes to the store first so
    that a crash leaves at worst a stale or missing index member, which
    ``status`` and the scheduler sweep repair.
    """

    def __init__(self, store: QueueStore, index: WaitingIndex, *, ttl_seconds: int = QUEUE_TTL_SECONDS) -> None:
        self.store = store
        self.index = index
        self.ttl_seconds = ttl_seconds

    def join(self, request: JoinRequest, *, now: datetime | None = None) -> WaitingEntry:
        now = now or _now_utc()
        if self._expire_if_due(request.user_id, now) is not None:
            raise AlreadyQueued(request.user_id)

        if self.index.contains(request.user_id):
            logger.warning("[QUEUE] stale index member %s overwritten on join", request.user_id)

        indexed: list[str] = []

        def _add_to_index(entry: WaitingEntry) -> None:
            self.index.add(entry.user_id, entry.entered_at)
            indexed.append(entry.user_id)

        try:
            entry = self.store.insert_waiting(
                request, now=now, ttl_seconds=self.ttl_seconds, before_commit=_add_to_index
            )
        except TransientStoreError:
            if indexed:
                # Commit failed after the index write.
                try:
                    self.index.remove(request.user_id)
                except TransientStoreError:
                    logger.warning("[QUEUE] could not undo index add for %s; sweep will reconcile", request.user_id)
            raise

        logger.info("[QUEUE] user %s joined intent=%s gender=%s", entry.user_id, entry.intent, entry.gender)
        return entry

    def leave(self, user_id: str) -> bool:
        """Idempotent; returns False when the user had no WAITING entry."""
        try:
            self.store.mark_removed(user_id)
            removed = True
        except NotFound:
            removed = False
        try:
            self.index.remove(user_id)
        except TransientStoreError:
            # The store already says REMOVED; the sweep drops the member.
            logger.warning("[QUEUE] could not remove %s from index; sweep will reconcile", user_id)
        if removed:
            logger.info("[QUEUE] user %s left the queue", user_id)
        return removed

    def status(self, user_id: str, *, now: datetime | None = None) -> QueueStatus:
        now = now or _now_utc()
        entry = self.store.get_waiting(user_id)
        rank = self.index.rank(user_id)

        if entry is None:
            if rank is not None:
                logger.warning("[QUEUE] stale index member %s removed", user_id)
                self.index.remove(user_id)
            return QueueStatus(in_queue=False, total_waiting=self.index.count())

        if is_expired(entry.expires_at, now):
            return QueueStatus(in_queue=False, total_waiting=self.index.count())

        if rank is None:
            logger.warning("[QUEUE] waiting user %s missing from index; re-added", user_id)
            self.index.add(user_id, entry.entered_at)
            rank = self.index.rank(user_id)

        return QueueStatus(
            in_queue=True,
            total_waiting=self.index.count(),
            position=None if rank is None else rank + 1,
            entered_at=entry.entered_at,
            attempts=entry.attempts,
            intent=entry.intent,
        )

    def stats(self, *, now: datetime | None = None) -> QueueStats:
        now = now or _now_utc()
        counts = self.store.waiting_counts()
        return QueueStats(
            total_waiting=self.index.count(),
            by_intent=counts["by_intent"],
            by_gender=counts["by_gender"],
            matches_last_24h=self.store.count_matches_since(now - timedelta(hours=24)),
        )

    def history(self, user_id: str, *, limit: int = HISTORY_PAGE_LIMIT, offset: int = 0) -> list[dict[str, Any]]:
        """Match attempts involving ``user_id``, newest first."""
        rows = self.store.list_match_attempts(user_id=user_id, limit=limit, offset=offset, newest_first=True)
        for row in rows:
            row["partner_id"] = row["user2_id"] if row["user1_id"] == user_id else row["user1_id"]
        return rows

    def _expire_if_due(self, user_id: str, now: datetime) -> WaitingEntry | None:
        """Return the user's live WAITING entry, expiring it first when past its TTL."""
        entry = self.store.get_waiting(user_id)
        if entry is None or not is_expired(entry.expires_at, now):
            return entry
        expired = self.store.expire_due(now)
        if expired:
            self.index.remove(*expired)
            logger.info("[QUEUE] expired %s entries before rejoin of %s", len(expired), user_id)
        return None
