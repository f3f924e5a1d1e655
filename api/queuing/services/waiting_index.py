from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterator

import redis

from ..config import REDIS_URL, WAITING_INDEX_KEY
from ..errors import TransientStoreError

logger = logging.getLogger(__name__)


def create_redis_client(url: str = REDIS_URL) -> redis.Redis:
    return redis.Redis.from_url(url, decode_responses=True)


def _member(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class WaitingIndex:
    """Ordered set of waiting user ids scored by enqueue time (epoch seconds)."""

    def __init__(self, client: redis.Redis, key: str = WAITING_INDEX_KEY) -> None:
        self.client = client
        self.key = key

    def add(self, user_id: str, entered_at: datetime) -> None:
        try:
            self.client.zadd(self.key, {user_id: entered_at.timestamp()})
        except redis.RedisError as exc:
            raise TransientStoreError("index_add", exc) from exc

    def remove(self, *user_ids: str) -> int:
        if not user_ids:
            return 0
        try:
            return int(self.client.zrem(self.key, *user_ids) or 0)
        except redis.RedisError as exc:
            raise TransientStoreError("index_remove", exc) from exc

    def rank(self, user_id: str) -> int | None:
        try:
            value = self.client.zrank(self.key, user_id)
        except redis.RedisError as exc:
            raise TransientStoreError("index_rank", exc) from exc
        return None if value is None else int(value)

    def score(self, user_id: str) -> float | None:
        try:
            value = self.client.zscore(self.key, user_id)
        except redis.RedisError as exc:
            raise TransientStoreError("index_score", exc) from exc
        return None if value is None else float(value)

    def contains(self, user_id: str) -> bool:
        return self.score(user_id) is not None

    def count(self) -> int:
        try:
            return int(self.client.zcard(self.key) or 0)
        except redis.RedisError as exc:
            raise TransientStoreError("index_count", exc) from exc

    def oldest(self, n: int) -> list[str]:
        if n <= 0:
            return []
        try:
            return [_member(m) for m in self.client.zrange(self.key, 0, n - 1)]
        except redis.RedisError as exc:
            raise TransientStoreError("index_range", exc) from exc

    def members(self, page_size: int = 500) -> Iterator[str]:
        """Yield every member oldest first, one page per round trip."""
        start = 0
        while True:
            try:
                page = self.client.zrange(self.key, start, start + page_size - 1)
            except redis.RedisError as exc:
                raise TransientStoreError("index_range", exc) from exc
            if not page:
                return
            for m in page:
                yield _member(m)
            if len(page) < page_size:
                return
            start += page_size
