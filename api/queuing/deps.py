import threading

from .config import PROFILE_CACHE_MAX_ENTRIES, PROFILE_CACHE_TTL_SECONDS
from .services.profiles import ProfileReader
from .services.publisher import OutboxRelay, RedisEventPublisher
from .services.queue_manager import QueueManager
from .services.queue_store import QueueStore
from .services.scheduler import MatchingScheduler
from .services.waiting_index import WaitingIndex, create_redis_client

_lock = threading.Lock()
_manager: QueueManager | None = None
_scheduler: MatchingScheduler | None = None


def _build() -> None:
    global _manager, _scheduler
    client = create_redis_client()
    store = QueueStore()
    index = WaitingIndex(client)
    _manager = QueueManager(store, index)
    _scheduler = MatchingScheduler(
        store,
        index,
        ProfileReader(cache_ttl_seconds=PROFILE_CACHE_TTL_SECONDS, max_entries=PROFILE_CACHE_MAX_ENTRIES),
        OutboxRelay(store, RedisEventPublisher(client)),
    )


def get_queue_manager() -> QueueManager:
    with _lock:
        if _manager is None:
            _build()
        return _manager


def get_scheduler() -> MatchingScheduler:
    with _lock:
        if _scheduler is None:
            _build()
        return _scheduler
