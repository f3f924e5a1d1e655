import pytest

from fakes import FakeRedis, sqlite_session_factory
from queuing.services.queue_manager import QueueManager
from queuing.services.queue_store import QueueStore
from queuing.services.waiting_index import WaitingIndex


@pytest.fixture
def session_factory():
    return sqlite_session_factory()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def store(session_factory):
    return QueueStore(session_factory)


@pytest.fixture
def index(fake_redis):
    return WaitingIndex(fake_redis, key="test_queue")


@pytest.fixture
def manager(store, index):
    return QueueManager(store, index, ttl_seconds=600)
