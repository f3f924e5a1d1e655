import json

from fakes import T0, join_request, participant
from queuing.domain import MatchEvent
from queuing.services.compatibility import compute_compatibility
from queuing.services.publisher import OutboxRelay, RedisEventPublisher


def _match(store, a="a", b="b"):
    store.insert_waiting(join_request(a), now=T0, ttl_seconds=600)
    store.insert_waiting(join_request(b, gender="MAN"), now=T0, ttl_seconds=600)
    score = compute_compatibility(participant(a), participant(b, gender="MAN"))
    return store.commit_match(a, b, score, algorithm_version="test_v1", now=T0)


def test_event_payload_shape():
    event = MatchEvent(user1_id="a", user2_id="b", match_id="m1", score=0.61, timestamp=T0.isoformat())

    payload = event.to_payload()

    assert payload == {
        "user1Id": "a",
        "user2Id": "b",
        "matchId": "m1",
        "score": 0.61,
        "timestamp": "2024-05-01T12:00:00+00:00",
    }
    assert MatchEvent.from_payload(payload) == event


def test_publisher_writes_json_to_channel(fake_redis):
    publisher = RedisEventPublisher(fake_redis, channel="user_matched")
    event = MatchEvent(user1_id="a", user2_id="b", match_id="m1", score=0.5, timestamp=T0.isoformat())

    assert publisher.publish(event) == 1
    channel, message = fake_redis.published[0]
    assert channel == "user_matched"
    assert json.loads(message)["matchId"] == "m1"


def test_relay_drains_pending_events(store, fake_redis):
    first = _match(store, "a", "b")
    second = _match(store, "c", "d")
    relay = OutboxRelay(store, RedisEventPublisher(fake_redis, channel="user_matched"))

    result = relay.drain()

    assert result == {"processed": 2, "sent": 2, "failed": 0}
    published = {json.loads(m)["matchId"] for _, m in fake_redis.published}
    assert published == {first.match_id, second.match_id}
    assert relay.drain() == {"processed": 0, "sent": 0, "failed": 0}


def test_relay_retries_then_gives_up(store, fake_redis):
    event = _match(store)
    relay = OutboxRelay(store, RedisEventPublisher(fake_redis), max_attempts=2)
    fake_redis.fail.add("publish")

    assert relay.drain()["failed"] == 1
    assert len(store.fetch_pending_events()) == 1
    assert relay.drain()["failed"] == 1
    assert store.fetch_pending_events() == []

    fake_redis.fail.clear()
    assert relay.drain()["processed"] == 0
    assert event.match_id not in {json.loads(m)["matchId"] for _, m in fake_redis.published}


def test_relay_recovers_after_transient_publish_failure(store, fake_redis):
    event = _match(store)
    relay = OutboxRelay(store, RedisEventPublisher(fake_redis), max_attempts=5)
    fake_redis.fail.add("publish")
    relay.drain()
    fake_redis.fail.clear()

    assert relay.drain()["sent"] == 1
    assert json.loads(fake_redis.published[0][1])["matchId"] == event.match_id
