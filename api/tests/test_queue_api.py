from datetime import timedelta

import pytest

pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

import queuing.main as m
from fakes import T0
from queuing.deps import get_queue_manager
from queuing.domain import QueueStats, QueueStatus, WaitingEntry
from queuing.errors import AlreadyQueued, TransientStoreError
from queuing.services.rate_limit import limiter


class _FakeManager:
    def __init__(self):
        self.joined = {}
        self.fail_with = None

    def join(self, request):
        if self.fail_with:
            raise self.fail_with
        if request.user_id in self.joined:
            raise AlreadyQueued(request.user_id)
        entry = WaitingEntry(
            id="e1",
            user_id=request.user_id,
            intent=request.intent,
            gender=request.gender,
            status="WAITING",
            entered_at=T0,
            expires_at=T0 + timedelta(minutes=10),
        )
        self.joined[request.user_id] = entry
        return entry

    def leave(self, user_id):
        return self.joined.pop(user_id, None) is not None

    def status(self, user_id):
        if self.fail_with:
            raise self.fail_with
        entry = self.joined.get(user_id)
        if not entry:
            return QueueStatus(in_queue=False, total_waiting=len(self.joined))
        return QueueStatus(
            in_queue=True,
            total_waiting=len(self.joined),
            position=list(self.joined).index(user_id) + 1,
            entered_at=entry.entered_at,
            attempts=0,
            intent=entry.intent,
        )

    def stats(self):
        return QueueStats(total_waiting=len(self.joined), by_intent={"SERIOUS": len(self.joined)}, by_gender={}, matches_last_24h=3)

    def history(self, user_id, *, limit, offset):
        self.history_args = (user_id, limit, offset)
        return [
            {
                "id": "m1",
                "user1_id": user_id,
                "user2_id": "v",
                "partner_id": "v",
                "total_score": 0.72,
                "score_breakdown": {"total": 0.72},
                "status": "PROPOSED",
                "algorithm_version": "test_v1",
                "created_at": T0,
            }
        ]


@pytest.fixture
def client_and_manager(monkeypatch):
    monkeypatch.setattr(m, "wait_for_db", lambda *args, **kwargs: None)
    monkeypatch.setattr(m, "run_migrations", lambda *args, **kwargs: None)
    limiter.reset()
    fake = _FakeManager()
    m.app.dependency_overrides[get_queue_manager] = lambda: fake
    yield TestClient(m.app), fake
    m.app.dependency_overrides.clear()
    limiter.reset()


def _join_body(user_id="u1", **extra):
    body = {"user_id": user_id, "intent": "SERIOUS", "gender": "WOMAN", "age": 28, "languages": ["en"]}
    body.update(extra)
    return body


def test_join_status_leave_flow(client_and_manager):
    client, _ = client_and_manager

    r = client.post("/queue/join", json=_join_body())
    assert r.status_code == 201
    assert r.json()["status"] == "WAITING"

    r = client.get("/queue/u1")
    assert r.status_code == 200
    assert r.json()["in_queue"] is True
    assert r.json()["position"] == 1

    r = client.delete("/queue/u1")
    assert r.status_code == 200
    assert r.json() == {"user_id": "u1", "removed": True}

    r = client.get("/queue/u1")
    assert r.json()["in_queue"] is False
    assert r.json()["position"] is None


def test_join_twice_is_conflict(client_and_manager):
    client, _ = client_and_manager

    assert client.post("/queue/join", json=_join_body()).status_code == 201
    r = client.post("/queue/join", json=_join_body())
    assert r.status_code == 409


def test_join_validation(client_and_manager):
    client, _ = client_and_manager

    assert client.post("/queue/join", json=_join_body(intent="WHATEVER")).status_code == 422
    assert client.post("/queue/join", json=_join_body(age=12)).status_code == 422
    assert client.post("/queue/join", json=_join_body(latitude=123.0)).status_code == 422


def test_store_outage_is_503(client_and_manager):
    client, fake = client_and_manager
    fake.fail_with = TransientStoreError("join")

    assert client.post("/queue/join", json=_join_body()).status_code == 503
    assert client.get("/queue/u1").status_code == 503


def test_stats_route_not_shadowed_by_status(client_and_manager):
    client, _ = client_and_manager
    client.post("/queue/join", json=_join_body())

    r = client.get("/queue/stats")

    assert r.status_code == 200
    assert r.json() == {"total_waiting": 1, "by_intent": {"SERIOUS": 1}, "by_gender": {}, "matches_last_24h": 3}


def test_join_is_rate_limited(client_and_manager):
    client, _ = client_and_manager

    codes = [client.post("/queue/join", json=_join_body(user_id="spam")).status_code for _ in range(31)]

    assert codes[0] == 201
    assert codes[-1] == 429


def test_health(client_and_manager):
    client, _ = client_and_manager
    assert client.get("/health").json() == {"status": "ok"}


def test_match_history_route(client_and_manager):
    client, fake = client_and_manager

    r = client.get("/queue/u1/matches", params={"limit": 5, "offset": 10})

    assert r.status_code == 200
    body = r.json()
    assert fake.history_args == ("u1", 5, 10)
    assert body["limit"] == 5
    assert body["offset"] == 10
    assert [m["partner_id"] for m in body["matches"]] == ["v"]
    assert body["matches"][0]["total_score"] == 0.72
    assert client.get("/queue/u1/matches", params={"limit": 0}).status_code == 422
