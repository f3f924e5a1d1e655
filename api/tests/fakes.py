import uuid
from datetime import datetime, timedelta, timezone

import redis
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from queuing.database import Base
from queuing.domain import JoinRequest, MatchProfile, Participant, Preferences, WaitingEntry
from queuing.models import UserDatingProfile, UserMatchingPreferences

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeRedis:
    """Sorted sets and pub/sub for one process. ``fail`` names commands that raise."""

    def __init__(self):
        self.zsets: dict[str, dict[str, float]] = {}
        self.published: list[tuple[str, str]] = []
        self.fail: set[str] = set()

    def _check(self, op: str):
        if op in self.fail:
            raise redis.ConnectionError(f"{op} unavailable")

    def _sorted(self, key):
        return sorted(self.zsets.get(key, {}).items(), key=lambda kv: (kv[1], kv[0]))

    def zadd(self, key, mapping):
        self._check("zadd")
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for m in mapping if m not in zset)
        zset.update({m: float(s) for m, s in mapping.items()})
        return added

    def zrem(self, key, *members):
        self._check("zrem")
        zset = self.zsets.get(key, {})
        removed = 0
        for m in members:
            if zset.pop(m, None) is not None:
                removed += 1
        return removed

    def zrank(self, key, member):
        self._check("zrank")
        for i, (m, _) in enumerate(self._sorted(key)):
            if m == member:
                return i
        return None

    def zscore(self, key, member):
        self._check("zscore")
        return self.zsets.get(key, {}).get(member)

    def zcard(self, key):
        self._check("zcard")
        return len(self.zsets.get(key, {}))

    def zrange(self, key, start, end):
        self._check("zrange")
        members = [m for m, _ in self._sorted(key)]
        return members[start : end + 1 if end >= 0 else None]

    def publish(self, channel, message):
        self._check("publish")
        self.published.append((channel, message))
        return 1


def sqlite_session_factory():
    engine = create_engine(
        "sqlite://",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, future=True)


def join_request(user_id: str, **overrides) -> JoinRequest:
    data = {
        "user_id": user_id,
        "intent": "SERIOUS",
        "gender": "WOMAN",
        "age": 28,
        "latitude": 40.7128,
        "longitude": -74.0060,
        "interests": ["hiking"],
        "languages": ["en"],
        "ethnicity": None,
    }
    data.update(overrides)
    return JoinRequest(**data)


def save_profile(session_factory, user_id: str, prefs: dict | None = None, profile: dict | None = None) -> None:
    with session_factory() as db:
        db.merge(UserMatchingPreferences(user_id=user_id, **(prefs or {})))
        db.merge(UserDatingProfile(user_id=user_id, **(profile or {"is_premium": False})))
        db.commit()


def participant(
    user_id: str | None = None,
    *,
    gender: str = "WOMAN",
    age: int | None = 28,
    lat: float | None = 40.7128,
    lon: float | None = -74.0060,
    languages=("en",),
    interests=("hiking",),
    ethnicity: str | None = None,
    intent: str = "SERIOUS",
    entered_at: datetime = T0,
    preferences: Preferences | None = None,
    **profile_fields,
) -> Participant:
    user_id = user_id or str(uuid.uuid4())
    entry = WaitingEntry(
        id=str(uuid.uuid4()),
        user_id=user_id,
        intent=intent,
        gender=gender,
        status="WAITING",
        entered_at=entered_at,
        expires_at=entered_at + timedelta(minutes=10),
        age=age,
        latitude=lat,
        longitude=lon,
        interests=frozenset(interests),
        languages=frozenset(languages),
        ethnicity=ethnicity,
    )
    profile = MatchProfile(user_id=user_id, preferences=preferences or Preferences(), **profile_fields)
    return Participant(entry=entry, profile=profile)
