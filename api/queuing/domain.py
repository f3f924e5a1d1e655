from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Intent(str, Enum):
    CASUAL = "CASUAL"
    FRIENDS = "FRIENDS"
    SERIOUS = "SERIOUS"
    NETWORKING = "NETWORKING"


class Gender(str, Enum):
    MAN = "MAN"
    WOMAN = "WOMAN"
    NONBINARY = "NONBINARY"


class EntryStatus(str, Enum):
    WAITING = "WAITING"
    MATCHED = "MATCHED"
    REMOVED = "REMOVED"
    EXPIRED = "EXPIRED"


class MatchStatus(str, Enum):
    PROPOSED = "PROPOSED"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"


@dataclass
class JoinRequest:
    user_id: str
    intent: str
    gender: str
    age: int | None = None
    latitude: float | None = None
    longitude: float | None = None
    interests: list[str] = field(default_factory=list)
    languages: list[str] = field(default_factory=list)
    ethnicity: str | None = None


@dataclass
class WaitingEntry:
    id: str
    user_id: str
    intent: str
    gender: str
    status: str
    entered_at: datetime
    expires_at: datetime
    age: int | None = None
    latitude: float | None = None
    longitude: float | None = None
    interests: frozenset[str] = frozenset()
    languages: frozenset[str] = frozenset()
    ethnicity: str | None = None
    attempts: int = 0
    last_match_attempt: datetime | None = None


@dataclass(frozen=True)
class Preferences:
    min_age: int = 18
    max_age: int = 65
    preferred_min_age: int | None = None
    preferred_max_age: int | None = None
    max_radius_km: float = 50.0
    preferred_interests: frozenset[str] = frozenset()
    preferred_languages: frozenset[str] = frozenset()
    preferred_ethnicities: frozenset[str] = frozenset()
    ethnicity_importance: float = 0.0
    preferred_genders: frozenset[str] = frozenset()
    preferred_relationship_intents: frozenset[str] = frozenset()
    preferred_family_plans: frozenset[str] = frozenset()
    preferred_religions: frozenset[str] = frozenset()
    preferred_education_levels: frozenset[str] = frozenset()
    preferred_political_views: frozenset[str] = frozenset()
    preferred_exercise_habits: frozenset[str] = frozenset()
    preferred_smoking_habits: frozenset[str] = frozenset()
    preferred_drinking_habits: frozenset[str] = frozenset()
    age_weight: float = 0.15
    location_weight: float = 0.20
    interest_weight: float = 0.10
    language_weight: float = 0.05
    relationship_intent_weight: float = 0.15
    lifestyle_weight: float = 0.10

    @property
    def age_window(self) -> tuple[int, int]:
        low = self.preferred_min_age if self.preferred_min_age is not None else self.min_age
        high = self.preferred_max_age if self.preferred_max_age is not None else self.max_age
        return low, high


@dataclass(frozen=True)
class MatchProfile:
    """Read-only dating attributes plus preferences from the profile service."""

    user_id: str
    preferences: Preferences = field(default_factory=Preferences)
    relationship_intents: frozenset[str] = frozenset()
    family_plans: str | None = None
    religion: str | None = None
    education_level: str | None = None
    political_view: str | None = None
    exercise: str | None = None
    smoking: str | None = None
    drinking: str | None = None
    is_premium: bool = False


@dataclass(frozen=True)
class Participant:
    entry: WaitingEntry
    profile: MatchProfile

    @property
    def user_id(self) -> str:
        return self.entry.user_id


@dataclass(frozen=True)
class CompatibilityScore:
    total: float
    age: float
    location: float
    interests: float
    language: float
    ethnicity: float
    gender_gate: float
    relationship_intent: float
    family_plans: float
    religion: float
    education: float
    political: float
    lifestyle: float
    premium_bonus: float

    @property
    def passes_gates(self) -> bool:
        return self.gender_gate > 0.0 and self.language > 0.0

    def as_breakdown(self) -> dict[str, Any]:
        out = {k: round(v, 6) for k, v in asdict(self).items()}
        out["passes_gates"] = self.passes_gates
        return out


@dataclass
class MatchEvent:
    user1_id: str
    user2_id: str
    match_id: str
    score: float
    timestamp: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "user1Id": self.user1_id,
            "user2Id": self.user2_id,
            "matchId": self.match_id,
            "score": self.score,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "MatchEvent":
        return cls(
            user1_id=str(payload["user1Id"]),
            user2_id=str(payload["user2Id"]),
            match_id=str(payload["matchId"]),
            score=float(payload["score"]),
            timestamp=str(payload["timestamp"]),
        )


@dataclass
class QueueStatus:
    in_queue: bool
    total_waiting: int
    position: int | None = None
    entered_at: datetime | None = None
    attempts: int | None = None
    intent: str | None = None


@dataclass
class QueueStats:
    total_waiting: int
    by_intent: dict[str, int]
    by_gender: dict[str, int]
    matches_last_24h: int
