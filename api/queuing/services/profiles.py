from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from ..database import SessionLocal
from ..domain import MatchProfile, Preferences
from ..errors import TransientStoreError
from ..models import UserDatingProfile, UserMatchingPreferences

logger = logging.getLogger(__name__)

_PREFERENCE_SETS = (
    "preferred_interests",
    "preferred_languages",
    "preferred_ethnicities",
    "preferred_genders",
    "preferred_relationship_intents",
    "preferred_family_plans",
    "preferred_religions",
    "preferred_education_levels",
    "preferred_political_views",
    "preferred_exercise_habits",
    "preferred_smoking_habits",
    "preferred_drinking_habits",
)
_PREFERENCE_NUMBERS = (
    "min_age",
    "max_age",
    "preferred_min_age",
    "preferred_max_age",
    "max_radius_km",
    "ethnicity_importance",
    "age_weight",
    "location_weight",
    "interest_weight",
    "language_weight",
    "relationship_intent_weight",
    "lifestyle_weight",
)


def _to_set(values: Any) -> frozenset[str]:
    if not isinstance(values, (list, tuple, set, frozenset)):
        return frozenset()
    return frozenset(str(v).strip() for v in values if str(v or "").strip())


def preferences_from_row(row: UserMatchingPreferences | None) -> Preferences:
    if row is None:
        return Preferences()
    kwargs: dict[str, Any] = {}
    for name in _PREFERENCE_SETS:
        kwargs[name] = _to_set(getattr(row, name, None))
    for name in _PREFERENCE_NUMBERS:
        value = getattr(row, name, None)
        if value is not None:
            kwargs[name] = value
    return Preferences(**kwargs)


def profile_from_rows(
    user_id: str,
    prefs_row: UserMatchingPreferences | None,
    profile_row: UserDatingProfile | None,
) -> MatchProfile:
    preferences = preferences_from_row(prefs_row)
    if profile_row is None:
        return MatchProfile(user_id=user_id, preferences=preferences)
    return MatchProfile(
        user_id=user_id,
        preferences=preferences,
        relationship_intents=_to_set(profile_row.relationship_intents),
        family_plans=profile_row.family_plans,
        religion=profile_row.religion,
        education_level=profile_row.education_level,
        political_view=profile_row.political_view,
        exercise=profile_row.exercise,
        smoking=profile_row.smoking,
        drinking=profile_row.drinking,
        is_premium=bool(profile_row.is_premium),
    )


class ProfileReader:
    """Read path into the profile service tables with a short-lived cache."""

    def __init__(
        self,
        session_factory: Callable[[], Any] = SessionLocal,
        cache_ttl_seconds: float = 30.0,
        max_entries: int = 10_000,
    ) -> None:
        self._session_factory = session_factory
        self._cache_ttl = cache_ttl_seconds
        self._max_entries = max_entries
        self._cache: dict[str, tuple[float, MatchProfile]] = {}
        self._lock = threading.Lock()

    def get_many(self, user_ids: Iterable[str]) -> dict[str, MatchProfile]:
        wanted = list(dict.fromkeys(user_ids))
        now = time.monotonic()
        out: dict[str, MatchProfile] = {}
        missing: list[str] = []
        with self._lock:
            for uid in wanted:
                cached = self._cache.get(uid)
                if cached and now - cached[0] < self._cache_ttl:
                    out[uid] = cached[1]
                else:
                    missing.append(uid)

        if missing:
            loaded = self._load(missing)
            with self._lock:
                self._prune(now, incoming=len(loaded))
                for uid, profile in loaded.items():
                    self._cache[uid] = (now, profile)
            out.update(loaded)
        return out

    def get(self, user_id: str) -> MatchProfile:
        return self.get_many([user_id])[user_id]

    def _prune(self, now: float, incoming: int) -> None:
        """Drop expired entries, then the oldest ones if still over capacity. Caller holds the lock."""
        for uid in [uid for uid, (loaded_at, _) in self._cache.items() if now - loaded_at >= self._cache_ttl]:
            del self._cache[uid]
        overflow = len(self._cache) + incoming - self._max_entries
        if overflow > 0:
            oldest = sorted(self._cache, key=lambda uid: self._cache[uid][0])[:overflow]
            for uid in oldest:
                del self._cache[uid]

    def invalidate(self, user_id: str | None = None) -> None:
        with self._lock:
            if user_id is None:
                self._cache.clear()
            else:
                self._cache.pop(user_id, None)

    def _load(self, user_ids: list[str]) -> dict[str, MatchProfile]:
        try:
            with self._session_factory() as db:
                prefs = {
                    str(r.user_id): r
                    for r in db.execute(
                        select(UserMatchingPreferences).where(UserMatchingPreferences.user_id.in_(user_ids))
                    ).scalars()
                }
                profiles = {
                    str(r.user_id): r
                    for r in db.execute(
                        select(UserDatingProfile).where(UserDatingProfile.user_id.in_(user_ids))
                    ).scalars()
                }
                return {uid: profile_from_rows(uid, prefs.get(uid), profiles.get(uid)) for uid in user_ids}
        except SQLAlchemyError as exc:
            raise TransientStoreError("load_profiles", exc) from exc
