import logging
import random
import uuid
from typing import Any, Callable

from sqlalchemy import delete

from ..database import SessionLocal
from ..domain import Gender, Intent, JoinRequest
from ..errors import AlreadyQueued
from ..models import MatchAttempt, MatchEventOutbox, QueueEntry, UserDatingProfile, UserMatchingPreferences
from .compatibility import EDUCATION_LEVELS, FAMILY_PLANS_MATRIX, HABIT_MATRIX, POLITICAL_MATRIX
from .queue_manager import QueueManager

logger = logging.getLogger(__name__)

INTERESTS = ["hiking", "music", "cooking", "travel", "art", "reading", "gaming", "yoga", "film", "running"]
LANGUAGES = ["en", "es", "fr", "de", "pt"]
RELIGIONS = ["AGNOSTIC", "ATHEIST", "SPIRITUAL", "CHRISTIAN", "CATHOLIC", "JEWISH", "MUSLIM", "OTHER"]
ETHNICITIES = ["ASIAN", "BLACK", "HISPANIC", "WHITE", "MIXED"]
RELATIONSHIP_INTENTS = ["LONG_TERM", "SHORT_TERM", "FRIENDSHIP", "FIGURING_OUT"]

# Seeded users cluster around a few city centres so location scores vary.
CITY_CENTRES = [(40.7128, -74.0060), (40.7306, -73.9352), (34.0522, -118.2437)]


def _seed_user(rng: random.Random, idx: int) -> tuple[JoinRequest, dict[str, Any], dict[str, Any]]:
    user_id = str(uuid.UUID(int=rng.getrandbits(128)))
    gender = rng.choices([Gender.WOMAN, Gender.MAN, Gender.NONBINARY], weights=[0.45, 0.45, 0.10], k=1)[0].value
    lat, lon = rng.choice(CITY_CENTRES)
    age = rng.randint(21, 45)
    languages = ["en"] + rng.sample(LANGUAGES[1:], k=rng.randint(0, 2))

    request = JoinRequest(
        user_id=user_id,
        intent=rng.choice(list(Intent)).value,
        gender=gender,
        age=age,
        latitude=round(lat + rng.uniform(-0.2, 0.2), 5),
        longitude=round(lon + rng.uniform(-0.2, 0.2), 5),
        interests=rng.sample(INTERESTS, k=rng.randint(2, 5)),
        languages=languages,
        ethnicity=rng.choice(ETHNICITIES),
    )
    if gender == Gender.NONBINARY.value:
        preferred_genders = [g.value for g in Gender]
    else:
        preferred_genders = [Gender.MAN.value if gender == Gender.WOMAN.value else Gender.WOMAN.value]
    prefs = {
        "user_id": user_id,
        "min_age": max(18, age - 8),
        "max_age": age + 8,
        "max_radius_km": rng.choice([10.0, 25.0, 50.0, 100.0]),
        "preferred_interests": rng.sample(INTERESTS, k=3),
        "preferred_languages": languages[:1],
        "preferred_genders": preferred_genders,
        "preferred_relationship_intents": rng.sample(RELATIONSHIP_INTENTS, k=2),
        "ethnicity_importance": rng.choice([0.0, 0.0, 0.3, 0.6]),
    }
    profile = {
        "user_id": user_id,
        "relationship_intents": rng.sample(RELATIONSHIP_INTENTS, k=rng.randint(1, 2)),
        "family_plans": rng.choice(list(FAMILY_PLANS_MATRIX)),
        "religion": rng.choice(RELIGIONS),
        "education_level": rng.choice(list(EDUCATION_LEVELS)),
        "political_view": rng.choice(list(POLITICAL_MATRIX)),
        "exercise": rng.choice(list(HABIT_MATRIX)),
        "smoking": rng.choice(["NEVER", "NEVER", "RARELY", "SOCIALLY"]),
        "drinking": rng.choice(list(HABIT_MATRIX)),
        "is_premium": idx % 10 == 0,
    }
    return request, prefs, profile


def seed_queue(
    manager: QueueManager,
    *,
    n_users: int = 100,
    seed: int = 42,
    reset: bool = False,
    session_factory: Callable[[], Any] = SessionLocal,
) -> dict[str, int]:
    """Create dummy profiles and join them to the waiting queue."""
    rng = random.Random(seed)
    users = [_seed_user(rng, i) for i in range(n_users)]

    with session_factory() as db:
        if reset:
            for model in (MatchEventOutbox, MatchAttempt, QueueEntry, UserMatchingPreferences, UserDatingProfile):
                db.execute(delete(model))
        for _, prefs, profile in users:
            db.merge(UserMatchingPreferences(**prefs))
            db.merge(UserDatingProfile(**profile))
        db.commit()

    if reset:
        stale = list(manager.index.members())
        if stale:
            manager.index.remove(*stale)

    joined = 0
    skipped = 0
    for request, _, _ in users:
        try:
            manager.join(request)
            joined += 1
        except AlreadyQueued:
            skipped += 1
    logger.info("[SEED] %s users joined, %s already waiting", joined, skipped)
    return {"profiles": len(users), "joined": joined, "already_waiting": skipped}
