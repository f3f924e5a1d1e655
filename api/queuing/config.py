import json
import logging
import os
from typing import Any

DATABASE_URL = os.getenv("DATABASE_URL", "postgresql+psycopg2://postgres:postgres@db:5432/queuing")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

WAITING_INDEX_KEY = os.getenv("WAITING_INDEX_KEY", "matching_queue")
MATCH_EVENT_CHANNEL = os.getenv("MATCH_EVENT_CHANNEL", "user_matched")

QUEUE_TTL_SECONDS = int(os.getenv("QUEUE_TTL_SECONDS", "600"))
MATCHING_ENABLED = os.getenv("MATCHING_ENABLED", "true").lower() == "true"
MATCHING_INTERVAL_SECONDS = float(os.getenv("MATCHING_INTERVAL_SECONDS", "5"))
MATCH_BATCH_SIZE = int(os.getenv("MATCH_BATCH_SIZE", "50"))
MIN_MATCH_SCORE = float(os.getenv("MIN_MATCH_SCORE", "0.40"))
CYCLE_SOFT_DEADLINE_SECONDS = float(
    os.getenv("CYCLE_SOFT_DEADLINE_SECONDS", str(MATCHING_INTERVAL_SECONDS * 4))
)
ALGORITHM_VERSION = os.getenv("ALGORITHM_VERSION", "dating_v2")
OUTBOX_MAX_ATTEMPTS = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "5"))
OUTBOX_DRAIN_LIMIT = int(os.getenv("OUTBOX_DRAIN_LIMIT", "100"))
RECONCILE_PAGE_SIZE = int(os.getenv("RECONCILE_PAGE_SIZE", "500"))

# Scan order inside an intent group. Genders missing from the list scan last.
GENDER_PRIORITY = [
    g.strip().upper()
    for g in os.getenv("GENDER_PRIORITY", "WOMAN,NONBINARY,MAN").split(",")
    if g.strip()
]

FIXED_DIMENSION_WEIGHTS: dict[str, Any] = {
    "ethnicity": float(os.getenv("ETHNICITY_W", "0.02")),
    "family_plans": float(os.getenv("FAMILY_PLANS_W", "0.08")),
    "religion": float(os.getenv("RELIGION_W", "0.05")),
    "education": float(os.getenv("EDUCATION_W", "0.03")),
    "political": float(os.getenv("POLITICAL_W", "0.03")),
}

if os.getenv("MATCHING_WEIGHTS_JSON"):
    try:
        FIXED_DIMENSION_WEIGHTS.update(json.loads(os.getenv("MATCHING_WEIGHTS_JSON", "{}")))
    except json.JSONDecodeError:
        logging.getLogger(__name__).warning("[CONFIG] MATCHING_WEIGHTS_JSON is not valid JSON; using defaults")

RL_JOIN_LIMIT = int(os.getenv("RL_JOIN_LIMIT", "30"))
RL_STATUS_LIMIT = int(os.getenv("RL_STATUS_LIMIT", "120"))
RL_WINDOW_SECONDS = int(os.getenv("RL_WINDOW_SECONDS", "60"))

PROFILE_CACHE_TTL_SECONDS = float(os.getenv("PROFILE_CACHE_TTL_SECONDS", "30"))
PROFILE_CACHE_MAX_ENTRIES = int(os.getenv("PROFILE_CACHE_MAX_ENTRIES", "10000"))
HISTORY_PAGE_LIMIT = int(os.getenv("HISTORY_PAGE_LIMIT", "20"))
