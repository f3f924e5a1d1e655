import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Index, Integer, String, Text, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import JSONB

from .database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid_str() -> str:
    return str(uuid.uuid4())


class QueueEntry(Base):
    __tablename__ = "queue_entry"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    user_id = Column(String(64), nullable=False)
    intent = Column(String(32), nullable=False)
    gender = Column(String(32), nullable=False)
    age = Column(Integer, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    interests = Column(JSONType, nullable=False, default=list)
    languages = Column(JSONType, nullable=False, default=list)
    ethnicity = Column(String(64), nullable=True)
    status = Column(String(16), nullable=False, default="WAITING")
    attempts = Column(Integer, nullable=False, default=0)
    entered_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False)
    last_match_attempt = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "uq_queue_entry_waiting_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'WAITING'"),
            sqlite_where=text("status = 'WAITING'"),
        ),
        Index("idx_queue_entry_status_expires", "status", "expires_at"),
        Index("idx_queue_entry_user_id", "user_id"),
    )


class MatchAttempt(Base):
    __tablename__ = "match_attempt"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    user1_id = Column(String(64), nullable=False)
    user2_id = Column(String(64), nullable=False)
    total_score = Column(Float, nullable=False)
    score_breakdown = Column(JSONType, nullable=False)
    status = Column(String(16), nullable=False, default="PROPOSED")
    algorithm_version = Column(String(32), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("idx_match_attempt_user1", "user1_id"),
        Index("idx_match_attempt_user2", "user2_id"),
        Index("idx_match_attempt_created_at", "created_at"),
    )


class MatchEventOutbox(Base):
    __tablename__ = "match_event_outbox"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    match_id = Column(String(36), nullable=False)
    payload = Column(JSONType, nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("match_id", name="uq_match_event_outbox_match_id"),
        Index("idx_match_event_outbox_status", "status", "created_at"),
    )


# Owned by the profile service; this engine only reads them.
class UserMatchingPreferences(Base):
    __tablename__ = "user_matching_preferences"

    user_id = Column(String(64), primary_key=True)
    min_age = Column(Integer, nullable=True)
    max_age = Column(Integer, nullable=True)
    preferred_min_age = Column(Integer, nullable=True)
    preferred_max_age = Column(Integer, nullable=True)
    max_radius_km = Column(Float, nullable=True)
    preferred_interests = Column(JSONType, nullable=True)
    preferred_languages = Column(JSONType, nullable=True)
    preferred_ethnicities = Column(JSONType, nullable=True)
    ethnicity_importance = Column(Float, nullable=True)
    preferred_genders = Column(JSONType, nullable=True)
    preferred_relationship_intents = Column(JSONType, nullable=True)
    preferred_family_plans = Column(JSONType, nullable=True)
    preferred_religions = Column(JSONType, nullable=True)
    preferred_education_levels = Column(JSONType, nullable=True)
    preferred_political_views = Column(JSONType, nullable=True)
    preferred_exercise_habits = Column(JSONType, nullable=True)
    preferred_smoking_habits = Column(JSONType, nullable=True)
    preferred_drinking_habits = Column(JSONType, nullable=True)
    age_weight = Column(Float, nullable=True)
    location_weight = Column(Float, nullable=True)
    interest_weight = Column(Float, nullable=True)
    language_weight = Column(Float, nullable=True)
    relationship_intent_weight = Column(Float, nullable=True)
    lifestyle_weight = Column(Float, nullable=True)


class UserDatingProfile(Base):
    __tablename__ = "user_dating_profile"

    user_id = Column(String(64), primary_key=True)
    relationship_intents = Column(JSONType, nullable=True)
    family_plans = Column(String(64), nullable=True)
    religion = Column(String(32), nullable=True)
    education_level = Column(String(32), nullable=True)
    political_view = Column(String(32), nullable=True)
    exercise = Column(String(16), nullable=True)
    smoking = Column(String(16), nullable=True)
    drinking = Column(String(16), nullable=True)
    is_premium = Column(Boolean, nullable=False, default=False)
