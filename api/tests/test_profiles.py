import pytest
from sqlalchemy.exc import OperationalError

from fakes import save_profile
from queuing.errors import TransientStoreError
from queuing.services.profiles import ProfileReader


def test_missing_rows_fall_back_to_defaults(session_factory):
    reader = ProfileReader(session_factory)

    profile = reader.get("nobody")

    assert profile.user_id == "nobody"
    assert profile.preferences.age_window == (18, 65)
    assert profile.preferences.max_radius_km == 50.0
    assert profile.is_premium is False


def test_rows_are_mapped_to_profiles(session_factory):
    save_profile(
        session_factory,
        "u1",
        prefs={"preferred_min_age": 25, "max_age": 40, "preferred_genders": ["MAN", ""], "age_weight": 0.3},
        profile={"relationship_intents": ["LONG_TERM"], "religion": "AGNOSTIC", "is_premium": True},
    )
    reader = ProfileReader(session_factory)

    profiles = reader.get_many(["u1", "u1", "u2"])

    assert set(profiles) == {"u1", "u2"}
    p = profiles["u1"]
    assert p.preferences.age_window == (25, 40)
    assert p.preferences.preferred_genders == frozenset({"MAN"})
    assert p.preferences.age_weight == 0.3
    assert p.relationship_intents == frozenset({"LONG_TERM"})
    assert p.religion == "AGNOSTIC"
    assert p.is_premium is True


def test_cache_serves_until_invalidated(session_factory):
    reader = ProfileReader(session_factory, cache_ttl_seconds=300)
    assert reader.get("u1").is_premium is False

    save_profile(session_factory, "u1", profile={"is_premium": True})
    assert reader.get("u1").is_premium is False

    reader.invalidate("u1")
    assert reader.get("u1").is_premium is True


def test_load_failure_is_transient():
    class _BrokenSession:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def execute(self, *args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("down"))

    reader = ProfileReader(lambda: _BrokenSession())

    with pytest.raises(TransientStoreError):
        reader.get("u1")


def test_expired_cache_entries_are_pruned(session_factory):
    reader = ProfileReader(session_factory, cache_ttl_seconds=0.0)

    for i in range(50):
        reader.get(f"u{i}")

    assert len(reader._cache) == 1


def test_cache_is_bounded(session_factory):
    reader = ProfileReader(session_factory, cache_ttl_seconds=300, max_entries=3)

    for i in range(5):
        reader.get(f"u{i}")

    assert set(reader._cache) == {"u2", "u3", "u4"}
