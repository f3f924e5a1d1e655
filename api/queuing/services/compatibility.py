from __future__ import annotations

import math
from typing import Any, Iterable

from ..config import FIXED_DIMENSION_WEIGHTS
from ..domain import CompatibilityScore, Participant, Preferences

EARTH_RADIUS_KM = 6371.0

NEUTRAL_AGE = 0.5
NEUTRAL_LOCATION = 0.3
NEUTRAL_INTENT = 0.5
NEUTRAL_FAMILY_PLANS = 0.5
NEUTRAL_RELIGION = 0.6
NEUTRAL_EDUCATION = 0.6
NEUTRAL_POLITICAL = 0.6
NEUTRAL_LIFESTYLE = 0.6
ETHNICITY_BASE = 0.5
PREMIUM_BONUS_CAP = 0.25

FAMILY_PLANS_MATRIX: dict[str, dict[str, float]] = {
    "HAS_KIDS_WANTS_MORE": {
        "HAS_KIDS_WANTS_MORE": 1.0,
        "HAS_KIDS_DOESNT_WANT_MORE": 0.3,
        "DOESNT_HAVE_KIDS_WANTS_KIDS": 0.8,
        "DOESNT_HAVE_KIDS_DOESNT_WANT_KIDS": 0.1,
        "NOT_SURE_YET": 0.6,
    },
    "HAS_KIDS_DOESNT_WANT_MORE": {
        "HAS_KIDS_WANTS_MORE": 0.3,
        "HAS_KIDS_DOESNT_WANT_MORE": 1.0,
        "DOESNT_HAVE_KIDS_WANTS_KIDS": 0.2,
        "DOESNT_HAVE_KIDS_DOESNT_WANT_KIDS": 0.9,
        "NOT_SURE_YET": 0.5,
    },
    "DOESNT_HAVE_KIDS_WANTS_KIDS": {
        "HAS_KIDS_WANTS_MORE": 0.8,
        "HAS_KIDS_DOESNT_WANT_MORE": 0.2,
        "DOESNT_HAVE_KIDS_WANTS_KIDS": 1.0,
        "DOESNT_HAVE_KIDS_DOESNT_WANT_KIDS": 0.1,
        "NOT_SURE_YET": 0.7,
    },
    "DOESNT_HAVE_KIDS_DOESNT_WANT_KIDS": {
        "HAS_KIDS_WANTS_MORE": 0.1,
        "HAS_KIDS_DOESNT_WANT_MORE": 0.9,
        "DOESNT_HAVE_KIDS_WANTS_KIDS": 0.1,
        "DOESNT_HAVE_KIDS_DOESNT_WANT_KIDS": 1.0,
        "NOT_SURE_YET": 0.4,
    },
    "NOT_SURE_YET": {
        "HAS_KIDS_WANTS_MORE": 0.6,
        "HAS_KIDS_DOESNT_WANT_MORE": 0.5,
        "DOESNT_HAVE_KIDS_WANTS_KIDS": 0.7,
        "DOESNT_HAVE_KIDS_DOESNT_WANT_KIDS": 0.4,
        "NOT_SURE_YET": 0.8,
    },
}

POLITICAL_MATRIX: dict[str, dict[str, float]] = {
    "LIBERAL": {"LIBERAL": 1.0, "MODERATE": 0.7, "CONSERVATIVE": 0.2, "APOLITICAL": 0.6, "OTHER": 0.5},
    "MODERATE": {"LIBERAL": 0.7, "MODERATE": 1.0, "CONSERVATIVE": 0.7, "APOLITICAL": 0.8, "OTHER": 0.6},
    "CONSERVATIVE": {"LIBERAL": 0.2, "MODERATE": 0.7, "CONSERVATIVE": 1.0, "APOLITICAL": 0.6, "OTHER": 0.5},
    "APOLITICAL": {"LIBERAL": 0.6, "MODERATE": 0.8, "CONSERVATIVE": 0.6, "APOLITICAL": 1.0, "OTHER": 0.7},
    "OTHER": {"LIBERAL": 0.5, "MODERATE": 0.6, "CONSERVATIVE": 0.5, "APOLITICAL": 0.7, "OTHER": 0.8},
}

HABIT_MATRIX: dict[str, dict[str, float]] = {
    "FREQUENTLY": {"FREQUENTLY": 1.0, "SOCIALLY": 0.7, "RARELY": 0.3, "NEVER": 0.1},
    "SOCIALLY": {"FREQUENTLY": 0.7, "SOCIALLY": 1.0, "RARELY": 0.8, "NEVER": 0.4},
    "RARELY": {"FREQUENTLY": 0.3, "SOCIALLY": 0.8, "RARELY": 1.0, "NEVER": 0.9},
    "NEVER": {"FREQUENTLY": 0.1, "SOCIALLY": 0.4, "RARELY": 0.9, "NEVER": 1.0},
}

EDUCATION_LEVELS: dict[str, int] = {
    "HIGH_SCHOOL": 1,
    "IN_COLLEGE": 2,
    "UNDERGRADUATE": 3,
    "IN_GRAD_SCHOOL": 4,
    "POSTGRADUATE": 5,
}

COMPATIBLE_RELIGIONS: frozenset[frozenset[str]] = frozenset(
    {
        frozenset({"AGNOSTIC", "ATHEIST"}),
        frozenset({"SPIRITUAL", "AGNOSTIC"}),
        frozenset({"CHRISTIAN", "CATHOLIC"}),
    }
)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _norm(value: Any) -> str | None:
    if value is None:
        return None
    v = str(value).strip().upper()
    return v or None


def _norm_set(values: Iterable[Any] | None) -> set[str]:
    out: set[str] = set()
    for item in values or ():
        v = _norm(item)
        if v:
            out.add(v)
    return out


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    # Rounding can push a just past 1 for near-antipodal points.
    a = min(1.0, max(0.0, a))
    return EARTH_RADIUS_KM * 2 * math.asin(math.sqrt(a))


def gender_gate(u: Participant, v: Participant) -> float:
    u_gender = _norm(u.entry.gender)
    v_gender = _norm(v.entry.gender)
    if not u_gender or not v_gender:
        return 0.0
    u_seeking = _norm_set(u.profile.preferences.preferred_genders)
    v_seeking = _norm_set(v.profile.preferences.preferred_genders)
    if u_seeking and v_gender not in u_seeking:
        return 0.0
    if v_seeking and u_gender not in v_seeking:
        return 0.0
    return 1.0


def age_score(u: Participant, v: Participant) -> float:
    u_age = u.entry.age
    v_age = v.entry.age
    if u_age is None or v_age is None:
        return NEUTRAL_AGE

    u_min, u_max = u.profile.preferences.age_window
    v_min, v_max = v.profile.preferences.age_window
    if not (u_min <= v_age <= u_max) or not (v_min <= u_age <= v_max):
        return 0.0

    diff = abs(u_age - v_age)
    widest = max(u_max - u_min, v_max - v_min)
    if widest <= 0:
        return 1.0 if diff == 0 else 0.0
    return _clamp(1.0 - diff / widest)


def location_score(u: Participant, v: Participant) -> float:
    coords = (u.entry.latitude, u.entry.longitude, v.entry.latitude, v.entry.longitude)
    if any(c is None for c in coords):
        return NEUTRAL_LOCATION

    radius = min(u.profile.preferences.max_radius_km, v.profile.preferences.max_radius_km)
    if radius <= 0:
        return 0.0
    distance = haversine_km(*coords)
    if distance > radius:
        return 0.0
    return _clamp(1.0 - distance / radius)


def interest_score(u: Participant, v: Participant) -> float:
    u_interests = _norm_set(u.entry.interests)
    v_interests = _norm_set(v.entry.interests)
    u_preferred = _norm_set(u.profile.preferences.preferred_interests)
    v_preferred = _norm_set(v.profile.preferences.preferred_interests)

    common = len(u_interests & v_interests)
    common_score = (common * 2) / max(len(u_interests) + len(v_interests), 1)

    preferred_hits = len(u_preferred & v_interests) + len(v_preferred & u_interests)
    preferred_score = preferred_hits / max(len(u_preferred) + len(v_preferred), 1)

    return _clamp(common_score * 0.6 + preferred_score * 0.4)


def language_score(u: Participant, v: Participant) -> float:
    u_languages = _norm_set(u.entry.languages)
    v_languages = _norm_set(v.entry.languages)
    if not (u_languages & v_languages):
        return 0.0

    preferred_hits = len(_norm_set(u.profile.preferences.preferred_languages) & v_languages) + len(
        _norm_set(v.profile.preferences.preferred_languages) & u_languages
    )
    bonus = min(0.3, preferred_hits * 0.15)
    return _clamp(0.7 + bonus)


def ethnicity_score(u: Participant, v: Participant) -> float:
    # Bonuses only. A mismatch never lowers the score below the base.
    u_eth = _norm(u.entry.ethnicity)
    v_eth = _norm(v.entry.ethnicity)
    if not u_eth or not v_eth:
        return ETHNICITY_BASE

    u_prefs = u.profile.preferences
    v_prefs = v.profile.preferences
    bonus = 0.0
    if u_eth in _norm_set(v_prefs.preferred_ethnicities):
        bonus += _clamp(v_prefs.ethnicity_importance) * 0.25
    if v_eth in _norm_set(u_prefs.preferred_ethnicities):
        bonus += _clamp(u_prefs.ethnicity_importance) * 0.25
    if u_eth == v_eth:
        bonus += 0.1
    return _clamp(ETHNICITY_BASE + bonus, ETHNICITY_BASE, 1.0)


def relationship_intent_score(u: Participant, v: Participant) -> float:
    u_intents = _norm_set(u.profile.relationship_intents)
    v_intents = _norm_set(v.profile.relationship_intents)
    if not u_intents or not v_intents:
        return NEUTRAL_INTENT
    if not (u_intents & v_intents):
        return 0.0

    score = 0.5
    if _norm_set(u.profile.preferences.preferred_relationship_intents) & v_intents:
        score += 0.25
    if _norm_set(v.profile.preferences.preferred_relationship_intents) & u_intents:
        score += 0.25
    return _clamp(score)


def _matrix_with_preferences(
    matrix: dict[str, dict[str, float]],
    u_value: str,
    v_value: str,
    u_preferred: Iterable[str],
    v_preferred: Iterable[str],
) -> float:
    score = matrix.get(u_value, {}).get(v_value, 0.5)
    if v_value in _norm_set(u_preferred):
        score = min(1.0, score + 0.2)
    if u_value in _norm_set(v_preferred):
        score = min(1.0, score + 0.2)
    return score


def family_plans_score(u: Participant, v: Participant) -> float:
    u_plans = _norm(u.profile.family_plans)
    v_plans = _norm(v.profile.family_plans)
    if not u_plans or not v_plans:
        return NEUTRAL_FAMILY_PLANS
    return _matrix_with_preferences(
        FAMILY_PLANS_MATRIX,
        u_plans,
        v_plans,
        u.profile.preferences.preferred_family_plans,
        v.profile.preferences.preferred_family_plans,
    )


def religion_score(u: Participant, v: Participant) -> float:
    u_rel = _norm(u.profile.religion)
    v_rel = _norm(v.profile.religion)
    if not u_rel or not v_rel:
        return NEUTRAL_RELIGION

    score = 0.5
    if u_rel == v_rel:
        score += 0.3
    if v_rel in _norm_set(u.profile.preferences.preferred_religions):
        score += 0.2
    if u_rel in _norm_set(v.profile.preferences.preferred_religions):
        score += 0.2
    if frozenset({u_rel, v_rel}) in COMPATIBLE_RELIGIONS:
        score = max(score, 0.7)
    return _clamp(score)


def education_score(u: Participant, v: Participant) -> float:
    u_edu = _norm(u.profile.education_level)
    v_edu = _norm(v.profile.education_level)
    if not u_edu or not v_edu or u_edu not in EDUCATION_LEVELS or v_edu not in EDUCATION_LEVELS:
        return NEUTRAL_EDUCATION

    score = 0.5
    gap = abs(EDUCATION_LEVELS[u_edu] - EDUCATION_LEVELS[v_edu])
    if gap == 0:
        score += 0.3
    else:
        score += max(0.0, 0.2 - gap * 0.05)
    if v_edu in _norm_set(u.profile.preferences.preferred_education_levels):
        score += 0.2
    if u_edu in _norm_set(v.profile.preferences.preferred_education_levels):
        score += 0.2
    return _clamp(score)


def political_score(u: Participant, v: Participant) -> float:
    u_pol = _norm(u.profile.political_view)
    v_pol = _norm(v.profile.political_view)
    if not u_pol or not v_pol:
        return NEUTRAL_POLITICAL
    return _matrix_with_preferences(
        POLITICAL_MATRIX,
        u_pol,
        v_pol,
        u.profile.preferences.preferred_political_views,
        v.profile.preferences.preferred_political_views,
    )


def lifestyle_score(u: Participant, v: Participant) -> float:
    u_prefs = u.profile.preferences
    v_prefs = v.profile.preferences
    habits = (
        (u.profile.exercise, v.profile.exercise, u_prefs.preferred_exercise_habits, v_prefs.preferred_exercise_habits),
        (u.profile.smoking, v.profile.smoking, u_prefs.preferred_smoking_habits, v_prefs.preferred_smoking_habits),
        (u.profile.drinking, v.profile.drinking, u_prefs.preferred_drinking_habits, v_prefs.preferred_drinking_habits),
    )
    scores: list[float] = []
    for u_habit, v_habit, u_pref, v_pref in habits:
        u_h = _norm(u_habit)
        v_h = _norm(v_habit)
        if not u_h or not v_h:
            continue
        scores.append(_matrix_with_preferences(HABIT_MATRIX, u_h, v_h, u_pref, v_pref))
    if not scores:
        return NEUTRAL_LIFESTYLE
    return sum(scores) / len(scores)


def premium_bonus(u: Participant, v: Participant) -> float:
    bonus = 0.0
    if u.profile.is_premium:
        bonus += 0.1
    if v.profile.is_premium:
        bonus += 0.1
    if u.profile.is_premium and v.profile.is_premium:
        bonus += 0.15
    return min(PREMIUM_BONUS_CAP, bonus)


def _avg(u_prefs: Preferences, v_prefs: Preferences, attr: str) -> float:
    return (float(getattr(u_prefs, attr)) + float(getattr(v_prefs, attr))) / 2.0


def compute_compatibility(u: Participant, v: Participant, cfg: dict[str, float] | None = None) -> CompatibilityScore:
    """Score two waiting participants.

    Gender and language act as hard gates: when either is zero the total is
    forced to 0.0 and ``passes_gates`` is False. Every other dimension
    contributes to a weighted sum whose per-user weights are averaged
    between the two parties. The premium bonus is added last, then the
    total is clamped to [0, 1].
    """
    fixed = {**FIXED_DIMENSION_WEIGHTS, **(cfg or {})}
    u_prefs = u.profile.preferences
    v_prefs = v.profile.preferences

    gate = gender_gate(u, v)
    age = age_score(u, v)
    location = location_score(u, v)
    interests = interest_score(u, v)
    language = language_score(u, v)
    ethnicity = ethnicity_score(u, v)
    intent = relationship_intent_score(u, v)
    family = family_plans_score(u, v)
    religion = religion_score(u, v)
    education = education_score(u, v)
    political = political_score(u, v)
    lifestyle = lifestyle_score(u, v)
    premium = premium_bonus(u, v)

    weighted = (
        age * _avg(u_prefs, v_prefs, "age_weight")
        + location * _avg(u_prefs, v_prefs, "location_weight")
        + interests * _avg(u_prefs, v_prefs, "interest_weight")
        + language * _avg(u_prefs, v_prefs, "language_weight")
        + intent * _avg(u_prefs, v_prefs, "relationship_intent_weight")
        + lifestyle * _avg(u_prefs, v_prefs, "lifestyle_weight")
        + ethnicity * float(fixed["ethnicity"])
        + family * float(fixed["family_plans"])
        + religion * float(fixed["religion"])
        + education * float(fixed["education"])
        + political * float(fixed["political"])
    )

    if gate <= 0.0 or language <= 0.0:
        total = 0.0
    else:
        total = _clamp(weighted + premium)

    return CompatibilityScore(
        total=total,
        age=age,
        location=location,
        interests=interests,
        language=language,
        ethnicity=ethnicity,
        gender_gate=gate,
        relationship_intent=intent,
        family_plans=family,
        religion=religion,
        education=education,
        political=political,
        lifestyle=lifestyle,
        premium_bonus=premium,
    )


def best_candidate(
    target: Participant,
    candidates: list[Participant],
    *,
    min_score: float,
    cfg: dict[str, float] | None = None,
) -> tuple[Participant, CompatibilityScore] | None:
    best: tuple[Participant, CompatibilityScore] | None = None
    for candidate in candidates:
        if candidate.user_id == target.user_id:
            continue
        score = compute_compatibility(target, candidate, cfg=cfg)
        if not score.passes_gates or score.total < min_score:
            continue
        if best is None:
            best = (candidate, score)
            continue
        current = best[1]
        # Earlier candidates (older in the queue) win exact ties.
        if score.total > current.total or (
            score.total == current.total and candidate.profile.is_premium and not best[0].profile.is_premium
        ):
            best = (candidate, score)
    return best
