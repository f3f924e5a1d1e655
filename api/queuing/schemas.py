from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from .domain import Gender, Intent


class JoinQueueRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    intent: Intent
    gender: Gender
    age: Optional[int] = Field(default=None, ge=18, le=120)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    interests: list[str] = Field(default_factory=list, max_length=50)
    languages: list[str] = Field(default_factory=list, max_length=20)
    ethnicity: Optional[str] = Field(default=None, max_length=64)


class JoinQueueResponse(BaseModel):
    user_id: str
    status: str
    entered_at: datetime
    expires_at: datetime


class LeaveQueueResponse(BaseModel):
    user_id: str
    removed: bool


class QueueStatusResponse(BaseModel):
    in_queue: bool
    position: Optional[int] = None
    total_waiting: int
    entered_at: Optional[datetime] = None
    attempts: Optional[int] = None
    intent: Optional[str] = None


class QueueStatsResponse(BaseModel):
    total_waiting: int
    by_intent: dict[str, int]
    by_gender: dict[str, int]
    matches_last_24h: int


class MatchHistoryItem(BaseModel):
    id: str
    partner_id: str
    total_score: float
    status: str
    algorithm_version: str
    created_at: datetime
    score_breakdown: Optional[dict[str, Any]] = None


class MatchHistoryResponse(BaseModel):
    user_id: str
    matches: list[MatchHistoryItem]
    limit: int
    offset: int
