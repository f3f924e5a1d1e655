import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from ..config import HISTORY_PAGE_LIMIT, RL_JOIN_LIMIT, RL_STATUS_LIMIT, RL_WINDOW_SECONDS
from ..deps import get_queue_manager
from ..domain import JoinRequest
from ..errors import AlreadyQueued, TransientStoreError
from ..schemas import (
    JoinQueueRequest,
    JoinQueueResponse,
    LeaveQueueResponse,
    MatchHistoryResponse,
    QueueStatsResponse,
    QueueStatusResponse,
)
from ..services.queue_manager import QueueManager
from ..services.rate_limit import rate_limited

logger = logging.getLogger(__name__)

router = APIRouter()

RL_JOIN = rate_limited("queue_join", RL_JOIN_LIMIT, RL_WINDOW_SECONDS)
RL_STATUS = rate_limited("queue_status", RL_STATUS_LIMIT, RL_WINDOW_SECONDS)


def _unavailable(exc: TransientStoreError) -> HTTPException:
    logger.warning("[QUEUE] store unavailable during %s", exc.operation)
    return HTTPException(status_code=503, detail="Queue temporarily unavailable")


@router.post("/queue/join", response_model=JoinQueueResponse, status_code=201, dependencies=[RL_JOIN])
def join_queue(payload: JoinQueueRequest, manager: QueueManager = Depends(get_queue_manager)):
    request = JoinRequest(
        user_id=payload.user_id,
        intent=payload.intent.value,
        gender=payload.gender.value,
        age=payload.age,
        latitude=payload.latitude,
        longitude=payload.longitude,
        interests=list(payload.interests),
        languages=list(payload.languages),
        ethnicity=payload.ethnicity,
    )
    try:
        entry = manager.join(request)
    except AlreadyQueued as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except TransientStoreError as exc:
        raise _unavailable(exc)
    return {
        "user_id": entry.user_id,
        "status": entry.status,
        "entered_at": entry.entered_at,
        "expires_at": entry.expires_at,
    }


@router.delete("/queue/{user_id}", response_model=LeaveQueueResponse)
def leave_queue(user_id: str, manager: QueueManager = Depends(get_queue_manager)):
    try:
        removed = manager.leave(user_id)
    except TransientStoreError as exc:
        raise _unavailable(exc)
    return {"user_id": user_id, "removed": removed}


@router.get("/queue/stats", response_model=QueueStatsResponse)
def queue_stats(manager: QueueManager = Depends(get_queue_manager)):
    try:
        stats = manager.stats()
    except TransientStoreError as exc:
        raise _unavailable(exc)
    return {
        "total_waiting": stats.total_waiting,
        "by_intent": stats.by_intent,
        "by_gender": stats.by_gender,
        "matches_last_24h": stats.matches_last_24h,
    }


@router.get("/queue/{user_id}", response_model=QueueStatusResponse, dependencies=[RL_STATUS])
def queue_status(user_id: str, manager: QueueManager = Depends(get_queue_manager)):
    try:
        status = manager.status(user_id)
    except TransientStoreError as exc:
        raise _unavailable(exc)
    return {
        "in_queue": status.in_queue,
        "position": status.position,
        "total_waiting": status.total_waiting,
        "entered_at": status.entered_at,
        "attempts": status.attempts,
        "intent": status.intent,
    }


@router.get("/queue/{user_id}/matches", response_model=MatchHistoryResponse, dependencies=[RL_STATUS])
def match_history(
    user_id: str,
    limit: int = Query(HISTORY_PAGE_LIMIT, ge=1, le=100),
    offset: int = Query(0, ge=0),
    manager: QueueManager = Depends(get_queue_manager),
):
    try:
        matches = manager.history(user_id, limit=limit, offset=offset)
    except TransientStoreError as exc:
        raise _unavailable(exc)
    return {"user_id": user_id, "matches": matches, "limit": limit, "offset": offset}
