from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..database import SessionLocal
from ..domain import CompatibilityScore, EntryStatus, JoinRequest, MatchEvent, MatchStatus, WaitingEntry
from ..errors import AlreadyQueued, InconsistentState, NotFound, TransientStoreError
from ..models import MatchAttempt, MatchEventOutbox, QueueEntry

logger = logging.getLogger(__name__)

WAITING = EntryStatus.WAITING.value


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _clean_strings(values: Iterable[Any] | None) -> list[str]:
    out: list[str] = []
    for value in values or []:
        v = str(value or "").strip()
        if v and v not in out:
            out.append(v)
    return sorted(out)


def entry_from_row(row: QueueEntry) -> WaitingEntry:
    return WaitingEntry(
        id=str(row.id),
        user_id=str(row.user_id),
        intent=str(row.intent),
        gender=str(row.gender),
        status=str(row.status),
        entered_at=_as_utc(row.entered_at),
        expires_at=_as_utc(row.expires_at),
        age=row.age,
        latitude=row.latitude,
        longitude=row.longitude,
        interests=frozenset(row.interests or []),
        languages=frozenset(row.languages or []),
        ethnicity=row.ethnicity,
        attempts=int(row.attempts or 0),
        last_match_attempt=_as_utc(row.last_match_attempt),
    )


class QueueStore:
    """Durable record of waiting entries, match attempts and the match event outbox."""

    def __init__(self, session_factory: Callable[[], Any] = SessionLocal) -> None:
        self._session_factory = session_factory

    def insert_waiting(
        self,
        request: JoinRequest,
        *,
        now: datetime,
        ttl_seconds: int,
        before_commit: Callable[[WaitingEntry], None] | None = None,
    ) -> WaitingEntry:
        """Insert a WAITING entry.

        ``before_commit`` runs after the row is flushed and before the
        transaction commits; if it raises, the insert is rolled back.
        """
        try:
            with self._session_factory() as db:
                existing = db.execute(
                    select(QueueEntry.id).where(QueueEntry.user_id == request.user_id, QueueEntry.status == WAITING)
                ).first()
                if existing:
                    raise AlreadyQueued(request.user_id)

                row = QueueEntry(
                    id=str(uuid.uuid4()),
                    user_id=request.user_id,
                    intent=str(request.intent).upper(),
                    gender=str(request.gender).upper(),
                    age=request.age,
                    latitude=request.latitude,
                    longitude=request.longitude,
                    interests=_clean_strings(request.interests),
                    languages=_clean_strings(request.languages),
                    ethnicity=(request.ethnicity or None),
                    status=WAITING,
                    attempts=0,
                    entered_at=now,
                    expires_at=now + timedelta(seconds=ttl_seconds),
                )
                db.add(row)
                try:
                    db.flush()
                except IntegrityError as exc:
                    db.rollback()
                    raise AlreadyQueued(request.user_id) from exc

                entry = entry_from_row(row)
                if before_commit is not None:
                    before_commit(entry)
                db.commit()
        except SQLAlchemyError as exc:
            raise TransientStoreError("join", exc) from exc
        return entry

    def get_waiting(self, user_id: str) -> WaitingEntry | None:
        try:
            with self._session_factory() as db:
                row = db.execute(
                    select(QueueEntry).where(QueueEntry.user_id == user_id, QueueEntry.status == WAITING)
                ).scalars().first()
                return entry_from_row(row) if row else None
        except SQLAlchemyError as exc:
            raise TransientStoreError("get_waiting", exc) from exc

    def get_waiting_many(self, user_ids: list[str]) -> dict[str, WaitingEntry]:
        if not user_ids:
            return {}
        try:
            with self._session_factory() as db:
                rows = db.execute(
                    select(QueueEntry).where(QueueEntry.user_id.in_(user_ids), QueueEntry.status == WAITING)
                ).scalars().all()
                return {str(r.user_id): entry_from_row(r) for r in rows}
        except SQLAlchemyError as exc:
            raise TransientStoreError("get_waiting_many", exc) from exc

    def mark_removed(self, user_id: str) -> None:
        """Move the user's WAITING entry to REMOVED; NotFound if there is none."""
        try:
            with self._session_factory() as db:
                result = db.execute(
                    update(QueueEntry)
                    .where(QueueEntry.user_id == user_id, QueueEntry.status == WAITING)
                    .values(status=EntryStatus.REMOVED.value)
                )
                db.commit()
        except SQLAlchemyError as exc:
            raise TransientStoreError("leave", exc) from exc
        if not result.rowcount:
            raise NotFound(user_id)

    def commit_match(
        self,
        user1_id: str,
        user2_id: str,
        score: CompatibilityScore,
        *,
        algorithm_version: str,
        now: datetime | None = None,
    ) -> MatchEvent:
        """Transition both entries to MATCHED and record the attempt and its outbox event.

        Everything happens in one transaction. If either entry is no longer
        WAITING the transaction is rolled back and InconsistentState raised.
        """
        now = now or _now_utc()
        match_id = str(uuid.uuid4())
        event = MatchEvent(
            user1_id=user1_id,
            user2_id=user2_id,
            match_id=match_id,
            score=round(score.total, 6),
            timestamp=now.isoformat(),
        )
        try:
            with self._session_factory() as db:
                result = db.execute(
                    update(QueueEntry)
                    .where(QueueEntry.user_id.in_([user1_id, user2_id]), QueueEntry.status == WAITING)
                    .values(status=EntryStatus.MATCHED.value)
                )
                if (result.rowcount or 0) != 2:
                    db.rollback()
                    raise InconsistentState(
                        f"{user1_id},{user2_id}",
                        f"expected 2 WAITING entries, found {result.rowcount}",
                    )
                db.add(
                    MatchAttempt(
                        id=match_id,
                        user1_id=user1_id,
                        user2_id=user2_id,
                        total_score=round(score.total, 6),
                        score_breakdown=score.as_breakdown(),
                        status=MatchStatus.PROPOSED.value,
                        algorithm_version=algorithm_version,
                        created_at=now,
                    )
                )
                db.add(
                    MatchEventOutbox(
                        id=str(uuid.uuid4()),
                        match_id=match_id,
                        payload=event.to_payload(),
                        status="pending",
                        attempt_count=0,
                        created_at=now,
                        updated_at=now,
                    )
                )
                db.commit()
        except SQLAlchemyError as exc:
            raise TransientStoreError("commit_match", exc) from exc
        return event

    def record_attempts(self, user_ids: list[str], now: datetime) -> int:
        if not user_ids:
            return 0
        try:
            with self._session_factory() as db:
                result = db.execute(
                    update(QueueEntry)
                    .where(QueueEntry.user_id.in_(user_ids), QueueEntry.status == WAITING)
                    .values(attempts=QueueEntry.attempts + 1, last_match_attempt=now)
                )
                db.commit()
                return int(result.rowcount or 0)
        except SQLAlchemyError as exc:
            raise TransientStoreError("record_attempts", exc) from exc

    def expire_due(self, now: datetime) -> list[str]:
        try:
            with self._session_factory() as db:
                rows = db.execute(
                    select(QueueEntry.id, QueueEntry.user_id).where(
                        QueueEntry.status == WAITING, QueueEntry.expires_at < now
                    )
                ).all()
                if not rows:
                    return []
                db.execute(
                    update(QueueEntry)
                    .where(QueueEntry.id.in_([r.id for r in rows]), QueueEntry.status == WAITING)
                    .values(status=EntryStatus.EXPIRED.value)
                )
                db.commit()
                return [str(r.user_id) for r in rows]
        except SQLAlchemyError as exc:
            raise TransientStoreError("expire_due", exc) from exc

    def list_waiting(self) -> dict[str, datetime]:
        try:
            with self._session_factory() as db:
                rows = db.execute(
                    select(QueueEntry.user_id, QueueEntry.entered_at).where(QueueEntry.status == WAITING)
                ).all()
                return {str(r.user_id): _as_utc(r.entered_at) for r in rows}
        except SQLAlchemyError as exc:
            raise TransientStoreError("list_waiting", exc) from exc

    def waiting_counts(self) -> dict[str, dict[str, int]]:
        try:
            with self._session_factory() as db:
                rows = db.execute(
                    text(
                        """
                        SELECT intent, gender, COUNT(1) AS c
                        FROM queue_entry
                        WHERE status = 'WAITING'
                        GROUP BY intent, gender
                        """
                    )
                ).mappings().all()
        except SQLAlchemyError as exc:
            raise TransientStoreError("waiting_counts", exc) from exc

        by_intent: dict[str, int] = {}
        by_gender: dict[str, int] = {}
        for r in rows:
            c = int(r["c"])
            by_intent[str(r["intent"])] = by_intent.get(str(r["intent"]), 0) + c
            by_gender[str(r["gender"])] = by_gender.get(str(r["gender"]), 0) + c
        return {"by_intent": by_intent, "by_gender": by_gender}

    def count_matches_since(self, since: datetime) -> int:
        try:
            with self._session_factory() as db:
                return int(
                    db.execute(select(func.count(MatchAttempt.id)).where(MatchAttempt.created_at >= since)).scalar()
                    or 0
                )
        except SQLAlchemyError as exc:
            raise TransientStoreError("count_matches_since", exc) from exc

    def list_match_attempts(
        self,
        user_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
        newest_first: bool = False,
    ) -> list[dict[str, Any]]:
        order = MatchAttempt.created_at.desc() if newest_first else MatchAttempt.created_at.asc()
        stmt = (
            select(MatchAttempt)
            .order_by(order, MatchAttempt.id.asc())
            .offset(max(0, int(offset)))
            .limit(max(1, min(1000, int(limit))))
        )
        if user_id:
            stmt = stmt.where((MatchAttempt.user1_id == user_id) | (MatchAttempt.user2_id == user_id))
        try:
            with self._session_factory() as db:
                rows = db.execute(stmt).scalars().all()
                return [
                    {
                        "id": r.id,
                        "user1_id": r.user1_id,
                        "user2_id": r.user2_id,
                        "total_score": float(r.total_score),
                        "score_breakdown": r.score_breakdown,
                        "status": r.status,
                        "algorithm_version": r.algorithm_version,
                        "created_at": _as_utc(r.created_at),
                    }
                    for r in rows
                ]
        except SQLAlchemyError as exc:
            raise TransientStoreError("list_match_attempts", exc) from exc

    def fetch_pending_events(self, limit: int = 100) -> list[dict[str, Any]]:
        try:
            with self._session_factory() as db:
                rows = db.execute(
                    select(MatchEventOutbox)
                    .where(MatchEventOutbox.status == "pending")
                    .order_by(MatchEventOutbox.created_at.asc())
                    .limit(max(1, min(500, int(limit))))
                ).scalars().all()
                return [
                    {
                        "id": r.id,
                        "match_id": r.match_id,
                        "payload": r.payload,
                        "attempt_count": int(r.attempt_count or 0),
                    }
                    for r in rows
                ]
        except SQLAlchemyError as exc:
            raise TransientStoreError("fetch_pending_events", exc) from exc

    def mark_event_sent(self, outbox_id: str, now: datetime) -> None:
        try:
            with self._session_factory() as db:
                db.execute(
                    update(MatchEventOutbox)
                    .where(MatchEventOutbox.id == outbox_id)
                    .values(
                        status="sent",
                        attempt_count=MatchEventOutbox.attempt_count + 1,
                        last_error=None,
                        updated_at=now,
                    )
                )
                db.commit()
        except SQLAlchemyError as exc:
            raise TransientStoreError("mark_event_sent", exc) from exc

    def mark_event_failed(self, outbox_id: str, error: str, *, max_attempts: int, now: datetime) -> str:
        try:
            with self._session_factory() as db:
                row = db.get(MatchEventOutbox, outbox_id)
                if row is None:
                    return "missing"
                row.attempt_count = int(row.attempt_count or 0) + 1
                row.last_error = error[:1000]
                row.status = "failed" if row.attempt_count >= max(1, int(max_attempts)) else "pending"
                row.updated_at = now
                status = row.status
                db.commit()
                return status
        except SQLAlchemyError as exc:
            raise TransientStoreError("mark_event_failed", exc) from exc
