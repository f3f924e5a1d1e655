from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from apscheduler.schedulers.background import BackgroundScheduler

from ..config import (
    ALGORITHM_VERSION,
    CYCLE_SOFT_DEADLINE_SECONDS,
    FIXED_DIMENSION_WEIGHTS,
    GENDER_PRIORITY,
    MATCH_BATCH_SIZE,
    MATCHING_INTERVAL_SECONDS,
    MIN_MATCH_SCORE,
    RECONCILE_PAGE_SIZE,
)
from ..domain import MatchEvent, Participant
from ..errors import InconsistentState, TransientStoreError
from .compatibility import best_candidate
from .profiles import ProfileReader
from .publisher import OutboxRelay
from .queue_store import QueueStore
from .state_machine import is_expired, transition_status
from .waiting_index import WaitingIndex

logger = logging.getLogger(__name__)

JOB_ID = "matching_cycle"


class CyclePhase(str, Enum):
    IDLE = "IDLE"
    SELECTING = "SELECTING"
    SCANNING = "SCANNING"
    PUBLISHING = "PUBLISHING"
    SWEEPING = "SWEEPING"


@dataclass
class CycleReport:
    started_at: datetime
    finished_at: datetime | None = None
    skipped: bool = False
    selected: int = 0
    scanned: int = 0
    stale_removed: int = 0
    matches: list[MatchEvent] = field(default_factory=list)
    attempts_recorded: int = 0
    published: int = 0
    expired: int = 0
    reconciled_added: int = 0
    errors: int = 0
    deadline_hit: bool = False

    @property
    def matched_user_ids(self) -> set[str]:
        out: set[str] = set()
        for event in self.matches:
            out.update((event.user1_id, event.user2_id))
        return out

    def summary(self) -> dict[str, Any]:
        return {
            "skipped": self.skipped,
            "selected": self.selected,
            "scanned": self.scanned,
            "matched_pairs": len(self.matches),
            "stale_removed": self.stale_removed,
            "attempts_recorded": self.attempts_recorded,
            "published": self.published,
            "expired": self.expired,
            "reconciled_added": self.reconciled_added,
            "errors": self.errors,
            "deadline_hit": self.deadline_hit,
        }


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def order_group(participants: list[Participant], gender_priority: list[str]) -> list[Participant]:
    """Order one intent group by gender policy, oldest first within each gender."""
    rank = {g: i for i, g in enumerate(gender_priority)}

    def _key(p: Participant):
        return (rank.get(p.entry.gender.upper(), len(rank)), p.entry.entered_at, p.entry.id)

    return sorted(participants, key=_key)


def partition_by_intent(participants: list[Participant]) -> dict[str, list[Participant]]:
    groups: dict[str, list[Participant]] = {}
    for p in sorted(participants, key=lambda x: (x.entry.entered_at, x.entry.id)):
        groups.setdefault(p.entry.intent, []).append(p)
    return groups


class MatchingScheduler:
    """Periodic matching cycle over the oldest slice of the waiting index.

    At most one cycle runs at a time; a tick that arrives while a cycle is in
    flight is skipped and counted in ``skipped_ticks``.
    """

    def __init__(
        self,
        store: QueueStore,
        index: WaitingIndex,
        profiles: ProfileReader,
        relay: OutboxRelay,
        *,
        batch_size: int = MATCH_BATCH_SIZE,
        min_score: float = MIN_MATCH_SCORE,
        gender_priority: list[str] | None = None,
        soft_deadline_seconds: float = CYCLE_SOFT_DEADLINE_SECONDS,
        interval_seconds: float = MATCHING_INTERVAL_SECONDS,
        algorithm_version: str = ALGORITHM_VERSION,
        weights: dict[str, float] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.index = index
        self.profiles = profiles
        self.relay = relay
        self.batch_size = batch_size
        self.min_score = min_score
        self.gender_priority = [g.upper() for g in (gender_priority if gender_priority is not None else GENDER_PRIORITY)]
        self.soft_deadline_seconds = soft_deadline_seconds
        self.interval_seconds = interval_seconds
        self.algorithm_version = algorithm_version
        self.weights = dict(weights if weights is not None else FIXED_DIMENSION_WEIGHTS)
        self._clock = clock
        self._guard = threading.Lock()
        self._phase = CyclePhase.IDLE
        self._background: BackgroundScheduler | None = None
        self.skipped_ticks = 0
        self.last_report: CycleReport | None = None

    @property
    def phase(self) -> CyclePhase:
        return self._phase

    @property
    def running(self) -> bool:
        return self._background is not None and self._background.running

    def start(self) -> None:
        if self.running:
            return
        self._background = BackgroundScheduler(timezone="UTC")
        self._background.add_job(
            self.run_cycle,
            "interval",
            seconds=self.interval_seconds,
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._background.start()
        logger.info("[MATCHING] scheduler started interval=%ss batch=%s", self.interval_seconds, self.batch_size)

    def shutdown(self, wait: bool = True) -> None:
        if self._background is None:
            return
        if self._background.running:
            self._background.shutdown(wait=wait)
        self._background = None
        logger.info("[MATCHING] scheduler stopped")

    def run_cycle(self, now: datetime | None = None) -> CycleReport:
        now = now or _now_utc()
        if not self._guard.acquire(blocking=False):
            self.skipped_ticks += 1
            logger.warning("[MATCHING] cycle still running; tick skipped (total skipped=%s)", self.skipped_ticks)
            return CycleReport(started_at=now, finished_at=now, skipped=True)

        report = CycleReport(started_at=now)
        started = self._clock()
        try:
            self._phase = CyclePhase.SELECTING
            participants = self._select(report, now)

            self._phase = CyclePhase.SCANNING
            if participants:
                self._scan(participants, report, started)

            self._phase = CyclePhase.PUBLISHING
            self._publish(report)

            self._phase = CyclePhase.SWEEPING
            self._sweep(report, now)
        finally:
            self._phase = CyclePhase.IDLE
            report.finished_at = _now_utc()
            self.last_report = report
            self._guard.release()

        if report.matches or report.errors or report.deadline_hit:
            logger.info("[MATCHING] cycle finished %s", report.summary())
        else:
            logger.debug("[MATCHING] cycle finished %s", report.summary())
        return report

    def _select(self, report: CycleReport, now: datetime) -> list[Participant]:
        try:
            user_ids = self.index.oldest(self.batch_size)
            report.selected = len(user_ids)
            if not user_ids:
                return []
            entries = self.store.get_waiting_many(user_ids)
            stale = [uid for uid in user_ids if uid not in entries]
            if stale:
                report.stale_removed += self.index.remove(*stale)
                logger.warning("[MATCHING] removed %s stale index members", len(stale))

            # Past-TTL entries are left for the sweep.
            live = {uid: e for uid, e in entries.items() if not is_expired(e.expires_at, now)}
            if not live:
                return []
            profiles = self.profiles.get_many(list(live))
        except TransientStoreError:
            report.errors += 1
            logger.exception("[MATCHING] selection failed; cycle continues with sweep")
            return []
        return [Participant(entry=e, profile=profiles[uid]) for uid, e in live.items()]

    def _deadline_passed(self, started: float) -> bool:
        return self._clock() - started > self.soft_deadline_seconds

    def _scan(self, participants: list[Participant], report: CycleReport, started: float) -> None:
        consumed: set[str] = set()
        scanned: list[str] = []

        for intent, group in partition_by_intent(participants).items():
            ordered = order_group(group, self.gender_priority)
            for target in ordered:
                if self._deadline_passed(started):
                    report.deadline_hit = True
                    logger.warning("[MATCHING] soft deadline of %ss reached; remaining scans aborted", self.soft_deadline_seconds)
                    break
                if target.user_id in consumed:
                    continue
                scanned.append(target.user_id)
                try:
                    self._match_one(target, ordered, consumed, report)
                except Exception:
                    report.errors += 1
                    logger.exception("[MATCHING] matching failed for user %s intent=%s", target.user_id, intent)
            if report.deadline_hit:
                break

        report.scanned = len(scanned)
        matched = report.matched_user_ids
        unmatched = [uid for uid in scanned if uid not in matched]
        if unmatched:
            try:
                report.attempts_recorded = self.store.record_attempts(unmatched, report.started_at)
            except TransientStoreError:
                report.errors += 1
                logger.exception("[MATCHING] could not record attempts for %s users", len(unmatched))

    def _match_one(
        self,
        target: Participant,
        group: list[Participant],
        consumed: set[str],
        report: CycleReport,
    ) -> None:
        current = self.store.get_waiting(target.user_id)
        if current is None or (
            transition_status(current.status, "match", report.started_at, current.expires_at) != "MATCHED"
        ):
            consumed.add(target.user_id)
            return

        candidates = [p for p in group if p.user_id != target.user_id and p.user_id not in consumed]
        best = best_candidate(target, candidates, min_score=self.min_score, cfg=self.weights)
        if best is None:
            return

        candidate, score = best
        try:
            event = self.store.commit_match(
                target.user_id,
                candidate.user_id,
                score,
                algorithm_version=self.algorithm_version,
                now=report.started_at,
            )
        except InconsistentState as exc:
            logger.warning("[MATCHING] match %s/%s abandoned: %s", target.user_id, candidate.user_id, exc.detail)
            for uid in (target.user_id, candidate.user_id):
                if self.store.get_waiting(uid) is None:
                    consumed.add(uid)
            return

        consumed.update((target.user_id, candidate.user_id))
        report.matches.append(event)
        logger.info(
            "[MATCHING] matched %s with %s score=%.3f match_id=%s",
            target.user_id,
            candidate.user_id,
            score.total,
            event.match_id,
        )
        try:
            self.index.remove(target.user_id, candidate.user_id)
        except TransientStoreError:
            logger.warning(
                "[MATCHING] index removal failed for %s/%s; sweep will reconcile",
                target.user_id,
                candidate.user_id,
            )

    def _publish(self, report: CycleReport) -> None:
        try:
            result = self.relay.drain()
        except TransientStoreError:
            report.errors += 1
            logger.exception("[PUBLISH] outbox drain failed; events stay pending")
            return
        report.published = int(result.get("sent", 0))

    def _sweep(self, report: CycleReport, now: datetime) -> None:
        try:
            expired = self.store.expire_due(now)
            if expired:
                self.index.remove(*expired)
                report.expired = len(expired)
                logger.info("[SWEEP] expired %s entries", len(expired))
        except TransientStoreError:
            report.errors += 1
            logger.exception("[SWEEP] expiration failed")

        try:
            waiting = self.store.list_waiting()
            members = set(self.index.members(page_size=RECONCILE_PAGE_SIZE))
            stale = [uid for uid in members if uid not in waiting]
            if stale:
                report.stale_removed += self.index.remove(*stale)
                logger.warning("[SWEEP] removed %s stale index members", len(stale))
            for uid, entered_at in waiting.items():
                if uid not in members:
                    self.index.add(uid, entered_at)
                    report.reconciled_added += 1
            if report.reconciled_added:
                logger.warning("[SWEEP] re-added %s waiting users missing from index", report.reconciled_added)
        except TransientStoreError:
            report.errors += 1
            logger.exception("[SWEEP] reconciliation failed")
