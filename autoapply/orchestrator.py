"""
Application run orchestrator.

Runs: profile check → reserve quota → fetch → dedupe → rank → submit →
release unused quota → notify.
"""
from __future__ import annotations

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta

from autoapply.channels import get_channel
from autoapply.config import Settings, ensure_dirs
from autoapply.db import Database
from autoapply.dedup import DeduplicationStore, candidate_fingerprint
from autoapply.errors import IncompleteProfile, RunAlreadyInProgress
from autoapply.log import get_logger, run_logger
from autoapply.matcher import JobMatcher
from autoapply.models import (
    ApplicationStatus,
    JobCandidate,
    JobCriteria,
    MatchResult,
    RunSummary,
)
from autoapply.notifications import NotificationDispatcher, get_dispatcher
from autoapply.oracle import get_oracle
from autoapply.profiles import ProfileStore
from autoapply.quota import QuotaTracker
from autoapply.sources import JobSource, get_sources
from autoapply.submitter import ApplicationSubmitter, BatchLedger
from autoapply.tracker import ApplicationTracker

log = get_logger(__name__)


def _search_source(source: JobSource, criteria: JobCriteria) -> list[JobCandidate]:
    """Wrapper for parallel source searching."""
    name = source.name
    try:
        results = source.list_candidates(criteria)
        log.info("[%s] returned %d jobs", name, len(results))
        return results
    except Exception as exc:
        log.error("[%s] FAILED: %s", name, exc)
        return []


def collapse_duplicates(candidates: list[JobCandidate]) -> list[JobCandidate]:
    """Keep the first candidate per fingerprint, preserving order."""
    seen: set[str] = set()
    unique: list[JobCandidate] = []
    for c in candidates:
        fp = candidate_fingerprint(c)
        if fp not in seen:
            seen.add(fp)
            unique.append(c)
    return unique


class Orchestrator:
    def __init__(
        self,
        profiles: ProfileStore,
        quota: QuotaTracker,
        dedup: DeduplicationStore,
        tracker: ApplicationTracker,
        matcher: JobMatcher,
        submitter: ApplicationSubmitter,
        dispatcher: NotificationDispatcher,
        sources: list[JobSource],
        *,
        max_batch_size: int = 30,
        min_match_score: float = 0.0,
        stale_claim_seconds: float = 900.0,
    ) -> None:
        self.profiles = profiles
        self.quota = quota
        self.dedup = dedup
        self.tracker = tracker
        self.matcher = matcher
        self.submitter = submitter
        self.dispatcher = dispatcher
        self.sources = sources
        self.max_batch_size = max_batch_size
        self.min_match_score = min_match_score
        self.stale_claim = timedelta(seconds=stale_claim_seconds)
        self._active: dict[int, threading.Event] = {}
        self._lock = threading.Lock()

    # ── run registry ────────────────────────────────────────────────────

    def _begin(self, user_id: int) -> threading.Event:
        with self._lock:
            if user_id in self._active:
                raise RunAlreadyInProgress(user_id)
            cancel = threading.Event()
            self._active[user_id] = cancel
            return cancel

    def _end(self, user_id: int) -> None:
        with self._lock:
            self._active.pop(user_id, None)

    def is_running(self, user_id: int) -> bool:
        with self._lock:
            return user_id in self._active

    def cancel(self, user_id: int) -> bool:
        """Stop starting new candidates for the user's active run, if any."""
        with self._lock:
            cancel = self._active.get(user_id)
        if cancel is None:
            return False
        cancel.set()
        log.info("Cancellation requested for user %d", user_id)
        return True

    # ── run ─────────────────────────────────────────────────────────────

    def fetch_candidates(self, criteria: JobCriteria) -> list[JobCandidate]:
        if not self.sources:
            return []
        found: list[JobCandidate] = []
        with ThreadPoolExecutor(max_workers=len(self.sources), thread_name_prefix="source") as pool:
            for batch in pool.map(lambda s: _search_source(s, criteria), self.sources):
                found.extend(batch)
        return found

    def run_for_user(self, user_id: int) -> RunSummary:
        cancel = self._begin(user_id)
        try:
            return self._run(user_id, cancel)
        finally:
            self._end(user_id)

    def _run(self, user_id: int, cancel: threading.Event) -> RunSummary:
        profile = self.profiles.get(user_id)
        missing = profile.missing_fields()
        if missing:
            log.info("User %d profile incomplete: %s", user_id, ", ".join(missing))
            raise IncompleteProfile(missing)
        # missing_fields() reports "criteria" when unset
        criteria = profile.criteria

        run_id = uuid.uuid4().hex
        self.tracker.fail_stale_claims(user_id, self.stale_claim)
        state = self.quota.load_state(user_id)
        reservation = self.quota.reserve(user_id, min(self.max_batch_size, state.limit_per_day))
        ledger = BatchLedger(reservation.granted)
        rlog = run_logger(log, user_id, run_id)
        rlog.info("Started with %d unit(s) reserved", reservation.granted)

        candidates_found = 0
        try:
            fetched = self.fetch_candidates(criteria)
            candidates_found = len(fetched)
            unique = collapse_duplicates(fetched)
            unseen = self.dedup.filter_unseen(user_id, unique)
            ranked = self.matcher.rank(profile, criteria, unseen)
            selected = self._select(ranked)
            batch = self.submitter.submit_batch(profile, run_id, reservation, ledger, selected, cancel)
        finally:
            unused = ledger.remaining
            if unused:
                self.quota.release(reservation, unused)

        summary = RunSummary(
            run_id=run_id,
            user_id=user_id,
            submitted=batch.count(ApplicationStatus.SUBMITTED),
            failed=batch.count(ApplicationStatus.FAILED),
            skipped=batch.count(ApplicationStatus.SKIPPED),
            next_reset_at=reservation.reset_at,
            candidates_found=candidates_found,
            cancelled=cancel.is_set(),
            records=batch.records,
        )
        self.dispatcher.dispatch_run(summary)
        rlog.info(
            "Complete: found=%d, submitted=%d, failed=%d, skipped=%d%s",
            candidates_found, summary.submitted, summary.failed, summary.skipped,
            " (cancelled)" if summary.cancelled else "",
        )
        return summary

    def _select(self, ranked: list[MatchResult]) -> list[MatchResult]:
        """Threshold on score; low-confidence results pass so a degraded oracle still makes progress."""
        selected = [m for m in ranked if m.low_confidence or m.score >= self.min_match_score]
        if len(selected) != len(ranked):
            log.info("%d candidate(s) below the %.0f score threshold", len(ranked) - len(selected),
                     self.min_match_score)
        return selected


@dataclass
class Engine:
    settings: Settings
    db: Database
    profiles: ProfileStore
    quota: QuotaTracker
    tracker: ApplicationTracker
    dispatcher: NotificationDispatcher
    orchestrator: Orchestrator


def build_engine(settings: Settings, *, db: Database | None = None) -> Engine:
    """Wire every component from settings."""
    ensure_dirs(settings)
    db = db or Database(settings.database_path)
    db.initialize()
    profiles = ProfileStore(db)
    quota = QuotaTracker(db, timezone_name=settings.quota_timezone)
    dedup = DeduplicationStore(db)
    tracker = ApplicationTracker(db, dedup)
    oracle = get_oracle(settings)
    matcher = JobMatcher(
        oracle,
        timeout=settings.oracle_timeout_seconds,
        concurrency=settings.oracle_concurrency,
        breaker_threshold=settings.breaker_threshold,
    )
    submitter = ApplicationSubmitter(
        tracker,
        quota,
        get_channel(settings),
        oracle,
        concurrency=settings.submit_concurrency,
        call_timeout=settings.submit_timeout_seconds,
        max_attempts=settings.submit_max_attempts,
        backoff_seconds=settings.submit_backoff_seconds,
        breaker_threshold=settings.breaker_threshold,
        run_deadline=settings.run_deadline_seconds,
    )
    dispatcher = get_dispatcher(settings, db, profiles)
    orchestrator = Orchestrator(
        profiles,
        quota,
        dedup,
        tracker,
        matcher,
        submitter,
        dispatcher,
        get_sources(settings),
        max_batch_size=settings.max_batch_size,
        min_match_score=settings.min_match_score,
        stale_claim_seconds=settings.stale_claim_seconds,
    )
    return Engine(settings, db, profiles, quota, tracker, dispatcher, orchestrator)
