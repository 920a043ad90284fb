"""Drive selected candidates through the submission state machine.

    selected ──► submitting ──► submitted
        │             └───────► failed
        └───────────────────────► skipped

A candidate moves to ``submitting`` only after taking one unit of the
batch reservation. Failed candidates hand their unit back to the
QuotaTracker. Candidates that find the reservation empty, or start after
the run was cancelled, are ``skipped`` without any external call.
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable

from autoapply.breaker import CircuitBreaker
from autoapply.channels import CvDocument, SubmissionChannel
from autoapply.cover_letter import generate_cover_letter
from autoapply.dedup import candidate_fingerprint
from autoapply.errors import (
    CircuitOpen,
    InvariantViolation,
    StorageError,
    SubmissionRejected,
    SubmissionTransientError,
)
from autoapply.log import get_logger, run_logger
from autoapply.models import (
    ApplicationRecord,
    ApplicationStatus,
    MatchResult,
    Reservation,
    SubmissionResult,
    UserProfile,
)
from autoapply.oracle import ScoringOracle
from autoapply.quota import QuotaTracker
from autoapply.retry import CallTimeout, call_with_retry, call_with_timeout
from autoapply.tracker import ApplicationTracker

log = get_logger(__name__)


class BatchLedger:
    """Units of a reservation not yet claimed by a candidate."""

    def __init__(self, reserved: int) -> None:
        self._remaining = reserved
        self._lock = threading.Lock()

    def claim(self) -> bool:
        with self._lock:
            if self._remaining <= 0:
                return False
            self._remaining -= 1
            return True

    def give_back(self) -> None:
        with self._lock:
            self._remaining += 1

    @property
    def remaining(self) -> int:
        with self._lock:
            return self._remaining


@dataclass
class BatchResult:
    records: list[ApplicationRecord] = field(default_factory=list)

    def count(self, status: ApplicationStatus) -> int:
        return sum(1 for r in self.records if r.status is status)


class ApplicationSubmitter:
    def __init__(
        self,
        tracker: ApplicationTracker,
        quota: QuotaTracker,
        channel: SubmissionChannel,
        oracle: ScoringOracle,
        *,
        concurrency: int = 3,
        call_timeout: float = 20.0,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        breaker_threshold: int = 3,
        run_deadline: float = 300.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.tracker = tracker
        self.quota = quota
        self.channel = channel
        self.oracle = oracle
        self.concurrency = max(1, concurrency)
        self.call_timeout = call_timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.breaker_threshold = breaker_threshold
        self.run_deadline = run_deadline
        self.sleep = sleep

    def submit_batch(
        self,
        profile: UserProfile,
        run_id: str,
        reservation: Reservation,
        ledger: BatchLedger,
        matches: list[MatchResult],
        cancel: threading.Event,
    ) -> BatchResult:
        """Process *matches* in score order; returns records in the same order.

        Reservation units are handed out at dispatch time, so the best-ranked
        candidates get them. Units left in *ledger* afterwards belong to the
        caller to release.
        """
        breaker = CircuitBreaker(f"submission:{self.channel.name}", self.breaker_threshold)
        letters = CircuitBreaker("oracle:generate", self.breaker_threshold)
        result = BatchResult()
        user_id = profile.user_id
        rlog = run_logger(log, user_id, run_id)

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix=f"submit-u{user_id}") as pool:
            slots: list[ApplicationRecord | Future] = []
            for m in matches:
                if ledger.claim():
                    slots.append(pool.submit(
                        self._process, profile, run_id, reservation, m, ledger, breaker, letters, cancel
                    ))
                else:
                    slots.append(self.tracker.record_terminal(
                        user_id, run_id, m, candidate_fingerprint(m.candidate),
                        ApplicationStatus.SKIPPED, error="quota exhausted",
                    ))
            futures = [s for s in slots if not isinstance(s, ApplicationRecord)]
            _, pending = wait(futures, timeout=self.run_deadline)
            if pending:
                rlog.error("Hit the %.0fs deadline; %d candidate(s) not finished",
                           self.run_deadline, len(pending))
                cancel.set()
                wait(pending)
            result.records = [s if isinstance(s, ApplicationRecord) else s.result() for s in slots]

        rlog.info(
            "Batch: submitted=%d failed=%d skipped=%d unused=%d",
            result.count(ApplicationStatus.SUBMITTED),
            result.count(ApplicationStatus.FAILED),
            result.count(ApplicationStatus.SKIPPED),
            ledger.remaining,
        )
        return result

    def _process(
        self,
        profile: UserProfile,
        run_id: str,
        reservation: Reservation,
        match: MatchResult,
        ledger: BatchLedger,
        breaker: CircuitBreaker,
        letters: CircuitBreaker,
        cancel: threading.Event,
    ) -> ApplicationRecord:
        """Runs with one reservation unit already claimed from *ledger*."""
        job = match.candidate
        fp = candidate_fingerprint(job)
        user_id = profile.user_id

        if cancel.is_set():
            ledger.give_back()
            return self.tracker.record_terminal(
                user_id, run_id, match, fp, ApplicationStatus.SKIPPED, error="run cancelled"
            )

        # selected → submitting
        try:
            record = self.tracker.claim(user_id, run_id, match, fp)
        except InvariantViolation as exc:
            log.warning("%s @ %s already claimed for user %d by another run: %s",
                        job.title, job.company, user_id, exc)
            self.quota.release(reservation, 1)
            return self.tracker.record_terminal(
                user_id, run_id, match, fp, ApplicationStatus.FAILED, error=str(exc)
            )
        except StorageError:
            ledger.give_back()
            cancel.set()
            raise

        try:
            sent = self._send(profile, match, breaker, letters)
        except StorageError:
            raise
        except (SubmissionRejected, SubmissionTransientError, CircuitOpen) as exc:
            return self._fail(record, reservation, str(exc) or exc.__class__.__name__)
        except Exception as exc:
            log.exception("Unexpected error submitting %s @ %s", job.title, job.company)
            return self._fail(record, reservation, f"unexpected error: {exc}")

        # submitting → submitted (+ mark seen)
        try:
            done = self.tracker.complete(record.id, sent.external_ref)
        except InvariantViolation as exc:
            log.error("DEFECT: application #%d sent but posting already seen: %s", record.id, exc)
            return self._fail(record, reservation, str(exc))
        log.info("Submitted %s @ %s for user %d [#%d]", job.title, job.company, user_id, done.id)
        return done

    def _fail(self, record: ApplicationRecord, reservation: Reservation, reason: str) -> ApplicationRecord:
        failed = self.tracker.fail(record.id, reason)
        self.quota.release(reservation, 1)
        log.warning("Application #%d failed (%s @ %s): %s",
                    record.id, record.job_title, record.company, reason)
        return failed

    def _send(
        self,
        profile: UserProfile,
        match: MatchResult,
        breaker: CircuitBreaker,
        letters: CircuitBreaker,
    ) -> SubmissionResult:
        job = match.candidate
        if breaker.is_open:
            raise CircuitOpen(f"{breaker.name} circuit is open")

        document = CvDocument(
            applicant_name=profile.full_name,
            applicant_email=profile.email,
            cv_text=profile.cv_text,
            cover_letter=generate_cover_letter(
                self.oracle, profile, job, timeout=self.call_timeout, breaker=letters
            ),
        )

        def attempt() -> SubmissionResult:
            if breaker.is_open:
                raise CircuitOpen(f"{breaker.name} circuit is open")
            try:
                res = call_with_timeout(
                    self.channel.submit, self.call_timeout, profile.user_id, job, document
                )
            except CallTimeout as exc:
                raise SubmissionTransientError(str(exc)) from exc
            if not res.accepted:
                raise SubmissionRejected(res.reason or "application refused by channel")
            return res

        try:
            res = call_with_retry(
                attempt,
                max_attempts=self.max_attempts,
                base_delay=self.backoff_seconds,
                retryable=(SubmissionTransientError,),
                sleep=self.sleep,
            )
        except SubmissionTransientError:
            breaker.record_failure()
            raise
        breaker.record_success()
        return res
