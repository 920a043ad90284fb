from __future__ import annotations

import os

os.environ.setdefault("LOG_TO_FILE", "false")

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from autoapply.channels import SubmissionChannel
from autoapply.db import Database
from autoapply.dedup import DeduplicationStore
from autoapply.errors import OracleUnavailable, SubmissionTransientError
from autoapply.matcher import JobMatcher
from autoapply.models import JobCandidate, JobCriteria, SubmissionResult, Tier
from autoapply.notifications import LogSink, NotificationDispatcher, NotificationSink, StoreSink
from autoapply.oracle import ScoringOracle
from autoapply.orchestrator import Orchestrator
from autoapply.profiles import ProfileStore
from autoapply.quota import QuotaTracker
from autoapply.sources.base import JobSource
from autoapply.submitter import ApplicationSubmitter
from autoapply.tracker import ApplicationTracker

# Monday
START = datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def job(title: str, company: str = "Acme", location: str = "Remote", lang: str = "en",
        description: str = "", url: str = "") -> JobCandidate:
    return JobCandidate(
        source_id=f"{company}-{title}".lower().replace(" ", "-"),
        title=title,
        company=company,
        location=location,
        description=description or f"We are hiring a {title} with Python experience.",
        detected_language=lang,
        url=url or f"https://jobs.example.com/{company}/{title}".replace(" ", "-"),
        source="static",
    )


class FakeOracle(ScoringOracle):
    """Scores by job title; unknown titles get *default*."""

    def __init__(self, scores: dict[str, object] | None = None, default: object = 50,
                 fail: bool = False) -> None:
        self.scores = scores or {}
        self.default = default
        self.fail = fail
        self.calls = 0
        self._lock = threading.Lock()

    def score(self, criteria, cv_analysis, job_description):
        with self._lock:
            self.calls += 1
        if self.fail:
            raise OracleUnavailable("oracle down")
        title = job_description.split("\n", 1)[0]
        return {"score": self.scores.get(title, self.default), "strengths": ["fit"], "weaknesses": []}

    def generate(self, prompt, *, max_tokens=400):
        raise OracleUnavailable("no text generation in tests")


class StaticSource(JobSource):
    name = "static"

    def __init__(self, candidates: list[JobCandidate]) -> None:
        self.candidates = candidates

    def list_candidates(self, criteria, limit=30):
        return list(self.candidates)


class BrokenSource(JobSource):
    name = "broken"

    def list_candidates(self, criteria, limit=30):
        raise ConnectionError("listing service unreachable")


class FakeChannel(SubmissionChannel):
    """Behaviour per company: ok, reject, transient, hang, or a list consumed per call."""

    name = "fake"

    def __init__(self, behaviour: dict[str, object] | None = None, default: str = "ok",
                 hang_seconds: float = 0.3) -> None:
        self.behaviour = dict(behaviour or {})
        self.default = default
        self.hang_seconds = hang_seconds
        self.calls: list[str] = []
        self.documents: list = []
        self._lock = threading.Lock()

    def _next(self, company: str) -> str:
        with self._lock:
            self.calls.append(company)
            plan = self.behaviour.get(company, self.default)
            if isinstance(plan, list):
                return plan.pop(0) if len(plan) > 1 else plan[0]
            return plan

    def submit(self, user_id, candidate, cv_document):
        self.documents.append(cv_document)
        outcome = self._next(candidate.company)
        if outcome == "hang":
            time.sleep(self.hang_seconds)
            return SubmissionResult(accepted=True, external_ref="late")
        if outcome == "transient":
            raise SubmissionTransientError("connection reset")
        if outcome == "reject":
            return SubmissionResult(accepted=False, reason="position closed")
        return SubmissionResult(accepted=True, external_ref=f"ref-{candidate.company}")


class ExplodingSink(NotificationSink):
    name = "exploding"

    def notify(self, user_id, event, summary=None):
        raise RuntimeError("push gateway down")


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def db(tmp_path) -> Database:
    database = Database(tmp_path / "autoapply.sqlite3")
    database.initialize()
    return database


@pytest.fixture
def profiles(db) -> ProfileStore:
    return ProfileStore(db)


@pytest.fixture
def quota(db, clock) -> QuotaTracker:
    return QuotaTracker(db, timezone_name="UTC", clock=clock)


@pytest.fixture
def dedup(db) -> DeduplicationStore:
    return DeduplicationStore(db)


@pytest.fixture
def tracker(db, dedup) -> ApplicationTracker:
    return ApplicationTracker(db, dedup)


@pytest.fixture
def make_user(profiles):
    counter = iter(range(1, 1000))

    def _make(tier: Tier = Tier.FREE, languages=("en",), cv_text="Python developer, 6 years.",
              criteria: JobCriteria | None = None, email: str | None = None):
        return profiles.create_user(
            email or f"user{next(counter)}@example.com",
            full_name="Jane Doe",
            spoken_languages=list(languages),
            cv_text=cv_text,
            cv_analysis="Backend engineer with Python and PostgreSQL.",
            criteria=criteria if criteria is not None else JobCriteria(
                job_titles=["Backend Engineer"], skills=["python"]
            ),
            tier=tier,
        )

    return _make


@pytest.fixture
def build(db, profiles, quota, dedup, tracker):
    """Factory for a fully wired Orchestrator around fakes."""

    def _build(candidates=None, *, sources=None, oracle=None, channel=None, sinks=None,
               max_batch_size=30, min_match_score=0.0, concurrency=3, call_timeout=5.0,
               max_attempts=3, breaker_threshold=3, run_deadline=30.0):
        channel = channel or FakeChannel()
        oracle = oracle or FakeOracle()
        submitter = ApplicationSubmitter(
            tracker, quota, channel, oracle,
            concurrency=concurrency,
            call_timeout=call_timeout,
            max_attempts=max_attempts,
            backoff_seconds=0.01,
            breaker_threshold=breaker_threshold,
            run_deadline=run_deadline,
            sleep=lambda s: None,
        )
        matcher = JobMatcher(oracle, timeout=5.0, concurrency=1, breaker_threshold=breaker_threshold)
        dispatcher = NotificationDispatcher(sinks if sinks is not None else [StoreSink(db), LogSink()])
        return Orchestrator(
            profiles, quota, dedup, tracker, matcher, submitter, dispatcher,
            sources if sources is not None else [StaticSource(candidates or [])],
            max_batch_size=max_batch_size,
            min_match_score=min_match_score,
        )

    return _build
