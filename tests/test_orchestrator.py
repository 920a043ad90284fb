from __future__ import annotations

import threading
import time
from collections import Counter

import pytest

from autoapply.dedup import candidate_fingerprint
from autoapply.errors import IncompleteProfile, QuotaExceeded, RunAlreadyInProgress, StorageError
from autoapply.models import ApplicationStatus, EventKind, JobCriteria, Tier
from autoapply.notifications import StoreSink
from autoapply.orchestrator import collapse_duplicates

from conftest import BrokenSource, ExplodingSink, FakeChannel, FakeOracle, StaticSource, job


def statuses(summary):
    return [r.status for r in summary.records]


def test_happy_path_submits_in_score_order(build, make_user, quota, tracker):
    user = make_user(Tier.PREMIUM)
    oracle = FakeOracle({"A": 40, "B": 90, "C": 70})
    orch = build([job("A", "Acme"), job("B", "Beta"), job("C", "Core")], oracle=oracle)

    summary = orch.run_for_user(user.user_id)

    assert summary.submitted == 3
    assert summary.failed == summary.skipped == 0
    assert [r.job_title for r in summary.records] == ["B", "C", "A"]
    assert quota.status(user.user_id).used == 3
    assert tracker.count_by_status(user.user_id, ApplicationStatus.SUBMITTED) == 3
    assert not orch.is_running(user.user_id)


def test_quota_limited_run_skips_the_rest(build, make_user, quota):
    user = make_user(Tier.FREE)
    quota.reserve(user.user_id, 9)
    oracle = FakeOracle({"A": 10, "B": 50, "C": 90, "D": 30, "E": 70})
    orch = build([job(t, f"Co{t}") for t in "ABCDE"], oracle=oracle)

    summary = orch.run_for_user(user.user_id)

    assert summary.submitted == 1
    assert summary.skipped == 4
    assert summary.records[0].job_title == "C"
    assert summary.records[0].status is ApplicationStatus.SUBMITTED
    assert all(r.error == "quota exhausted" for r in summary.records[1:])
    assert quota.status(user.user_id).used == 10


def test_failed_submissions_return_their_units(build, make_user, quota):
    user = make_user(Tier.PREMIUM)
    channel = FakeChannel({"Beta": "reject", "Core": "transient"})
    orch = build([job("A", "Acme"), job("B", "Beta"), job("C", "Core")], channel=channel)
    before = quota.status(user.user_id).used

    summary = orch.run_for_user(user.user_id)

    assert summary.submitted == 1
    assert summary.failed == 2
    assert quota.status(user.user_id).used == before + summary.submitted
    reasons = {r.company: r.error for r in summary.records if r.status is ApplicationStatus.FAILED}
    assert "position closed" in reasons["Beta"]
    assert "connection reset" in reasons["Core"]
    # transient errors are retried, rejections are not
    assert Counter(channel.calls) == {"Acme": 1, "Beta": 1, "Core": 3}


def test_same_posting_twice_in_one_run_yields_one_record(build, make_user, tracker):
    user = make_user(Tier.PREMIUM)
    posting = job("Backend Engineer", "Acme")
    relisted = job("backend engineer", "ACME", url="https://mirror.example.com/42")
    orch = build(sources=[StaticSource([posting, job("Other", "Beta")]), StaticSource([relisted])])

    summary = orch.run_for_user(user.user_id)

    assert summary.candidates_found == 3
    assert len(summary.records) == 2
    assert summary.submitted == 2
    assert len(tracker.get_applications(user.user_id)) == 2


def test_collapse_duplicates_keeps_first():
    first = job("Backend Engineer", "Acme", url="https://a.example.com")
    second = job("Backend  engineer", "acme", url="https://b.example.com")
    assert collapse_duplicates([first, second]) == [first]


def test_second_run_skips_already_submitted(build, make_user):
    user = make_user(Tier.PREMIUM)
    orch = build([job("A", "Acme"), job("B", "Beta")])
    first = orch.run_for_user(user.user_id)
    second = orch.run_for_user(user.user_id)
    assert first.submitted == 2
    assert second.records == []
    assert second.candidates_found == 2


def test_transient_timeouts_then_success(build, make_user, quota):
    user = make_user(Tier.PREMIUM)
    channel = FakeChannel({"Acme": ["hang", "hang", "ok"]}, hang_seconds=0.5)
    orch = build([job("A", "Acme")], channel=channel, call_timeout=0.05, max_attempts=3)

    summary = orch.run_for_user(user.user_id)

    assert statuses(summary) == [ApplicationStatus.SUBMITTED]
    assert len(channel.calls) == 3
    assert quota.status(user.user_id).used == 1


def test_all_attempts_time_out(build, make_user, quota):
    user = make_user(Tier.PREMIUM)
    channel = FakeChannel({"Acme": "hang"}, hang_seconds=0.5)
    orch = build([job("A", "Acme")], channel=channel, call_timeout=0.05, max_attempts=3)

    summary = orch.run_for_user(user.user_id)

    assert statuses(summary) == [ApplicationStatus.FAILED]
    assert len(channel.calls) == 3
    assert quota.status(user.user_id).used == 0


def test_circuit_breaker_short_circuits_rest_of_batch(build, make_user, quota):
    user = make_user(Tier.PREMIUM)
    channel = FakeChannel(default="transient")
    orch = build([job(t, f"Co{t}") for t in "ABCDE"], channel=channel,
                 concurrency=1, max_attempts=1, breaker_threshold=2)

    summary = orch.run_for_user(user.user_id)

    assert summary.failed == 5
    assert len(channel.calls) == 2
    assert sum("circuit is open" in r.error for r in summary.records) == 3
    assert quota.status(user.user_id).used == 0


def test_threshold_filters_but_low_confidence_passes(build, make_user):
    user = make_user(Tier.PREMIUM)
    oracle = FakeOracle({"A": 20, "B": 80, "C": 500})
    orch = build([job("A", "Acme"), job("B", "Beta"), job("C", "Core")], oracle=oracle, min_match_score=50)

    summary = orch.run_for_user(user.user_id)

    assert sorted(r.job_title for r in summary.records) == ["B", "C"]


def test_source_failure_is_ignored(build, make_user):
    user = make_user(Tier.PREMIUM)
    orch = build(sources=[BrokenSource(), StaticSource([job("A", "Acme")])])
    summary = orch.run_for_user(user.user_id)
    assert summary.submitted == 1


def test_incomplete_profile_consumes_nothing(build, make_user, quota):
    user = make_user(cv_text="", criteria=JobCriteria())
    orch = build([job("A")])
    with pytest.raises(IncompleteProfile) as exc:
        orch.run_for_user(user.user_id)
    assert set(exc.value.missing_fields) == {"cv", "criteria.job_titles"}
    assert quota.status(user.user_id).used == 0
    assert not orch.is_running(user.user_id)


def test_exhausted_quota_is_rejected(build, make_user, quota):
    user = make_user(Tier.FREE)
    quota.reserve(user.user_id, 10)
    with pytest.raises(QuotaExceeded):
        build([job("A")]).run_for_user(user.user_id)


def test_cancel_stops_new_submissions(build, make_user, quota):
    user = make_user(Tier.PREMIUM)
    entered = threading.Event()
    release = threading.Event()

    class BlockingChannel(FakeChannel):
        def submit(self, user_id, candidate, cv_document):
            entered.set()
            release.wait(5)
            return super().submit(user_id, candidate, cv_document)

    channel = BlockingChannel()
    oracle = FakeOracle({t: 100 - i for i, t in enumerate("ABCD")})
    orch = build([job(t, f"Co{t}") for t in "ABCD"], channel=channel, oracle=oracle, concurrency=1)
    result = {}

    def run():
        result["summary"] = orch.run_for_user(user.user_id)

    worker = threading.Thread(target=run)
    worker.start()
    assert entered.wait(5)

    with pytest.raises(RunAlreadyInProgress):
        orch.run_for_user(user.user_id)
    assert orch.cancel(user.user_id)

    release.set()
    worker.join(10)

    summary = result["summary"]
    assert summary.cancelled
    assert statuses(summary) == [ApplicationStatus.SUBMITTED] + [ApplicationStatus.SKIPPED] * 3
    assert all(r.error == "run cancelled" for r in summary.records[1:])
    assert quota.status(user.user_id).used == 1
    assert not orch.cancel(user.user_id)


def test_concurrent_runs_never_double_submit(build, make_user, tracker):
    user = make_user(Tier.PREMIUM)
    postings = [job(t, f"Co{t}") for t in "ABC"]
    channel = FakeChannel(default="hang", hang_seconds=0.05)
    # two engines over one database, as two processes would be
    orchestrators = [build(postings, channel=channel, max_batch_size=5) for _ in range(2)]
    errors = []

    def run(orch):
        try:
            orch.run_for_user(user.user_id)
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=run, args=(o,)) for o in orchestrators]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert errors == []
    submitted = Counter(
        r.job_fingerprint for r in tracker.get_applications(user.user_id)
        if r.status is ApplicationStatus.SUBMITTED
    )
    assert submitted == {candidate_fingerprint(p): 1 for p in postings}


def test_notifications_per_record_plus_run_completed(build, make_user, db):
    user = make_user(Tier.PREMIUM)
    store = StoreSink(db)
    channel = FakeChannel({"Beta": "reject"})
    orch = build([job("A", "Acme"), job("B", "Beta")], channel=channel, sinks=[ExplodingSink(), store])

    summary = orch.run_for_user(user.user_id)

    events = store.list(user.user_id)
    kinds = Counter(e.kind for e in events)
    assert kinds == {
        EventKind.APPLICATION_SENT: 1,
        EventKind.APPLICATION_FAILED: 1,
        EventKind.RUN_COMPLETED: 1,
    }
    completed = next(e for e in events if e.kind is EventKind.RUN_COMPLETED)
    assert completed.payload["runId"] == summary.run_id
    assert completed.payload["submitted"] == 1


def test_storage_failure_aborts_and_releases(build, make_user, quota, tracker, monkeypatch):
    user = make_user(Tier.PREMIUM)
    orch = build([job("A", "Acme"), job("B", "Beta")], concurrency=1)

    def broken_claim(*args, **kwargs):
        raise StorageError("disk I/O error")

    monkeypatch.setattr(tracker, "claim", broken_claim)
    with pytest.raises(StorageError):
        orch.run_for_user(user.user_id)
    assert quota.status(user.user_id).used == 0
    assert not orch.is_running(user.user_id)


class LetterOracle(FakeOracle):
    """Scores normally; ``generate`` sleeps or raises."""

    def __init__(self, *, delay: float = 0.0, error: Exception | None = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.delay = delay
        self.error = error
        self.generated = 0

    def generate(self, prompt, *, max_tokens=400):
        with self._lock:
            self.generated += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return "Dear team, written by the oracle."


def test_unexpected_scoring_error_does_not_abort_run(build, make_user, quota):
    class GarbledOracle(FakeOracle):
        def score(self, criteria, cv_analysis, job_description):
            raise RuntimeError("bad gateway payload")

    user = make_user(Tier.PREMIUM)
    orch = build([job("A", "Acme")], oracle=GarbledOracle(), min_match_score=50)

    summary = orch.run_for_user(user.user_id)

    assert statuses(summary) == [ApplicationStatus.SUBMITTED]
    assert quota.status(user.user_id).used == 1


def test_slow_cover_letter_falls_back_to_template(build, make_user):
    user = make_user(Tier.PREMIUM)
    channel = FakeChannel()
    orch = build([job("A", "Acme")], oracle=LetterOracle(delay=1.5), channel=channel, call_timeout=0.05)

    started = time.monotonic()
    summary = orch.run_for_user(user.user_id)

    assert time.monotonic() - started < 1.0
    assert statuses(summary) == [ApplicationStatus.SUBMITTED]
    assert channel.documents[0].cover_letter.startswith("Dear Hiring Team")


def test_broken_cover_letter_falls_back_to_template(build, make_user):
    user = make_user(Tier.PREMIUM)
    channel = FakeChannel()
    orch = build([job("A", "Acme")], oracle=LetterOracle(error=ValueError("malformed completion")),
                 channel=channel)

    summary = orch.run_for_user(user.user_id)

    assert statuses(summary) == [ApplicationStatus.SUBMITTED]
    assert channel.documents[0].cover_letter.startswith("Dear Hiring Team")


def test_cover_letter_breaker_stops_calling_oracle(build, make_user):
    user = make_user(Tier.PREMIUM)
    oracle = LetterOracle(error=RuntimeError("completion missing"))
    orch = build([job(t, f"Co{t}") for t in "ABCDE"], oracle=oracle, concurrency=1, breaker_threshold=2)

    summary = orch.run_for_user(user.user_id)

    assert summary.submitted == 5
    assert oracle.generated == 2


def test_oracle_letter_is_used_when_available(build, make_user):
    user = make_user(Tier.PREMIUM)
    channel = FakeChannel()
    orch = build([job("A", "Acme")], oracle=LetterOracle(), channel=channel)

    orch.run_for_user(user.user_id)

    assert channel.documents[0].cover_letter == "Dear team, written by the oracle."
