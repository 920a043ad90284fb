from __future__ import annotations

from datetime import timedelta

import pytest

from autoapply.dedup import candidate_fingerprint, fingerprint
from autoapply.db import utcnow
from autoapply.errors import InvariantViolation
from autoapply.models import ApplicationStatus, EventKind, MatchResult, Tier

from conftest import job


def test_fingerprint_normalizes_case_and_whitespace():
    a = fingerprint("Backend  Engineer", "ACME", " Remote ")
    b = fingerprint("backend engineer", "acme", "remote")
    assert a == b
    assert len(a) == 64


def test_fingerprint_ignores_url():
    one = job("Backend Engineer", url="https://a.example.com/1")
    two = job("Backend Engineer", url="https://b.example.com/99")
    assert candidate_fingerprint(one) == candidate_fingerprint(two)


def test_fingerprint_fields_do_not_bleed():
    assert fingerprint("ab", "c", "") != fingerprint("a", "bc", "")


def test_filter_unseen_keeps_order_and_drops_submitted(make_user, tracker, dedup):
    user = make_user()
    jobs = [job("A"), job("B"), job("C")]
    m = MatchResult(candidate=jobs[1], score=80)
    record = tracker.claim(user.user_id, "run-1", m, candidate_fingerprint(jobs[1]))

    # a live claim is not yet "seen"
    assert [c.title for c in dedup.filter_unseen(user.user_id, jobs)] == ["A", "B", "C"]

    tracker.complete(record.id, "ref-1")
    assert [c.title for c in dedup.filter_unseen(user.user_id, jobs)] == ["A", "C"]
    assert dedup.is_seen(user.user_id, candidate_fingerprint(jobs[1]))


def test_seen_is_per_user(make_user, tracker, dedup):
    alice, bob = make_user(), make_user()
    posting = job("Backend Engineer")
    fp = candidate_fingerprint(posting)
    rec = tracker.claim(alice.user_id, "run-1", MatchResult(candidate=posting, score=70), fp)
    tracker.complete(rec.id)
    assert dedup.is_seen(alice.user_id, fp)
    assert not dedup.is_seen(bob.user_id, fp)


def test_second_live_claim_is_rejected(make_user, tracker):
    user = make_user()
    posting = job("Backend Engineer")
    fp = candidate_fingerprint(posting)
    m = MatchResult(candidate=posting, score=70)
    tracker.claim(user.user_id, "run-1", m, fp)
    with pytest.raises(InvariantViolation):
        tracker.claim(user.user_id, "run-2", m, fp)


def test_failed_posting_can_be_claimed_again(make_user, tracker):
    user = make_user()
    posting = job("Backend Engineer")
    fp = candidate_fingerprint(posting)
    m = MatchResult(candidate=posting, score=70)
    first = tracker.claim(user.user_id, "run-1", m, fp)
    tracker.fail(first.id, "timeout")
    second = tracker.claim(user.user_id, "run-2", m, fp)
    assert second.status is ApplicationStatus.SUBMITTING


def test_terminal_records_are_immutable(make_user, tracker):
    user = make_user()
    posting = job("Backend Engineer")
    fp = candidate_fingerprint(posting)
    rec = tracker.claim(user.user_id, "run-1", MatchResult(candidate=posting, score=70), fp)
    done = tracker.complete(rec.id, "ref-9")
    assert done.status is ApplicationStatus.SUBMITTED
    assert done.external_ref == "ref-9"
    with pytest.raises(InvariantViolation):
        tracker.fail(rec.id, "late failure")
    with pytest.raises(InvariantViolation):
        tracker.complete(rec.id)
    assert tracker.get(rec.id).status is ApplicationStatus.SUBMITTED


def test_record_terminal_only_for_skipped_or_failed(make_user, tracker):
    user = make_user()
    posting = job("Backend Engineer")
    m = MatchResult(candidate=posting, score=10)
    skipped = tracker.record_terminal(
        user.user_id, "run-1", m, candidate_fingerprint(posting), ApplicationStatus.SKIPPED, "quota exhausted"
    )
    assert skipped.status is ApplicationStatus.SKIPPED
    assert skipped.error == "quota exhausted"
    with pytest.raises(ValueError):
        tracker.record_terminal(user.user_id, "run-1", m, "fp", ApplicationStatus.SUBMITTED)


def test_fail_stale_claims(make_user, tracker):
    user = make_user()
    posting = job("Backend Engineer")
    fp = candidate_fingerprint(posting)
    rec = tracker.claim(user.user_id, "run-1", MatchResult(candidate=posting, score=70), fp)
    assert tracker.fail_stale_claims(user.user_id, timedelta(minutes=15)) == 0
    later = utcnow() + timedelta(hours=1)
    assert tracker.fail_stale_claims(user.user_id, timedelta(minutes=15), now=later) == 1
    stale = tracker.get(rec.id)
    assert stale.status is ApplicationStatus.FAILED
    assert "abandoned" in stale.error


def test_stale_claim_sweep_keeps_its_unit_spent(make_user, tracker, quota):
    user = make_user(Tier.PREMIUM)
    quota.reserve(user.user_id, 1)
    posting = job("Backend Engineer")
    tracker.claim(user.user_id, "crashed-run", MatchResult(candidate=posting, score=70),
                  candidate_fingerprint(posting))

    later = utcnow() + timedelta(hours=1)
    assert tracker.fail_stale_claims(user.user_id, timedelta(minutes=15), now=later) == 1
    # the sweep fails the record only; quota is untouched
    assert quota.status(user.user_id).used == 1


def test_feedback_event_requires_submitted_record(make_user, tracker):
    user = make_user()
    posting = job("Backend Engineer")
    fp = candidate_fingerprint(posting)
    rec = tracker.claim(user.user_id, "run-1", MatchResult(candidate=posting, score=70), fp)
    with pytest.raises(InvariantViolation):
        tracker.feedback_event(user.user_id, rec.id)
    tracker.complete(rec.id)
    event = tracker.feedback_event(user.user_id, rec.id, interview=True)
    assert event.kind is EventKind.INTERVIEW_SCHEDULED
    assert event.payload["applicationId"] == rec.id
    with pytest.raises(KeyError):
        tracker.feedback_event(user.user_id + 1, rec.id)
