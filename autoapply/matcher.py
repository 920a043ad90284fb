"""Filter candidates on hard eligibility rules and rank them with the oracle."""
from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from autoapply.breaker import CircuitBreaker
from autoapply.errors import CircuitOpen, OracleUnavailable
from autoapply.log import get_logger
from autoapply.models import JobCandidate, JobCriteria, MatchResult, UserProfile
from autoapply.oracle import ScoringOracle
from autoapply.retry import CallTimeout, call_with_timeout

log = get_logger(__name__)


def clamp_score(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


def _as_strings(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None][:10]


def _excluded_by_keywords(candidate: JobCandidate, criteria: JobCriteria) -> str | None:
    text = f"{candidate.title} {candidate.description}".lower()
    for kw in criteria.exclude_keywords:
        k = kw.lower().strip()
        if k and k in text:
            return kw
    return None


class JobMatcher:
    def __init__(
        self,
        oracle: ScoringOracle,
        *,
        timeout: float = 15.0,
        concurrency: int = 4,
        breaker_threshold: int = 3,
    ) -> None:
        self.oracle = oracle
        self.timeout = timeout
        self.concurrency = max(1, concurrency)
        self.breaker_threshold = breaker_threshold

    def eligible(
        self, profile: UserProfile, criteria: JobCriteria, candidates: list[JobCandidate]
    ) -> list[JobCandidate]:
        """Hard filters: spoken language and excluded keywords. Never a score penalty."""
        languages = {lang.lower() for lang in profile.spoken_languages}
        kept: list[JobCandidate] = []
        for c in candidates:
            if c.detected_language.lower() not in languages:
                log.debug("Excluded %s @ %s: language %s not spoken", c.title, c.company, c.detected_language)
                continue
            hit = _excluded_by_keywords(c, criteria)
            if hit:
                log.debug("Excluded %s @ %s: contains %r", c.title, c.company, hit)
                continue
            kept.append(c)
        return kept

    def _score_one(
        self,
        breaker: CircuitBreaker,
        profile: UserProfile,
        criteria: JobCriteria,
        candidate: JobCandidate,
    ) -> MatchResult:
        job_text = f"{candidate.title}\n{candidate.company} — {candidate.location}\n{candidate.description}"
        try:
            payload = breaker.call(
                call_with_timeout,
                self.oracle.score,
                self.timeout,
                criteria,
                profile.cv_analysis or profile.cv_text,
                job_text,
            )
        except (OracleUnavailable, CallTimeout, CircuitOpen) as exc:
            log.warning("Oracle unavailable for %s @ %s: %s", candidate.title, candidate.company, exc)
            return MatchResult(candidate=candidate, score=0.0, low_confidence=True,
                               weaknesses=["Scoring unavailable"])
        except Exception as exc:
            log.warning("Oracle error for %s @ %s: %r", candidate.title, candidate.company, exc)
            return MatchResult(candidate=candidate, score=0.0, low_confidence=True,
                               weaknesses=["Scoring unavailable"])

        raw = payload.get("score") if isinstance(payload, dict) else None
        valid = (
            isinstance(raw, (int, float))
            and not isinstance(raw, bool)
            and math.isfinite(raw)
            and 0 <= raw <= 100
        )
        if not valid:
            log.warning("Oracle returned out-of-range score %r for %s @ %s",
                        raw, candidate.title, candidate.company)
            return MatchResult(candidate=candidate, score=0.0, low_confidence=True,
                               weaknesses=["Scoring returned an invalid value"])
        return MatchResult(
            candidate=candidate,
            score=clamp_score(raw),
            strengths=_as_strings(payload.get("strengths")),
            weaknesses=_as_strings(payload.get("weaknesses")),
        )

    def rank(
        self, profile: UserProfile, criteria: JobCriteria, candidates: list[JobCandidate]
    ) -> list[MatchResult]:
        """Descending by score; ties prefer the user's first language, then input order."""
        eligible = self.eligible(profile, criteria, candidates)
        if not eligible:
            log.info("User %d: no eligible candidates out of %d", profile.user_id, len(candidates))
            return []

        breaker = CircuitBreaker("oracle", self.breaker_threshold)
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="oracle") as pool:
            results = list(pool.map(
                lambda c: self._score_one(breaker, profile, criteria, c), eligible
            ))

        first_lang = profile.spoken_languages[0].lower() if profile.spoken_languages else ""
        order = {id(r): i for i, r in enumerate(results)}
        results.sort(key=lambda r: (
            -r.score,
            0 if r.candidate.detected_language.lower() == first_lang else 1,
            order[id(r)],
        ))
        low = sum(1 for r in results if r.low_confidence)
        log.info("User %d: ranked %d of %d candidates (%d low-confidence)",
                 profile.user_id, len(results), len(candidates), low)
        return results
