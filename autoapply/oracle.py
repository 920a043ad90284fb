"""Scoring/generation oracle: Groq (OpenAI-compatible) or a keyword fallback.

Both implementations share one contract:

* ``score(criteria, cv_analysis, job_description)`` returns the raw oracle
  payload ``{"score": ..., "strengths": [...], "weaknesses": [...]}``.
  The payload is not trusted; JobMatcher validates and clamps it.
* ``generate(prompt)`` returns free text (cover letters).

Any transport, timeout or parse failure is raised as ``OracleUnavailable``.
"""
from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from typing import Any

from autoapply.config import Settings
from autoapply.errors import OracleUnavailable
from autoapply.log import get_logger
from autoapply.models import JobCriteria

log = get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"

_SCORE_PROMPT = """You are screening a job posting for a candidate.
Candidate CV analysis:
{cv_analysis}

Candidate search criteria (JSON):
{criteria}

Job posting (excerpt):
{job_description}

Rate how well the posting fits the candidate from 0 to 100.
Respond with JSON only: {{"score": <number>, "strengths": [<short strings>], "weaknesses": [<short strings>]}}"""


class ScoringOracle(ABC):
    @abstractmethod
    def score(self, criteria: JobCriteria, cv_analysis: str, job_description: str) -> dict[str, Any]:
        pass

    @abstractmethod
    def generate(self, prompt: str, *, max_tokens: int = 400) -> str:
        pass


class GroqOracle(ScoringOracle):
    def __init__(self, api_key: str, model: str, *, timeout: float = 15.0) -> None:
        from openai import OpenAI

        self.model = model
        self.client = OpenAI(api_key=api_key, base_url=GROQ_BASE_URL, timeout=timeout, max_retries=0)

    def _chat(self, prompt: str, *, max_tokens: int, json_mode: bool = False) -> str:
        from openai import OpenAIError

        kwargs: dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            r = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=max_tokens,
                **kwargs,
            )
        except OpenAIError as exc:
            raise OracleUnavailable(f"Groq call failed: {exc}") from exc
        try:
            content = r.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as exc:
            raise OracleUnavailable("Groq returned an empty completion") from exc
        return (content or "").strip()

    def score(self, criteria: JobCriteria, cv_analysis: str, job_description: str) -> dict[str, Any]:
        prompt = _SCORE_PROMPT.format(
            cv_analysis=cv_analysis[:3000] or "(none)",
            criteria=json.dumps(criteria.to_dict()),
            job_description=job_description[:3000],
        )
        content = self._chat(prompt, max_tokens=300, json_mode=True)
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise OracleUnavailable(f"Oracle returned non-JSON: {content[:80]!r}") from exc
        if not isinstance(data, dict):
            raise OracleUnavailable("Oracle returned a non-object payload")
        return data

    def generate(self, prompt: str, *, max_tokens: int = 400) -> str:
        return self._chat(prompt, max_tokens=max_tokens)


def _norm(s: str) -> str:
    return (s or "").lower().strip()


def _word_overlap_ratio(role: str, text: str) -> float:
    """Fraction of words in *role* found in *text*; needs two shared words."""
    role_words = set(role.lower().split())
    text_words = set(text.lower().split())
    overlap = role_words & text_words
    if not role_words or (len(overlap) < 2 and len(role_words) > 1):
        return 0.0
    return len(overlap) / len(role_words)


class KeywordOracle(ScoringOracle):
    """Offline rule-based scorer used when no LLM key is configured.

    Points (max 100):
      - Job title in posting title (exact)         → 40
      - Job title in posting title (overlap ≥ 60%) → 35
      - Job title in description only              → 15
      - Skills, 5 each                             → up to 25
      - Location / remote fit                      → 15 (8 if willing to relocate)
      - Keywords, 5 each                           → up to 10
      - Experience level mentioned                 → 10
    """

    def score(self, criteria: JobCriteria, cv_analysis: str, job_description: str) -> dict[str, Any]:
        text = _norm(job_description)
        title_line = text.split("\n", 1)[0]
        strengths: list[str] = []
        weaknesses: list[str] = []
        score = 0.0

        best = 0.0
        best_title = ""
        for raw in criteria.job_titles:
            role = _norm(raw)
            if not role:
                continue
            if role in title_line:
                pts = 40.0
            elif _word_overlap_ratio(role, title_line) >= 0.6:
                pts = 35.0
            elif role in text:
                pts = 15.0
            else:
                pts = 0.0
            if pts > best:
                best, best_title = pts, raw
        score += best
        if best_title:
            strengths.append(f"Title match: {best_title}")
        else:
            weaknesses.append("No target job title found")

        matched_skills = [s for s in criteria.skills if _norm(s) and _norm(s) in text]
        score += min(5.0 * len(matched_skills), 25.0)
        if matched_skills:
            strengths.append(f"Skills: {', '.join(matched_skills[:5])}")
        missing = [s for s in criteria.skills if s not in matched_skills]
        if missing:
            weaknesses.append(f"Skills not mentioned: {', '.join(missing[:5])}")

        remote = "remote" in text
        if criteria.remote_preference == "remote-only" and remote:
            score += 15.0
            strengths.append("Remote position")
        elif any(_norm(loc) and _norm(loc) in text for loc in criteria.locations):
            score += 15.0
            strengths.append("Location match")
        elif criteria.willing_to_relocate:
            score += 8.0
            strengths.append("Open to relocation")
        else:
            weaknesses.append("Location outside preferences")

        matched_keywords = [k for k in criteria.keywords if _norm(k) and _norm(k) in text]
        score += min(5.0 * len(matched_keywords), 10.0)
        if matched_keywords:
            strengths.append(f"Keywords: {', '.join(matched_keywords[:4])}")

        level = _norm(criteria.experience_level or "")
        if level and re.search(rf"\b{re.escape(level)}\b", text):
            score += 10.0
            strengths.append("Experience level fit")

        return {"score": min(score, 100.0), "strengths": strengths, "weaknesses": weaknesses}

    def generate(self, prompt: str, *, max_tokens: int = 400) -> str:
        raise OracleUnavailable("Keyword oracle does not generate text")


def get_oracle(settings: Settings) -> ScoringOracle:
    if settings.groq_api_key:
        log.info("Scoring oracle: Groq (%s)", settings.groq_model)
        return GroqOracle(settings.groq_api_key, settings.groq_model, timeout=settings.oracle_timeout_seconds)
    log.info("No GROQ_API_KEY — using keyword oracle")
    return KeywordOracle()
