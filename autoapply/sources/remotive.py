"""Remotive: free API for remote tech jobs (no API key required).

Docs: https://remotive.com/api/remote-jobs
"""
from __future__ import annotations

import re

import requests

from autoapply.log import get_logger
from autoapply.models import JobCandidate, JobCriteria
from autoapply.retry import retry
from autoapply.sources.base import JobSource, detect_language

log = get_logger(__name__)

API_URL = "https://remotive.com/api/remote-jobs"

_TAGS = re.compile(r"<[^>]+>")
_GENERIC = {"senior", "junior", "lead", "staff", "principal", "manager",
            "engineer", "specialist", "consultant", "ii", "iii", "iv"}


def _search_terms(criteria: JobCriteria) -> list[str]:
    """Remotive works best with short, distinctive terms, not full titles."""
    terms: list[str] = []
    for title in criteria.job_titles[:3]:
        distinctive = [w for w in title.lower().split() if w not in _GENERIC]
        term = distinctive[0] if distinctive else title.lower()
        if term not in terms:
            terms.append(term)
    return terms or ["engineer"]


class RemotiveSource(JobSource):
    name = "remotive"

    def __init__(self, timeout: float = 15.0) -> None:
        self.timeout = timeout

    @retry(max_attempts=2, base_delay=1.5, retryable=(requests.RequestException, OSError))
    def _fetch(self, search: str, limit: int) -> list[JobCandidate]:
        r = requests.get(API_URL, params={"limit": limit, "search": search}, timeout=self.timeout)
        r.raise_for_status()
        data = r.json()

        jobs: list[JobCandidate] = []
        for hit in data.get("jobs", []):
            desc = _TAGS.sub(" ", hit.get("description", ""))
            tags = hit.get("tags", [])
            if tags:
                desc += " " + " ".join(tags)
            jobs.append(
                JobCandidate(
                    source_id=str(hit.get("id", "")),
                    title=hit.get("title", ""),
                    company=hit.get("company_name", ""),
                    location=hit.get("candidate_required_location") or "Remote",
                    description=desc,
                    detected_language=detect_language(desc),
                    url=hit.get("url", ""),
                    source=self.name,
                )
            )
        return jobs

    def list_candidates(self, criteria: JobCriteria, limit: int = 30) -> list[JobCandidate]:
        found: list[JobCandidate] = []
        for term in _search_terms(criteria):
            try:
                batch = self._fetch(term, limit)
            except (requests.RequestException, OSError) as exc:
                log.warning("Remotive search=%r error: %s", term, exc)
                continue
            log.debug("Remotive search=%r returned %d jobs", term, len(batch))
            found.extend(batch)
        return found[:limit]
