"""Mock job source for tests, demos and fallback when APIs return no jobs."""
from __future__ import annotations

from autoapply.log import get_logger
from autoapply.models import JobCandidate, JobCriteria
from autoapply.sources.base import JobSource

log = get_logger(__name__)


class MockSource(JobSource):
    name = "mock"

    def list_candidates(self, criteria: JobCriteria, limit: int = 30) -> list[JobCandidate]:
        title = criteria.job_titles[0] if criteria.job_titles else "Software Engineer"
        city = criteria.locations[0] if criteria.locations else "Paris"
        log.info("MockSource generating sample jobs")
        jobs = [
            JobCandidate(
                source_id="mock-1",
                title=title,
                company="TechCorp",
                location=city,
                description=f"We are hiring a {title} to join the platform team. Python, cloud, on-call.",
                detected_language="en",
                url="https://example.com/job/1",
                source=self.name,
            ),
            JobCandidate(
                source_id="mock-2",
                title=f"Senior {title}",
                company="CloudScale",
                location="Remote",
                description="Distributed systems and customer-facing escalations for a SaaS product.",
                detected_language="en",
                url="https://example.com/job/2",
                source=self.name,
            ),
            JobCandidate(
                source_id="mock-3",
                title=title,
                company="Société Générale du Logiciel",
                location=city,
                description="Nous recherchons un profil pour le développement de la plateforme et des outils internes.",
                detected_language="fr",
                url="https://example.com/job/3",
                source=self.name,
            ),
        ]
        return jobs[:limit]
