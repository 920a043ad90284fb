"""Data models for users, quota, candidates, applications and events."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Tier(str, Enum):
    FREE = "free"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    PREMIUM = "premium"


class WindowKind(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ApplicationStatus(str, Enum):
    SELECTED = "selected"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ApplicationStatus.SUBMITTED, ApplicationStatus.FAILED, ApplicationStatus.SKIPPED}
)


class EventKind(str, Enum):
    APPLICATION_SENT = "ApplicationSent"
    APPLICATION_FAILED = "ApplicationFailed"
    APPLICATION_SKIPPED = "ApplicationSkipped"
    RUN_COMPLETED = "RunCompleted"
    RESPONSE_RECEIVED = "ResponseReceived"
    INTERVIEW_SCHEDULED = "InterviewScheduled"


@dataclass
class JobCriteria:
    job_titles: list[str] = field(default_factory=list)
    locations: list[str] = field(default_factory=list)
    skills: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    exclude_keywords: list[str] = field(default_factory=list)
    experience_level: str | None = None
    remote_preference: str | None = None
    willing_to_relocate: bool = False
    salary_min: int | None = None
    salary_max: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> JobCriteria:
        data = data or {}
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class UserProfile:
    user_id: int
    email: str
    full_name: str = ""
    spoken_languages: list[str] = field(default_factory=lambda: ["en"])
    cv_text: str = ""
    cv_analysis: str = ""
    criteria: JobCriteria | None = None
    tier: Tier = Tier.FREE
    automation_active: bool = True

    def missing_fields(self) -> list[str]:
        missing: list[str] = []
        if not self.email:
            missing.append("email")
        if not self.cv_text.strip():
            missing.append("cv")
        if self.criteria is None:
            missing.append("criteria")
        elif not self.criteria.job_titles:
            missing.append("criteria.job_titles")
        if not self.spoken_languages:
            missing.append("spoken_languages")
        return missing


@dataclass
class UserQuotaState:
    user_id: int
    tier: Tier
    limit_per_day: int
    limit_per_window: int
    window_kind: WindowKind
    used_in_window: int
    window_start: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit_per_window - self.used_in_window)


@dataclass(frozen=True)
class Reservation:
    user_id: int
    granted: int
    window_start: datetime
    reset_at: datetime


@dataclass(frozen=True)
class QuotaStatus:
    user_id: int
    tier: Tier
    window_kind: WindowKind
    limit: int
    used: int
    remaining: int
    reset_at: datetime


@dataclass(frozen=True)
class JobCandidate:
    source_id: str
    title: str
    company: str
    location: str
    description: str
    detected_language: str
    url: str
    source: str = "unknown"


@dataclass
class MatchResult:
    candidate: JobCandidate
    score: float
    strengths: list[str] = field(default_factory=list)
    weaknesses: list[str] = field(default_factory=list)
    low_confidence: bool = False


@dataclass(frozen=True)
class SubmissionResult:
    accepted: bool
    external_ref: str | None = None
    reason: str = ""


@dataclass
class ApplicationRecord:
    id: int
    user_id: int
    job_fingerprint: str
    job_title: str
    company: str
    status: ApplicationStatus
    match_score: float
    applied_at: datetime
    job_url: str
    external_ref: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "jobFingerprint": self.job_fingerprint,
            "jobTitle": self.job_title,
            "company": self.company,
            "status": self.status.value,
            "matchScore": self.match_score,
            "appliedAt": self.applied_at.isoformat(),
            "jobUrl": self.job_url,
            "externalRef": self.external_ref,
            "error": self.error,
        }


@dataclass
class NotificationEvent:
    kind: EventKind
    user_id: int
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "userId": self.user_id,
            "payload": self.payload,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class RunSummary:
    run_id: str
    user_id: int
    submitted: int
    failed: int
    skipped: int
    next_reset_at: datetime
    candidates_found: int = 0
    cancelled: bool = False
    records: list[ApplicationRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "userId": self.user_id,
            "submitted": self.submitted,
            "failed": self.failed,
            "skipped": self.skipped,
            "nextResetAt": self.next_reset_at.isoformat(),
            "candidatesFound": self.candidates_found,
            "cancelled": self.cancelled,
            "records": [r.to_dict() for r in self.records],
        }
