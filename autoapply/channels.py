"""Submission channels: where an application is actually sent.

A channel returns ``SubmissionResult(accepted=False)`` or raises
``SubmissionRejected`` when the other side refuses the application, and
raises ``SubmissionTransientError`` for network trouble that is worth
retrying.
"""
from __future__ import annotations

import smtplib
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from urllib.parse import urlparse

import requests

from autoapply.config import Settings, get_env
from autoapply.errors import SubmissionRejected, SubmissionTransientError
from autoapply.log import get_logger
from autoapply.models import JobCandidate, SubmissionResult

log = get_logger(__name__)


@dataclass(frozen=True)
class CvDocument:
    applicant_name: str
    applicant_email: str
    cv_text: str
    cover_letter: str = ""


class SubmissionChannel(ABC):
    name = "channel"

    @abstractmethod
    def submit(self, user_id: int, candidate: JobCandidate, cv_document: CvDocument) -> SubmissionResult:
        pass


class DryRunChannel(SubmissionChannel):
    """Accepts everything without contacting anyone."""

    name = "dryrun"

    def submit(self, user_id: int, candidate: JobCandidate, cv_document: CvDocument) -> SubmissionResult:
        ref = f"dryrun-{uuid.uuid4().hex[:12]}"
        log.info("[dry-run] user %d → %s @ %s (%s)", user_id, candidate.title, candidate.company, ref)
        return SubmissionResult(accepted=True, external_ref=ref)


class EmailChannel(SubmissionChannel):
    """Sends the application by e-mail to ``mailto:`` postings."""

    name = "email"

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        from_addr: str,
        *,
        timeout: float = 20.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_addr = from_addr or user
        self.timeout = timeout

    @classmethod
    def from_env(cls, timeout: float = 20.0) -> EmailChannel:
        try:
            port = int(get_env("SMTP_PORT", "587"))
        except ValueError:
            port = 587
        return cls(
            get_env("SMTP_HOST"),
            port,
            get_env("SMTP_USER"),
            get_env("SMTP_PASSWORD"),
            get_env("FROM_EMAIL", get_env("SMTP_USER")),
            timeout=timeout,
        )

    def _build(self, to_addr: str, candidate: JobCandidate, cv: CvDocument) -> MIMEMultipart:
        msg = MIMEMultipart()
        msg["Subject"] = f"Application: {candidate.title} — {cv.applicant_name or cv.applicant_email}"
        msg["From"] = self.from_addr
        msg["To"] = to_addr
        msg["Reply-To"] = cv.applicant_email
        msg.attach(MIMEText(cv.cover_letter or f"Application for {candidate.title}.", "plain", "utf-8"))
        cv_part = MIMEText(cv.cv_text, "plain", "utf-8")
        cv_part.add_header("Content-Disposition", "attachment", filename="cv.txt")
        msg.attach(cv_part)
        return msg

    def submit(self, user_id: int, candidate: JobCandidate, cv_document: CvDocument) -> SubmissionResult:
        parsed = urlparse(candidate.url)
        if parsed.scheme != "mailto" or not parsed.path:
            raise SubmissionRejected(f"no application address for {candidate.url or 'posting'}")
        if not all([self.host, self.user, self.password]):
            raise SubmissionRejected("SMTP not configured (set SMTP_HOST, SMTP_USER, SMTP_PASSWORD)")
        to_addr = parsed.path
        msg = self._build(to_addr, candidate, cv_document)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.user, self.password)
                server.sendmail(self.from_addr, [to_addr], msg.as_string())
        except smtplib.SMTPRecipientsRefused as exc:
            raise SubmissionRejected(f"recipient refused: {to_addr}") from exc
        except smtplib.SMTPResponseException as exc:
            if 400 <= exc.smtp_code < 500:
                raise SubmissionTransientError(f"SMTP {exc.smtp_code}: {exc.smtp_error!r}") from exc
            raise SubmissionRejected(f"SMTP {exc.smtp_code}: {exc.smtp_error!r}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise SubmissionTransientError(f"SMTP error: {exc}") from exc
        log.info("Application e-mailed to %s for user %d", to_addr, user_id)
        return SubmissionResult(accepted=True, external_ref=msg["Subject"])


class WebhookChannel(SubmissionChannel):
    """POSTs the application to a platform adapter over HTTP."""

    name = "webhook"

    def __init__(self, url: str, *, timeout: float = 20.0, session: requests.Session | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def submit(self, user_id: int, candidate: JobCandidate, cv_document: CvDocument) -> SubmissionResult:
        body = {
            "userId": user_id,
            "job": {
                "sourceId": candidate.source_id,
                "title": candidate.title,
                "company": candidate.company,
                "location": candidate.location,
                "url": candidate.url,
            },
            "applicant": {"name": cv_document.applicant_name, "email": cv_document.applicant_email},
            "cv": cv_document.cv_text,
            "coverLetter": cv_document.cover_letter,
        }
        try:
            r = self.session.post(self.url, json=body, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise SubmissionTransientError(f"webhook unreachable: {exc}") from exc
        except requests.RequestException as exc:
            raise SubmissionRejected(f"webhook request invalid: {exc}") from exc

        if r.status_code == 429 or r.status_code >= 500:
            raise SubmissionTransientError(f"webhook HTTP {r.status_code}")
        if r.status_code >= 400:
            return SubmissionResult(accepted=False, reason=f"HTTP {r.status_code}: {r.text[:120]}")
        try:
            data = r.json()
        except ValueError:
            data = {}
        accepted = bool(data.get("accepted", True))
        return SubmissionResult(
            accepted=accepted,
            external_ref=data.get("externalRef"),
            reason=str(data.get("reason", "")),
        )


def get_channel(settings: Settings) -> SubmissionChannel:
    name = settings.channel.lower()
    if name == "email":
        return EmailChannel.from_env(timeout=settings.submit_timeout_seconds)
    if name == "webhook":
        if not settings.webhook_url:
            raise ValueError("SUBMISSION_WEBHOOK_URL is required for the webhook channel")
        return WebhookChannel(settings.webhook_url, timeout=settings.submit_timeout_seconds)
    if name != "dryrun":
        log.warning("Unknown submission channel %r — using dry-run", settings.channel)
    return DryRunChannel()
