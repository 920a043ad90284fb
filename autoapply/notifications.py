"""Tagged notification events and the sinks that deliver them.

Delivery is fire-and-forget: a sink that raises is logged and skipped, it
never fails the run that produced the event.
"""
from __future__ import annotations

import json
import smtplib
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from autoapply.config import Settings, get_env
from autoapply.db import Database, from_iso, to_iso
from autoapply.log import get_logger
from autoapply.models import (
    ApplicationRecord,
    ApplicationStatus,
    EventKind,
    NotificationEvent,
    RunSummary,
)
from autoapply.profiles import ProfileStore
from autoapply.report import build_run_report, md_to_html
from autoapply.retry import retry

log = get_logger(__name__)

_KIND_BY_STATUS = {
    ApplicationStatus.SUBMITTED: EventKind.APPLICATION_SENT,
    ApplicationStatus.FAILED: EventKind.APPLICATION_FAILED,
    ApplicationStatus.SKIPPED: EventKind.APPLICATION_SKIPPED,
}


def event_for_record(record: ApplicationRecord, run_id: str) -> NotificationEvent:
    if not record.status.terminal:
        raise ValueError(f"record #{record.id} is not terminal ({record.status.value})")
    payload = {
        "runId": run_id,
        "applicationId": record.id,
        "jobTitle": record.job_title,
        "company": record.company,
        "matchScore": record.match_score,
        "jobUrl": record.job_url,
    }
    if record.error:
        payload["reason"] = record.error
    return NotificationEvent(kind=_KIND_BY_STATUS[record.status], user_id=record.user_id, payload=payload)


class NotificationSink(ABC):
    name = "sink"

    @abstractmethod
    def notify(self, user_id: int, event: NotificationEvent, summary: RunSummary | None = None) -> None:
        pass


class LogSink(NotificationSink):
    name = "log"

    def notify(self, user_id: int, event: NotificationEvent, summary: RunSummary | None = None) -> None:
        log.info("notify user %d: %s %s", user_id, event.kind.value, json.dumps(event.payload, default=str))


class StoreSink(NotificationSink):
    """Persists events so the app can list them."""

    name = "store"

    def __init__(self, db: Database) -> None:
        self.db = db

    def notify(self, user_id: int, event: NotificationEvent, summary: RunSummary | None = None) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO notifications (user_id, kind, payload, created_at) VALUES (?, ?, ?, ?)",
                (user_id, event.kind.value, json.dumps(event.payload, default=str), to_iso(event.created_at)),
            )

    def list(self, user_id: int, limit: int = 50) -> list[NotificationEvent]:
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM notifications WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [
            NotificationEvent(
                kind=EventKind(r["kind"]),
                user_id=r["user_id"],
                payload=json.loads(r["payload"]),
                created_at=from_iso(r["created_at"]),
            )
            for r in rows
        ]


@retry(max_attempts=3, base_delay=3.0, retryable=(smtplib.SMTPException, OSError))
def _smtp_send(host: str, port: int, user: str, password: str,
               from_addr: str, to_addr: str, msg: MIMEMultipart) -> None:
    with smtplib.SMTP(host, port, timeout=20) as server:
        server.starttls()
        server.login(user, password)
        server.sendmail(from_addr, [to_addr], msg.as_string())


class EmailSink(NotificationSink):
    """E-mails the run report to the user; ignores per-application events."""

    name = "email"

    def __init__(self, profiles: ProfileStore) -> None:
        self.profiles = profiles

    def notify(self, user_id: int, event: NotificationEvent, summary: RunSummary | None = None) -> None:
        if event.kind is not EventKind.RUN_COMPLETED or summary is None:
            return
        host = get_env("SMTP_HOST")
        user = get_env("SMTP_USER")
        password = get_env("SMTP_PASSWORD")
        if not all([host, user, password]):
            log.debug("SMTP not configured, run report e-mail skipped")
            return
        try:
            port = int(get_env("SMTP_PORT", "587"))
        except ValueError:
            port = 587
        to_addr = self.profiles.get(user_id).email
        from_addr = get_env("FROM_EMAIL", user)

        body = build_run_report(summary)
        msg = MIMEMultipart("alternative")
        msg["Subject"] = f"{summary.submitted} job application(s) sent"
        msg["From"] = from_addr
        msg["To"] = to_addr
        msg.attach(MIMEText(body, "plain", "utf-8"))
        msg.attach(MIMEText(md_to_html(body), "html", "utf-8"))
        _smtp_send(host, port, user, password, from_addr, to_addr, msg)
        log.info("Run report e-mailed to %s", to_addr)


class NotificationDispatcher:
    def __init__(self, sinks: list[NotificationSink]) -> None:
        self.sinks = sinks

    def dispatch(self, event: NotificationEvent, summary: RunSummary | None = None) -> int:
        """Deliver to every sink; returns how many sinks succeeded."""
        delivered = 0
        for sink in self.sinks:
            try:
                sink.notify(event.user_id, event, summary)
                delivered += 1
            except Exception as exc:
                log.error("Notification sink %s failed for user %d (%s): %s",
                          sink.name, event.user_id, event.kind.value, exc)
        return delivered

    def dispatch_run(self, summary: RunSummary) -> None:
        """One event per terminal record, then one run summary event."""
        for record in summary.records:
            self.dispatch(event_for_record(record, summary.run_id))
        self.dispatch(
            NotificationEvent(
                kind=EventKind.RUN_COMPLETED,
                user_id=summary.user_id,
                payload={
                    "runId": summary.run_id,
                    "submitted": summary.submitted,
                    "failed": summary.failed,
                    "skipped": summary.skipped,
                    "nextResetAt": summary.next_reset_at.isoformat(),
                    "cancelled": summary.cancelled,
                },
            ),
            summary,
        )


def get_dispatcher(settings: Settings, db: Database, profiles: ProfileStore) -> NotificationDispatcher:
    sinks: list[NotificationSink] = []
    for name in settings.notification_sinks:
        key = name.lower()
        if key == "store":
            sinks.append(StoreSink(db))
        elif key == "log":
            sinks.append(LogSink())
        elif key == "email":
            sinks.append(EmailSink(profiles))
        else:
            log.warning("Unknown notification sink %r ignored", name)
    return NotificationDispatcher(sinks)
