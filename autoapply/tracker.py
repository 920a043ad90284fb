"""Track applications in an append-only SQLite table (the audit trail)."""
from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta

from autoapply.db import Database, from_iso, to_iso, utcnow
from autoapply.dedup import DeduplicationStore
from autoapply.errors import InvariantViolation
from autoapply.log import get_logger
from autoapply.models import (
    ApplicationRecord,
    ApplicationStatus,
    EventKind,
    MatchResult,
    NotificationEvent,
)

log = get_logger(__name__)


def _row_to_record(row) -> ApplicationRecord:
    return ApplicationRecord(
        id=row["id"],
        user_id=row["user_id"],
        job_fingerprint=row["fingerprint"],
        job_title=row["job_title"],
        company=row["company"],
        status=ApplicationStatus(row["status"]),
        match_score=row["match_score"],
        applied_at=from_iso(row["applied_at"]),
        job_url=row["job_url"],
        external_ref=row["external_ref"],
        error=row["error"],
    )


class ApplicationTracker:
    def __init__(self, db: Database, dedup: DeduplicationStore) -> None:
        self.db = db
        self.dedup = dedup

    def _insert(
        self,
        conn: sqlite3.Connection,
        user_id: int,
        run_id: str,
        match: MatchResult,
        fp: str,
        status: ApplicationStatus,
        error: str | None = None,
    ) -> int:
        job = match.candidate
        now = to_iso(utcnow())
        cur = conn.execute(
            """INSERT INTO applications (user_id, fingerprint, run_id, job_title, company,
                                         location, source, job_url, match_score, status,
                                         applied_at, updated_at, error)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                user_id, fp, run_id, job.title, job.company, job.location, job.source,
                job.url, float(match.score), status.value, now, now, error,
            ),
        )
        return cur.lastrowid

    def claim(self, user_id: int, run_id: str, match: MatchResult, fp: str) -> ApplicationRecord:
        """Create the record in ``submitting``; at most one live claim per posting."""
        try:
            with self.db.transaction() as conn:
                record_id = self._insert(conn, user_id, run_id, match, fp, ApplicationStatus.SUBMITTING)
        except sqlite3.IntegrityError as exc:
            raise InvariantViolation(
                f"posting {fp[:12]} already claimed or submitted for user {user_id}"
            ) from exc
        log.debug("Claimed %s @ %s for user %d [#%d]",
                  match.candidate.title, match.candidate.company, user_id, record_id)
        return self.get(record_id)

    def record_terminal(
        self,
        user_id: int,
        run_id: str,
        match: MatchResult,
        fp: str,
        status: ApplicationStatus,
        error: str | None = None,
    ) -> ApplicationRecord:
        """Write a record that never went through ``submitting`` (skipped/failed)."""
        if status not in (ApplicationStatus.SKIPPED, ApplicationStatus.FAILED):
            raise ValueError(f"cannot create a record directly in {status.value}")
        with self.db.transaction() as conn:
            record_id = self._insert(conn, user_id, run_id, match, fp, status, error)
        return self.get(record_id)

    def _transition(
        self,
        conn: sqlite3.Connection,
        record_id: int,
        new_status: ApplicationStatus,
        *,
        external_ref: str | None = None,
        error: str | None = None,
    ) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM applications WHERE id = ?", (record_id,)).fetchone()
        if row is None:
            raise InvariantViolation(f"application #{record_id} does not exist")
        current = ApplicationStatus(row["status"])
        if current.terminal:
            raise InvariantViolation(
                f"application #{record_id} is {current.value}; terminal records are immutable"
            )
        conn.execute(
            """UPDATE applications SET status = ?, external_ref = ?, error = ?, updated_at = ?
               WHERE id = ?""",
            (new_status.value, external_ref, error, to_iso(utcnow()), record_id),
        )
        return row

    def complete(self, record_id: int, external_ref: str | None = None) -> ApplicationRecord:
        """``submitting → submitted`` and mark the posting seen, in one transaction."""
        try:
            with self.db.transaction() as conn:
                row = self._transition(
                    conn, record_id, ApplicationStatus.SUBMITTED, external_ref=external_ref
                )
                self.dedup.mark_seen(conn, row["user_id"], row["fingerprint"], record_id)
        except sqlite3.IntegrityError as exc:
            raise InvariantViolation(f"application #{record_id} duplicates a seen posting") from exc
        return self.get(record_id)

    def fail(self, record_id: int, error: str) -> ApplicationRecord:
        with self.db.transaction() as conn:
            self._transition(conn, record_id, ApplicationStatus.FAILED, error=error[:500])
        return self.get(record_id)

    def get(self, record_id: int) -> ApplicationRecord:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM applications WHERE id = ?", (record_id,)).fetchone()
        if row is None:
            raise KeyError(record_id)
        return _row_to_record(row)

    def get_applications(self, user_id: int, limit: int = 100) -> list[ApplicationRecord]:
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM applications WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def count_by_status(self, user_id: int, status: ApplicationStatus) -> int:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM applications WHERE user_id = ? AND status = ?",
                (user_id, status.value),
            ).fetchone()
        return row["n"]

    def fail_stale_claims(self, user_id: int, older_than: timedelta, now: datetime | None = None) -> int:
        """Fail ``submitting`` records left behind by a crashed run."""
        cutoff = to_iso((now or utcnow()) - older_than)
        with self.db.transaction() as conn:
            cur = conn.execute(
                """UPDATE applications SET status = ?, error = ?, updated_at = ?
                   WHERE user_id = ? AND status = ? AND updated_at < ?""",
                (
                    ApplicationStatus.FAILED.value,
                    "abandoned in submitting state",
                    to_iso(utcnow()),
                    user_id,
                    ApplicationStatus.SUBMITTING.value,
                    cutoff,
                ),
            )
            count = cur.rowcount
        if count:
            log.warning("User %d: failed %d stale submitting record(s)", user_id, count)
        return count

    def feedback_event(self, user_id: int, record_id: int, interview: bool = False) -> NotificationEvent:
        """Employer feedback on a submitted application, as a tagged event."""
        record = self.get(record_id)
        if record.user_id != user_id:
            raise KeyError(record_id)
        if record.status is not ApplicationStatus.SUBMITTED:
            raise InvariantViolation(f"application #{record_id} was never submitted")
        kind = EventKind.INTERVIEW_SCHEDULED if interview else EventKind.RESPONSE_RECEIVED
        return NotificationEvent(
            kind=kind,
            user_id=user_id,
            payload={"applicationId": record.id, "jobTitle": record.job_title, "company": record.company},
        )
