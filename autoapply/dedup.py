"""Job fingerprints and the per-user index of postings already applied to."""
from __future__ import annotations

import hashlib
import re
import sqlite3

from autoapply.db import Database, to_iso, utcnow
from autoapply.log import get_logger
from autoapply.models import JobCandidate

log = get_logger(__name__)

_SEPARATOR = "\x1f"
_WS = re.compile(r"\s+")


def normalize(text: str) -> str:
    return _WS.sub(" ", (text or "").lower()).strip()


def fingerprint(title: str, company: str, location: str) -> str:
    """Stable identity of a posting, independent of the URL it was found at."""
    key = _SEPARATOR.join(normalize(part) for part in (title, company, location))
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def candidate_fingerprint(candidate: JobCandidate) -> str:
    return fingerprint(candidate.title, candidate.company, candidate.location)


class DeduplicationStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def seen_fingerprints(self, user_id: int) -> set[str]:
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT fingerprint FROM seen_jobs WHERE user_id = ?", (user_id,)
            ).fetchall()
        return {r["fingerprint"] for r in rows}

    def is_seen(self, user_id: int, fp: str) -> bool:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT 1 FROM seen_jobs WHERE user_id = ? AND fingerprint = ?", (user_id, fp)
            ).fetchone()
        return row is not None

    def filter_unseen(self, user_id: int, candidates: list[JobCandidate]) -> list[JobCandidate]:
        """Drop candidates already applied to. Read-only; input order kept."""
        seen = self.seen_fingerprints(user_id)
        unseen = [c for c in candidates if candidate_fingerprint(c) not in seen]
        if len(unseen) != len(candidates):
            log.info("User %d: %d of %d candidates already applied to",
                     user_id, len(candidates) - len(unseen), len(candidates))
        return unseen

    def mark_seen(
        self,
        conn: sqlite3.Connection,
        user_id: int,
        fp: str,
        application_id: int,
    ) -> None:
        """Insert into the index using the caller's open transaction."""
        conn.execute(
            "INSERT INTO seen_jobs (user_id, fingerprint, application_id, seen_at) VALUES (?, ?, ?, ?)",
            (user_id, fp, application_id, to_iso(utcnow())),
        )
