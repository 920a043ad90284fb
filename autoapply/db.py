"""SQLite persistence: schema and connection/transaction helpers."""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from autoapply.errors import StorageError
from autoapply.log import get_logger

log = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    full_name TEXT NOT NULL DEFAULT '',
    spoken_languages TEXT NOT NULL DEFAULT '["en"]',
    cv_text TEXT NOT NULL DEFAULT '',
    cv_analysis TEXT NOT NULL DEFAULT '',
    criteria TEXT,
    tier TEXT NOT NULL DEFAULT 'free',
    automation_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    token_hash TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS quota_state (
    user_id INTEGER PRIMARY KEY REFERENCES users(id),
    tier TEXT NOT NULL,
    window_kind TEXT NOT NULL,
    limit_per_window INTEGER NOT NULL,
    limit_per_day INTEGER NOT NULL,
    used_in_window INTEGER NOT NULL DEFAULT 0 CHECK (used_in_window >= 0),
    window_start TEXT NOT NULL,
    CHECK (used_in_window <= limit_per_window)
);

CREATE TABLE IF NOT EXISTS applications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    fingerprint TEXT NOT NULL,
    run_id TEXT NOT NULL,
    job_title TEXT NOT NULL,
    company TEXT NOT NULL,
    location TEXT NOT NULL DEFAULT '',
    source TEXT NOT NULL DEFAULT '',
    job_url TEXT NOT NULL DEFAULT '',
    match_score REAL NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    applied_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    external_ref TEXT,
    error TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_applications_live
    ON applications(user_id, fingerprint)
    WHERE status IN ('submitting', 'submitted');

CREATE INDEX IF NOT EXISTS ix_applications_user ON applications(user_id, applied_at);

CREATE TABLE IF NOT EXISTS seen_jobs (
    user_id INTEGER NOT NULL,
    fingerprint TEXT NOT NULL,
    application_id INTEGER NOT NULL REFERENCES applications(id),
    seen_at TEXT NOT NULL,
    PRIMARY KEY (user_id, fingerprint)
);

CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL,
    is_read INTEGER NOT NULL DEFAULT 0
);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def from_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class Database:
    """Opens a short-lived connection per unit of work.

    ``transaction()`` starts with ``BEGIN IMMEDIATE`` so the write lock is
    taken before the first read; read-modify-write sequences inside it are
    serialized across threads and processes.
    """

    def __init__(self, path: str | Path, *, busy_timeout: float = 30.0) -> None:
        self.path = Path(path)
        self.busy_timeout = busy_timeout

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self.path,
                timeout=self.busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open {self.path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def initialize(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise StorageError(f"Schema setup failed: {exc}") from exc
        finally:
            conn.close()
        log.info("Database ready → %s", self.path)

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            conn.close()
            raise StorageError(f"Cannot start transaction: {exc}") from exc
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.IntegrityError:
            conn.execute("ROLLBACK")
            raise
        except sqlite3.Error as exc:
            conn.execute("ROLLBACK")
            raise StorageError(str(exc)) from exc
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()
