"""User profiles, job criteria and session tokens."""
from __future__ import annotations

import hashlib
import json
import secrets
from typing import Any

from autoapply.db import Database, to_iso, utcnow
from autoapply.errors import UnknownUser
from autoapply.log import get_logger
from autoapply.models import JobCriteria, Tier, UserProfile

log = get_logger(__name__)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _row_to_profile(row) -> UserProfile:
    criteria_raw = row["criteria"]
    return UserProfile(
        user_id=row["id"],
        email=row["email"],
        full_name=row["full_name"],
        spoken_languages=json.loads(row["spoken_languages"] or "[]"),
        cv_text=row["cv_text"],
        cv_analysis=row["cv_analysis"],
        criteria=JobCriteria.from_dict(json.loads(criteria_raw)) if criteria_raw else None,
        tier=Tier(row["tier"]),
        automation_active=bool(row["automation_active"]),
    )


class ProfileStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def create_user(
        self,
        email: str,
        *,
        full_name: str = "",
        spoken_languages: list[str] | None = None,
        cv_text: str = "",
        cv_analysis: str = "",
        criteria: JobCriteria | None = None,
        tier: Tier = Tier.FREE,
    ) -> UserProfile:
        with self.db.transaction() as conn:
            cur = conn.execute(
                """INSERT INTO users (email, full_name, spoken_languages, cv_text,
                                      cv_analysis, criteria, tier, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    email,
                    full_name,
                    json.dumps(spoken_languages if spoken_languages is not None else ["en"]),
                    cv_text,
                    cv_analysis,
                    json.dumps(criteria.to_dict()) if criteria else None,
                    Tier(tier).value,
                    to_iso(utcnow()),
                ),
            )
            user_id = cur.lastrowid
        log.info("Created user %d <%s> on %s tier", user_id, email, Tier(tier).value)
        return self.get(user_id)

    def get(self, user_id: int) -> UserProfile:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            raise UnknownUser(user_id)
        return _row_to_profile(row)

    def find_by_email(self, email: str) -> UserProfile | None:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        return _row_to_profile(row) if row else None

    def list_active(self) -> list[UserProfile]:
        """Users with automation switched on, for scheduled runs."""
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM users WHERE automation_active = 1 ORDER BY id"
            ).fetchall()
        return [_row_to_profile(r) for r in rows]

    def update(self, user_id: int, **changes: Any) -> UserProfile:
        """Update profile columns; ``criteria`` accepts a JobCriteria or dict."""
        columns: dict[str, Any] = {}
        for key, value in changes.items():
            if key == "criteria":
                if isinstance(value, JobCriteria):
                    value = value.to_dict()
                columns["criteria"] = json.dumps(value) if value is not None else None
            elif key == "spoken_languages":
                columns[key] = json.dumps(list(value))
            elif key == "automation_active":
                columns[key] = int(bool(value))
            elif key == "tier":
                columns[key] = Tier(value).value
            elif key in ("email", "full_name", "cv_text", "cv_analysis"):
                columns[key] = value
            else:
                raise ValueError(f"Unknown profile field {key!r}")
        if not columns:
            return self.get(user_id)
        assignments = ", ".join(f"{col} = ?" for col in columns)
        with self.db.transaction() as conn:
            cur = conn.execute(
                f"UPDATE users SET {assignments} WHERE id = ?",
                (*columns.values(), user_id),
            )
            if cur.rowcount == 0:
                raise UnknownUser(user_id)
        return self.get(user_id)

    def set_automation(self, user_id: int, active: bool) -> UserProfile:
        log.info("User %d automation → %s", user_id, "on" if active else "off")
        return self.update(user_id, automation_active=active)

    def import_profile(self, data: dict[str, Any]) -> UserProfile:
        """Create or update a user from a profile.yaml mapping."""
        email = (data.get("email") or "").strip()
        if not email:
            raise ValueError("profile.yaml needs an email")
        cv_text = data.get("cv_text", "")
        cv_path = data.get("cv_path")
        if not cv_text and cv_path:
            with open(cv_path, "r", encoding="utf-8") as f:
                cv_text = f.read()
        criteria = JobCriteria.from_dict(data.get("criteria"))
        fields = {
            "full_name": data.get("full_name", ""),
            "spoken_languages": data.get("spoken_languages", ["en"]),
            "cv_text": cv_text,
            "cv_analysis": data.get("cv_analysis", ""),
            "criteria": criteria,
            "tier": data.get("tier", "free"),
        }
        existing = self.find_by_email(email)
        if existing:
            return self.update(existing.user_id, **fields)
        return self.create_user(email, **fields)

    def create_session(self, user_id: int) -> str:
        self.get(user_id)
        token = secrets.token_urlsafe(32)
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO sessions (token_hash, user_id, created_at) VALUES (?, ?, ?)",
                (hash_token(token), user_id, to_iso(utcnow())),
            )
        return token

    def resolve_session(self, token: str) -> int | None:
        if not token:
            return None
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT user_id FROM sessions WHERE token_hash = ?", (hash_token(token),)
            ).fetchone()
        return row["user_id"] if row else None
