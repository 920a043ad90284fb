"""Per-user application quota with boundary-aligned rolling windows.

Windows are aligned to fixed points in a reference timezone: midnight for
daily windows, Monday 00:00 for weekly ones and the 1st of the month for
monthly ones. Every read-modify-write runs inside one ``BEGIN IMMEDIATE``
transaction, which makes ``reserve``/``release`` linearizable for a user
across threads and processes.
"""
from __future__ import annotations

import sqlite3
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo

from autoapply.config import TIER_LIMITS
from autoapply.db import Database, from_iso, to_iso
from autoapply.errors import QuotaExceeded, UnknownUser
from autoapply.log import get_logger
from autoapply.models import QuotaStatus, Reservation, Tier, UserQuotaState, WindowKind

log = get_logger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def window_start_for(now: datetime, kind: WindowKind, tz: ZoneInfo) -> datetime:
    """Start of the window containing *now*."""
    local = now.astimezone(tz).date()
    if kind is WindowKind.WEEKLY:
        local = local - timedelta(days=local.weekday())
    elif kind is WindowKind.MONTHLY:
        local = local.replace(day=1)
    return datetime.combine(local, time.min, tzinfo=tz)


def next_window_start(start: datetime, kind: WindowKind, tz: ZoneInfo) -> datetime:
    """The boundary that ends the window beginning at *start*."""
    local: date = start.astimezone(tz).date()
    if kind is WindowKind.DAILY:
        nxt = local + timedelta(days=1)
    elif kind is WindowKind.WEEKLY:
        nxt = local + timedelta(days=7)
    else:
        nxt = date(local.year + (local.month == 12), local.month % 12 + 1, 1)
    return datetime.combine(nxt, time.min, tzinfo=tz)


def tier_limits(tier: Tier) -> tuple[WindowKind, int, int]:
    kind, per_window, per_day = TIER_LIMITS[Tier(tier).value]
    return WindowKind(kind), per_window, per_day


class QuotaTracker:
    def __init__(
        self,
        db: Database,
        *,
        timezone_name: str = "UTC",
        clock: Clock = _utcnow,
    ) -> None:
        self.db = db
        self.tz = ZoneInfo(timezone_name)
        self.clock = clock

    # ── persistence ─────────────────────────────────────────────────────

    def _fresh_state(self, user_id: int, tier: Tier, now: datetime) -> UserQuotaState:
        kind, per_window, per_day = tier_limits(tier)
        return UserQuotaState(
            user_id=user_id,
            tier=Tier(tier),
            limit_per_day=per_day,
            limit_per_window=per_window,
            window_kind=kind,
            used_in_window=0,
            window_start=window_start_for(now, kind, self.tz),
        )

    def _load(self, conn: sqlite3.Connection, user_id: int, now: datetime) -> UserQuotaState:
        user = conn.execute("SELECT tier FROM users WHERE id = ?", (user_id,)).fetchone()
        if user is None:
            raise UnknownUser(user_id)
        tier = Tier(user["tier"])
        row = conn.execute("SELECT * FROM quota_state WHERE user_id = ?", (user_id,)).fetchone()
        if row is None:
            state = self._fresh_state(user_id, tier, now)
            log.debug("Initialized quota for user %d (%s)", user_id, tier.value)
            return state
        if Tier(row["tier"]) is not tier:
            log.info("User %d tier changed %s → %s, window reset", user_id, row["tier"], tier.value)
            return self._fresh_state(user_id, tier, now)
        return UserQuotaState(
            user_id=user_id,
            tier=tier,
            limit_per_day=row["limit_per_day"],
            limit_per_window=row["limit_per_window"],
            window_kind=WindowKind(row["window_kind"]),
            used_in_window=row["used_in_window"],
            window_start=from_iso(row["window_start"]),
        )

    def _save(self, conn: sqlite3.Connection, state: UserQuotaState) -> None:
        conn.execute(
            """INSERT INTO quota_state (user_id, tier, window_kind, limit_per_window,
                                        limit_per_day, used_in_window, window_start)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(user_id) DO UPDATE SET
                   tier = excluded.tier,
                   window_kind = excluded.window_kind,
                   limit_per_window = excluded.limit_per_window,
                   limit_per_day = excluded.limit_per_day,
                   used_in_window = excluded.used_in_window,
                   window_start = excluded.window_start""",
            (
                state.user_id,
                state.tier.value,
                state.window_kind.value,
                state.limit_per_window,
                state.limit_per_day,
                state.used_in_window,
                to_iso(state.window_start),
            ),
        )

    def _roll(self, state: UserQuotaState, now: datetime) -> UserQuotaState:
        boundary = next_window_start(state.window_start, state.window_kind, self.tz)
        if now < boundary:
            return state
        new_start = window_start_for(now, state.window_kind, self.tz)
        log.info(
            "Quota window rolled for user %d: %s → %s (used %d reset)",
            state.user_id, state.window_start.isoformat(), new_start.isoformat(), state.used_in_window,
        )
        state.window_start = new_start
        state.used_in_window = 0
        return state

    def _reset_at(self, state: UserQuotaState) -> datetime:
        return next_window_start(state.window_start, state.window_kind, self.tz)

    # ── public API ──────────────────────────────────────────────────────

    def load_state(self, user_id: int) -> UserQuotaState:
        now = self.clock()
        with self.db.transaction() as conn:
            state = self._roll(self._load(conn, user_id, now), now)
            self._save(conn, state)
        return state

    def reserve(self, user_id: int, requested_count: int) -> Reservation:
        """Atomically grant and consume up to *requested_count* units."""
        if requested_count <= 0:
            raise ValueError("requested_count must be positive")
        now = self.clock()
        with self.db.transaction() as conn:
            state = self._roll(self._load(conn, user_id, now), now)
            granted = min(requested_count, state.limit_per_day, state.remaining)
            if granted > 0:
                state.used_in_window += granted
            self._save(conn, state)
        reset_at = self._reset_at(state)
        if granted <= 0:
            retry_after = max(0.0, (reset_at - now).total_seconds())
            log.info("User %d quota exhausted (%d/%d), resets %s",
                     user_id, state.used_in_window, state.limit_per_window, reset_at.isoformat())
            raise QuotaExceeded(retry_after=retry_after, reset_at=reset_at)
        log.info("Reserved %d/%d for user %d (used %d/%d)",
                 granted, requested_count, user_id, state.used_in_window, state.limit_per_window)
        return Reservation(
            user_id=user_id,
            granted=granted,
            window_start=state.window_start,
            reset_at=reset_at,
        )

    def release(self, reservation: Reservation, unused_count: int) -> int:
        """Return *unused_count* units; returns how many were actually returned."""
        if unused_count <= 0:
            return 0
        now = self.clock()
        with self.db.transaction() as conn:
            state = self._roll(self._load(conn, reservation.user_id, now), now)
            if state.window_start != reservation.window_start:
                self._save(conn, state)
                log.info("Release of %d for user %d skipped: reservation window already closed",
                         unused_count, reservation.user_id)
                return 0
            returned = min(unused_count, state.used_in_window)
            state.used_in_window -= returned
            self._save(conn, state)
        log.info("Released %d unit(s) for user %d (used now %d)",
                 returned, reservation.user_id, state.used_in_window)
        return returned

    def status(self, user_id: int) -> QuotaStatus:
        state = self.load_state(user_id)
        return QuotaStatus(
            user_id=user_id,
            tier=state.tier,
            window_kind=state.window_kind,
            limit=state.limit_per_window,
            used=state.used_in_window,
            remaining=state.remaining,
            reset_at=self._reset_at(state),
        )

    def set_tier(self, user_id: int, tier: Tier) -> UserQuotaState:
        """Switch subscription tier; usage counters restart in the new window."""
        now = self.clock()
        tier = Tier(tier)
        with self.db.transaction() as conn:
            cur = conn.execute("UPDATE users SET tier = ? WHERE id = ?", (tier.value, user_id))
            if cur.rowcount == 0:
                raise UnknownUser(user_id)
            state = self._fresh_state(user_id, tier, now)
            self._save(conn, state)
        log.info("User %d moved to %s tier (%d per %s)",
                 user_id, tier.value, state.limit_per_window, state.window_kind.value)
        return state
