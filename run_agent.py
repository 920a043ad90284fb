#!/usr/bin/env python3
"""Command-line entry point for the application engine.

    python run_agent.py import-profile [config/profile.yaml]
    python run_agent.py session --user 1
    python run_agent.py run --user 1        # one manual trigger
    python run_agent.py run --all           # every user with automation on (cron)
    python run_agent.py set-tier --user 1 premium
    python run_agent.py feedback --user 1 --application 7 [--interview]
    python run_agent.py serve
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

from autoapply.config import PROFILE_PATH, load_profile_yaml, load_settings
from autoapply.errors import AutoApplyError, IncompleteProfile, QuotaExceeded
from autoapply.log import get_logger
from autoapply.models import Tier
from autoapply.orchestrator import Engine, build_engine

log = get_logger(__name__)


def _run_one(engine: Engine, user_id: int) -> bool:
    try:
        summary = engine.orchestrator.run_for_user(user_id)
    except IncompleteProfile as exc:
        log.error("User %d: profile incomplete (%s)", user_id, ", ".join(exc.missing_fields))
        return False
    except QuotaExceeded as exc:
        log.warning("User %d: quota exhausted until %s", user_id, exc.reset_at.isoformat())
        return False
    except AutoApplyError as exc:
        log.error("User %d: run aborted: %s", user_id, exc)
        return False
    log.info("Run complete for user %d.", user_id)
    log.info("  Candidates found: %d", summary.candidates_found)
    log.info("  Submitted: %d", summary.submitted)
    log.info("  Failed: %d", summary.failed)
    log.info("  Skipped: %d", summary.skipped)
    log.info("  Quota resets: %s", summary.next_reset_at.isoformat())
    return True


def cmd_run(engine: Engine, args: argparse.Namespace) -> int:
    if args.all:
        users = engine.profiles.list_active()
        if not users:
            log.info("No users with automation enabled.")
            return 0
        ok = [_run_one(engine, u.user_id) for u in users]
        return 0 if any(ok) else 1
    return 0 if _run_one(engine, args.user) else 1


def cmd_import_profile(engine: Engine, args: argparse.Namespace) -> int:
    path = Path(args.path) if args.path else PROFILE_PATH
    if not path.exists():
        print(f"  Profile file not found: {path}")
        print("  Copy config/profile.example.yaml to config/profile.yaml and fill it in.")
        return 1
    profile = engine.profiles.import_profile(load_profile_yaml(path))
    missing = profile.missing_fields()
    print(f"  Imported user {profile.user_id} <{profile.email}> ({profile.tier.value} tier)")
    if missing:
        print(f"  Still missing: {', '.join(missing)}")
    return 0


def cmd_session(engine: Engine, args: argparse.Namespace) -> int:
    token = engine.profiles.create_session(args.user)
    print(token)
    return 0


def cmd_set_tier(engine: Engine, args: argparse.Namespace) -> int:
    state = engine.quota.set_tier(args.user, Tier(args.tier))
    print(f"  User {args.user}: {state.limit_per_window} application(s) per {state.window_kind.value} window")
    return 0


def cmd_feedback(engine: Engine, args: argparse.Namespace) -> int:
    event = engine.tracker.feedback_event(args.user, args.application, interview=args.interview)
    delivered = engine.dispatcher.dispatch(event)
    log.info("%s recorded for application #%d (%d sink(s))", event.kind.value, args.application, delivered)
    return 0


def cmd_serve(settings, args: argparse.Namespace) -> int:
    import uvicorn

    from autoapply.api import create_app

    uvicorn.run(create_app(settings), host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="run_agent", description="Job application engine")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("run", help="run a job search for one user, or every active user")
    target = p.add_mutually_exclusive_group(required=True)
    target.add_argument("--user", type=int)
    target.add_argument("--all", action="store_true")

    p = sub.add_parser("import-profile", help="create or update a user from profile.yaml")
    p.add_argument("path", nargs="?")

    p = sub.add_parser("session", help="issue an API session token")
    p.add_argument("--user", type=int, required=True)

    p = sub.add_parser("set-tier", help="change a user's subscription tier")
    p.add_argument("--user", type=int, required=True)
    p.add_argument("tier", choices=[t.value for t in Tier])

    p = sub.add_parser("feedback", help="record an employer response")
    p.add_argument("--user", type=int, required=True)
    p.add_argument("--application", type=int, required=True)
    p.add_argument("--interview", action="store_true")

    p = sub.add_parser("serve", help="start the HTTP API")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    return parser


_COMMANDS = {
    "run": cmd_run,
    "import-profile": cmd_import_profile,
    "session": cmd_session,
    "set-tier": cmd_set_tier,
    "feedback": cmd_feedback,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    if args.command == "serve":
        return cmd_serve(settings, args)
    engine = build_engine(settings)
    try:
        return _COMMANDS[args.command](engine, args)
    except (AutoApplyError, KeyError, ValueError) as exc:
        log.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
