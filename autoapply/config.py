"""Load engine settings, tier limits and env configuration."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from autoapply.log import get_logger

log = get_logger(__name__)

load_dotenv()

ROOT_DIR: Path = Path(__file__).resolve().parent.parent
CONFIG_DIR: Path = ROOT_DIR / "config"
SETTINGS_PATH: Path = CONFIG_DIR / "settings.yaml"
PROFILE_PATH: Path = CONFIG_DIR / "profile.yaml"
DATA_DIR: Path = ROOT_DIR / "data"

# tier -> (window kind, limit per window, limit per day)
TIER_LIMITS: dict[str, tuple[str, int, int]] = {
    "free": ("weekly", 10, 10),
    "weekly": ("daily", 10, 10),
    "monthly": ("daily", 15, 15),
    "premium": ("daily", 30, 30),
}


@dataclass
class Settings:
    database_path: str = str(DATA_DIR / "autoapply.sqlite3")
    quota_timezone: str = "UTC"
    max_batch_size: int = 30
    min_match_score: float = 0.0
    submit_concurrency: int = 3
    submit_timeout_seconds: float = 20.0
    submit_max_attempts: int = 3
    submit_backoff_seconds: float = 1.0
    oracle_timeout_seconds: float = 15.0
    oracle_concurrency: int = 4
    breaker_threshold: int = 3
    run_deadline_seconds: float = 300.0
    stale_claim_seconds: float = 900.0
    sources: list[str] = field(default_factory=lambda: ["remotive"])
    channel: str = "dryrun"
    notification_sinks: list[str] = field(default_factory=lambda: ["store", "log"])
    webhook_url: str = ""
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"


_ENV_KEYS: dict[str, str] = {
    "database_path": "AUTOAPPLY_DB",
    "quota_timezone": "QUOTA_TIMEZONE",
    "max_batch_size": "MAX_BATCH_SIZE",
    "min_match_score": "MIN_MATCH_SCORE",
    "submit_concurrency": "SUBMIT_CONCURRENCY",
    "submit_timeout_seconds": "SUBMIT_TIMEOUT_SECONDS",
    "submit_max_attempts": "SUBMIT_MAX_ATTEMPTS",
    "submit_backoff_seconds": "SUBMIT_BACKOFF_SECONDS",
    "oracle_timeout_seconds": "ORACLE_TIMEOUT_SECONDS",
    "oracle_concurrency": "ORACLE_CONCURRENCY",
    "breaker_threshold": "BREAKER_THRESHOLD",
    "run_deadline_seconds": "RUN_DEADLINE_SECONDS",
    "stale_claim_seconds": "STALE_CLAIM_SECONDS",
    "channel": "SUBMISSION_CHANNEL",
    "webhook_url": "SUBMISSION_WEBHOOK_URL",
    "groq_api_key": "GROQ_API_KEY",
    "groq_model": "GROQ_LLM_MODEL",
}


def get_env(key: str, default: str = "") -> str:
    return os.environ.get(key, default).strip()


def _coerce(value: Any, current: Any) -> Any:
    if isinstance(current, list):
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        return list(value)
    if isinstance(current, bool):
        return str(value).lower() in ("1", "true", "yes")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return str(value)


def load_settings(path: Path | None = None) -> Settings:
    """Defaults, then settings.yaml, then environment variables."""
    settings = Settings()
    path = path or SETTINGS_PATH
    overrides: dict[str, Any] = {}
    if path.exists():
        with open(path, "r") as f:
            overrides = yaml.safe_load(f) or {}

    known = {f.name for f in fields(Settings)}
    for key, value in overrides.items():
        if key not in known:
            log.warning("Ignoring unknown setting %r in %s", key, path.name)
            continue
        setattr(settings, key, _coerce(value, getattr(settings, key)))

    for attr, env_key in _ENV_KEYS.items():
        raw = get_env(env_key)
        if not raw:
            continue
        try:
            setattr(settings, attr, _coerce(raw, getattr(settings, attr)))
        except ValueError:
            log.warning("Invalid value for %s=%r, keeping %r", env_key, raw, getattr(settings, attr))

    for list_attr, env_key in (("sources", "JOB_SOURCES"), ("notification_sinks", "NOTIFICATION_SINKS")):
        raw = get_env(env_key)
        if raw:
            setattr(settings, list_attr, _coerce(raw, []))

    if settings.submit_timeout_seconds >= settings.run_deadline_seconds:
        log.warning("SUBMIT_TIMEOUT_SECONDS should be shorter than RUN_DEADLINE_SECONDS")
    return settings


def load_profile_yaml(path: Path | None = None) -> dict[str, Any]:
    with open(path or PROFILE_PATH, "r") as f:
        return yaml.safe_load(f) or {}


def ensure_dirs(settings: Settings) -> None:
    Path(settings.database_path).parent.mkdir(parents=True, exist_ok=True)
