"""Logging setup shared by the engine, the CLI and the API.

Console output always; a dated file under ``logs/`` unless LOG_TO_FILE is
off. Run-scoped messages go through ``run_logger`` so every line carries
the user and run it belongs to.
"""
from __future__ import annotations

import logging
import os
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

_DEFAULT_LOG_DIR = Path(__file__).resolve().parent.parent / "logs"
_FORMAT = "%(asctime)s  %(levelname)-8s  [%(threadName)s]  %(name)s  %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"
_lock = threading.Lock()
_configured = False


def _env_flag(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _file_handler(log_dir: Path) -> logging.Handler | None:
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        path = log_dir / f"autoapply_{datetime.now().strftime('%Y-%m-%d')}.log"
        handler = logging.FileHandler(path, encoding="utf-8")
    except OSError:
        return None
    handler.setLevel(logging.DEBUG)
    return handler


def configure_logging() -> None:
    """Install root handlers once; later calls are no-ops."""
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

        level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)
        root = logging.getLogger()
        root.setLevel(level)
        if root.handlers:
            # pytest or uvicorn already installed handlers
            return

        formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FMT)
        console = logging.StreamHandler(sys.stdout)
        console.setLevel(level)
        handlers: list[logging.Handler] = [console]

        if _env_flag("LOG_TO_FILE", True):
            log_dir = Path(os.environ.get("AUTOAPPLY_LOG_DIR") or _DEFAULT_LOG_DIR)
            fh = _file_handler(log_dir)
            if fh is not None:
                handlers.append(fh)
            else:
                console.stream.write(f"file logging disabled: {log_dir} is not writable\n")

        for handler in handlers:
            handler.setFormatter(formatter)
            root.addHandler(handler)

        # keep third-party chatter out of run logs
        for noisy in ("httpx", "httpcore", "openai", "urllib3"):
            logging.getLogger(noisy).setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


class RunLogAdapter(logging.LoggerAdapter):
    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        return f"[user {self.extra['user_id']} run {self.extra['run_id'][:8]}] {msg}", kwargs


def run_logger(logger: logging.Logger, user_id: int, run_id: str) -> RunLogAdapter:
    """Prefix every message with the user and (short) run id."""
    return RunLogAdapter(logger, {"user_id": user_id, "run_id": run_id})
