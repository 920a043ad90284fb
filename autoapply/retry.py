"""Retry with exponential backoff and per-call timeouts, stdlib only."""
from __future__ import annotations

import functools
import logging
import random
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Tuple, Type

logger = logging.getLogger(__name__)


class CallTimeout(Exception):
    pass


def backoff_delay(
    attempt: int,
    *,
    base_delay: float,
    max_delay: float = 30.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
) -> float:
    delay = min(base_delay * (backoff_factor ** (attempt - 1)), max_delay)
    if jitter:
        delay *= 0.5 + random.random()
    return delay


def call_with_retry(
    fn: Callable[..., Any],
    *args: Any,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    retryable: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> Any:
    """Call *fn*, retrying *retryable* errors; anything else propagates at once."""
    name = getattr(fn, "__qualname__", repr(fn))
    for attempt in range(1, max_attempts + 1):
        try:
            return fn(*args, **kwargs)
        except retryable as exc:
            if attempt == max_attempts:
                logger.error("%s failed after %d attempts: %s", name, max_attempts, exc)
                raise
            delay = backoff_delay(
                attempt,
                base_delay=base_delay,
                max_delay=max_delay,
                backoff_factor=backoff_factor,
                jitter=jitter,
            )
            logger.warning(
                "%s attempt %d/%d failed (%s), retrying in %.1fs",
                name,
                attempt,
                max_attempts,
                exc,
                delay,
            )
            sleep(delay)
    raise RuntimeError("unreachable")


def retry(
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    retryable: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable:
    """Decorator: retries the wrapped function with exponential backoff."""

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return call_with_retry(
                fn,
                *args,
                max_attempts=max_attempts,
                base_delay=base_delay,
                max_delay=max_delay,
                backoff_factor=backoff_factor,
                jitter=jitter,
                retryable=retryable,
                **kwargs,
            )

        return wrapper

    return decorator


def _run_into(future: Future, fn: Callable[..., Any], args: tuple, kwargs: dict) -> None:
    if not future.set_running_or_notify_cancel():
        return
    try:
        future.set_result(fn(*args, **kwargs))
    except BaseException as exc:
        future.set_exception(exc)


def call_with_timeout(fn: Callable[..., Any], timeout: float, *args: Any, **kwargs: Any) -> Any:
    """Run *fn* in its own daemon thread and wait at most *timeout* seconds.

    Each call gets a fresh thread and the timeout counts from when *fn*
    starts. A call that outlives its timeout keeps running in the
    background; the caller just stops waiting for it.
    """
    future: Future = Future()
    name = getattr(fn, "__qualname__", repr(fn))
    worker = threading.Thread(
        target=_run_into, args=(future, fn, args, kwargs), name=f"timed-{name}", daemon=True
    )
    worker.start()
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        raise CallTimeout(f"{name} exceeded {timeout:.1f}s") from None
