"""Consecutive-failure circuit breaker, scoped to a single run."""
from __future__ import annotations

import threading
from typing import Any, Callable

from autoapply.errors import CircuitOpen
from autoapply.log import get_logger

log = get_logger(__name__)


class CircuitBreaker:
    """Opens after ``threshold`` consecutive failures and stays open.

    A run is short-lived, so there is no half-open probe: once a dependency
    has failed ``threshold`` times in a row the rest of the batch is
    short-circuited.
    """

    def __init__(self, name: str, threshold: int = 3) -> None:
        self.name = name
        self.threshold = max(1, threshold)
        self._failures = 0
        self._open = False
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._open

    def record_success(self) -> None:
        with self._lock:
            if not self._open:
                self._failures = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if not self._open and self._failures >= self.threshold:
                self._open = True
                log.error(
                    "Circuit %s opened after %d consecutive failures",
                    self.name, self._failures,
                )

    def call(
        self,
        fn: Callable[..., Any],
        *args: Any,
        failure_types: tuple[type[BaseException], ...] = (Exception,),
        **kwargs: Any,
    ) -> Any:
        if self.is_open:
            raise CircuitOpen(f"{self.name} circuit is open")
        try:
            result = fn(*args, **kwargs)
        except failure_types:
            self.record_failure()
            raise
        self.record_success()
        return result
