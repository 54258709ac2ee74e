"""In-process circuit breaker per upstream source."""

import time
from typing import Callable, Optional

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RESET_SECONDS = 60.0


class CircuitBreaker:
    """Opens after ``threshold`` consecutive failures; half-opens after ``reset_seconds``."""

    def __init__(
        self,
        threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_seconds: float = DEFAULT_RESET_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.reset_seconds = reset_seconds
        self._clock = clock
        self.failures = 0
        self.last_failure_at: Optional[float] = None

    def is_open(self) -> bool:
        if self.failures < self.threshold:
            return False
        if self.last_failure_at is not None and self._clock() - self.last_failure_at > self.reset_seconds:
            self.failures = 0
            return False
        return True

    def record_failure(self) -> None:
        self.failures += 1
        self.last_failure_at = self._clock()

    def record_success(self) -> None:
        self.failures = 0
        self.last_failure_at = None
