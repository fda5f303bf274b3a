from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Tuple, Type, TypeVar

from rental_core.core.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhausted(Exception):
    """
    Raised when every attempt allowed by a RetryPolicy failed with a retryable error.
    The last underlying error is kept in `last_error`.
    """

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    delay(n) = min(max_delay, base_delay * multiplier ** (n - 1)) between attempt n and n + 1.
    The terminal action after exhaustion belongs to the caller (RetryExhausted is raised).
    """

    max_attempts: int = 4
    base_delay_seconds: float = 0.5
    multiplier: float = 2.0
    max_delay_seconds: float = 8.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.gateway_retry_max_attempts,
            base_delay_seconds=settings.gateway_retry_base_delay_seconds,
            multiplier=settings.gateway_retry_multiplier,
            max_delay_seconds=settings.gateway_retry_max_delay_seconds,
        )

    def delays(self) -> Iterator[float]:
        for n in range(1, self.max_attempts):
            yield min(self.max_delay_seconds, self.base_delay_seconds * (self.multiplier ** (n - 1)))

    def run(
        self,
        fn: Callable[[], T],
        *,
        retry_on: Tuple[Type[BaseException], ...],
        sleep: Callable[[float], None] = time.sleep,
        label: str = "call",
    ) -> T:
        delays = self.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except retry_on as exc:
                delay = next(delays, None)
                if delay is None:
                    logger.warning("%s failed, retries exhausted", label, extra={"attempts": attempt, "error": str(exc)})
                    raise RetryExhausted(attempt, exc) from exc
                logger.info("%s failed, retrying", label, extra={"attempt": attempt, "delay_seconds": delay, "error": str(exc)})
                sleep(delay)
