import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from blocket_watch.errors import TransportError


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter for retryable transport failures.

    Only ``TransportError`` instances flagged ``retryable`` are retried; every
    other exception propagates on the first attempt. A policy always makes at
    least one attempt and re-raises the last transport error.
    """

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    jitter_seconds: float = 0.5

    def delay(self, attempt: int) -> float:
        return (self.backoff_seconds * (2 ** (attempt - 1))) + random.uniform(0.0, self.jitter_seconds)

    def call(self, operation: Callable[[], T], *, description: str = "request") -> T:
        attempts = max(1, self.max_attempts)
        attempt = 1
        while True:
            try:
                return operation()
            except TransportError as exc:
                if not exc.retryable or attempt >= attempts:
                    raise
                sleep_seconds = self.delay(attempt)
                logger.warning(
                    "%s failed (%s/%s): %s. Retrying in %.2fs",
                    description,
                    attempt,
                    attempts,
                    exc,
                    sleep_seconds,
                )
                if sleep_seconds > 0:
                    time.sleep(sleep_seconds)
            attempt += 1


NO_RETRY = RetryPolicy(max_attempts=1, backoff_seconds=0.0, jitter_seconds=0.0)
