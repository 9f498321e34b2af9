import logging
import threading
from collections.abc import Callable, Iterator
from typing import TypeVar

from anka_executor.errors import OperationCancelled, RetryExhausted, is_transient


logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay_sec: float = 5.0,
        max_delay_sec: float = 30.0,
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        self.max_attempts = max_attempts
        self.initial_delay_sec = initial_delay_sec
        self.max_delay_sec = max_delay_sec

    def delays(self) -> Iterator[float]:
        """Backoff before each retry: doubles from the initial delay, capped."""
        delay = min(self.initial_delay_sec, self.max_delay_sec)
        for _ in range(self.max_attempts - 1):
            yield delay
            delay = min(delay * 2, self.max_delay_sec)


def with_retry(
    retry: RetryPolicy,
    operation: Callable[[], T],
    *,
    stop_event: threading.Event | None = None,
    log: logging.Logger | None = None,
) -> T:
    log = log or logger
    stop_event = stop_event or threading.Event()
    delays = retry.delays()
    last_error: Exception | None = None
    for attempt in range(1, retry.max_attempts + 1):
        try:
            return operation()
        except Exception as exc:
            if not is_transient(exc):
                raise
            last_error = exc
        if attempt == retry.max_attempts:
            break
        delay = next(delays)
        log.warning(
            "attempt %d/%d failed with retryable error, retrying in %.1fs: %s",
            attempt,
            retry.max_attempts,
            delay,
            last_error,
        )
        if stop_event.wait(delay):
            raise OperationCancelled(
                f"cancelled while waiting to retry after attempt {attempt}"
            )
    assert last_error is not None
    raise RetryExhausted(
        attempts=retry.max_attempts, last_error=last_error
    ) from last_error
