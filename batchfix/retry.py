from collections.abc import Callable
from dataclasses import dataclass
import time
from typing import TypeVar


T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    pass


@dataclass(frozen=True)
class RetryPolicy:
    """max_attempts counts every try, the first one included."""

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        return min(self.backoff_seconds * attempt, self.max_backoff_seconds)

    def attempts_remain(self, attempt: int) -> bool:
        return attempt < self.max_attempts


def run_with_retries(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[Exception], bool] | None = None,
    on_attempt_failure: Callable[[int, Exception], None] | None = None,
    wait: Callable[[float], object] = time.sleep,
) -> T:
    last_error: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return fn()
        except Exception as exc:
            last_error = exc
            if on_attempt_failure:
                on_attempt_failure(attempt, exc)

            retry_allowed = True if should_retry is None else should_retry(exc)
            if not policy.attempts_remain(attempt) or not retry_allowed:
                break
            wait(policy.delay_for(attempt))

    raise RetryExhaustedError(str(last_error)) from last_error
