from collections.abc import Callable
import logging
import time
from typing import TypeVar


logger = logging.getLogger(__name__)
T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    pass


def run_with_retries(
    fn: Callable[[], T],
    *,
    max_retries: int,
    backoff_seconds: float,
    should_retry: Callable[[Exception], bool] | None = None,
) -> T:
    last_error: Exception | None = None

    for attempt in range(1, max_retries + 2):
        try:
            return fn()
        except Exception as exc:
            last_error = exc
            retry_allowed = True if should_retry is None else should_retry(exc)
            if attempt > max_retries or not retry_allowed:
                break
            logger.warning("attempt failed, retrying", extra={"attempt": attempt, "error": str(exc)})
            time.sleep(backoff_seconds * attempt)

    raise RetryExhaustedError(str(last_error)) from last_error
