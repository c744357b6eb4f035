"""Bounded retries and timeouts for external I/O."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
import logging
import time
from typing import Callable, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

LOOKUP_WORKERS = 8

_LOOKUP_POOL = ThreadPoolExecutor(max_workers=LOOKUP_WORKERS, thread_name_prefix="feedgate-lookup")


class LookupTimeout(TimeoutError):
    pass


def call_with_timeout(fn: Callable[[], T], timeout: float, *, executor: ThreadPoolExecutor | None = None) -> T:
    """Run ``fn`` on a shared lookup worker and give up after ``timeout`` seconds.

    A lookup that overruns keeps its worker until it returns. Workers come from
    one bounded pool, so hung lookups can hold at most ``LOOKUP_WORKERS``
    threads; further calls queue and time out in turn.
    """

    future = (executor or _LOOKUP_POOL).submit(fn)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        future.cancel()
        raise LookupTimeout(f"lookup exceeded {timeout:.1f}s") from exc


def with_retries(
    fn: Callable[[], T],
    *,
    attempts: int,
    label: str,
    retry_on: tuple[type[BaseException], ...] = (OSError,),
    backoff_seconds: float = 0.0,
) -> T:
    """Call ``fn`` up to ``attempts`` times, re-raising the last failure."""

    limit = max(1, attempts)
    attempt = 1
    while True:
        try:
            return fn()
        except retry_on as exc:
            LOGGER.warning("io_retry", extra={"label": label, "attempt": attempt, "attempts": limit, "error": str(exc)})
            if attempt >= limit:
                raise
        if backoff_seconds:
            time.sleep(backoff_seconds * attempt)
        attempt += 1
