from __future__ import annotations

import logging
import threading

import pytest

from feedgate.lookup import LOOKUP_WORKERS, LookupTimeout, call_with_timeout, with_retries


class _Flaky:
    def __init__(self, failures: int, error: BaseException | None = None) -> None:
        self.failures = failures
        self.error = error or OSError("disk busy")
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "done"


def test_with_retries_returns_after_transient_failures(caplog: pytest.LogCaptureFixture) -> None:
    flaky = _Flaky(failures=2)

    with caplog.at_level(logging.WARNING, logger="feedgate.lookup"):
        assert with_retries(flaky, attempts=3, label="journal_append") == "done"

    assert flaky.calls == 3
    assert [record.getMessage() for record in caplog.records] == ["io_retry", "io_retry"]


def test_with_retries_reraises_the_last_failure() -> None:
    flaky = _Flaky(failures=5)

    with pytest.raises(OSError, match="disk busy"):
        with_retries(flaky, attempts=3, label="state_write")

    assert flaky.calls == 3


def test_with_retries_does_not_retry_other_errors() -> None:
    flaky = _Flaky(failures=5, error=ValueError("bad payload"))

    with pytest.raises(ValueError):
        with_retries(flaky, attempts=3, label="state_write")

    assert flaky.calls == 1


@pytest.mark.parametrize("attempts", [0, -2])
def test_with_retries_always_makes_one_attempt(attempts: int) -> None:
    flaky = _Flaky(failures=1)

    with pytest.raises(OSError):
        with_retries(flaky, attempts=attempts, label="state_write")

    assert flaky.calls == 1


def _lookup_threads() -> list[threading.Thread]:
    return [thread for thread in threading.enumerate() if thread.name.startswith("feedgate-lookup")]


def test_hung_lookups_hold_a_bounded_number_of_threads() -> None:
    release = threading.Event()

    def _hang() -> None:
        release.wait(5)

    try:
        for _ in range(LOOKUP_WORKERS + 4):
            with pytest.raises(LookupTimeout):
                call_with_timeout(_hang, 0.01)
        assert len(_lookup_threads()) <= LOOKUP_WORKERS
    finally:
        release.set()

    assert call_with_timeout(lambda: 42, 5.0) == 42
    assert len(_lookup_threads()) <= LOOKUP_WORKERS
