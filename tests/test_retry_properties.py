"""Property-based tests for retry logic with exponential backoff."""

import pytest
import structlog
from hypothesis import given, settings, strategies as st

from wallabag_sync.remote.errors import NotFoundError, TransportError
from wallabag_sync.utils.retry import backoff_delay, retry_call

log = structlog.stdlib.get_logger()


@given(
    st.integers(min_value=0, max_value=5),
    st.floats(min_value=0.01, max_value=2.0),
)
@settings(max_examples=50)
def test_backoff_delays_double_until_capped(failures: int, base_delay: float):
    """Each delay is twice the previous one until it reaches ``max_delay``."""
    log.info("test_backoff_delays_double_until_capped", failures=failures, base_delay=base_delay)

    sleeps: list[float] = []
    calls = 0

    def flaky():
        nonlocal calls
        calls += 1
        if calls <= failures:
            raise TransportError(f"Simulated failure {calls}")
        return "ok"

    result = retry_call(
        flaky,
        max_retries=5,
        base_delay=base_delay,
        max_delay=10.0,
        exceptions=(TransportError,),
        sleep=sleeps.append,
    )

    assert result == "ok"
    assert calls == failures + 1
    assert sleeps == [min(base_delay * 2**i, 10.0) for i in range(failures)]


@given(st.integers(min_value=0, max_value=4))
@settings(max_examples=20)
def test_gives_up_after_max_retries(max_retries: int):
    """The last error propagates after ``max_retries + 1`` attempts."""
    log.info("test_gives_up_after_max_retries", max_retries=max_retries)

    sleeps: list[float] = []
    calls = 0

    def always_down():
        nonlocal calls
        calls += 1
        raise TransportError("down")

    with pytest.raises(TransportError):
        retry_call(
            always_down,
            max_retries=max_retries,
            base_delay=0.0,
            exceptions=(TransportError,),
            sleep=sleeps.append,
        )

    assert calls == max_retries + 1
    assert len(sleeps) == max_retries


def test_other_errors_are_not_retried():
    calls = 0

    def missing():
        nonlocal calls
        calls += 1
        raise NotFoundError("gone", 404)

    with pytest.raises(NotFoundError):
        retry_call(missing, max_retries=3, exceptions=(TransportError,), sleep=lambda _: None)

    assert calls == 1


def test_arguments_are_forwarded():
    result = retry_call(
        lambda a, b=0: a + b, 2, b=3, max_retries=1, sleep=lambda _: None, operation="add"
    )
    assert result == 5


@given(
    attempt=st.integers(min_value=0, max_value=20),
    base=st.floats(min_value=0.0, max_value=5.0),
    cap=st.floats(min_value=5.0, max_value=120.0),
)
def test_backoff_delay_never_exceeds_cap(attempt: int, base: float, cap: float):
    delay = backoff_delay(attempt, base, cap)
    assert 0.0 <= delay <= cap
