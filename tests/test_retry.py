import pytest

from mdm_dispatcher.core.retry import RetryPolicy


def test_should_retry_allows_max_retries_resends():
    policy = RetryPolicy(max_retries=2)

    assert policy.should_retry(0) is True
    assert policy.should_retry(1) is True
    assert policy.should_retry(2) is False


def test_zero_max_retries_never_retries():
    assert RetryPolicy(max_retries=0).should_retry(0) is False


def test_zero_initial_backoff_retries_immediately():
    policy = RetryPolicy(initial_backoff_seconds=0.0)

    assert policy.delay_for(0) == 0.0
    assert policy.delay_for(4) == 0.0


def test_backoff_doubles_up_to_cap():
    policy = RetryPolicy(
        initial_backoff_seconds=0.5, max_backoff_seconds=3.0, jitter_ratio=0.0
    )

    delays = [policy.delay_for(attempt) for attempt in range(5)]

    assert delays == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_jitter_spreads_around_base_delay():
    bounds: list[tuple[float, float]] = []

    def fake_uniform(low: float, high: float) -> float:
        bounds.append((low, high))
        return high

    policy = RetryPolicy(
        initial_backoff_seconds=1.0, jitter_ratio=0.25, rng=fake_uniform
    )

    assert policy.delay_for(1) == pytest.approx(2.5)
    assert bounds == [(pytest.approx(1.5), pytest.approx(2.5))]
