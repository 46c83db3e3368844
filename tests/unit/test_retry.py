import pytest

from agentloom.utils.retry import MAX_BACKOFF_SECONDS, compute_backoff


@pytest.mark.parametrize("attempt,expected", [(1, 1.5), (2, 2.25), (3, 3.375)])
def test_backoff_grows_exponentially(attempt, expected):
    assert compute_backoff(attempt, jitter=0) == pytest.approx(expected)


def test_backoff_is_capped_before_jitter():
    delay = compute_backoff(50, jitter=0.5)
    assert MAX_BACKOFF_SECONDS <= delay <= MAX_BACKOFF_SECONDS + 0.5
