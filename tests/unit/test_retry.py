from sopflow.utils.retry import compute_backoff


def test_compute_backoff_grows_exponentially():
    assert compute_backoff(1) == 2
    assert compute_backoff(3) == 8
    assert compute_backoff(2, base=2.0, unit=60) == 240


def test_compute_backoff_jitter_is_bounded():
    for _ in range(20):
        delay = compute_backoff(1, jitter=0.5)
        assert 2 <= delay <= 2.5
