from datetime import datetime, timedelta, timezone

from batchstep.utils.retry import compute_backoff, next_poll_time


def test_compute_backoff_grows_with_attempts():
    for attempt in range(1, 6):
        delay = compute_backoff(attempt, base=2.0, jitter=0.5)
        assert 2.0 ** attempt <= delay <= 2.0 ** attempt + 0.5


def test_next_poll_time_is_after_now():
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    deadline = next_poll_time(now, attempt=3, base=1.5, jitter=0.0)
    assert deadline == now + timedelta(seconds=1.5 ** 3)


def test_compute_backoff_is_capped():
    assert compute_backoff(50, base=2.0, jitter=0.0, max_delay=600.0) == 600.0


def test_next_poll_time_respects_cap():
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    deadline = next_poll_time(now, attempt=40, base=2.0, jitter=0.0, max_delay=90.0)
    assert deadline == now + timedelta(seconds=90)
