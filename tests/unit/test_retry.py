import pytest

from stepwise.utils.retry import compute_backoff, schedule_retry


def test_compute_backoff_doubles_per_attempt():
    assert [compute_backoff(a) for a in (1, 2, 3, 4)] == [1000, 2000, 4000, 8000]
    assert compute_backoff(3, base_ms=10) == 40


@pytest.mark.asyncio
async def test_schedule_retry_sleeps_in_seconds(sleep):
    delay = await schedule_retry(2, sleep=sleep)
    assert delay == 2000
    assert sleep.calls == [2.0]
