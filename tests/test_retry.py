from datetime import datetime, timedelta

import pytest

from jobrunner.domain.models import Job, interval_from_ms, interval_to_ms
from jobrunner.domain.retry import calculate_next_run
from jobrunner.domain.states import JobStatus

NOW = datetime(2024, 1, 1, 12, 0, 0)

@pytest.mark.parametrize("attempts, expected", [(1, 10), (2, 20), (3, 40), (4, 80)])
def test_backoff_doubles_per_attempt(attempts, expected):
    run_at = calculate_next_run(attempts, NOW, base_delay_seconds=10, jitter=False)

    assert run_at == NOW + timedelta(seconds=expected)

def test_backoff_is_capped():
    run_at = calculate_next_run(30, NOW, base_delay_seconds=10, max_delay_seconds=3600, jitter=False)

    assert run_at == NOW + timedelta(seconds=3600)

def test_jitter_adds_at_most_ten_percent():
    for _ in range(50):
        delay = (calculate_next_run(2, NOW, base_delay_seconds=10) - NOW).total_seconds()
        assert 20 <= delay <= 22

def test_zero_base_retries_immediately():
    assert calculate_next_run(5, NOW, base_delay_seconds=0) == NOW

def test_attempts_exhausted():
    job = Job(id="1", name="A", queue="default", payload=None, status=JobStatus.QUEUED, run_at=NOW, max_attempts=2)

    assert not job.attempts_exhausted
    job.attempts = 2
    assert job.attempts_exhausted

def test_interval_conversion():
    assert interval_to_ms(timedelta(seconds=1.5)) == 1500
    assert interval_to_ms(None) is None
    assert interval_from_ms(250) == timedelta(milliseconds=250)
    assert interval_from_ms(None) is None
