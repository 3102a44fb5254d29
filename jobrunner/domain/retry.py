import random
from datetime import datetime, timedelta

def calculate_next_run(
    attempts: int,
    now: datetime,
    base_delay_seconds: float = 10,
    max_delay_seconds: float = 3600,
    jitter: bool = True
) -> datetime:
    """
    Calculates when a failed job becomes claimable again.

    Formula:
        delay = min(base * (2 ^ (attempts - 1)), max_delay)
        if jitter:
            delay = delay + random_uniform(0, 0.1 * delay)

    `attempts` is the number of deliveries so far, so the first retry
    (attempts=1) waits `base` seconds. A base of 0 retries immediately.
    """
    exponent = min(max(attempts - 1, 0), 20)

    delay = base_delay_seconds * (2 ** exponent)
    if delay > max_delay_seconds:
        delay = max_delay_seconds

    if jitter and delay > 0:
        # Up to 10% jitter to avoid thundering herd
        delay += random.uniform(0, delay * 0.1)

    return now + timedelta(seconds=delay)
