"""
Retry Policy - maps a recorded failure to the time of the next dunning retry.

Pure and deterministic: no clock reads, no I/O.
"""

from datetime import datetime, timedelta
from typing import Optional

from app.modules.billing.domain.billing.dunning_config import DunningConfig


def next_retry_at(
    attempt_number: int, failure_timestamp: datetime, config: DunningConfig
) -> Optional[datetime]:
    """
    Next retry time after the 1-based `attempt_number` failed at `failure_timestamp`.

    Returns None once the attempt exceeds `max_retries`: the caller must cancel.
    `max_retries` counts retries after the initial failure, so the attempt equal
    to `max_retries` still schedules one last retry (the one announced by the
    final notice). A literal `attempt >= max_retries` cut-off would cancel
    before that retry runs and the final notice could never be sent.

    >>> cfg = DunningConfig(max_retries=3, retry_intervals_days=(1, 3, 7))
    >>> t0 = datetime(2026, 1, 1)
    >>> next_retry_at(1, t0, cfg)
    datetime.datetime(2026, 1, 2, 0, 0)
    >>> next_retry_at(4, t0, cfg) is None
    True
    """
    if attempt_number < 1:
        raise ValueError("attempt_number is 1-based")
    if attempt_number > config.max_retries:
        return None
    return failure_timestamp + timedelta(days=config.interval_for(attempt_number))


def is_final_attempt(attempt_number: int, config: DunningConfig) -> bool:
    """True when the retry scheduled after this attempt is the last one."""
    return attempt_number == config.max_retries
