from datetime import datetime, timedelta, timezone

import pytest

from app.modules.billing.domain.billing.dunning_config import DunningConfig
from app.modules.billing.domain.billing.retry_policy import (
    is_final_attempt,
    next_retry_at,
)

T0 = datetime(2026, 1, 10, 12, 30, tzinfo=timezone.utc)


@pytest.fixture
def config() -> DunningConfig:
    return DunningConfig(max_retries=3, retry_intervals_days=(1, 3, 7))


def test_intervals_follow_attempt_number(config):
    assert next_retry_at(1, T0, config) == T0 + timedelta(days=1)
    assert next_retry_at(2, T0, config) == T0 + timedelta(days=3)
    assert next_retry_at(3, T0, config) == T0 + timedelta(days=7)


def test_attempt_past_max_retries_means_cancel(config):
    assert next_retry_at(4, T0, config) is None
    assert next_retry_at(10, T0, config) is None


def test_last_interval_repeats_when_list_is_short():
    config = DunningConfig(max_retries=5, retry_intervals_days=(2, 4))
    assert next_retry_at(2, T0, config) == T0 + timedelta(days=4)
    assert next_retry_at(5, T0, config) == T0 + timedelta(days=4)
    assert next_retry_at(6, T0, config) is None


def test_is_pure(config):
    """Same inputs, same output, no hidden clock."""
    first = next_retry_at(2, T0, config)
    second = next_retry_at(2, T0, config)
    assert first == second


def test_timezone_preserved(config):
    result = next_retry_at(1, T0, config)
    assert result.tzinfo == timezone.utc


def test_rejects_zero_based_attempts(config):
    with pytest.raises(ValueError):
        next_retry_at(0, T0, config)


def test_final_attempt_flag(config):
    assert not is_final_attempt(1, config)
    assert is_final_attempt(3, config)
