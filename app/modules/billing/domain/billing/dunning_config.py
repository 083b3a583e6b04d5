"""
Dunning policy snapshot.

A DunningConfig is immutable. It is loaded once per process (from settings or a
YAML document) and shared by every worker without locking; a configuration
change produces a new snapshot that only later decisions see.
"""

from decimal import Decimal
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.shared.core.config import Settings, get_settings
from app.shared.core.exceptions import ConfigurationError

logger = structlog.get_logger()


class GraceExtensionPolicy(str, Enum):
    POSTPONE = "postpone"
    RESET_ATTEMPTS = "reset_attempts"


class DunningConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_retries: int = Field(default=3, ge=1)
    retry_intervals_days: tuple[int, ...] = (1, 3, 7)
    grace_period_days: int = Field(default=14, ge=0)
    email_on_first_failure: bool = True
    email_on_final_failure: bool = True
    gateway_timeout_seconds: float = Field(default=30.0, gt=0)
    grace_extension_policy: GraceExtensionPolicy = GraceExtensionPolicy.POSTPONE
    late_fee_after_retry: Optional[int] = Field(default=None, ge=1)
    late_fee_amount: Optional[Decimal] = Field(default=None, ge=0)

    @field_validator("retry_intervals_days")
    @classmethod
    def _intervals_positive(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        if not value:
            raise ValueError("retry_intervals_days must not be empty")
        if any(days <= 0 for days in value):
            raise ValueError("retry_intervals_days must be positive day offsets")
        return value

    @model_validator(mode="after")
    def _late_fee_pair(self) -> "DunningConfig":
        if (self.late_fee_after_retry is None) != (self.late_fee_amount is None):
            raise ValueError(
                "late_fee_after_retry and late_fee_amount must be set together"
            )
        return self

    def interval_for(self, attempt_number: int) -> int:
        """Day offset after the given 1-based attempt; the last interval repeats."""
        index = min(attempt_number - 1, len(self.retry_intervals_days) - 1)
        return self.retry_intervals_days[index]


def dunning_config_from_settings(settings: Settings) -> DunningConfig:
    late_fee = settings.DUNNING_LATE_FEE_AMOUNT
    return DunningConfig(
        max_retries=settings.DUNNING_MAX_RETRIES,
        retry_intervals_days=tuple(settings.DUNNING_RETRY_INTERVALS_DAYS),
        grace_period_days=settings.DUNNING_GRACE_PERIOD_DAYS,
        email_on_first_failure=settings.DUNNING_EMAIL_ON_FIRST_FAILURE,
        email_on_final_failure=settings.DUNNING_EMAIL_ON_FINAL_FAILURE,
        gateway_timeout_seconds=settings.DUNNING_GATEWAY_TIMEOUT_SECONDS,
        grace_extension_policy=GraceExtensionPolicy(
            settings.DUNNING_GRACE_EXTENSION_POLICY
        ),
        late_fee_after_retry=settings.DUNNING_LATE_FEE_AFTER_RETRY,
        late_fee_amount=Decimal(late_fee) if late_fee else None,
    )


def load_dunning_config(path: str | Path) -> DunningConfig:
    """
    Load a policy snapshot from a YAML document.

    Accepts either the keys at top level or nested under `dunning:`.
    """
    source = Path(path)
    try:
        raw: Any = yaml.safe_load(source.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(
            f"Unable to read dunning config from {source}",
            details={"error": str(exc)},
        ) from exc

    if not isinstance(raw, dict):
        raise ConfigurationError("Dunning config document must be a mapping")
    data = dict(raw.get("dunning", raw))
    # Accept the short key spelling used by the configuration surface.
    if "retry_intervals" in data and "retry_intervals_days" not in data:
        data["retry_intervals_days"] = data.pop("retry_intervals")

    try:
        config = DunningConfig.model_validate(data)
    except ValueError as exc:
        raise ConfigurationError(
            "Invalid dunning config", details={"error": str(exc)}
        ) from exc

    logger.info(
        "dunning_config_loaded",
        source=str(source),
        max_retries=config.max_retries,
        retry_intervals_days=list(config.retry_intervals_days),
    )
    return config


@lru_cache
def get_dunning_config() -> DunningConfig:
    """Process-wide snapshot built at first use."""
    settings = get_settings()
    if settings.DUNNING_CONFIG_PATH:
        return load_dunning_config(settings.DUNNING_CONFIG_PATH)
    try:
        return dunning_config_from_settings(settings)
    except ValueError as exc:
        raise ConfigurationError(
            "Invalid DUNNING_* settings", details={"error": str(exc)}
        ) from exc
