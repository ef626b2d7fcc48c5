"""Retry timing for failed notification deliveries.

A delivery attempt in which every enabled channel failed schedules the next
attempt ``base_minutes * factor ** retry_count`` minutes later, where
``retry_count`` is the count after the failure. With the defaults that gives
2, 4, 8 and 16 minutes; after the fifth failure no retry is scheduled.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .exceptions import ConfigurationError

DEFAULT_MAX_RETRIES = 5


@dataclass(frozen=True)
class ExponentialBackoff:
    """Exponential retry policy.

    Parameters
    ----------
    max_retries : int
        Failed attempts allowed before the notification is exhausted.
    base_minutes : float
        Multiplier applied to the exponential term.
    factor : float
        Exponential base.
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    base_minutes: float = 1
    factor: float = 2

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigurationError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_minutes <= 0 or self.factor < 1:
            raise ConfigurationError(
                f"Invalid backoff: base_minutes={self.base_minutes}, factor={self.factor}"
            )

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ExponentialBackoff":
        delivery = config.get("delivery", {})
        return cls(
            max_retries=delivery.get("max_retries", DEFAULT_MAX_RETRIES),
            base_minutes=delivery.get("backoff_base_minutes", 1),
            factor=delivery.get("backoff_factor", 2),
        )

    def delay(self, retry_count: int) -> timedelta:
        """Wait before the attempt that follows failure number ``retry_count``."""
        return timedelta(minutes=self.base_minutes * self.factor**retry_count)

    def is_exhausted(self, retry_count: int) -> bool:
        return retry_count >= self.max_retries

    def next_retry_at(self, now: datetime, retry_count: int) -> Optional[datetime]:
        """Time of the next attempt, or None once retries are exhausted."""
        if self.is_exhausted(retry_count):
            return None
        return now + self.delay(retry_count)
