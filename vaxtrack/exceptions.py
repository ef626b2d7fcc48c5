"""Exception classes for the vaccination schedule and notification engine.

All exceptions inherit from VaxtrackError so callers can catch every engine
error at once. Synchronous errors (validation, lifecycle rule violations,
duplicates, conflicts) propagate to the immediate caller. Delivery failures
are recorded on the notification itself and only surface as exceptions inside
the delivery layer.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional


class VaxtrackError(Exception):
    """Base exception for all engine errors."""


class ValidationError(VaxtrackError, ValueError):
    """Raised when input is malformed.

    Examples:
        - Unparseable or missing date
        - Unknown enum value (status, action, channel)
        - Reschedule date that is not in the future
    """


class ConfigurationError(VaxtrackError, ValueError):
    """Raised when parameters.yaml or the vaccine catalog is invalid."""


class NotFoundError(VaxtrackError, KeyError):
    """Raised when a child, vaccine, record or notification does not exist."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep messages readable.
        return str(self.args[0]) if self.args else ""


class InvalidTransition(VaxtrackError):
    """Raised when a lifecycle action is not legal from the record's state."""

    def __init__(self, record_id: str, status: str, action: str) -> None:
        self.record_id = record_id
        self.status = status
        self.action = action
        super().__init__(
            f"Cannot apply '{action}' to record {record_id} in status '{status}'"
        )


class DuplicateActiveRecord(VaxtrackError):
    """Raised when a second active record would exist for one dose.

    The caller must cancel the existing record before creating another.
    """

    def __init__(self, child_id: str, vaccine_id: str, dose_number: int, existing_id: str) -> None:
        self.child_id = child_id
        self.vaccine_id = vaccine_id
        self.dose_number = dose_number
        self.existing_id = existing_id
        super().__init__(
            f"Active record {existing_id} already exists for child {child_id}, "
            f"vaccine {vaccine_id}, dose {dose_number}"
        )


class ConcurrencyConflict(VaxtrackError):
    """Raised when an optimistic version check fails on update.

    The caller should re-read the entity and retry that single unit of work.
    """

    def __init__(self, entity_id: str, expected_version: int, actual_version: Optional[int]) -> None:
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on {entity_id}: expected {expected_version}, "
            f"found {actual_version}"
        )


class ChannelDeliveryFailure(VaxtrackError):
    """Transient failure of one channel for one notification.

    Recorded as the channel's failure_reason; never aborts other channels.
    """

    def __init__(self, channel: str, reason: str) -> None:
        self.channel = channel
        self.reason = reason
        super().__init__(f"{channel} delivery failed: {reason}")


class RetryExhausted(VaxtrackError):
    """Terminal delivery failure after the maximum number of attempts.

    Passed to the operator hook; never raised out of a sweep.
    """

    def __init__(
        self,
        notification_id: str,
        retry_count: int,
        failures: dict[str, str],
        exhausted_at: Optional[datetime] = None,
    ) -> None:
        self.notification_id = notification_id
        self.retry_count = retry_count
        self.failures = dict(failures)
        self.exhausted_at = exhausted_at
        detail = "; ".join(f"{ch}: {reason}" for ch, reason in sorted(self.failures.items()))
        super().__init__(
            f"Notification {notification_id} failed after {retry_count} attempts"
            + (f" ({detail})" if detail else "")
        )
