"""Unified data models for the vaccination schedule and notification engine.

This module provides the dataclasses shared by every engine component. All
entities are frozen: a state change builds a new instance with
``dataclasses.replace`` and the store persists it in one compare-and-set on
``version``. Mapping fields (channel deliveries) are always rebuilt, never
mutated in place.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from .enums import AgeUnit, Channel, NotificationStatus, NotificationType, Priority, RecordStatus


@dataclass(frozen=True)
class DoseSpec:
    """One dose of a vaccine regimen.

    Fields
    ------
    dose_number : int
        1-based sequence number within the vaccine's regimen.
    age_in_days_at_due : int
        Age in days at which the dose is due, counted from the birth date.
    min_interval_from_previous_dose_days : int
        Minimum days after the previous dose's scheduled date. 0 disables the
        check.
    description : str
        Free-text note shown alongside the dose (e.g. "2 months").
    """

    dose_number: int
    age_in_days_at_due: int
    min_interval_from_previous_dose_days: int = 0
    description: str = ""


@dataclass(frozen=True)
class AgeWindow:
    """Inclusive age range in which a child is eligible for a vaccine.

    Fields
    ------
    min_age : int
        Lower bound, in ``unit``.
    max_age : int
        Upper bound, in ``unit``.
    unit : AgeUnit
        Unit of both bounds.
    """

    min_age: int
    max_age: int
    unit: AgeUnit = AgeUnit.YEARS

    def contains(self, age_in_days: int) -> bool:
        return self.unit.to_days(self.min_age) <= age_in_days <= self.unit.to_days(self.max_age)


@dataclass(frozen=True)
class VaccineDefinition:
    """A versioned vaccine and its ordered dose regimen.

    Definitions are immutable once referenced by a generated record. Edits go
    through ``new_version`` so existing records keep the version they were
    generated from.
    """

    vaccine_id: str
    name: str
    doses: Tuple[DoseSpec, ...]
    short_name: str = ""
    version: int = 1
    is_active: bool = True
    age_groups: Tuple[AgeWindow, ...] = ()

    def is_eligible_at(self, age_in_days: int) -> bool:
        """True when no age groups are set or one of them covers the age."""
        if not self.age_groups:
            return True
        return any(window.contains(age_in_days) for window in self.age_groups)

    def new_version(self, **changes: Any) -> "VaccineDefinition":
        """Return an edited copy with the version number bumped."""
        for key in ("doses", "age_groups"):
            if key in changes:
                changes[key] = tuple(changes[key])
        return replace(self, version=self.version + 1, **changes)


@dataclass(frozen=True)
class Child:
    """Read-only child context used for date math and message content."""

    child_id: str
    first_name: str
    last_name: str
    date_of_birth: date
    guardian_id: str

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


@dataclass(frozen=True)
class ScheduledDose:
    """Output row of the dose calendar builder."""

    vaccine_id: str
    vaccine_name: str
    vaccine_version: int
    dose_number: int
    scheduled_date: date
    description: str = ""

    @property
    def key(self) -> Tuple[str, int]:
        return (self.vaccine_id, self.dose_number)


@dataclass(frozen=True)
class RescheduleEntry:
    """One reschedule of a vaccination record."""

    old_date: date
    new_date: date
    reason: str
    timestamp: datetime


@dataclass(frozen=True)
class SideEffectReport:
    """Post-administration reaction report appended to a completed record."""

    description: str
    severity: str
    reported_at: datetime
    reported_by: Optional[str] = None


@dataclass(frozen=True)
class VaccinationRecord:
    """One scheduled dose instance for one child.

    Fields
    ------
    record_id : str
        Unique record identifier.
    child_id, vaccine_id, dose_number
        Natural key. At most one active (non-cancelled, non-deleted) record
        exists per key.
    vaccine_version : int
        Version of the vaccine definition the record was generated from.
    status : RecordStatus
        Stored lifecycle status. ``OVERDUE`` is a sweep-maintained cache.
    scheduled_date : date
        Current due date.
    original_scheduled_date : Optional[date]
        Due date before the first reschedule.
    administered_date, administered_by
        Set only when completed.
    reschedule_history : Tuple[RescheduleEntry, ...]
        Ordered reschedule log.
    cancellation_reason, missed_reason
        Set only in the corresponding terminal status.
    side_effect_reports : Tuple[SideEffectReport, ...]
        Append-only; the only mutation allowed once completed.
    version : int
        Optimistic concurrency counter, bumped by every store update.
    """

    record_id: str
    child_id: str
    vaccine_id: str
    dose_number: int
    scheduled_date: date
    vaccine_version: int = 1
    status: RecordStatus = RecordStatus.SCHEDULED
    original_scheduled_date: Optional[date] = None
    administered_date: Optional[date] = None
    administered_by: Optional[str] = None
    reschedule_history: Tuple[RescheduleEntry, ...] = ()
    cancellation_reason: Optional[str] = None
    missed_reason: Optional[str] = None
    side_effect_reports: Tuple[SideEffectReport, ...] = ()
    notes: str = ""
    is_deleted: bool = False
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str, int]:
        return (self.child_id, self.vaccine_id, self.dose_number)

    @property
    def is_active(self) -> bool:
        """Counts towards the one-active-record-per-dose rule."""
        return not self.is_deleted and self.status is not RecordStatus.CANCELLED


@dataclass(frozen=True)
class ReminderPayload:
    child_name: str
    vaccine_name: str
    dose_number: int
    scheduled_date: date
    days_until: int


@dataclass(frozen=True)
class OverduePayload:
    child_name: str
    vaccine_name: str
    dose_number: int
    scheduled_date: date
    days_overdue: int


@dataclass(frozen=True)
class CompletionPayload:
    child_name: str
    vaccine_name: str
    dose_number: int
    administered_date: date
    administered_by: Optional[str] = None


@dataclass(frozen=True)
class CancellationPayload:
    child_name: str
    vaccine_name: str
    dose_number: int
    scheduled_date: date
    reason: str


@dataclass(frozen=True)
class GeneralPayload:
    details: Mapping[str, str] = field(default_factory=dict)


NotificationPayload = Union[
    ReminderPayload, OverduePayload, CompletionPayload, CancellationPayload, GeneralPayload
]

PAYLOAD_TYPES: Dict[NotificationType, type] = {
    NotificationType.REMINDER: ReminderPayload,
    NotificationType.OVERDUE: OverduePayload,
    NotificationType.COMPLETED: CompletionPayload,
    NotificationType.CANCELLED: CancellationPayload,
    NotificationType.GENERAL: GeneralPayload,
}


@dataclass(frozen=True)
class ChannelDelivery:
    """Per-channel delivery sub-record of a notification."""

    enabled: bool = False
    sent: bool = False
    sent_at: Optional[datetime] = None
    delivered: bool = False
    delivered_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    provider_message_id: Optional[str] = None


def default_deliveries(enabled: Optional[set] = None) -> Dict[Channel, ChannelDelivery]:
    """Build a delivery map with one entry per channel."""
    enabled = enabled or set()
    return {channel: ChannelDelivery(enabled=channel in enabled) for channel in Channel}


@dataclass(frozen=True)
class Notification:
    """A message to one recipient, delivered over one or more channels.

    The ``payload`` variant is selected by ``type`` (see ``PAYLOAD_TYPES``).
    ``retry_count`` never exceeds the delivery policy's maximum, and
    ``next_retry_at`` is only set while ``status`` is FAILED with retries
    remaining. ``dedup_key`` is unique among notifications that are not
    SUPERSEDED; the factory derives it from the record, type and due date.
    ``lease_expires_at`` is set while a delivery attempt is in flight.
    """

    notification_id: str
    recipient_id: str
    type: NotificationType
    payload: NotificationPayload
    title: str
    message: str
    scheduled_for: datetime
    priority: Priority = Priority.MEDIUM
    record_id: Optional[str] = None
    child_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    status: NotificationStatus = NotificationStatus.PENDING
    is_read: bool = False
    read_at: Optional[datetime] = None
    deliveries: Dict[Channel, ChannelDelivery] = field(default_factory=default_deliveries)
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    needs_attention: bool = False
    dedup_key: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        expected = PAYLOAD_TYPES[self.type]
        if not isinstance(self.payload, expected):
            raise TypeError(
                f"{self.type.value} notification requires {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )

    @property
    def enabled_channels(self) -> Tuple[Channel, ...]:
        return tuple(ch for ch in Channel if self.deliveries.get(ch, ChannelDelivery()).enabled)

    @property
    def is_sent(self) -> bool:
        return any(d.sent for d in self.deliveries.values())

    @property
    def is_delivered(self) -> bool:
        return any(d.delivered for d in self.deliveries.values())

    @property
    def is_open(self) -> bool:
        return self.status in NotificationStatus.open_statuses()

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def is_leased(self, now: datetime) -> bool:
        """True while a delivery worker holds the notification."""
        return self.lease_expires_at is not None and self.lease_expires_at > now


@dataclass(frozen=True)
class DeliveryPreference:
    """Recipient channel preferences, owned by the profile service."""

    email: bool = True
    sms: bool = False
    push: bool = True
    reminder_lead_days: int = 7

    def allows(self, channel: Channel) -> bool:
        return bool(getattr(self, channel.value))


@dataclass(frozen=True)
class RecipientContact:
    """Addresses used to reach a recipient on each channel."""

    recipient_id: str
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    push_token: Optional[str] = None
    language: str = "en"

    def address_for(self, channel: Channel) -> Optional[str]:
        return {
            Channel.EMAIL: self.email,
            Channel.SMS: self.phone,
            Channel.PUSH: self.push_token,
        }[channel]


@dataclass(frozen=True)
class SendOutcome:
    """Result of one channel send."""

    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class SweepResult:
    """Counters reported by one reconciliation sweep run.

    Parameters
    ----------
    records_evaluated : int
        Records inspected by the overdue and reminder rules.
    notifications_created : int
        Reminder and overdue notifications created by this run.
    notifications_evaluated : int
        Due pending and due retry notifications picked up.
    notifications_dispatched : int
        Notifications that reached at least one channel.
    failures : int
        Notifications whose enabled channels all failed.
    exhausted : int
        Notifications that hit the retry limit during this run.
    conflicts : int
        Units of work abandoned after repeated version conflicts.
    errors : int
        Units of work skipped because of any other engine error.
    """

    records_evaluated: int = 0
    notifications_created: int = 0
    notifications_evaluated: int = 0
    notifications_dispatched: int = 0
    failures: int = 0
    exhausted: int = 0
    conflicts: int = 0
    errors: int = 0


@dataclass(frozen=True)
class BulkScheduleResult:
    """Outcome of scheduling many children in one call.

    Parameters
    ----------
    scheduled : Mapping[str, int]
        Records created per child id.
    errors : Mapping[str, str]
        Error message per child id whose scheduling failed.
    children_evaluated : int
        Children considered, including skipped and failed ones.
    """

    scheduled: Mapping[str, int] = field(default_factory=dict)
    errors: Mapping[str, str] = field(default_factory=dict)
    children_evaluated: int = 0

    @property
    def records_created(self) -> int:
        return sum(self.scheduled.values())
