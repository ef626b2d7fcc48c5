"""Notification creation rules.

Every rule is idempotent: a notification is created through
``NotificationStore.create_if_absent`` with a deterministic ``dedup_key``, so
re-running a rule (or running it from two sweeps at once) never produces a
second live notification for the same record, type and due date.

Rules
-----
- **Reminder:** open, not overdue, and today within
  ``[scheduled_date - lead_days, scheduled_date]``. Sent now, expires at the
  end of the scheduled day.
- **Overdue:** past the scheduled date plus grace period. Priority escalates
  with days overdue; no expiry.
- **Completed:** one notice per completed record, on the configured
  completion channels (email by default).
- **Cancelled:** optional notice, enabled by ``notifications.notify_on_cancel``.

Reminder and overdue notifications that no longer apply are moved to
SUPERSEDED by ``supersede_open`` so delivery never picks them up again.
When a record store is attached, a freshly created alert is checked against
the stored record; if the record was completed, cancelled, deleted or
re-dated while the rule ran, the alert is superseded before delivery can
see it.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Sequence

from . import content
from .data_models import (
    CancellationPayload,
    CompletionPayload,
    Notification,
    NotificationPayload,
    OverduePayload,
    ReminderPayload,
    VaccinationRecord,
    default_deliveries,
)
from .enums import Channel, Language, NotificationStatus, NotificationType, Priority, RecordStatus
from .exceptions import ConcurrencyConflict, NotFoundError
from .lifecycle import days_overdue, derive_priority, is_overdue, overdue_priority
from .stores import (
    ChildRepository,
    NotificationStore,
    PreferenceProvider,
    RecordStore,
    VaccineCatalog,
)
from .utils import start_of_day

LOG = logging.getLogger(__name__)

ALERT_TYPES = (NotificationType.REMINDER, NotificationType.OVERDUE)

SUPERSEDABLE_STATUSES = NotificationStatus.open_statuses() | {NotificationStatus.FAILED}

SUPERSEDE_ATTEMPTS = 3


def dedup_key(record: VaccinationRecord, type_: NotificationType) -> str:
    """Key that identifies one logical notification for a record."""
    if type_ in ALERT_TYPES:
        return f"{record.record_id}:{type_.value}:{record.scheduled_date.isoformat()}"
    return f"{record.record_id}:{type_.value}"


def in_reminder_window(record: VaccinationRecord, today, lead_days: int) -> bool:
    """True when today falls in ``[scheduled_date - lead_days, scheduled_date]``."""
    if record.is_deleted or record.status is not RecordStatus.SCHEDULED:
        return False
    return record.scheduled_date - timedelta(days=lead_days) <= today <= record.scheduled_date


class NotificationFactory:
    """Creates and supersedes notifications for vaccination records."""

    def __init__(
        self,
        children: ChildRepository,
        catalog: VaccineCatalog,
        notifications: NotificationStore,
        preferences: PreferenceProvider,
        grace_period_days: int = 0,
        completion_channels: Sequence[Channel | str] = (Channel.EMAIL,),
        notify_on_cancel: bool = False,
        default_language: Language | str = Language.ENGLISH,
        id_factory: Optional[Callable[[], str]] = None,
        records: Optional[RecordStore] = None,
    ) -> None:
        self.children = children
        self.records = records
        self.catalog = catalog
        self.notifications = notifications
        self.preferences = preferences
        self.grace_period_days = grace_period_days
        self.completion_channels = frozenset(Channel.from_string(c) for c in completion_channels)
        self.notify_on_cancel = notify_on_cancel
        self.default_language = Language.from_string(default_language)
        self.id_factory = id_factory or (lambda: uuid.uuid4().hex)

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def evaluate_reminder(self, record: VaccinationRecord, now: datetime) -> Optional[Notification]:
        """Create the reminder for ``record`` if it is due. Returns the new notification."""
        guardian_id = self.children.get_child(record.child_id).guardian_id
        prefs = self.preferences.get_channel_preferences(guardian_id)
        today = now.date()
        if not in_reminder_window(record, today, prefs.reminder_lead_days):
            return None

        payload = ReminderPayload(
            child_name=self._child_name(record),
            vaccine_name=self._vaccine_name(record),
            dose_number=record.dose_number,
            scheduled_date=record.scheduled_date,
            days_until=(record.scheduled_date - today).days,
        )
        channels = {ch for ch in Channel if prefs.allows(ch)}
        return self._create(
            record,
            NotificationType.REMINDER,
            payload,
            channels,
            now=now,
            priority=derive_priority(record, today, self.grace_period_days),
            expires_at=start_of_day(record.scheduled_date + timedelta(days=1)),
        )

    def evaluate_overdue(self, record: VaccinationRecord, now: datetime) -> Optional[Notification]:
        """Create the overdue alert for ``record`` if it is past due plus grace."""
        today = now.date()
        if not is_overdue(record, today, self.grace_period_days):
            return None

        guardian_id = self.children.get_child(record.child_id).guardian_id
        prefs = self.preferences.get_channel_preferences(guardian_id)
        late = days_overdue(record, today, self.grace_period_days)
        payload = OverduePayload(
            child_name=self._child_name(record),
            vaccine_name=self._vaccine_name(record),
            dose_number=record.dose_number,
            scheduled_date=record.scheduled_date,
            days_overdue=late,
        )
        return self._create(
            record,
            NotificationType.OVERDUE,
            payload,
            {ch for ch in Channel if prefs.allows(ch)},
            now=now,
            priority=overdue_priority(late),
        )

    def evaluate_record(self, record: VaccinationRecord, now: datetime) -> List[Notification]:
        """Apply the overdue and reminder rules to one record."""
        created = []
        for rule in (self.evaluate_overdue, self.evaluate_reminder):
            notification = rule(record, now)
            if notification is not None:
                created.append(notification)
        return created

    def notify_completed(self, record: VaccinationRecord, now: datetime) -> Optional[Notification]:
        """Supersede pending alerts and create the completion notice."""
        self.supersede_open(record.record_id, ALERT_TYPES, now)
        guardian_id = self.children.get_child(record.child_id).guardian_id
        prefs = self.preferences.get_channel_preferences(guardian_id)
        payload = CompletionPayload(
            child_name=self._child_name(record),
            vaccine_name=self._vaccine_name(record),
            dose_number=record.dose_number,
            administered_date=record.administered_date or now.date(),
            administered_by=record.administered_by,
        )
        return self._create(
            record,
            NotificationType.COMPLETED,
            payload,
            {ch for ch in self.completion_channels if prefs.allows(ch)},
            now=now,
            priority=Priority.MEDIUM,
        )

    def notify_cancelled(self, record: VaccinationRecord, now: datetime) -> Optional[Notification]:
        """Supersede pending alerts and, when enabled, create a cancellation notice."""
        self.supersede_open(record.record_id, ALERT_TYPES, now)
        if not self.notify_on_cancel:
            return None
        guardian_id = self.children.get_child(record.child_id).guardian_id
        prefs = self.preferences.get_channel_preferences(guardian_id)
        payload = CancellationPayload(
            child_name=self._child_name(record),
            vaccine_name=self._vaccine_name(record),
            dose_number=record.dose_number,
            scheduled_date=record.scheduled_date,
            reason=record.cancellation_reason or "",
        )
        return self._create(
            record,
            NotificationType.CANCELLED,
            payload,
            {ch for ch in Channel if prefs.allows(ch)},
            now=now,
            priority=Priority.MEDIUM,
        )

    def supersede_open(
        self, record_id: str, types: Iterable[NotificationType], now: datetime
    ) -> List[Notification]:
        """Move live notifications of ``types`` for a record to SUPERSEDED.

        Open and failed notifications are superseded; read and already
        superseded ones are left alone.

        Raises
        ------
        ConcurrencyConflict
            If one notification keeps changing underneath after
            ``SUPERSEDE_ATTEMPTS`` re-reads.
        """
        wanted = set(types)
        superseded = []
        for notification in self.notifications.list_for_record(record_id):
            if notification.type not in wanted:
                continue
            result = self._supersede_one(notification, now)
            if result is not None:
                superseded.append(result)
        if superseded:
            LOG.info("Superseded %d notification(s) for record %s", len(superseded), record_id)
        return superseded

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _supersede_one(self, notification: Notification, now: datetime) -> Optional[Notification]:
        current = notification
        for attempt in range(SUPERSEDE_ATTEMPTS):
            if current.status not in SUPERSEDABLE_STATUSES:
                return None
            updated = replace(
                current,
                status=NotificationStatus.SUPERSEDED,
                next_retry_at=None,
                updated_at=now,
            )
            try:
                return self.notifications.update(updated, expected_version=current.version)
            except ConcurrencyConflict:
                if attempt == SUPERSEDE_ATTEMPTS - 1:
                    raise
                current = self.notifications.get(current.notification_id)
        return None

    def _create(
        self,
        record: VaccinationRecord,
        type_: NotificationType,
        payload: NotificationPayload,
        channels: set,
        now: datetime,
        priority: Priority,
        expires_at: Optional[datetime] = None,
    ) -> Optional[Notification]:
        guardian_id = self.children.get_child(record.child_id).guardian_id
        if not channels:
            LOG.info(
                "No channel enabled for %s notification to %s (record %s); skipped",
                type_.value,
                guardian_id,
                record.record_id,
            )
            return None

        title, message = content.render(type_, payload, self._language_for(guardian_id))
        notification = Notification(
            notification_id=self.id_factory(),
            recipient_id=guardian_id,
            type=type_,
            payload=payload,
            title=title,
            message=message,
            scheduled_for=now,
            priority=priority,
            record_id=record.record_id,
            child_id=record.child_id,
            expires_at=expires_at,
            deliveries=default_deliveries(channels),
            dedup_key=dedup_key(record, type_),
            created_at=now,
            updated_at=now,
        )
        stored, created = self.notifications.create_if_absent(notification)
        if not created:
            LOG.debug("%s notification for record %s already exists", type_.value, record.record_id)
            return None
        if type_ in ALERT_TYPES and self._record_changed(record):
            self._supersede_one(stored, now)
            LOG.info(
                "Record %s changed while its %s alert was created; alert %s superseded",
                record.record_id,
                type_.value,
                stored.notification_id,
            )
            return None
        LOG.info(
            "Created %s notification %s for record %s (priority %s)",
            type_.value,
            stored.notification_id,
            record.record_id,
            priority.value,
        )
        return stored

    def _record_changed(self, snapshot: VaccinationRecord) -> bool:
        """True when the stored record no longer matches the one a rule evaluated."""
        if self.records is None:
            return False
        try:
            current = self.records.get(snapshot.record_id)
        except NotFoundError:
            return True
        return (
            current.is_deleted
            or not current.status.is_open
            or current.scheduled_date != snapshot.scheduled_date
        )

    def _language_for(self, recipient_id: str) -> Language:
        code = self.preferences.get_contact(recipient_id).language
        return content.resolve_language(code, self.default_language)

    def _child_name(self, record: VaccinationRecord) -> str:
        return self.children.get_child(record.child_id).full_name

    def _vaccine_name(self, record: VaccinationRecord) -> str:
        try:
            return self.catalog.get_vaccine(record.vaccine_id, record.vaccine_version).name
        except NotFoundError:
            # Catalog no longer holds the generating version; use the latest.
            return self.catalog.get_vaccine(record.vaccine_id).name
