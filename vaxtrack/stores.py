"""Storage and profile interfaces consumed by the engine.

The engine talks to persistence and profile services only through the
protocols below. The in-memory implementations back the CLI, the state
artifact round trip, and the test suite; a deployment swaps them for
database-backed adapters that honour the same contract:

- ``update(entity, expected_version)`` is one atomic compare-and-set. It
  raises ``ConcurrencyConflict`` when the stored version differs, and returns
  the stored entity with ``version`` incremented.
- ``RecordStore.create`` enforces one active record per
  (child, vaccine, dose_number) and raises ``DuplicateActiveRecord``.
- ``NotificationStore.create_if_absent`` enforces one live (non-superseded)
  notification per ``dedup_key`` so concurrent sweeps cannot double-create.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from .data_models import (
    Child,
    DeliveryPreference,
    DoseSpec,
    Notification,
    RecipientContact,
    VaccinationRecord,
    VaccineDefinition,
)
from .enums import NotificationStatus, RecordStatus
from .exceptions import ConcurrencyConflict, DuplicateActiveRecord, NotFoundError


class ChildRepository(Protocol):
    def get_child(self, child_id: str) -> Child:
        ...

    def get_birth_date(self, child_id: str) -> date:
        ...

    def list_children(self) -> List[Child]:
        ...


class VaccineCatalog(Protocol):
    def get_dose_specs(self, vaccine_id: str) -> Sequence[DoseSpec]:
        ...

    def get_vaccine(self, vaccine_id: str, version: Optional[int] = None) -> VaccineDefinition:
        ...

    def list_vaccines(self, active_only: bool = True) -> List[VaccineDefinition]:
        ...


class RecordStore(Protocol):
    def create(self, record: VaccinationRecord) -> VaccinationRecord:
        ...

    def get(self, record_id: str) -> VaccinationRecord:
        ...

    def update(self, record: VaccinationRecord, expected_version: int) -> VaccinationRecord:
        ...

    def find_by_key(
        self, child_id: str, vaccine_id: str, dose_number: int
    ) -> Optional[VaccinationRecord]:
        ...

    def list_for_child(self, child_id: str, include_inactive: bool = False) -> List[VaccinationRecord]:
        ...

    def query_by_status(
        self,
        statuses: Iterable[RecordStatus],
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[VaccinationRecord]:
        ...


class NotificationStore(Protocol):
    def create(self, notification: Notification) -> Notification:
        ...

    def create_if_absent(self, notification: Notification) -> Tuple[Notification, bool]:
        ...

    def get(self, notification_id: str) -> Notification:
        ...

    def update(self, notification: Notification, expected_version: int) -> Notification:
        ...

    def list_for_record(self, record_id: str) -> List[Notification]:
        ...

    def query_due_pending(self, now: datetime) -> List[Notification]:
        ...

    def query_due_retry(self, now: datetime, max_retries: int) -> List[Notification]:
        ...

    def delete(self, notification_id: str) -> None:
        ...

    def list_all(self) -> List[Notification]:
        ...


class PreferenceProvider(Protocol):
    def get_channel_preferences(self, user_id: str) -> DeliveryPreference:
        ...

    def get_contact(self, user_id: str) -> RecipientContact:
        ...


class InMemoryChildRepository:
    """Child lookup backed by a dict."""

    def __init__(self, children: Iterable[Child] = ()) -> None:
        self._children: Dict[str, Child] = {c.child_id: c for c in children}

    def add(self, child: Child) -> None:
        existing = self._children.get(child.child_id)
        if existing is not None and existing.date_of_birth != child.date_of_birth:
            raise ValueError(f"Date of birth of child {child.child_id} cannot change")
        self._children[child.child_id] = child

    def get_child(self, child_id: str) -> Child:
        try:
            return self._children[child_id]
        except KeyError:
            raise NotFoundError(f"Unknown child: {child_id}") from None

    def get_birth_date(self, child_id: str) -> date:
        return self.get_child(child_id).date_of_birth

    def list_children(self) -> List[Child]:
        return list(self._children.values())


class InMemoryPreferenceProvider:
    """Recipient preferences and contacts backed by dicts.

    Recipients without stored preferences get ``DeliveryPreference()``
    defaults (email and push on, sms off).
    """

    def __init__(
        self,
        preferences: Optional[Dict[str, DeliveryPreference]] = None,
        contacts: Optional[Dict[str, RecipientContact]] = None,
        default: Optional[DeliveryPreference] = None,
    ) -> None:
        self._preferences = dict(preferences or {})
        self._contacts = dict(contacts or {})
        self._default = default or DeliveryPreference()

    def set_preferences(self, user_id: str, preference: DeliveryPreference) -> None:
        self._preferences[user_id] = preference

    def set_contact(self, contact: RecipientContact) -> None:
        self._contacts[contact.recipient_id] = contact

    def get_channel_preferences(self, user_id: str) -> DeliveryPreference:
        return self._preferences.get(user_id, self._default)

    def get_contact(self, user_id: str) -> RecipientContact:
        return self._contacts.get(user_id, RecipientContact(recipient_id=user_id))

    def preferences(self) -> Dict[str, DeliveryPreference]:
        return dict(self._preferences)

    def contacts(self) -> Dict[str, RecipientContact]:
        return dict(self._contacts)


class InMemoryRecordStore:
    """Thread-safe vaccination record store with optimistic versioning."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, VaccinationRecord] = {}

    def _active_for_key(self, key: Tuple[str, str, int]) -> Optional[VaccinationRecord]:
        for record in self._records.values():
            if record.key == key and record.is_active:
                return record
        return None

    def create(self, record: VaccinationRecord) -> VaccinationRecord:
        with self._lock:
            if record.record_id in self._records:
                raise ValueError(f"Record {record.record_id} already exists")
            if record.is_active:
                existing = self._active_for_key(record.key)
                if existing is not None:
                    raise DuplicateActiveRecord(*record.key, existing_id=existing.record_id)
            stored = replace(record, version=1)
            self._records[stored.record_id] = stored
            return stored

    def get(self, record_id: str) -> VaccinationRecord:
        with self._lock:
            try:
                return self._records[record_id]
            except KeyError:
                raise NotFoundError(f"Unknown vaccination record: {record_id}") from None

    def update(self, record: VaccinationRecord, expected_version: int) -> VaccinationRecord:
        with self._lock:
            current = self._records.get(record.record_id)
            if current is None:
                raise NotFoundError(f"Unknown vaccination record: {record.record_id}")
            if current.version != expected_version:
                raise ConcurrencyConflict(record.record_id, expected_version, current.version)
            if record.is_active and not current.is_active:
                existing = self._active_for_key(record.key)
                if existing is not None:
                    raise DuplicateActiveRecord(*record.key, existing_id=existing.record_id)
            stored = replace(record, version=current.version + 1)
            self._records[stored.record_id] = stored
            return stored

    def find_by_key(
        self, child_id: str, vaccine_id: str, dose_number: int
    ) -> Optional[VaccinationRecord]:
        with self._lock:
            return self._active_for_key((child_id, vaccine_id, dose_number))

    def list_for_child(self, child_id: str, include_inactive: bool = False) -> List[VaccinationRecord]:
        with self._lock:
            records = [
                r
                for r in self._records.values()
                if r.child_id == child_id and (include_inactive or r.is_active)
            ]
        return sorted(records, key=lambda r: (r.scheduled_date, r.vaccine_id, r.dose_number))

    def query_by_status(
        self,
        statuses: Iterable[RecordStatus],
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[VaccinationRecord]:
        wanted = set(statuses)
        with self._lock:
            records = [
                r
                for r in self._records.values()
                if not r.is_deleted
                and r.status in wanted
                and (start is None or r.scheduled_date >= start)
                and (end is None or r.scheduled_date <= end)
            ]
        return sorted(records, key=lambda r: (r.scheduled_date, r.record_id))

    def list_all(self) -> List[VaccinationRecord]:
        with self._lock:
            return list(self._records.values())

    def restore(self, record: VaccinationRecord) -> None:
        """Load a persisted record as-is, keeping its version."""
        with self._lock:
            self._records[record.record_id] = record


class InMemoryNotificationStore:
    """Thread-safe notification store with optimistic versioning."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._notifications: Dict[str, Notification] = {}

    def create(self, notification: Notification) -> Notification:
        with self._lock:
            return self._insert(notification)

    def _insert(self, notification: Notification) -> Notification:
        if notification.notification_id in self._notifications:
            raise ValueError(f"Notification {notification.notification_id} already exists")
        stored = replace(notification, version=1)
        self._notifications[stored.notification_id] = stored
        return stored

    def _live_for_key(self, dedup_key: str) -> Optional[Notification]:
        for n in self._notifications.values():
            if n.dedup_key == dedup_key and n.status is not NotificationStatus.SUPERSEDED:
                return n
        return None

    def create_if_absent(self, notification: Notification) -> Tuple[Notification, bool]:
        """Insert unless a non-superseded notification shares its ``dedup_key``.

        Notifications without a key are always inserted.

        Returns
        -------
        Tuple[Notification, bool]
            The stored notification (new or existing) and whether it was
            created.
        """
        with self._lock:
            if notification.dedup_key is not None:
                existing = self._live_for_key(notification.dedup_key)
                if existing is not None:
                    return existing, False
            return self._insert(notification), True

    def get(self, notification_id: str) -> Notification:
        with self._lock:
            try:
                return self._notifications[notification_id]
            except KeyError:
                raise NotFoundError(f"Unknown notification: {notification_id}") from None

    def update(self, notification: Notification, expected_version: int) -> Notification:
        with self._lock:
            current = self._notifications.get(notification.notification_id)
            if current is None:
                raise NotFoundError(f"Unknown notification: {notification.notification_id}")
            if current.version != expected_version:
                raise ConcurrencyConflict(
                    notification.notification_id, expected_version, current.version
                )
            stored = replace(notification, version=current.version + 1)
            self._notifications[stored.notification_id] = stored
            return stored

    def list_for_record(self, record_id: str) -> List[Notification]:
        with self._lock:
            found = [n for n in self._notifications.values() if n.record_id == record_id]
        return sorted(found, key=lambda n: (n.scheduled_for, n.notification_id))

    def query_due_pending(self, now: datetime) -> List[Notification]:
        with self._lock:
            due = [
                n
                for n in self._notifications.values()
                if n.status is NotificationStatus.PENDING
                and n.scheduled_for <= now
                and not n.is_expired(now)
                and not n.is_leased(now)
            ]
        return sorted(due, key=lambda n: (-n.priority.rank, n.scheduled_for, n.notification_id))

    def query_due_retry(self, now: datetime, max_retries: int) -> List[Notification]:
        with self._lock:
            due = [
                n
                for n in self._notifications.values()
                if n.status is NotificationStatus.FAILED
                and n.retry_count < max_retries
                and n.next_retry_at is not None
                and n.next_retry_at <= now
                and not n.is_expired(now)
                and not n.is_leased(now)
            ]
        return sorted(due, key=lambda n: (n.next_retry_at, n.notification_id))

    def delete(self, notification_id: str) -> None:
        with self._lock:
            self._notifications.pop(notification_id, None)

    def list_all(self) -> List[Notification]:
        with self._lock:
            return list(self._notifications.values())

    def restore(self, notification: Notification) -> None:
        """Load a persisted notification as-is, keeping its version."""
        with self._lock:
            self._notifications[notification.notification_id] = notification
