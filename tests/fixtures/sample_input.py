"""Test data builders for engine fixtures.

This module provides utilities to build realistic engine inputs:
- Small vaccine catalogs with a known dose regimen
- Children, contacts and delivery preferences
- Scripted channel senders that record every call
- Notifications and state artifacts for delivery and cleanup tests

All builders are parameterized so tests can vary one field at a time.
"""

from __future__ import annotations

import itertools
import threading
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Sequence

from vaxtrack import artifacts
from vaxtrack.catalog import InMemoryVaccineCatalog
from vaxtrack.data_models import (
    AgeWindow,
    Child,
    DeliveryPreference,
    DoseSpec,
    GeneralPayload,
    Notification,
    RecipientContact,
    SendOutcome,
    VaccinationRecord,
    VaccineDefinition,
    default_deliveries,
)
from vaxtrack.enums import Channel, NotificationStatus, NotificationType, Priority

BIRTH_DATE = date(2024, 1, 1)
CHILD_ID = "child-1"
GUARDIAN_ID = "guardian-1"


def utc(year: int, month: int, day: int, hour: int = 9, minute: int = 0) -> datetime:
    """Aware UTC datetime shorthand."""
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def sequential_ids(prefix: str = "id") -> Callable[[], str]:
    """Deterministic id factory: id-0001, id-0002, ..."""
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter):04d}"


def create_test_vaccine(
    vaccine_id: str = "hepb",
    name: str = "Hepatitis B",
    doses: Optional[Sequence[DoseSpec]] = None,
    version: int = 1,
    age_groups: Sequence[AgeWindow] = (),
) -> VaccineDefinition:
    """Three-dose regimen due at 0, 60 and 180 days unless ``doses`` is given."""
    if doses is None:
        doses = (
            DoseSpec(1, 0, description="Birth"),
            DoseSpec(2, 60, 28, description="2 months"),
            DoseSpec(3, 180, 56, description="6 months"),
        )
    return VaccineDefinition(
        vaccine_id=vaccine_id,
        name=name,
        short_name=vaccine_id.upper(),
        doses=tuple(doses),
        version=version,
        age_groups=tuple(age_groups),
    )


def create_test_catalog(vaccines: Optional[Iterable[VaccineDefinition]] = None) -> InMemoryVaccineCatalog:
    return InMemoryVaccineCatalog(vaccines if vaccines is not None else [create_test_vaccine()])


def create_single_dose_catalog() -> InMemoryVaccineCatalog:
    """One vaccine, one dose due at birth."""
    return create_test_catalog(
        [create_test_vaccine("bcg", "BCG", doses=(DoseSpec(1, 0, description="Birth"),))]
    )


def create_test_child(
    child_id: str = CHILD_ID,
    date_of_birth: date = BIRTH_DATE,
    guardian_id: str = GUARDIAN_ID,
) -> Child:
    return Child(
        child_id=child_id,
        first_name="Alice",
        last_name="Martin",
        date_of_birth=date_of_birth,
        guardian_id=guardian_id,
    )


def create_test_contact(recipient_id: str = GUARDIAN_ID, language: str = "en") -> RecipientContact:
    return RecipientContact(
        recipient_id=recipient_id,
        name="Claire Martin",
        email="claire@example.com",
        phone="613-555-0100",
        push_token="push-token-1",
        language=language,
    )


def create_test_record(
    record_id: str = "rec-1",
    scheduled_date: date = date(2024, 3, 1),
    **overrides: Any,
) -> VaccinationRecord:
    values = {
        "record_id": record_id,
        "child_id": CHILD_ID,
        "vaccine_id": "hepb",
        "dose_number": 2,
        "scheduled_date": scheduled_date,
    }
    values.update(overrides)
    return VaccinationRecord(**values)


def create_test_notification(
    notification_id: str = "n-1",
    channels: Iterable[Channel] = (Channel.EMAIL,),
    scheduled_for: Optional[datetime] = None,
    **overrides: Any,
) -> Notification:
    """General notification to the test guardian on the given channels."""
    values = {
        "notification_id": notification_id,
        "recipient_id": GUARDIAN_ID,
        "type": NotificationType.GENERAL,
        "payload": GeneralPayload({"title": "Hello", "message": "Clinic closed Monday"}),
        "title": "Hello",
        "message": "Clinic closed Monday",
        "scheduled_for": scheduled_for or utc(2024, 3, 1),
        "priority": Priority.MEDIUM,
        "status": NotificationStatus.PENDING,
        "deliveries": default_deliveries(set(channels)),
        "created_at": scheduled_for or utc(2024, 3, 1),
        "updated_at": scheduled_for or utc(2024, 3, 1),
    }
    values.update(overrides)
    return Notification(**values)


class ScriptedSender:
    """Channel sender that returns scripted outcomes and records each call.

    ``outcomes`` are consumed in order; once exhausted every further send
    uses ``default``. An ``Exception`` instance in the script is raised.
    """

    def __init__(
        self,
        channel: Channel,
        outcomes: Optional[List[Any]] = None,
        default: Optional[SendOutcome] = None,
    ) -> None:
        self.channel = channel
        self.outcomes = list(outcomes or [])
        self.default = default or SendOutcome(success=True, provider_message_id=f"{channel.value}-msg")
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def send(self, address: str, subject: str, body: str) -> SendOutcome:
        with self._lock:
            self.calls.append((address, subject, body))
            outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def failing_sender(channel: Channel, error: str = "provider unavailable") -> ScriptedSender:
    return ScriptedSender(channel, default=SendOutcome(success=False, error=error))


def email_only_preference(lead_days: int = 7) -> DeliveryPreference:
    return DeliveryPreference(email=True, sms=False, push=False, reminder_lead_days=lead_days)


def write_test_state(path: Path, state: artifacts.EngineState) -> Path:
    return artifacts.write_state(path, state, saved_at=utc(2024, 1, 1))
