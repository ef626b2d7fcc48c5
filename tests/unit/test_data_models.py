"""Unit tests for data_models module - immutable engine entities.

Real-world significance:
- Entities are shared across threads; mutation would race
- A notification must always carry the payload that matches its type
"""

from __future__ import annotations

import dataclasses
from datetime import timedelta

import pytest

from tests.fixtures import sample_input
from tests.fixtures.sample_input import utc
from vaxtrack.data_models import (
    AgeWindow,
    BulkScheduleResult,
    DeliveryPreference,
    DoseSpec,
    Notification,
    OverduePayload,
    SweepResult,
    default_deliveries,
)
from vaxtrack.enums import AgeUnit, Channel, NotificationStatus, NotificationType, RecordStatus


@pytest.mark.unit
class TestImmutability:
    def test_record_is_frozen(self) -> None:
        record = sample_input.create_test_record()

        with pytest.raises(dataclasses.FrozenInstanceError):
            record.status = RecordStatus.COMPLETED  # type: ignore[misc]

    def test_new_version_bumps_version(self) -> None:
        vaccine = sample_input.create_test_vaccine()

        edited = vaccine.new_version(doses=[DoseSpec(1, 0)])

        assert edited.version == 2
        assert isinstance(edited.doses, tuple)
        assert vaccine.version == 1


@pytest.mark.unit
class TestVaccinationRecord:
    def test_cancelled_and_deleted_are_inactive(self) -> None:
        assert sample_input.create_test_record().is_active
        assert not sample_input.create_test_record(status=RecordStatus.CANCELLED).is_active
        assert not sample_input.create_test_record(is_deleted=True).is_active
        assert sample_input.create_test_record(status=RecordStatus.COMPLETED).is_active

    def test_key(self) -> None:
        assert sample_input.create_test_record().key == ("child-1", "hepb", 2)


@pytest.mark.unit
class TestNotification:
    def test_payload_must_match_type(self) -> None:
        with pytest.raises(TypeError, match="overdue notification requires OverduePayload"):
            sample_input.create_test_notification(type=NotificationType.OVERDUE)

    def test_matching_payload_accepted(self) -> None:
        payload = OverduePayload("Alice", "HepB", 2, utc(2024, 3, 1).date(), 10)

        notification = sample_input.create_test_notification(
            type=NotificationType.OVERDUE, payload=payload
        )

        assert isinstance(notification, Notification)

    def test_channel_helpers(self) -> None:
        notification = sample_input.create_test_notification(channels=(Channel.SMS, Channel.EMAIL))

        assert notification.enabled_channels == (Channel.EMAIL, Channel.SMS)
        assert not notification.is_sent
        assert notification.is_open

    def test_expiry_and_lease(self) -> None:
        now = utc(2024, 3, 1)
        notification = sample_input.create_test_notification(
            expires_at=now, lease_expires_at=now + timedelta(minutes=5)
        )

        assert not notification.is_expired(now)
        assert notification.is_expired(now + timedelta(seconds=1))
        assert notification.is_leased(now)
        assert not notification.is_leased(now + timedelta(minutes=5))

    def test_superseded_is_not_open(self) -> None:
        notification = sample_input.create_test_notification(status=NotificationStatus.SUPERSEDED)

        assert not notification.is_open


@pytest.mark.unit
class TestSmallTypes:
    def test_default_deliveries_cover_every_channel(self) -> None:
        deliveries = default_deliveries({Channel.PUSH})

        assert set(deliveries) == set(Channel)
        assert [c for c, d in deliveries.items() if d.enabled] == [Channel.PUSH]

    def test_preference_allows(self) -> None:
        preference = DeliveryPreference()

        assert preference.allows(Channel.EMAIL)
        assert not preference.allows(Channel.SMS)
        assert preference.reminder_lead_days == 7

    def test_sweep_result_defaults_to_zero(self) -> None:
        assert set(dataclasses.asdict(SweepResult()).values()) == {0}

    def test_child_full_name(self) -> None:
        assert sample_input.create_test_child().full_name == "Alice Martin"

    def test_bulk_result_totals(self) -> None:
        result = BulkScheduleResult(scheduled={"a": 2, "b": 0}, errors={"c": "boom"})

        assert result.records_created == 2
        assert BulkScheduleResult().records_created == 0


@pytest.mark.unit
class TestAgeWindow:
    def test_bounds_are_inclusive(self) -> None:
        window = AgeWindow(2, 4, AgeUnit.MONTHS)

        assert not window.contains(59)
        assert window.contains(60)
        assert window.contains(121)
        assert not window.contains(122)

    def test_vaccine_without_age_groups_fits_everyone(self) -> None:
        assert sample_input.create_test_vaccine().is_eligible_at(10_000)

    def test_any_matching_group_is_enough(self) -> None:
        vaccine = sample_input.create_test_vaccine(
            age_groups=(AgeWindow(0, 6, AgeUnit.WEEKS), AgeWindow(1, 2, AgeUnit.YEARS))
        )

        assert vaccine.is_eligible_at(42)
        assert not vaccine.is_eligible_at(100)
        assert vaccine.is_eligible_at(400)

    def test_new_version_keeps_age_groups_as_tuple(self) -> None:
        edited = sample_input.create_test_vaccine().new_version(age_groups=[AgeWindow(0, 18)])

        assert edited.age_groups == (AgeWindow(0, 18, AgeUnit.YEARS),)
