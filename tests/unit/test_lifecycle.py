"""Unit tests for lifecycle module - record state machine and derived overdue view.

Tests cover:
- Each lifecycle action and its payload validation
- Terminal states rejecting further transitions
- Derived overdue status, days overdue and priority escalation
- Store-backed transitions with optimistic versioning

Real-world significance:
- Completed, missed and cancelled doses are medical history and must not change
- Overdue escalation drives the urgency of guardian alerts
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date

import pytest

from tests.fixtures import sample_input
from tests.fixtures.sample_input import utc
from vaxtrack import lifecycle
from vaxtrack.enums import Priority, RecordAction, RecordStatus
from vaxtrack.exceptions import ConcurrencyConflict, InvalidTransition, ValidationError
from vaxtrack.stores import InMemoryRecordStore

NOW = utc(2024, 3, 11)


@pytest.mark.unit
class TestApplyTransition:
    def test_complete_sets_administration_fields(self) -> None:
        record = sample_input.create_test_record()

        updated = lifecycle.apply_transition(
            record,
            "complete",
            {"administered_by": "Nurse Joy", "administered_date": "2024-03-05"},
            NOW,
        )

        assert updated.status is RecordStatus.COMPLETED
        assert updated.administered_date == date(2024, 3, 5)
        assert updated.administered_by == "Nurse Joy"
        assert updated.updated_at == NOW
        assert record.status is RecordStatus.SCHEDULED

    def test_complete_defaults_to_today(self) -> None:
        updated = lifecycle.apply_transition(
            sample_input.create_test_record(), "complete", {"administered_by": "Dr. Who"}, NOW
        )

        assert updated.administered_date == NOW.date()

    def test_complete_requires_administered_by(self) -> None:
        with pytest.raises(ValidationError, match="administered_by"):
            lifecycle.apply_transition(sample_input.create_test_record(), "complete", {}, NOW)

    def test_complete_rejects_future_date(self) -> None:
        with pytest.raises(ValidationError, match="in the future"):
            lifecycle.apply_transition(
                sample_input.create_test_record(),
                "complete",
                {"administered_by": "Dr. Who", "administered_date": "2024-04-01"},
                NOW,
            )

    def test_miss_and_cancel_require_reason(self) -> None:
        record = sample_input.create_test_record()

        for action in ("miss", "cancel"):
            with pytest.raises(ValidationError, match="reason"):
                lifecycle.apply_transition(record, action, {}, NOW)

    def test_cancel_records_reason(self) -> None:
        updated = lifecycle.apply_transition(
            sample_input.create_test_record(), "cancel", {"reason": "Contraindicated"}, NOW
        )

        assert updated.status is RecordStatus.CANCELLED
        assert updated.cancellation_reason == "Contraindicated"
        assert updated.missed_reason is None

    def test_reschedule_appends_history(self) -> None:
        """Real-world significance:
        - The original date is kept for coverage reporting
        """
        record = sample_input.create_test_record(status=RecordStatus.OVERDUE)

        first = lifecycle.apply_transition(
            record, "reschedule", {"new_date": "2024-03-20", "reason": "Sick"}, NOW
        )
        second = lifecycle.apply_transition(
            first, "reschedule", {"new_date": "2024-04-02"}, NOW
        )

        assert second.status is RecordStatus.SCHEDULED
        assert second.scheduled_date == date(2024, 4, 2)
        assert second.original_scheduled_date == date(2024, 3, 1)
        assert [(e.old_date, e.new_date) for e in second.reschedule_history] == [
            (date(2024, 3, 1), date(2024, 3, 20)),
            (date(2024, 3, 20), date(2024, 4, 2)),
        ]
        assert second.reschedule_history[0].reason == "Sick"

    @pytest.mark.parametrize("new_date", ["2024-03-11", "2024-03-01"])
    def test_reschedule_must_be_in_future(self, new_date: str) -> None:
        with pytest.raises(ValidationError, match="must be in the future"):
            lifecycle.apply_transition(
                sample_input.create_test_record(), "reschedule", {"new_date": new_date}, NOW
            )

    @pytest.mark.parametrize(
        "status", [RecordStatus.COMPLETED, RecordStatus.MISSED, RecordStatus.CANCELLED]
    )
    @pytest.mark.parametrize("action", ["complete", "miss", "cancel", "reschedule"])
    def test_terminal_states_reject_transitions(self, status: RecordStatus, action: str) -> None:
        record = sample_input.create_test_record(status=status)

        with pytest.raises(InvalidTransition):
            lifecycle.apply_transition(
                record,
                action,
                {"administered_by": "x", "reason": "x", "new_date": "2025-01-01"},
                NOW,
            )

    def test_side_effect_only_on_completed(self) -> None:
        payload = {"description": "Fever", "severity": "moderate", "reported_by": "guardian-1"}

        with pytest.raises(InvalidTransition):
            lifecycle.apply_transition(
                sample_input.create_test_record(), "report_side_effect", payload, NOW
            )

        completed = sample_input.create_test_record(status=RecordStatus.COMPLETED)
        updated = lifecycle.apply_transition(completed, "report_side_effect", payload, NOW)

        assert updated.status is RecordStatus.COMPLETED
        assert updated.side_effect_reports[0].severity == "moderate"
        assert updated.side_effect_reports[0].reported_at == NOW

    def test_side_effect_severity_validated(self) -> None:
        completed = sample_input.create_test_record(status=RecordStatus.COMPLETED)

        with pytest.raises(ValidationError, match="Unknown severity"):
            lifecycle.apply_transition(
                completed, "report_side_effect", {"description": "Rash", "severity": "awful"}, NOW
            )

    def test_unknown_action_is_validation_error(self) -> None:
        with pytest.raises(ValidationError, match="Unknown RecordAction"):
            lifecycle.apply_transition(sample_input.create_test_record(), "vaccinate", {}, NOW)

    def test_deleted_record_rejects_actions(self) -> None:
        record = sample_input.create_test_record(is_deleted=True)

        with pytest.raises(InvalidTransition, match="deleted"):
            lifecycle.apply_transition(record, "cancel", {"reason": "x"}, NOW)


@pytest.mark.unit
class TestSoftDelete:
    def test_completed_records_cannot_be_deleted(self) -> None:
        with pytest.raises(InvalidTransition):
            lifecycle.soft_delete(sample_input.create_test_record(status=RecordStatus.COMPLETED))

    def test_deleted_record_is_inactive(self) -> None:
        deleted = lifecycle.soft_delete(sample_input.create_test_record(), NOW)

        assert deleted.is_deleted
        assert not deleted.is_active


@pytest.mark.unit
class TestOverdueView:
    def test_overdue_after_scheduled_date(self) -> None:
        record = sample_input.create_test_record()

        assert not lifecycle.is_overdue(record, date(2024, 3, 1))
        assert lifecycle.is_overdue(record, date(2024, 3, 2))
        assert lifecycle.days_overdue(record, date(2024, 3, 11)) == 10

    def test_grace_period_delays_overdue(self) -> None:
        record = sample_input.create_test_record()

        assert not lifecycle.is_overdue(record, date(2024, 3, 4), grace_period_days=3)
        assert lifecycle.is_overdue(record, date(2024, 3, 5), grace_period_days=3)

    def test_closed_records_never_overdue(self) -> None:
        record = sample_input.create_test_record(status=RecordStatus.COMPLETED)

        assert not lifecycle.is_overdue(record, date(2025, 1, 1))
        assert lifecycle.presentation_status(record, date(2025, 1, 1)) is RecordStatus.COMPLETED

    def test_presentation_status_independent_of_cache(self) -> None:
        """Real-world significance:
        - A stale OVERDUE cache never shows a rescheduled dose as late
        """
        stale = sample_input.create_test_record(status=RecordStatus.OVERDUE)

        assert lifecycle.presentation_status(stale, date(2024, 2, 1)) is RecordStatus.SCHEDULED
        assert lifecycle.presentation_status(
            replace(stale, status=RecordStatus.SCHEDULED), date(2024, 3, 11)
        ) is RecordStatus.OVERDUE

    def test_sync_overdue_cache(self) -> None:
        record = sample_input.create_test_record()

        synced = lifecycle.sync_overdue_cache(record, date(2024, 3, 11))

        assert synced is not None and synced.status is RecordStatus.OVERDUE
        assert lifecycle.sync_overdue_cache(synced, date(2024, 3, 11)) is None
        assert lifecycle.sync_overdue_cache(synced, date(2024, 2, 1)).status is RecordStatus.SCHEDULED

    @pytest.mark.parametrize(
        "days, expected",
        [(1, Priority.MEDIUM), (30, Priority.MEDIUM), (31, Priority.HIGH), (90, Priority.HIGH), (91, Priority.CRITICAL)],
    )
    def test_overdue_priority_thresholds(self, days: int, expected: Priority) -> None:
        assert lifecycle.overdue_priority(days) is expected

    def test_derive_priority_for_upcoming(self) -> None:
        record = sample_input.create_test_record()

        assert lifecycle.derive_priority(record, date(2024, 2, 25)) is Priority.HIGH
        assert lifecycle.derive_priority(record, date(2024, 2, 10)) is Priority.MEDIUM
        assert lifecycle.derive_priority(record, date(2024, 1, 2)) is Priority.LOW


@pytest.mark.unit
class TestRecordLifecycle:
    def test_transition_writes_with_version_check(self) -> None:
        store = InMemoryRecordStore()
        stored = store.create(sample_input.create_test_record())

        before, after = lifecycle.RecordLifecycle(store).transition(
            stored.record_id, RecordAction.MISS, {"reason": "No show"}, NOW
        )

        assert before.version == 1
        assert after.version == 2
        assert store.get(stored.record_id).status is RecordStatus.MISSED

    def test_stale_write_raises_conflict(self) -> None:
        store = InMemoryRecordStore()
        stored = store.create(sample_input.create_test_record())
        store.update(replace(stored, notes="edited"), expected_version=stored.version)

        with pytest.raises(ConcurrencyConflict):
            store.update(replace(stored, notes="stale"), expected_version=stored.version)

    def test_failed_validation_writes_nothing(self) -> None:
        store = InMemoryRecordStore()
        stored = store.create(sample_input.create_test_record())

        with pytest.raises(ValidationError):
            lifecycle.RecordLifecycle(store).transition(stored.record_id, "cancel", {}, NOW)

        assert store.get(stored.record_id) == stored
