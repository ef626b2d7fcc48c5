"""Unit tests for enums module - record, notification, channel and language enumerations.

Tests cover:
- Case-insensitive string conversion
- Default behavior for None values
- Error handling for invalid values
- Status helpers (terminal, open) and priority ordering

Real-world significance:
- Status and action strings arrive from API payloads and state artifacts
- A wrong terminal/open classification would let completed doses be rescheduled
"""

from __future__ import annotations

import pytest

from vaxtrack.enums import (
    AgeUnit,
    Channel,
    Language,
    NotificationStatus,
    Priority,
    RecordAction,
    RecordStatus,
)


@pytest.mark.unit
class TestFromString:
    """Unit tests for the shared from_string lookup."""

    def test_case_insensitive(self) -> None:
        assert RecordStatus.from_string("COMPLETED") is RecordStatus.COMPLETED
        assert Channel.from_string(" Sms ") is Channel.SMS
        assert RecordAction.from_string("Report_Side_Effect") is RecordAction.REPORT_SIDE_EFFECT

    def test_member_passes_through(self) -> None:
        assert Priority.from_string(Priority.HIGH) is Priority.HIGH

    def test_none_uses_class_default(self) -> None:
        """Real-world significance:
        - Artifacts written before a field existed load with a sane default
        """
        assert RecordStatus.from_string(None) is RecordStatus.SCHEDULED
        assert NotificationStatus.from_string(None) is NotificationStatus.PENDING
        assert Priority.from_string(None) is Priority.MEDIUM
        assert Language.from_string(None) is Language.ENGLISH

    def test_none_without_default_raises(self) -> None:
        with pytest.raises(ValueError, match="RecordAction value is required"):
            RecordAction.from_string(None)

    def test_invalid_value_lists_options(self) -> None:
        with pytest.raises(ValueError, match="Valid options: email, sms, push"):
            Channel.from_string("fax")


@pytest.mark.unit
class TestRecordStatus:
    def test_terminal_statuses(self) -> None:
        terminal = {s for s in RecordStatus if s.is_terminal}
        assert terminal == {RecordStatus.COMPLETED, RecordStatus.MISSED, RecordStatus.CANCELLED}

    def test_overdue_counts_as_open(self) -> None:
        """Real-world significance:
        - A cached-overdue dose can still be completed or rescheduled
        """
        assert RecordStatus.OVERDUE.is_open
        assert not RecordStatus.OVERDUE.is_terminal


@pytest.mark.unit
class TestNotificationStatus:
    def test_open_statuses(self) -> None:
        assert NotificationStatus.open_statuses() == {
            NotificationStatus.PENDING,
            NotificationStatus.SENT,
            NotificationStatus.DELIVERED,
        }


@pytest.mark.unit
class TestPriority:
    def test_rank_orders_lowest_first(self) -> None:
        ranks = [p.rank for p in (Priority.LOW, Priority.MEDIUM, Priority.HIGH, Priority.CRITICAL)]
        assert ranks == sorted(ranks)
        assert len(set(ranks)) == 4


@pytest.mark.unit
class TestLanguage:
    def test_all_codes(self) -> None:
        assert Language.all_codes() == {"en", "fr"}

    def test_locale(self) -> None:
        assert Language.ENGLISH.locale == "en_US"
        assert Language.FRENCH.locale == "fr_FR"


@pytest.mark.unit
class TestAgeUnit:
    def test_whole_days_round_down(self) -> None:
        assert AgeUnit.DAYS.to_days(10) == 10
        assert AgeUnit.WEEKS.to_days(6) == 42
        assert AgeUnit.MONTHS.to_days(2) == 60
        assert AgeUnit.MONTHS.to_days(12) == 365
        assert AgeUnit.YEARS.to_days(4) == 1461

    def test_defaults_to_years(self) -> None:
        assert AgeUnit.from_string(None) is AgeUnit.YEARS
        assert AgeUnit.from_string("Months") is AgeUnit.MONTHS
