"""Vaccination record lifecycle.

State machine for one scheduled dose::

    scheduled ──complete──▶ completed   (terminal)
        │ ├────miss──────▶ missed      (terminal)
        │ └────cancel────▶ cancelled   (terminal)
        └──reschedule──▶ scheduled

``overdue`` is not a lifecycle state. It is derived from the scheduled date
(``presentation_status``) and cached in the stored status by the sweep
(``sync_overdue_cache``); a cached-overdue record accepts exactly the actions
a scheduled one does.

``apply_transition`` is the single pure transition function: it validates
the action against the current state and returns the new record. All guards
that a persistence hook might otherwise apply implicitly (clearing the
administered date, keeping reasons exclusive to their terminal state) are
evaluated here. ``RecordLifecycle`` wraps it with a read / validate /
compare-and-set write against the record store.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date, datetime
from typing import Any, Mapping, Optional, Tuple

from .data_models import RescheduleEntry, SideEffectReport, VaccinationRecord
from .enums import Priority, RecordAction, RecordStatus
from .exceptions import InvalidTransition, ValidationError
from .stores import RecordStore
from .utils import parse_date, string_or_empty, utc_now

LOG = logging.getLogger(__name__)

SIDE_EFFECT_SEVERITIES = ("mild", "moderate", "severe")

# Days-overdue thresholds for priority escalation (strictly greater than).
CRITICAL_AFTER_DAYS = 90
HIGH_AFTER_DAYS = 30


def is_overdue(record: VaccinationRecord, today: date, grace_period_days: int = 0) -> bool:
    """True when an open record's date plus grace period has passed."""
    if not record.status.is_open or record.is_deleted:
        return False
    return (today - record.scheduled_date).days > grace_period_days


def days_overdue(record: VaccinationRecord, today: date, grace_period_days: int = 0) -> int:
    """Days since the scheduled date for overdue records, else 0."""
    if not is_overdue(record, today, grace_period_days):
        return 0
    return (today - record.scheduled_date).days


def days_until_scheduled(record: VaccinationRecord, today: date) -> int:
    """Signed days from today to the scheduled date (negative once passed)."""
    return (record.scheduled_date - today).days


def presentation_status(
    record: VaccinationRecord, today: date, grace_period_days: int = 0
) -> RecordStatus:
    """Status as shown to users: open records become OVERDUE once past due."""
    if record.status.is_open:
        if is_overdue(record, today, grace_period_days):
            return RecordStatus.OVERDUE
        return RecordStatus.SCHEDULED
    return record.status


def overdue_priority(days: int) -> Priority:
    """Priority for an overdue dose: >90 days critical, >30 high, else medium."""
    if days > CRITICAL_AFTER_DAYS:
        return Priority.CRITICAL
    if days > HIGH_AFTER_DAYS:
        return Priority.HIGH
    return Priority.MEDIUM


def derive_priority(
    record: VaccinationRecord, today: date, grace_period_days: int = 0
) -> Priority:
    """Record priority derived from how soon (or how late) the dose is.

    Overdue records escalate with ``overdue_priority``. Upcoming records are
    HIGH within a week, MEDIUM within a month, LOW otherwise. Closed records
    are LOW.
    """
    if not record.status.is_open:
        return Priority.LOW
    if is_overdue(record, today, grace_period_days):
        return overdue_priority(days_overdue(record, today, grace_period_days))
    days = days_until_scheduled(record, today)
    if days <= 7:
        return Priority.HIGH
    if days <= 30:
        return Priority.MEDIUM
    return Priority.LOW


def sync_overdue_cache(
    record: VaccinationRecord, today: date, grace_period_days: int = 0
) -> Optional[VaccinationRecord]:
    """Return a copy whose stored status matches the derived view, or None.

    Only open records are touched; terminal statuses are never rewritten.
    """
    if not record.status.is_open:
        return None
    derived = presentation_status(record, today, grace_period_days)
    if derived is record.status:
        return None
    return replace(record, status=derived)


def _require_text(payload: Mapping[str, Any], key: str) -> str:
    value = string_or_empty(payload.get(key))
    if not value:
        raise ValidationError(f"'{key}' is required")
    return value


def _complete(record: VaccinationRecord, payload: Mapping[str, Any], now: datetime) -> VaccinationRecord:
    administered_by = _require_text(payload, "administered_by")
    raw_date = payload.get("administered_date")
    administered = parse_date(raw_date, "administered_date") if raw_date is not None else now.date()
    if administered > now.date():
        raise ValidationError(f"administered_date {administered} is in the future")
    notes = string_or_empty(payload.get("notes")) or record.notes
    return replace(
        record,
        status=RecordStatus.COMPLETED,
        administered_date=administered,
        administered_by=administered_by,
        cancellation_reason=None,
        missed_reason=None,
        notes=notes,
    )


def _miss(record: VaccinationRecord, payload: Mapping[str, Any], now: datetime) -> VaccinationRecord:
    return replace(
        record,
        status=RecordStatus.MISSED,
        missed_reason=_require_text(payload, "reason"),
        cancellation_reason=None,
        administered_date=None,
        administered_by=None,
    )


def _cancel(record: VaccinationRecord, payload: Mapping[str, Any], now: datetime) -> VaccinationRecord:
    return replace(
        record,
        status=RecordStatus.CANCELLED,
        cancellation_reason=_require_text(payload, "reason"),
        missed_reason=None,
        administered_date=None,
        administered_by=None,
    )


def _reschedule(record: VaccinationRecord, payload: Mapping[str, Any], now: datetime) -> VaccinationRecord:
    new_date = parse_date(payload.get("new_date"), "new_date")
    if new_date <= now.date():
        raise ValidationError(f"new_date {new_date} must be in the future")
    entry = RescheduleEntry(
        old_date=record.scheduled_date,
        new_date=new_date,
        reason=string_or_empty(payload.get("reason")),
        timestamp=now,
    )
    return replace(
        record,
        status=RecordStatus.SCHEDULED,
        scheduled_date=new_date,
        original_scheduled_date=record.original_scheduled_date or record.scheduled_date,
        reschedule_history=record.reschedule_history + (entry,),
    )


def _report_side_effect(
    record: VaccinationRecord, payload: Mapping[str, Any], now: datetime
) -> VaccinationRecord:
    severity = string_or_empty(payload.get("severity")).lower() or "mild"
    if severity not in SIDE_EFFECT_SEVERITIES:
        raise ValidationError(
            f"Unknown severity: {severity}. Valid options: {', '.join(SIDE_EFFECT_SEVERITIES)}"
        )
    report = SideEffectReport(
        description=_require_text(payload, "description"),
        severity=severity,
        reported_at=now,
        reported_by=payload.get("reported_by"),
    )
    return replace(record, side_effect_reports=record.side_effect_reports + (report,))


_HANDLERS = {
    RecordAction.COMPLETE: _complete,
    RecordAction.MISS: _miss,
    RecordAction.CANCEL: _cancel,
    RecordAction.RESCHEDULE: _reschedule,
    RecordAction.REPORT_SIDE_EFFECT: _report_side_effect,
}


def check_transition(record: VaccinationRecord, action: RecordAction) -> None:
    """Raise InvalidTransition if ``action`` is not legal from the record's state."""
    if record.is_deleted:
        raise InvalidTransition(record.record_id, "deleted", action.value)
    if action is RecordAction.REPORT_SIDE_EFFECT:
        if record.status is not RecordStatus.COMPLETED:
            raise InvalidTransition(record.record_id, record.status.value, action.value)
        return
    if record.status.is_terminal:
        raise InvalidTransition(record.record_id, record.status.value, action.value)


def apply_transition(
    record: VaccinationRecord,
    action: RecordAction | str,
    payload: Optional[Mapping[str, Any]] = None,
    now: Optional[datetime] = None,
) -> VaccinationRecord:
    """Validate and apply one lifecycle action.

    Parameters
    ----------
    record : VaccinationRecord
        Current record state.
    action : RecordAction | str
        Action to apply.
    payload : Mapping[str, Any], optional
        Action arguments:

        - complete: ``administered_by`` (required), ``administered_date``
          (defaults to today), ``notes``
        - miss / cancel: ``reason`` (required)
        - reschedule: ``new_date`` (required, after today), ``reason``
        - report_side_effect: ``description`` (required), ``severity``
          (mild | moderate | severe), ``reported_by``
    now : datetime, optional
        Transition time (defaults to the current UTC time).

    Returns
    -------
    VaccinationRecord
        New record state with ``updated_at`` set. The input is unchanged.

    Raises
    ------
    ValidationError
        Unknown action or malformed payload.
    InvalidTransition
        Action not legal from the current status.
    """
    try:
        action = RecordAction.from_string(action)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise ValidationError(f"payload must be a mapping, got {type(payload).__name__}")
    now = now or utc_now()

    check_transition(record, action)
    updated = _HANDLERS[action](record, payload, now)
    return replace(updated, updated_at=now)


def soft_delete(record: VaccinationRecord, now: Optional[datetime] = None) -> VaccinationRecord:
    """Mark a non-completed record as deleted.

    Raises
    ------
    InvalidTransition
        If the record is completed (completed records are kept forever).
    """
    if record.status is RecordStatus.COMPLETED:
        raise InvalidTransition(record.record_id, record.status.value, "delete")
    return replace(record, is_deleted=True, updated_at=now or utc_now())


class RecordLifecycle:
    """Store-backed lifecycle transitions.

    Each call reads the current record, validates and applies the action, and
    writes the result in one compare-and-set. A lost race surfaces as
    ``ConcurrencyConflict`` for the caller to retry.
    """

    def __init__(self, records: RecordStore) -> None:
        self.records = records

    def transition(
        self,
        record_id: str,
        action: RecordAction | str,
        payload: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[VaccinationRecord, VaccinationRecord]:
        """Apply ``action`` to the stored record.

        Returns
        -------
        Tuple[VaccinationRecord, VaccinationRecord]
            The record before and after the transition.
        """
        current = self.records.get(record_id)
        updated = apply_transition(current, action, payload, now)
        stored = self.records.update(updated, expected_version=current.version)
        LOG.info(
            "Record %s: %s -> %s (%s)",
            record_id,
            current.status.value,
            stored.status.value,
            RecordAction.from_string(action).value,
        )
        return current, stored

    def delete(self, record_id: str, now: Optional[datetime] = None) -> VaccinationRecord:
        current = self.records.get(record_id)
        return self.records.update(soft_delete(current, now), expected_version=current.version)
