"""Engine facade and bootstrap.

``build_engine`` wires the stores, catalog, notification factory, delivery
orchestrator and sweep from a validated configuration, once, and returns a
``ScheduleEngine``. The engine exposes the operations callers need:

- ``generate_schedule``: create (or, with ``regenerate``, re-date) the
  vaccination records for one child.
- ``generate_all_schedules`` / ``schedule_new_vaccine``: the same across
  every known child.
- ``transition_record``: apply a lifecycle action and its notification side
  effects.
- ``run_sweep_once``: one reconciliation pass.
- ``mark_notification_read`` / ``mark_notification_delivered`` /
  ``run_cleanup``: notification bookkeeping.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from .backoff import ExponentialBackoff
from .catalog import load_catalog
from .channels import ChannelSender, LoggingChannelSender
from .cleanup import cleanup_notifications
from .config_loader import load_config, merge_defaults, resolve_path, validate_config
from .data_models import (
    BulkScheduleResult,
    DeliveryPreference,
    Notification,
    SweepResult,
    VaccinationRecord,
)
from .delivery import DeliveryOrchestrator
from .dose_calendar import build_dose_calendar, build_vaccine_calendar, is_eligible
from .enums import Channel, RecordAction, RecordStatus
from .exceptions import RetryExhausted, ValidationError, VaxtrackError
from .lifecycle import RecordLifecycle
from .notification_factory import ALERT_TYPES, NotificationFactory
from .stores import (
    ChildRepository,
    InMemoryChildRepository,
    InMemoryNotificationStore,
    InMemoryPreferenceProvider,
    InMemoryRecordStore,
    NotificationStore,
    PreferenceProvider,
    RecordStore,
    VaccineCatalog,
)
from .sweep import ReconciliationSweep
from .utils import add_days, as_utc, parse_date, utc_now

LOG = logging.getLogger(__name__)


class ScheduleEngine:
    """Vaccination schedule and notification operations over injected stores."""

    def __init__(
        self,
        config: Dict[str, Any],
        children: ChildRepository,
        catalog: VaccineCatalog,
        records: RecordStore,
        notifications: NotificationStore,
        preferences: PreferenceProvider,
        factory: NotificationFactory,
        delivery: DeliveryOrchestrator,
        sweep: ReconciliationSweep,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.config = config
        self.children = children
        self.catalog = catalog
        self.records = records
        self.notifications = notifications
        self.preferences = preferences
        self.factory = factory
        self.delivery = delivery
        self.sweep = sweep
        self.lifecycle = RecordLifecycle(records)
        self.id_factory = id_factory or (lambda: uuid.uuid4().hex)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def generate_schedule(
        self,
        child_id: str,
        regenerate: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> List[VaccinationRecord]:
        """Create the child's vaccination records from the active catalog.

        Parameters
        ----------
        child_id : str
            Child to schedule.
        regenerate : bool, optional
            When true, open records whose computed date changed are re-dated
            (their pending alerts are superseded). Completed records are never
            touched and anchor the intervals of later doses. Defaults to
            ``scheduling.regenerate_by_default``. Cancelled doses are not
            re-created; use ``create_record`` for a replacement.
        now : datetime, optional
            Creation timestamp (defaults to the current UTC time).

        Returns
        -------
        List[VaccinationRecord]
            The child's active records, ordered by scheduled date.

        Raises
        ------
        NotFoundError
            If the child is unknown.
        DuplicateActiveRecord
            If another writer created a record for the same dose concurrently.
        """
        if regenerate is None:
            regenerate = self.config["scheduling"]["regenerate_by_default"]
        now = as_utc(now) if now is not None else utc_now()

        birth_date = self.children.get_birth_date(child_id)
        existing: Dict[tuple, VaccinationRecord] = {}
        for record in self.records.list_for_child(child_id, include_inactive=True):
            if record.is_deleted:
                continue
            key = (record.vaccine_id, record.dose_number)
            if record.is_active or key not in existing:
                existing[key] = record
        plan = build_dose_calendar(
            birth_date,
            self.catalog.list_vaccines(active_only=True),
            self._anchor_dates(existing, regenerate),
            as_of=now.date(),
        )

        created = updated = 0
        for dose in plan:
            record = existing.get(dose.key)
            if record is None:
                self.records.create(
                    VaccinationRecord(
                        record_id=self.id_factory(),
                        child_id=child_id,
                        vaccine_id=dose.vaccine_id,
                        dose_number=dose.dose_number,
                        scheduled_date=dose.scheduled_date,
                        vaccine_version=dose.vaccine_version,
                        created_at=now,
                        updated_at=now,
                    )
                )
                created += 1
            elif regenerate and record.status.is_open and (
                record.scheduled_date != dose.scheduled_date
                or record.vaccine_version != dose.vaccine_version
            ):
                self.records.update(
                    replace(
                        record,
                        scheduled_date=dose.scheduled_date,
                        vaccine_version=dose.vaccine_version,
                        status=RecordStatus.SCHEDULED,
                        updated_at=now,
                    ),
                    expected_version=record.version,
                )
                self.factory.supersede_open(record.record_id, ALERT_TYPES, now)
                updated += 1

        LOG.info(
            "Schedule for child %s: %d created, %d re-dated, %d doses planned",
            child_id,
            created,
            updated,
            len(plan),
        )
        return self.records.list_for_child(child_id)

    def generate_all_schedules(
        self, regenerate: Optional[bool] = None, now: Optional[datetime] = None
    ) -> BulkScheduleResult:
        """Run ``generate_schedule`` for every known child.

        A failure for one child is logged and recorded in the result; the
        remaining children are still scheduled.
        """
        now = as_utc(now) if now is not None else utc_now()
        children = self.children.list_children()
        scheduled: Dict[str, int] = {}
        errors: Dict[str, str] = {}
        for child in children:
            before = len(self.records.list_for_child(child.child_id, include_inactive=True))
            try:
                self.generate_schedule(child.child_id, regenerate=regenerate, now=now)
            except VaxtrackError as exc:
                LOG.error("Failed to generate schedule for child %s: %s", child.child_id, exc)
                errors[child.child_id] = str(exc)
                continue
            after = len(self.records.list_for_child(child.child_id, include_inactive=True))
            scheduled[child.child_id] = after - before

        LOG.info("Generated schedules for %d/%d children", len(scheduled), len(children))
        return BulkScheduleResult(
            scheduled=scheduled, errors=errors, children_evaluated=len(children)
        )

    def schedule_new_vaccine(
        self, vaccine_id: str, now: Optional[datetime] = None
    ) -> BulkScheduleResult:
        """Add the doses of a newly published vaccine to every eligible child.

        Doses due more than ``scheduling.catch_up_days`` ago are skipped, and
        past-due doses inside that window are scheduled for today. Completed
        doses of the vaccine anchor the intervals of the missing ones.

        Raises
        ------
        NotFoundError
            If the vaccine is unknown.
        """
        now = as_utc(now) if now is not None else utc_now()
        today = now.date()
        earliest = add_days(today, -self.config["scheduling"]["catch_up_days"])
        vaccine = self.catalog.get_vaccine(vaccine_id)
        children = self.children.list_children()
        scheduled: Dict[str, int] = {}
        errors: Dict[str, str] = {}

        for child in children:
            if not is_eligible(vaccine, child.date_of_birth, today):
                continue
            existing: Dict[int, VaccinationRecord] = {}
            for record in self.records.list_for_child(child.child_id, include_inactive=True):
                if record.vaccine_id != vaccine_id or record.is_deleted:
                    continue
                if record.is_active or record.dose_number not in existing:
                    existing[record.dose_number] = record
            anchors = {
                (vaccine_id, number): record.administered_date or record.scheduled_date
                for number, record in existing.items()
                if record.status is RecordStatus.COMPLETED
            }
            count = 0
            try:
                for dose in build_vaccine_calendar(child.date_of_birth, vaccine, anchors):
                    if dose.dose_number in existing or dose.scheduled_date < earliest:
                        continue
                    self.records.create(
                        VaccinationRecord(
                            record_id=self.id_factory(),
                            child_id=child.child_id,
                            vaccine_id=vaccine_id,
                            dose_number=dose.dose_number,
                            scheduled_date=max(dose.scheduled_date, today),
                            vaccine_version=vaccine.version,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    count += 1
            except VaxtrackError as exc:
                LOG.error(
                    "Failed to schedule %s for child %s: %s", vaccine_id, child.child_id, exc
                )
                errors[child.child_id] = str(exc)
            if count:
                scheduled[child.child_id] = count

        result = BulkScheduleResult(
            scheduled=scheduled, errors=errors, children_evaluated=len(children)
        )
        LOG.info(
            "Scheduled new vaccine %s: %d records for %d children",
            vaccine_id,
            result.records_created,
            len(scheduled),
        )
        return result

    def create_record(
        self,
        child_id: str,
        vaccine_id: str,
        dose_number: int,
        scheduled_date: date | str,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> VaccinationRecord:
        """Create one record by hand, e.g. to replace a cancelled dose.

        Raises
        ------
        DuplicateActiveRecord
            If the dose already has an active record.
        NotFoundError
            If the child or vaccine is unknown.
        """
        now = as_utc(now) if now is not None else utc_now()
        self.children.get_child(child_id)
        vaccine = self.catalog.get_vaccine(vaccine_id)
        if dose_number not in {d.dose_number for d in vaccine.doses}:
            raise ValidationError(f"Vaccine {vaccine_id} has no dose {dose_number}")
        record = self.records.create(
            VaccinationRecord(
                record_id=self.id_factory(),
                child_id=child_id,
                vaccine_id=vaccine_id,
                dose_number=dose_number,
                scheduled_date=parse_date(scheduled_date, "scheduled_date"),
                vaccine_version=vaccine.version,
                notes=notes,
                created_at=now,
                updated_at=now,
            )
        )
        LOG.info(
            "Created record %s for child %s (%s dose %d)",
            record.record_id,
            child_id,
            vaccine_id,
            dose_number,
        )
        return record

    @staticmethod
    def _anchor_dates(
        existing: Mapping[tuple, VaccinationRecord], regenerate: bool
    ) -> Dict[tuple, date]:
        anchors = {}
        for key, record in existing.items():
            if record.status is RecordStatus.COMPLETED:
                anchors[key] = record.administered_date or record.scheduled_date
            elif not regenerate:
                anchors[key] = record.scheduled_date
        return anchors

    def transition_record(
        self,
        record_id: str,
        action: RecordAction | str,
        payload: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> VaccinationRecord:
        """Apply a lifecycle action and its notification side effects.

        - complete: pending reminder/overdue alerts are superseded and one
          completion notice is created.
        - cancel: alerts are superseded; a cancellation notice is created
          when ``notifications.notify_on_cancel`` is set.
        - miss / reschedule: alerts for the old state are superseded.

        The record change is committed before the notification side effects
        run. A side effect that fails is logged and does not undo the
        transition.

        Raises
        ------
        ValidationError, InvalidTransition, ConcurrencyConflict, NotFoundError
            Propagated from the lifecycle; nothing is written on error.
        """
        now = as_utc(now) if now is not None else utc_now()
        _, after = self.lifecycle.transition(record_id, action, payload, now)
        action = RecordAction.from_string(action)

        try:
            if action is RecordAction.COMPLETE:
                self.factory.notify_completed(after, now)
            elif action is RecordAction.CANCEL:
                self.factory.notify_cancelled(after, now)
            elif action in (RecordAction.MISS, RecordAction.RESCHEDULE):
                self.factory.supersede_open(record_id, ALERT_TYPES, now)
        except VaxtrackError as exc:
            LOG.error(
                "Record %s %s committed but its notifications failed: %s",
                record_id,
                action.value,
                exc,
            )
        return after

    def delete_record(self, record_id: str, now: Optional[datetime] = None) -> VaccinationRecord:
        """Soft-delete a non-completed record and supersede its alerts."""
        now = as_utc(now) if now is not None else utc_now()
        deleted = self.lifecycle.delete(record_id, now)
        self.factory.supersede_open(record_id, ALERT_TYPES, now)
        return deleted

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def run_sweep_once(self, now: Optional[datetime] = None) -> SweepResult:
        return self.sweep.run_once(now)

    def mark_notification_read(
        self, notification_id: str, now: Optional[datetime] = None
    ) -> Notification:
        return self.delivery.mark_read(notification_id, as_utc(now) if now else utc_now())

    def mark_notification_delivered(
        self, notification_id: str, channel: Channel | str, now: Optional[datetime] = None
    ) -> Notification:
        return self.delivery.mark_delivered(
            notification_id, channel, as_utc(now) if now else utc_now()
        )

    def run_cleanup(self, now: Optional[datetime] = None) -> List[str]:
        """Delete expired and long-read notifications."""
        return cleanup_notifications(
            self.notifications,
            as_utc(now) if now else utc_now(),
            self.config["cleanup"]["retention_days"],
        )


def default_senders() -> Dict[Channel, ChannelSender]:
    """Dry-run senders for every channel."""
    return {channel: LoggingChannelSender(channel) for channel in Channel}


def build_engine(
    config: Optional[Dict[str, Any]] = None,
    children: Optional[ChildRepository] = None,
    catalog: Optional[VaccineCatalog] = None,
    records: Optional[RecordStore] = None,
    notifications: Optional[NotificationStore] = None,
    preferences: Optional[PreferenceProvider] = None,
    senders: Optional[Mapping[Channel, ChannelSender]] = None,
    on_exhausted: Optional[Callable[[RetryExhausted], None]] = None,
    id_factory: Optional[Callable[[], str]] = None,
) -> ScheduleEngine:
    """Wire an engine from configuration.

    Every collaborator not supplied gets an in-memory default: the catalog is
    loaded from ``catalog.path`` and senders are dry-run loggers. Building is
    side-effect free, so calling it twice yields two independent engines.

    Parameters
    ----------
    config : Dict[str, Any], optional
        Configuration mapping; missing keys take their defaults and the
        result is validated. Loaded from the default parameters.yaml when
        omitted.
    """
    if config is None:
        config = load_config()
    else:
        config = merge_defaults(config)
        validate_config(config)

    if catalog is None:
        catalog = load_catalog(resolve_path(config["catalog"]["path"]))
    children = children if children is not None else InMemoryChildRepository()
    records = records if records is not None else InMemoryRecordStore()
    notifications = notifications if notifications is not None else InMemoryNotificationStore()
    if preferences is None:
        preferences = InMemoryPreferenceProvider(
            default=DeliveryPreference(reminder_lead_days=config["reminders"]["default_lead_days"])
        )

    scheduling = config["scheduling"]
    notification_cfg = config["notifications"]
    delivery_cfg = config["delivery"]

    factory = NotificationFactory(
        children,
        catalog,
        notifications,
        preferences,
        grace_period_days=scheduling["grace_period_days"],
        completion_channels=notification_cfg["completion_channels"],
        notify_on_cancel=notification_cfg["notify_on_cancel"],
        default_language=notification_cfg["language"],
        id_factory=id_factory,
        records=records,
    )
    delivery = DeliveryOrchestrator(
        senders if senders is not None else default_senders(),
        preferences,
        notifications,
        policy=ExponentialBackoff.from_config(config),
        max_workers=delivery_cfg["max_workers"],
        lease_seconds=delivery_cfg["lease_seconds"],
        on_exhausted=on_exhausted,
    )
    sweep = ReconciliationSweep(
        records,
        notifications,
        factory,
        delivery,
        grace_period_days=scheduling["grace_period_days"],
        max_conflict_retries=config["sweep"]["max_conflict_retries"],
    )
    return ScheduleEngine(
        config,
        children,
        catalog,
        records,
        notifications,
        preferences,
        factory,
        delivery,
        sweep,
        id_factory=id_factory,
    )
