"""Reconciliation sweep.

One ``run_once`` pass brings stored state in line with the clock:

1. **Overdue.** Open records past their date plus grace period get their
   cached status set to OVERDUE (and stale OVERDUE caches are reset), then the
   overdue rule runs.
2. **Reminders.** Scheduled records on or after today run the reminder rule;
   the recipient's lead time decides whether one is due.
3. **Delivery.** Due pending and due retry notifications are delivered,
   highest priority first.

**Error Handling:**

- A ``ConcurrencyConflict`` re-reads the entity and retries that unit only,
  up to ``max_conflict_retries`` times, then the unit is counted and skipped.
- Any other engine error is logged and the unit skipped; the batch continues.
- The sweep is idempotent and safe to run concurrently with itself: creation
  is deduplicated by the store and every write is a compare-and-set.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Optional, TypeVar

from .data_models import SweepResult, VaccinationRecord
from .delivery import DeliveryOrchestrator
from .enums import NotificationStatus, RecordStatus
from .exceptions import ConcurrencyConflict, VaxtrackError
from .lifecycle import sync_overdue_cache
from .notification_factory import NotificationFactory
from .stores import NotificationStore, RecordStore
from .utils import as_utc, utc_now

LOG = logging.getLogger(__name__)

T = TypeVar("T")


class ReconciliationSweep:
    """Periodic job that syncs overdue state, creates alerts and delivers them."""

    def __init__(
        self,
        records: RecordStore,
        notifications: NotificationStore,
        factory: NotificationFactory,
        delivery: DeliveryOrchestrator,
        grace_period_days: int = 0,
        max_conflict_retries: int = 3,
    ) -> None:
        self.records = records
        self.notifications = notifications
        self.factory = factory
        self.delivery = delivery
        self.grace_period_days = grace_period_days
        self.max_conflict_retries = max_conflict_retries

    def run_once(self, now: Optional[datetime] = None) -> SweepResult:
        """Run one full pass and return its counters."""
        now = as_utc(now) if now is not None else utc_now()
        counts: Counter = Counter()
        LOG.info("Sweep started at %s", now.isoformat())

        self._process_overdue(now, counts)
        self._process_reminders(now, counts)
        self._process_deliveries(now, counts)

        result = SweepResult(**{k: counts[k] for k in SweepResult.__dataclass_fields__})
        LOG.info(
            "Sweep finished: %d records, %d created, %d dispatched, %d failed, "
            "%d exhausted, %d conflicts, %d errors",
            result.records_evaluated,
            result.notifications_created,
            result.notifications_dispatched,
            result.failures,
            result.exhausted,
            result.conflicts,
            result.errors,
        )
        return result

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _process_overdue(self, now: datetime, counts: Counter) -> None:
        today = now.date()
        cutoff = today - timedelta(days=self.grace_period_days + 1)
        candidates = {
            r.record_id: r
            for r in self.records.query_by_status([RecordStatus.SCHEDULED], end=cutoff)
        }
        # Cached OVERDUE records are re-checked too so stale caches get reset.
        for record in self.records.query_by_status([RecordStatus.OVERDUE]):
            candidates.setdefault(record.record_id, record)

        for record in candidates.values():
            counts["records_evaluated"] += 1
            created = self._run_unit(
                record.record_id,
                counts,
                lambda current: self._sync_and_alert(current, now),
                record,
            )
            if created is not None:
                counts["notifications_created"] += 1

    def _process_reminders(self, now: datetime, counts: Counter) -> None:
        for record in self.records.query_by_status([RecordStatus.SCHEDULED], start=now.date()):
            counts["records_evaluated"] += 1
            created = self._run_unit(
                record.record_id,
                counts,
                lambda current: self.factory.evaluate_reminder(current, now),
                record,
            )
            if created is not None:
                counts["notifications_created"] += 1

    def _process_deliveries(self, now: datetime, counts: Counter) -> None:
        due = {n.notification_id: n for n in self.notifications.query_due_pending(now)}
        for notification in self.notifications.query_due_retry(
            now, self.delivery.policy.max_retries
        ):
            due.setdefault(notification.notification_id, notification)

        for notification in due.values():
            counts["notifications_evaluated"] += 1
            try:
                stored = self.delivery.deliver(notification, now)
            except ConcurrencyConflict as exc:
                counts["conflicts"] += 1
                LOG.warning("Skipping notification %s: %s", notification.notification_id, exc)
                continue
            except VaxtrackError as exc:
                counts["errors"] += 1
                LOG.error("Delivery of %s failed: %s", notification.notification_id, exc)
                continue

            if stored is None:
                continue
            if stored.is_sent:
                counts["notifications_dispatched"] += 1
            elif stored.status is NotificationStatus.FAILED:
                counts["failures"] += 1
                if stored.needs_attention and not notification.needs_attention:
                    counts["exhausted"] += 1

    # ------------------------------------------------------------------
    # Units of work
    # ------------------------------------------------------------------

    def _sync_and_alert(self, record: VaccinationRecord, now: datetime):
        synced = sync_overdue_cache(record, now.date(), self.grace_period_days)
        if synced is not None:
            record = self.records.update(synced, expected_version=record.version)
            LOG.debug("Record %s cached status -> %s", record.record_id, record.status.value)
        return self.factory.evaluate_overdue(record, now)

    def _run_unit(
        self,
        record_id: str,
        counts: Counter,
        work: Callable[[VaccinationRecord], T],
        record: VaccinationRecord,
    ) -> Optional[T]:
        """Run ``work`` on a record, re-reading it after each version conflict."""
        for attempt in range(1, self.max_conflict_retries + 1):
            try:
                if attempt > 1:
                    record = self.records.get(record_id)
                return work(record)
            except ConcurrencyConflict as exc:
                if attempt == self.max_conflict_retries:
                    counts["conflicts"] += 1
                    LOG.warning("Giving up on record %s: %s", record_id, exc)
                    return None
            except VaxtrackError as exc:
                counts["errors"] += 1
                LOG.error("Skipping record %s: %s", record_id, exc)
                return None
        return None
