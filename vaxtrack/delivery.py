"""Multi-channel notification delivery.

One delivery attempt for one due notification:

1. **Claim.** A compare-and-set write sets ``lease_expires_at`` so concurrent
   sweeps skip the notification while the attempt is in flight. Losing the
   claim race means another worker owns the attempt.
2. **Send.** Every channel enabled on the notification and allowed by the
   recipient's preferences is sent concurrently; the attempt waits for all
   sends to settle. A sender that raises or reports ``success=False`` fails
   only its own channel.
3. **Record.** Per-channel results and retry bookkeeping are written in one
   compare-and-set. If the notification changed mid-flight (e.g. it was
   superseded) the results are re-applied to the fresh copy.

At least one successful channel makes the notification SENT. When every
channel fails the retry count grows and the next attempt is scheduled by the
backoff policy; after the last allowed failure the notification is flagged
``needs_attention`` and reported through the ``on_exhausted`` hook.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Mapping, Optional, Union

from .backoff import ExponentialBackoff
from .channels import ChannelSender, prepare_message
from .data_models import ChannelDelivery, Notification, RecipientContact, SendOutcome
from .enums import Channel, NotificationStatus
from .exceptions import ChannelDeliveryFailure, ConcurrencyConflict, RetryExhausted, ValidationError
from .stores import NotificationStore, PreferenceProvider

LOG = logging.getLogger(__name__)

WRITE_ATTEMPTS = 3

ChannelResults = Dict[Channel, Union[SendOutcome, ChannelDeliveryFailure]]


def log_exhausted(error: RetryExhausted) -> None:
    """Default operator hook."""
    LOG.error("Manual attention required: %s", error)


class DeliveryOrchestrator:
    """Sends notifications over their enabled channels.

    Parameters
    ----------
    senders : Mapping[Channel, ChannelSender]
        One sender per supported channel. Channels without a sender fail.
    preferences : PreferenceProvider
        Recipient channel preferences and contact addresses.
    notifications : NotificationStore
        Store the outcome is written to.
    policy : ExponentialBackoff, optional
        Retry policy (defaults to 5 retries, 2^n minutes).
    max_workers : int
        Upper bound on concurrent channel sends per notification.
    lease_seconds : int
        How long a claimed notification stays hidden from other sweeps.
    on_exhausted : Callable[[RetryExhausted], None], optional
        Called once when a notification reaches the retry limit.
    """

    def __init__(
        self,
        senders: Mapping[Channel, ChannelSender],
        preferences: PreferenceProvider,
        notifications: NotificationStore,
        policy: Optional[ExponentialBackoff] = None,
        max_workers: int = 3,
        lease_seconds: int = 300,
        on_exhausted: Optional[Callable[[RetryExhausted], None]] = None,
    ) -> None:
        self.senders = {Channel.from_string(ch): sender for ch, sender in senders.items()}
        self.preferences = preferences
        self.notifications = notifications
        self.policy = policy or ExponentialBackoff()
        self.max_workers = max_workers
        self.lease = timedelta(seconds=lease_seconds)
        self.on_exhausted = on_exhausted or log_exhausted

    def is_due(self, notification: Notification, now: datetime) -> bool:
        """Pending and scheduled, or failed with a retry that has come due."""
        if notification.is_expired(now) or notification.is_leased(now):
            return False
        if notification.status is NotificationStatus.PENDING:
            return notification.scheduled_for <= now
        if notification.status is NotificationStatus.FAILED:
            return (
                not self.policy.is_exhausted(notification.retry_count)
                and notification.next_retry_at is not None
                and notification.next_retry_at <= now
            )
        return False

    def deliver(self, notification: Notification, now: datetime) -> Optional[Notification]:
        """Run one delivery attempt.

        Returns
        -------
        Optional[Notification]
            The stored notification after the attempt, or None when it was
            not due or another worker claimed it first.

        Raises
        ------
        ConcurrencyConflict
            If the outcome could not be written after repeated re-reads.
        """
        if not self.is_due(notification, now):
            if notification.is_expired(now):
                LOG.debug("Notification %s expired; not sent", notification.notification_id)
            return None

        try:
            claimed = self.notifications.update(
                replace(notification, lease_expires_at=now + self.lease),
                expected_version=notification.version,
            )
        except ConcurrencyConflict:
            LOG.debug("Notification %s claimed elsewhere", notification.notification_id)
            return None

        results = self._send_all(claimed)
        return self._record(claimed, results, now)

    def mark_delivered(
        self, notification_id: str, channel: Channel | str, now: datetime
    ) -> Notification:
        """Record a provider delivery confirmation for one channel.

        Raises
        ------
        ValidationError
            If the channel was never sent.
        """
        channel = Channel.from_string(channel)

        def confirm(current: Notification) -> Notification:
            delivery = current.deliveries.get(channel, ChannelDelivery())
            if not delivery.sent:
                raise ValidationError(
                    f"Notification {notification_id} was not sent on {channel.value}"
                )
            deliveries = dict(current.deliveries)
            deliveries[channel] = replace(delivery, delivered=True, delivered_at=now)
            status = current.status
            if status is NotificationStatus.SENT:
                status = NotificationStatus.DELIVERED
            return replace(current, deliveries=deliveries, status=status, updated_at=now)

        return self._write_with_retry(notification_id, confirm)

    def mark_read(self, notification_id: str, now: datetime) -> Notification:
        """Mark a notification read; status becomes READ once sent or delivered."""

        def read(current: Notification) -> Notification:
            if current.is_read:
                return current
            status = current.status
            if status in (NotificationStatus.SENT, NotificationStatus.DELIVERED):
                status = NotificationStatus.READ
            return replace(current, is_read=True, read_at=now, status=status, updated_at=now)

        return self._write_with_retry(notification_id, read)

    def _send_all(self, notification: Notification) -> ChannelResults:
        prefs = self.preferences.get_channel_preferences(notification.recipient_id)
        contact = self.preferences.get_contact(notification.recipient_id)

        results: ChannelResults = {}
        targets = []
        for channel in notification.enabled_channels:
            if not prefs.allows(channel):
                results[channel] = ChannelDeliveryFailure(channel.value, "disabled by recipient")
            elif not contact.address_for(channel):
                results[channel] = ChannelDeliveryFailure(channel.value, "no address on file")
            elif channel not in self.senders:
                results[channel] = ChannelDeliveryFailure(channel.value, "no sender configured")
            else:
                targets.append(channel)

        if targets:
            workers = max(1, min(self.max_workers, len(targets)))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = {
                    channel: pool.submit(self._send_one, channel, contact, notification)
                    for channel in targets
                }
                for channel, future in futures.items():
                    try:
                        results[channel] = future.result()
                    except ChannelDeliveryFailure as failure:
                        results[channel] = failure
        return results

    def _send_one(
        self, channel: Channel, contact: RecipientContact, notification: Notification
    ) -> SendOutcome:
        subject, body = prepare_message(channel, contact, notification)
        try:
            outcome = self.senders[channel].send(contact.address_for(channel), subject, body)
        except Exception as exc:
            LOG.warning(
                "%s sender raised for notification %s: %s",
                channel.value,
                notification.notification_id,
                exc,
            )
            raise ChannelDeliveryFailure(channel.value, str(exc) or type(exc).__name__) from exc
        if not outcome.success:
            raise ChannelDeliveryFailure(channel.value, outcome.error or "send failed")
        return outcome

    def _apply(
        self, current: Notification, results: ChannelResults, now: datetime
    ) -> Notification:
        deliveries = dict(current.deliveries)
        failures: Dict[str, str] = {}
        succeeded = False
        for channel, result in results.items():
            delivery = deliveries.get(channel, ChannelDelivery(enabled=True))
            if isinstance(result, ChannelDeliveryFailure):
                failures[channel.value] = result.reason
                deliveries[channel] = replace(delivery, failure_reason=result.reason)
            else:
                succeeded = True
                deliveries[channel] = replace(
                    delivery,
                    sent=True,
                    sent_at=now,
                    failure_reason=None,
                    provider_message_id=result.provider_message_id,
                )

        superseded = current.status is NotificationStatus.SUPERSEDED
        if succeeded:
            return replace(
                current,
                deliveries=deliveries,
                status=current.status if superseded else NotificationStatus.SENT,
                next_retry_at=None,
                lease_expires_at=None,
                updated_at=now,
            )

        retry_count = min(current.retry_count + 1, self.policy.max_retries)
        exhausted = self.policy.is_exhausted(retry_count)
        return replace(
            current,
            deliveries=deliveries,
            status=current.status if superseded else NotificationStatus.FAILED,
            retry_count=retry_count,
            last_retry_at=now,
            next_retry_at=None if superseded else self.policy.next_retry_at(now, retry_count),
            needs_attention=current.needs_attention or (exhausted and not superseded),
            lease_expires_at=None,
            updated_at=now,
        )

    def _record(
        self, claimed: Notification, results: ChannelResults, now: datetime
    ) -> Notification:
        stored = self._write_with_retry(
            claimed.notification_id,
            lambda current: self._apply(current, results, now),
            first=claimed,
        )

        if stored.status is NotificationStatus.SENT:
            LOG.info(
                "Notification %s sent via %s",
                stored.notification_id,
                ", ".join(ch.value for ch, d in stored.deliveries.items() if d.sent) or "-",
            )
        elif stored.status is NotificationStatus.FAILED:
            failures = {
                ch.value: d.failure_reason
                for ch, d in stored.deliveries.items()
                if d.enabled and d.failure_reason
            }
            if stored.needs_attention and not claimed.needs_attention:
                self.on_exhausted(
                    RetryExhausted(stored.notification_id, stored.retry_count, failures, now)
                )
            else:
                LOG.warning(
                    "Notification %s failed (attempt %d/%d); next retry at %s",
                    stored.notification_id,
                    stored.retry_count,
                    self.policy.max_retries,
                    stored.next_retry_at.isoformat() if stored.next_retry_at else "-",
                )
        return stored

    def _write_with_retry(
        self,
        notification_id: str,
        change: Callable[[Notification], Notification],
        first: Optional[Notification] = None,
    ) -> Notification:
        current = first or self.notifications.get(notification_id)
        attempt = 1
        while True:
            updated = change(current)
            if updated is current:
                return current
            try:
                return self.notifications.update(updated, expected_version=current.version)
            except ConcurrencyConflict:
                if attempt >= WRITE_ATTEMPTS:
                    raise
                attempt += 1
                current = self.notifications.get(notification_id)
