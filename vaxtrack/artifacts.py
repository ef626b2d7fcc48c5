"""Engine state artifact.

The CLI ``sweep`` command works on a JSON snapshot of the engine's state:
children, recipient contacts and preferences, vaccination records and
notifications. This module reads the snapshot into in-memory stores and
writes the stores back after the run.

**Artifact layout:**

.. code-block:: json

    {
      "saved_at": "2024-03-01T09:00:00+00:00",
      "children": [{"child_id": "...", "date_of_birth": "2024-01-01", ...}],
      "contacts": [{"recipient_id": "...", "email": "...", ...}],
      "preferences": {"<recipient_id>": {"email": true, "sms": false, ...}},
      "records": [...],
      "notifications": [...]
    }

Dates are ISO strings; enums are stored by value. Entity versions are
preserved so optimistic concurrency keeps working across runs.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .data_models import (
    PAYLOAD_TYPES,
    ChannelDelivery,
    Child,
    DeliveryPreference,
    GeneralPayload,
    Notification,
    RecipientContact,
    RescheduleEntry,
    SideEffectReport,
    VaccinationRecord,
    default_deliveries,
)
from .enums import Channel, NotificationStatus, NotificationType, Priority, RecordStatus
from .exceptions import ValidationError
from .stores import (
    InMemoryChildRepository,
    InMemoryNotificationStore,
    InMemoryPreferenceProvider,
    InMemoryRecordStore,
)
from .utils import parse_date, parse_datetime, utc_now

LOG = logging.getLogger(__name__)


@dataclass
class EngineState:
    """In-memory stores loaded from (or destined for) one artifact."""

    children: InMemoryChildRepository = field(default_factory=InMemoryChildRepository)
    preferences: InMemoryPreferenceProvider = field(default_factory=InMemoryPreferenceProvider)
    records: InMemoryRecordStore = field(default_factory=InMemoryRecordStore)
    notifications: InMemoryNotificationStore = field(default_factory=InMemoryNotificationStore)


def _iso(value: Any) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _opt_date(value: Any, field_name: str):
    return parse_date(value, field_name) if value else None


def _opt_datetime(value: Any, field_name: str) -> Optional[datetime]:
    return parse_datetime(value, field_name) if value else None


def serialize_child(child: Child) -> Dict[str, Any]:
    return {
        "child_id": child.child_id,
        "first_name": child.first_name,
        "last_name": child.last_name,
        "date_of_birth": child.date_of_birth.isoformat(),
        "guardian_id": child.guardian_id,
    }


def deserialize_child(data: Dict[str, Any]) -> Child:
    return Child(
        child_id=data["child_id"],
        first_name=data.get("first_name", ""),
        last_name=data.get("last_name", ""),
        date_of_birth=parse_date(data["date_of_birth"], "date_of_birth"),
        guardian_id=data["guardian_id"],
    )


def serialize_contact(contact: RecipientContact) -> Dict[str, Any]:
    return {
        "recipient_id": contact.recipient_id,
        "name": contact.name,
        "email": contact.email,
        "phone": contact.phone,
        "push_token": contact.push_token,
        "language": contact.language,
    }


def deserialize_contact(data: Dict[str, Any]) -> RecipientContact:
    return RecipientContact(
        recipient_id=data["recipient_id"],
        name=data.get("name", ""),
        email=data.get("email"),
        phone=data.get("phone"),
        push_token=data.get("push_token"),
        language=data.get("language") or "en",
    )


def serialize_preference(preference: DeliveryPreference) -> Dict[str, Any]:
    return {
        "email": preference.email,
        "sms": preference.sms,
        "push": preference.push,
        "reminder_lead_days": preference.reminder_lead_days,
    }


def deserialize_preference(data: Dict[str, Any]) -> DeliveryPreference:
    defaults = DeliveryPreference()
    return DeliveryPreference(
        email=bool(data.get("email", defaults.email)),
        sms=bool(data.get("sms", defaults.sms)),
        push=bool(data.get("push", defaults.push)),
        reminder_lead_days=int(data.get("reminder_lead_days", defaults.reminder_lead_days)),
    )


def serialize_record(record: VaccinationRecord) -> Dict[str, Any]:
    return {
        "record_id": record.record_id,
        "child_id": record.child_id,
        "vaccine_id": record.vaccine_id,
        "dose_number": record.dose_number,
        "scheduled_date": record.scheduled_date.isoformat(),
        "vaccine_version": record.vaccine_version,
        "status": record.status.value,
        "original_scheduled_date": _iso(record.original_scheduled_date),
        "administered_date": _iso(record.administered_date),
        "administered_by": record.administered_by,
        "reschedule_history": [
            {
                "old_date": entry.old_date.isoformat(),
                "new_date": entry.new_date.isoformat(),
                "reason": entry.reason,
                "timestamp": entry.timestamp.isoformat(),
            }
            for entry in record.reschedule_history
        ],
        "cancellation_reason": record.cancellation_reason,
        "missed_reason": record.missed_reason,
        "side_effect_reports": [
            {
                "description": report.description,
                "severity": report.severity,
                "reported_at": report.reported_at.isoformat(),
                "reported_by": report.reported_by,
            }
            for report in record.side_effect_reports
        ],
        "notes": record.notes,
        "is_deleted": record.is_deleted,
        "version": record.version,
        "created_at": _iso(record.created_at),
        "updated_at": _iso(record.updated_at),
    }


def deserialize_record(data: Dict[str, Any]) -> VaccinationRecord:
    return VaccinationRecord(
        record_id=data["record_id"],
        child_id=data["child_id"],
        vaccine_id=data["vaccine_id"],
        dose_number=int(data["dose_number"]),
        scheduled_date=parse_date(data["scheduled_date"], "scheduled_date"),
        vaccine_version=int(data.get("vaccine_version", 1)),
        status=RecordStatus.from_string(data.get("status")),
        original_scheduled_date=_opt_date(
            data.get("original_scheduled_date"), "original_scheduled_date"
        ),
        administered_date=_opt_date(data.get("administered_date"), "administered_date"),
        administered_by=data.get("administered_by"),
        reschedule_history=tuple(
            RescheduleEntry(
                old_date=parse_date(entry["old_date"], "old_date"),
                new_date=parse_date(entry["new_date"], "new_date"),
                reason=entry.get("reason", ""),
                timestamp=parse_datetime(entry["timestamp"], "timestamp"),
            )
            for entry in data.get("reschedule_history", [])
        ),
        cancellation_reason=data.get("cancellation_reason"),
        missed_reason=data.get("missed_reason"),
        side_effect_reports=tuple(
            SideEffectReport(
                description=report["description"],
                severity=report.get("severity", "mild"),
                reported_at=parse_datetime(report["reported_at"], "reported_at"),
                reported_by=report.get("reported_by"),
            )
            for report in data.get("side_effect_reports", [])
        ),
        notes=data.get("notes", ""),
        is_deleted=bool(data.get("is_deleted", False)),
        version=int(data.get("version", 0)),
        created_at=_opt_datetime(data.get("created_at"), "created_at"),
        updated_at=_opt_datetime(data.get("updated_at"), "updated_at"),
    )


def serialize_payload(payload: Any) -> Dict[str, Any]:
    if isinstance(payload, GeneralPayload):
        return {"details": dict(payload.details)}
    return {
        key: (value.isoformat() if isinstance(value, date) else value)
        for key, value in asdict(payload).items()
    }


def deserialize_payload(type_: NotificationType, data: Dict[str, Any]):
    payload_cls = PAYLOAD_TYPES[type_]
    if payload_cls is GeneralPayload:
        return GeneralPayload(details=dict(data.get("details", {})))
    values = dict(data)
    for key in ("scheduled_date", "administered_date"):
        if key in values and values[key] is not None:
            values[key] = parse_date(values[key], key)
    try:
        return payload_cls(**values)
    except TypeError as exc:
        raise ValidationError(f"Invalid {type_.value} payload: {exc}") from exc


def serialize_notification(notification: Notification) -> Dict[str, Any]:
    return {
        "notification_id": notification.notification_id,
        "recipient_id": notification.recipient_id,
        "type": notification.type.value,
        "payload": serialize_payload(notification.payload),
        "title": notification.title,
        "message": notification.message,
        "scheduled_for": notification.scheduled_for.isoformat(),
        "priority": notification.priority.value,
        "record_id": notification.record_id,
        "child_id": notification.child_id,
        "expires_at": _iso(notification.expires_at),
        "status": notification.status.value,
        "is_read": notification.is_read,
        "read_at": _iso(notification.read_at),
        "deliveries": {
            channel.value: {
                "enabled": delivery.enabled,
                "sent": delivery.sent,
                "sent_at": _iso(delivery.sent_at),
                "delivered": delivery.delivered,
                "delivered_at": _iso(delivery.delivered_at),
                "failure_reason": delivery.failure_reason,
                "provider_message_id": delivery.provider_message_id,
            }
            for channel, delivery in notification.deliveries.items()
        },
        "retry_count": notification.retry_count,
        "last_retry_at": _iso(notification.last_retry_at),
        "next_retry_at": _iso(notification.next_retry_at),
        "needs_attention": notification.needs_attention,
        "dedup_key": notification.dedup_key,
        "lease_expires_at": _iso(notification.lease_expires_at),
        "version": notification.version,
        "created_at": _iso(notification.created_at),
        "updated_at": _iso(notification.updated_at),
    }


def _deserialize_deliveries(data: Dict[str, Any]) -> Dict[Channel, ChannelDelivery]:
    deliveries = default_deliveries()
    for channel_name, entry in data.items():
        channel = Channel.from_string(channel_name)
        deliveries[channel] = ChannelDelivery(
            enabled=bool(entry.get("enabled", False)),
            sent=bool(entry.get("sent", False)),
            sent_at=_opt_datetime(entry.get("sent_at"), "sent_at"),
            delivered=bool(entry.get("delivered", False)),
            delivered_at=_opt_datetime(entry.get("delivered_at"), "delivered_at"),
            failure_reason=entry.get("failure_reason"),
            provider_message_id=entry.get("provider_message_id"),
        )
    return deliveries


def deserialize_notification(data: Dict[str, Any]) -> Notification:
    type_ = NotificationType.from_string(data["type"])
    return Notification(
        notification_id=data["notification_id"],
        recipient_id=data["recipient_id"],
        type=type_,
        payload=deserialize_payload(type_, data.get("payload", {})),
        title=data.get("title", ""),
        message=data.get("message", ""),
        scheduled_for=parse_datetime(data["scheduled_for"], "scheduled_for"),
        priority=Priority.from_string(data.get("priority")),
        record_id=data.get("record_id"),
        child_id=data.get("child_id"),
        expires_at=_opt_datetime(data.get("expires_at"), "expires_at"),
        status=NotificationStatus.from_string(data.get("status")),
        is_read=bool(data.get("is_read", False)),
        read_at=_opt_datetime(data.get("read_at"), "read_at"),
        deliveries=_deserialize_deliveries(data.get("deliveries", {})),
        retry_count=int(data.get("retry_count", 0)),
        last_retry_at=_opt_datetime(data.get("last_retry_at"), "last_retry_at"),
        next_retry_at=_opt_datetime(data.get("next_retry_at"), "next_retry_at"),
        needs_attention=bool(data.get("needs_attention", False)),
        dedup_key=data.get("dedup_key"),
        lease_expires_at=_opt_datetime(data.get("lease_expires_at"), "lease_expires_at"),
        version=int(data.get("version", 0)),
        created_at=_opt_datetime(data.get("created_at"), "created_at"),
        updated_at=_opt_datetime(data.get("updated_at"), "updated_at"),
    )


def read_state(path: Path, default_preference: Optional[DeliveryPreference] = None) -> EngineState:
    """Load a state artifact into fresh in-memory stores.

    Recipients without stored preferences get ``default_preference``.

    Raises
    ------
    FileNotFoundError
        If the artifact does not exist.
    ValidationError
        If the artifact is not valid JSON or an entry is malformed.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"State artifact not found: {path}")

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValidationError(f"State artifact is not valid JSON: {path}") from exc

    state = EngineState(preferences=InMemoryPreferenceProvider(default=default_preference))
    try:
        for entry in payload.get("children", []):
            state.children.add(deserialize_child(entry))
        for entry in payload.get("contacts", []):
            state.preferences.set_contact(deserialize_contact(entry))
        for user_id, entry in payload.get("preferences", {}).items():
            state.preferences.set_preferences(user_id, deserialize_preference(entry))
        for entry in payload.get("records", []):
            state.records.restore(deserialize_record(entry))
        for entry in payload.get("notifications", []):
            state.notifications.restore(deserialize_notification(entry))
    except (KeyError, ValueError) as exc:
        raise ValidationError(f"Malformed state artifact {path}: {exc}") from exc

    LOG.info(
        "Loaded state from %s: %d children, %d records, %d notifications",
        path,
        len(state.children.list_children()),
        len(state.records.list_all()),
        len(state.notifications.list_all()),
    )
    return state


def write_state(path: Path, state: EngineState, saved_at: Optional[datetime] = None) -> Path:
    """Write the stores to a JSON artifact, replacing any previous file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "saved_at": (saved_at or utc_now()).isoformat(),
        "children": [serialize_child(c) for c in state.children.list_children()],
        "contacts": [serialize_contact(c) for c in state.preferences.contacts().values()],
        "preferences": {
            user_id: serialize_preference(p)
            for user_id, p in state.preferences.preferences().items()
        },
        "records": [
            serialize_record(r)
            for r in sorted(state.records.list_all(), key=lambda r: r.record_id)
        ],
        "notifications": [
            serialize_notification(n)
            for n in sorted(state.notifications.list_all(), key=lambda n: n.notification_id)
        ],
    }
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    LOG.info("Wrote state artifact to %s", path)
    return path
