"""Notification garbage collection.

Removes notifications that can no longer matter to anyone. Configuration is
read from parameters.yaml under ``cleanup``.

**Removal rules:**

- Past ``expires_at`` (reminders whose day has gone by).
- Read and delivered on at least one channel, and last updated more than
  ``retention_days`` ago.

**Not removed:**

- Anything still deliverable (pending, or failed with retries left).
- Failed notifications flagged ``needs_attention``; an operator clears those.
- Completion and overdue history that was never read.

**Error Handling:**

- Deleting an already-deleted notification is a no-op (idempotent).
- Running concurrently with a sweep is safe: deletion only targets
  notifications no sweep will pick up again.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

from .config_loader import load_config
from .data_models import Notification
from .stores import NotificationStore

LOG = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30


def is_collectable(notification: Notification, now: datetime, retention_days: int) -> bool:
    """True when ``notification`` may be deleted at ``now``."""
    if notification.needs_attention:
        return False
    if notification.is_expired(now):
        return True
    if notification.is_read and notification.is_delivered:
        last_touched = notification.updated_at or notification.created_at
        return last_touched is not None and last_touched < now - timedelta(days=retention_days)
    return False


def cleanup_notifications(
    store: NotificationStore, now: datetime, retention_days: int = DEFAULT_RETENTION_DAYS
) -> List[str]:
    """Delete collectable notifications.

    Returns
    -------
    List[str]
        IDs of the deleted notifications.
    """
    removed = []
    for notification in store.list_all():
        if is_collectable(notification, now, retention_days):
            store.delete(notification.notification_id)
            removed.append(notification.notification_id)
    LOG.info("Cleanup removed %d notification(s)", len(removed))
    return removed


def cleanup_with_config(
    store: NotificationStore, now: datetime, config_path: Optional[Path] = None
) -> List[str]:
    """Run cleanup with ``cleanup.retention_days`` from parameters.yaml."""
    config = load_config(config_path)
    retention_days = config.get("cleanup", {}).get("retention_days", DEFAULT_RETENTION_DAYS)
    return cleanup_notifications(store, now, retention_days)
