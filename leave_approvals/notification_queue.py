"""Bounded, deduplicating store of pending notifications."""
from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from django.contrib.auth import get_user_model
from django.db import transaction
from django.db.models import Count
from django.utils import timezone

from .conf import workflow_setting
from .models import QueuedNotification, ScheduledTask

logger = logging.getLogger(__name__)
User = get_user_model()

Status = QueuedNotification.Status

# Row locked by every enqueue so the capacity check and the insert are serialized.
QUEUE_LOCK = "leave_approvals.queue"


def deduplication_key(recipient_user_id: Optional[Any], type: str, title: str, message: str) -> str:
    content = f"{recipient_user_id or ''}-{type}-{title}-{message}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class NotificationQueue:
    """The only writer of new QueuedNotification rows.

    Identical pending notifications collapse into one entry; the pending set is
    capped and the oldest entries are expired first when the cap is reached.
    """

    def __init__(self, capacity: Optional[int] = None, ttl: Optional[timedelta] = None):
        self.capacity = capacity or workflow_setting("QUEUE_CAPACITY")
        self.ttl = ttl or timedelta(days=workflow_setting("NOTIFICATION_TTL_DAYS"))

    @transaction.atomic
    def enqueue(
        self,
        *,
        type: str,
        title: str,
        message: str,
        recipient_user: Optional[User] = None,
        recipient_staff_id: str = "",
        link: str = "",
        priority: int = QueuedNotification.Priority.NORMAL,
        request_id: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[QueuedNotification, bool]:
        """Queue a notification; returns ``(entry, created)`` like ``get_or_create``."""
        now = now or timezone.now()
        recipient_id = recipient_user.pk if recipient_user is not None else None
        key = deduplication_key(recipient_id, type, title, message)
        ScheduledTask.objects.select_for_update().get_or_create(name=QUEUE_LOCK)

        duplicates = QueuedNotification.objects.select_for_update().pending().filter(
            deduplication_key=key,
            expires_at__gte=now,
        )
        if recipient_id is not None:
            duplicates = duplicates.filter(recipient_user_id=recipient_id)
        if recipient_staff_id:
            duplicates = duplicates.filter(recipient_staff_id=recipient_staff_id)
        existing = duplicates.order_by("created_at", "id").first()
        if existing is not None:
            existing.priority = max(existing.priority, priority)
            existing.delivery_attempts = 0
            existing.save(update_fields=["priority", "delivery_attempts", "updated_at"])
            logger.debug("Refreshed queued notification %s (key=%s)", existing.pk, key[:12])
            return existing, False

        self._make_room(now)
        entry = QueuedNotification.objects.create(
            recipient_user=recipient_user,
            recipient_staff_id=recipient_staff_id,
            request_id=request_id,
            type=type,
            title=title,
            message=message,
            link=link,
            metadata=metadata or {},
            priority=priority,
            deduplication_key=key,
            created_at=now,
            expires_at=now + self.ttl,
        )
        return entry, True

    def _make_room(self, now: datetime) -> int:
        """Expire the oldest pending entries until one more fits under the cap."""
        pending = QueuedNotification.objects.pending().count()
        overflow = pending - self.capacity + 1
        if overflow <= 0:
            return 0
        oldest = list(
            QueuedNotification.objects.select_for_update()
            .pending()
            .order_by("created_at", "id")
            .values_list("pk", flat=True)[:overflow]
        )
        evicted = QueuedNotification.objects.filter(pk__in=oldest, status=Status.PENDING).update(
            status=Status.EXPIRED,
            updated_at=now,
        )
        logger.warning("Notification queue at capacity (%d); expired %d oldest entries", self.capacity, evicted)
        return evicted

    def next_batch(self, size: Optional[int] = None, now: Optional[datetime] = None) -> List[QueuedNotification]:
        """Pending, unexpired entries: urgent first, oldest first within a tier."""
        now = now or timezone.now()
        size = size or workflow_setting("DISPATCH_BATCH_SIZE")
        return list(QueuedNotification.objects.deliverable(now).select_related("recipient_user")[:size])

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        now = now or timezone.now()
        return QueuedNotification.objects.pending().filter(expires_at__lt=now).update(
            status=Status.EXPIRED,
            updated_at=now,
        )

    def purge(self, now: Optional[datetime] = None) -> int:
        """Delete terminal entries whose retention window has passed."""
        now = now or timezone.now()
        deleted, _ = QueuedNotification.objects.filter(
            status__in=QueuedNotification.TERMINAL_STATUSES,
            expires_at__lt=now,
        ).delete()
        return deleted

    def statistics(self) -> Dict[str, int]:
        counts = {status: 0 for status in Status.values}
        for row in QueuedNotification.objects.order_by().values("status").annotate(total=Count("id")):
            counts[row["status"]] = row["total"]
        counts["total"] = sum(counts[status] for status in Status.values)
        return counts
