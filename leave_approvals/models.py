"""Database models for the leave approval workflow."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone

User = get_user_model()


class ApproverRole(models.Model):
    """A role an approval level is bound to, with its designated approver."""

    code = models.CharField(max_length=40, unique=True)
    name = models.CharField(max_length=120)
    designated_approver = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="designated_roles",
    )
    members = models.ManyToManyField(
        User,
        blank=True,
        related_name="approver_roles",
    )
    is_oversight = models.BooleanField(
        default=False,
        help_text="Members receive the secondary escalation tier.",
    )

    class Meta:
        ordering = ["code"]

    def __str__(self) -> str:
        return f"{self.name} ({self.code})"


class LeaveApprovalQuerySet(models.QuerySet):
    def open(self) -> "LeaveApprovalQuerySet":
        return self.filter(status=LeaveApproval.Status.PENDING)


class LeaveApproval(models.Model):
    """The approval chain attached to one leave request."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        APPROVED = "approved", "Approved"
        REJECTED = "rejected", "Rejected"
        CANCELLED = "cancelled", "Cancelled"

    request_id = models.CharField(max_length=64, unique=True)
    requester = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name="leave_approvals",
    )
    status = models.CharField(
        max_length=12,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True,
    )
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)
    decided_at = models.DateTimeField(null=True, blank=True)

    objects = LeaveApprovalQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{self.request_id} ({self.get_status_display()})"

    @property
    def is_pending(self) -> bool:
        return self.status == self.Status.PENDING

    @property
    def active_level(self) -> Optional["ApprovalLevel"]:
        """The lowest open level, provided every level below it is approved."""
        if not self.is_pending:
            return None
        for level in self.levels.all():
            if level.status == ApprovalLevel.Status.APPROVED:
                continue
            return level if level.is_open else None
        return None

    @property
    def is_escalated(self) -> bool:
        return any(level.escalated_at for level in self.levels.all())


def derive_overall_status(levels: List["ApprovalLevel"]) -> str:
    if any(level.status == ApprovalLevel.Status.REJECTED for level in levels):
        return LeaveApproval.Status.REJECTED
    if levels and all(level.status == ApprovalLevel.Status.APPROVED for level in levels):
        return LeaveApproval.Status.APPROVED
    return LeaveApproval.Status.PENDING


class ApprovalLevelQuerySet(models.QuerySet):
    def open(self) -> "ApprovalLevelQuerySet":
        return self.filter(status__in=ApprovalLevel.OPEN_STATUSES)

    def active(self) -> "ApprovalLevelQuerySet":
        """Open levels that have been activated on still-pending approvals."""
        return self.open().filter(
            approval__status=LeaveApproval.Status.PENDING,
            activated_at__isnull=False,
        )


class ApprovalLevel(models.Model):
    """One sequential sign-off step of a leave approval."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        APPROVED = "approved", "Approved"
        REJECTED = "rejected", "Rejected"
        DELEGATED = "delegated", "Delegated"

    OPEN_STATUSES = (Status.PENDING, Status.DELEGATED)

    approval = models.ForeignKey(
        LeaveApproval,
        related_name="levels",
        on_delete=models.CASCADE,
    )
    level_number = models.PositiveIntegerField()
    approver_role = models.CharField(max_length=40)
    status = models.CharField(
        max_length=10,
        choices=Status.choices,
        default=Status.PENDING,
    )
    assigned_to = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="assigned_approval_levels",
    )
    acted_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="decided_approval_levels",
    )
    acted_at = models.DateTimeField(null=True, blank=True)
    comments = models.TextField(blank=True)
    activated_at = models.DateTimeField(null=True, blank=True)
    escalated_at = models.DateTimeField(null=True, blank=True)
    oversight_escalated_at = models.DateTimeField(null=True, blank=True)

    objects = ApprovalLevelQuerySet.as_manager()

    class Meta:
        ordering = ["level_number"]
        unique_together = ("approval", "level_number")

    def __str__(self) -> str:
        return f"{self.approval.request_id} · Level {self.level_number} ({self.approver_role})"

    def clean(self):
        if self.level_number <= 0:
            raise ValidationError("Level numbers start at 1.")

    @property
    def is_open(self) -> bool:
        return self.status in self.OPEN_STATUSES

    def hours_pending(self, now: datetime) -> float:
        if not self.activated_at:
            return 0.0
        return (now - self.activated_at).total_seconds() / 3600


class DelegationQuerySet(models.QuerySet):
    def active_at(self, when: datetime) -> "DelegationQuerySet":
        return self.filter(valid_from__lte=when, valid_to__gt=when).filter(
            Q(revoked_at__isnull=True) | Q(revoked_at__gt=when)
        )

    def overlapping(self, delegator: User, start: datetime, end: datetime) -> "DelegationQuerySet":
        return self.filter(
            delegator=delegator,
            valid_from__lt=end,
            valid_to__gt=start,
        ).filter(Q(revoked_at__isnull=True) | Q(revoked_at__gt=start))


class Delegation(models.Model):
    """A time-bounded hand-over of one approver's authority to a substitute."""

    delegator = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name="delegations_given",
    )
    delegate = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name="delegations_received",
    )
    valid_from = models.DateTimeField()
    valid_to = models.DateTimeField()
    roles = models.JSONField(default=list, blank=True, help_text="Role codes covered; empty means all.")
    request_ids = models.JSONField(default=list, blank=True, help_text="Requests covered; empty means all.")
    notes = models.TextField(blank=True)
    revoked_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    objects = DelegationQuerySet.as_manager()

    class Meta:
        ordering = ["-valid_from"]

    def __str__(self) -> str:
        return f"{self.delegator} → {self.delegate} ({self.valid_from:%Y-%m-%d} – {self.valid_to:%Y-%m-%d})"

    def covers(self, role: str, request_id: Optional[str] = None) -> bool:
        if self.roles and role not in self.roles:
            return False
        if self.request_ids and request_id not in self.request_ids:
            return False
        return True


class QueuedNotificationQuerySet(models.QuerySet):
    def pending(self) -> "QueuedNotificationQuerySet":
        return self.filter(status=QueuedNotification.Status.PENDING)

    def deliverable(self, now: datetime) -> "QueuedNotificationQuerySet":
        return self.pending().filter(expires_at__gte=now).order_by("-priority", "created_at", "id")


class QueuedNotification(models.Model):
    """A notification waiting for (or done with) delivery."""

    class Priority(models.IntegerChoices):
        LOW = 10, "Low"
        NORMAL = 20, "Normal"
        HIGH = 30, "High"
        URGENT = 40, "Urgent"

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        SENT = "sent", "Sent"
        FAILED = "failed", "Failed"
        EXPIRED = "expired", "Expired"

    TERMINAL_STATUSES = (Status.SENT, Status.FAILED, Status.EXPIRED)

    recipient_user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="queued_notifications",
    )
    recipient_staff_id = models.CharField(max_length=64, blank=True)
    request_id = models.CharField(max_length=64, blank=True, db_index=True)
    type = models.CharField(max_length=40)
    title = models.CharField(max_length=255)
    message = models.TextField()
    link = models.CharField(max_length=500, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    priority = models.PositiveSmallIntegerField(choices=Priority.choices, default=Priority.NORMAL)
    deduplication_key = models.CharField(max_length=64, db_index=True)
    status = models.CharField(
        max_length=10,
        choices=Status.choices,
        default=Status.PENDING,
    )
    delivery_attempts = models.PositiveIntegerField(default=0)
    last_attempt_at = models.DateTimeField(null=True, blank=True)
    last_error = models.TextField(blank=True)
    sent_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)
    expires_at = models.DateTimeField()

    objects = QueuedNotificationQuerySet.as_manager()

    class Meta:
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="queue_status_created_idx"),
            models.Index(fields=["status", "priority"], name="queue_status_priority_idx"),
            models.Index(fields=["deduplication_key", "status"], name="queue_dedup_status_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.type}: {self.title} ({self.status})"


class Notification(models.Model):
    """In-app notification feed entry written by the primary channel."""

    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name="leave_notifications",
    )
    queued_notification = models.ForeignKey(
        QueuedNotification,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="deliveries",
    )
    type = models.CharField(max_length=40)
    title = models.CharField(max_length=255)
    message = models.TextField()
    link = models.CharField(max_length=500, blank=True)
    is_read = models.BooleanField(default=False, db_index=True)
    read_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{self.user} · {self.title}"

    def mark_read(self) -> None:
        if not self.is_read:
            self.is_read = True
            self.read_at = timezone.now()
            self.save(update_fields=["is_read", "read_at"])


class AuditEventQuerySet(models.QuerySet):
    def for_request(self, request_id: str) -> "AuditEventQuerySet":
        return self.filter(request_id=request_id).order_by("timestamp", "id")

    def delete(self):
        raise ValidationError("Audit events cannot be deleted.")


class AuditEvent(models.Model):
    """Write-once record of a transition or delivery outcome."""

    request_id = models.CharField(max_length=64, blank=True, db_index=True)
    level_number = models.PositiveIntegerField(null=True, blank=True)
    action = models.CharField(max_length=60)
    actor_id = models.CharField(max_length=64)
    timestamp = models.DateTimeField(default=timezone.now, db_index=True)
    previous_status = models.CharField(max_length=20, blank=True)
    new_status = models.CharField(max_length=20, blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    objects = AuditEventQuerySet.as_manager()

    class Meta:
        ordering = ["timestamp", "id"]

    def __str__(self) -> str:
        return f"{self.timestamp:%Y-%m-%d %H:%M} {self.action} {self.request_id}".strip()

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError("Audit events are write-once and cannot be modified.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("Audit events cannot be deleted.")


class ScheduledTask(models.Model):
    """Bookkeeping for a periodic job (last run, overlap guard), or a named lock row."""

    name = models.CharField(max_length=80, unique=True)
    running_since = models.DateTimeField(null=True, blank=True)
    last_started_at = models.DateTimeField(null=True, blank=True)
    last_finished_at = models.DateTimeField(null=True, blank=True)
    last_error = models.TextField(blank=True)
    run_count = models.PositiveIntegerField(default=0)

    def __str__(self) -> str:
        return self.name
