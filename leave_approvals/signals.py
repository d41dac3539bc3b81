"""Signals and signal handlers for leave_approvals."""
from __future__ import annotations

from django.core.exceptions import ValidationError
from django.db.models.signals import pre_delete
from django.dispatch import Signal, receiver

from .models import AuditEvent

# Sent with ``event=<AuditEvent>`` after every audit write; compliance feeds subscribe here.
audit_event_recorded = Signal()


@receiver(pre_delete, sender=AuditEvent)
def block_audit_event_deletion(sender, instance: AuditEvent, **kwargs) -> None:
    """Backstop for deletes that bypass ``AuditEvent.delete`` and its queryset."""
    raise ValidationError("Audit events cannot be deleted.")
