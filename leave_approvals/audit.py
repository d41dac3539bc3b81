"""Append-only audit trail for transitions and delivery outcomes."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

from django.contrib.auth import get_user_model
from django.utils import timezone

from .models import AuditEvent
from .signals import audit_event_recorded

logger = logging.getLogger(__name__)
User = get_user_model()

SYSTEM_ACTOR = "system"


def actor_identifier(actor: Union[User, str, None]) -> str:
    if actor is None:
        return SYSTEM_ACTOR
    if isinstance(actor, str):
        return actor
    return str(actor.pk)


class AuditRecorder:
    """Writes AuditEvents and publishes them on ``audit_event_recorded``."""

    def record(
        self,
        action: str,
        *,
        request_id: str = "",
        level_number: Optional[int] = None,
        actor: Union[User, str, None] = None,
        previous_status: str = "",
        new_status: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        at: Optional[datetime] = None,
    ) -> AuditEvent:
        event = AuditEvent.objects.create(
            request_id=request_id or "",
            level_number=level_number,
            action=action,
            actor_id=actor_identifier(actor),
            timestamp=at or timezone.now(),
            previous_status=previous_status or "",
            new_status=new_status or "",
            metadata=metadata or {},
        )
        logger.debug(
            "audit action=%s request=%s level=%s actor=%s %s->%s",
            action,
            event.request_id,
            level_number,
            event.actor_id,
            event.previous_status,
            event.new_status,
        )
        audit_event_recorded.send(sender=AuditEvent, event=event)
        return event
