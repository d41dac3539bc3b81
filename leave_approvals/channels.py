"""Delivery channels used by the notification dispatcher."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests
from django.conf import settings
from django.core.mail import send_mail
from django.utils.module_loading import import_string

from .conf import workflow_setting
from .exceptions import DeliveryFailure
from .models import Notification, QueuedNotification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recipient:
    user_id: Optional[int] = None
    staff_id: str = ""
    email: str = ""


@dataclass(frozen=True)
class Content:
    notification_id: int
    type: str
    title: str
    message: str
    link: str = ""
    priority: int = QueuedNotification.Priority.NORMAL
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_important(self) -> bool:
        return self.priority >= QueuedNotification.Priority.HIGH


def recipient_for(entry: QueuedNotification) -> Recipient:
    user = entry.recipient_user
    return Recipient(
        user_id=user.pk if user is not None else None,
        staff_id=entry.recipient_staff_id,
        email=getattr(user, "email", "") or "",
    )


def content_for(entry: QueuedNotification) -> Content:
    return Content(
        notification_id=entry.pk,
        type=entry.type,
        title=entry.title,
        message=entry.message,
        link=entry.link,
        priority=entry.priority,
        metadata=dict(entry.metadata or {}),
    )


class DeliveryChannel:
    """``deliver`` returns True on success and raises ``DeliveryFailure`` otherwise."""

    name = "channel"
    primary = False
    uses_database = False

    def deliver(self, recipient: Recipient, content: Content) -> bool:
        raise NotImplementedError

    def is_configured(self) -> bool:
        return True


class InAppChannel(DeliveryChannel):
    name = "in_app"
    primary = True
    uses_database = True

    def deliver(self, recipient: Recipient, content: Content) -> bool:
        if recipient.user_id is None:
            raise DeliveryFailure(self.name, "recipient has no user account")
        Notification.objects.create(
            user_id=recipient.user_id,
            queued_notification_id=content.notification_id,
            type=content.type,
            title=content.title,
            message=content.message,
            link=content.link,
        )
        return True


class EmailChannel(DeliveryChannel):
    name = "email"

    def deliver(self, recipient: Recipient, content: Content) -> bool:
        if not recipient.email:
            raise DeliveryFailure(self.name, "recipient has no email address")
        body = content.message
        if content.link:
            body = f"{body}\n\nView details: {content.link}"
        sent = send_mail(
            subject=content.title,
            message=body,
            from_email=getattr(settings, "DEFAULT_FROM_EMAIL", "no-reply@example.com"),
            recipient_list=[recipient.email],
            fail_silently=False,
        )
        if not sent:
            raise DeliveryFailure(self.name, "mail backend accepted no messages")
        return True


class PushChannel(DeliveryChannel):
    name = "push"

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()
        self.gateway_url = workflow_setting("PUSH_GATEWAY_URL")
        self.token = workflow_setting("PUSH_GATEWAY_TOKEN")
        self.timeout = workflow_setting("CHANNEL_TIMEOUT")

    def is_configured(self) -> bool:
        return bool(self.gateway_url)

    def deliver(self, recipient: Recipient, content: Content) -> bool:
        if recipient.user_id is None:
            raise DeliveryFailure(self.name, "recipient has no user account")
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        payload = {
            "user_id": recipient.user_id,
            "title": content.title,
            "message": content.message,
            "link": content.link,
            "type": content.type,
            "important": content.is_important,
        }
        try:
            response = self.session.post(self.gateway_url, json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise DeliveryFailure(self.name, str(exc)) from exc
        return True


def build_channels() -> List[DeliveryChannel]:
    """Instantiate the configured channels, primary channel first."""
    channels = []
    for path in workflow_setting("CHANNELS"):
        channel = import_string(path)()
        if not channel.is_configured():
            logger.info("Skipping unconfigured delivery channel %s", channel.name)
            continue
        channels.append(channel)
    channels.sort(key=lambda channel: not channel.primary)
    if not channels or not channels[0].primary:
        raise ValueError("A primary delivery channel must be configured.")
    return channels
