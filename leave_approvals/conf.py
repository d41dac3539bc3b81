"""Settings access for the approval workflow with sane defaults."""
from __future__ import annotations

from typing import Any

from django.conf import settings

DEFAULTS = {
    "QUEUE_CAPACITY": 500,
    "NOTIFICATION_TTL_DAYS": 30,
    "DISPATCH_BATCH_SIZE": 50,
    "MAX_DELIVERY_ATTEMPTS": 3,
    "DISPATCH_WORKERS": 4,
    "CHANNEL_TIMEOUT": 10,
    "CHANNELS": [
        "leave_approvals.channels.InAppChannel",
        "leave_approvals.channels.EmailChannel",
        "leave_approvals.channels.PushChannel",
    ],
    "ESCALATION_INTERVAL": 3600,
    "ESCALATION_THRESHOLD_HOURS": 24,
    "OVERSIGHT_THRESHOLD_HOURS": 72,
    "SCHEDULER_LEASE": 1800,
    "DEFAULT_APPROVAL_CHAIN": ["LINE_MANAGER", "HR_OFFICER"],
    "DIRECTORY_CLASS": "leave_approvals.directory.RoleDirectory",
    "PORTAL_URL": "",
    "PUSH_GATEWAY_URL": "",
    "PUSH_GATEWAY_TOKEN": "",
}


def workflow_setting(name: str) -> Any:
    # Read on every call so override_settings takes effect.
    overrides = getattr(settings, "LEAVE_WORKFLOW", {}) or {}
    if name in overrides:
        return overrides[name]
    return DEFAULTS[name]
