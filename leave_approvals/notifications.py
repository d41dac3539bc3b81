"""Notification content for approval workflow events.

Each builder returns the keyword arguments ``NotificationQueue.enqueue``
expects. Messages deliberately avoid volatile values (elapsed hours, clock
times) so that repeated events collapse onto the same deduplication key.
"""
from __future__ import annotations

from typing import Any, Dict

from django.contrib.auth import get_user_model

from .conf import workflow_setting
from .models import ApprovalLevel, LeaveApproval, QueuedNotification

User = get_user_model()

Priority = QueuedNotification.Priority


def request_link(request_id: str) -> str:
    return f"{workflow_setting('PORTAL_URL').rstrip('/')}/leaves/{request_id}"


def _display_name(user: User) -> str:
    return user.get_full_name() or user.get_username()


def _content(approval: LeaveApproval, recipient: User, **fields: Any) -> Dict[str, Any]:
    fields.setdefault("priority", Priority.NORMAL)
    metadata = fields.pop("metadata", {})
    metadata.setdefault("request_id", approval.request_id)
    return {
        "recipient_user": recipient,
        "request_id": approval.request_id,
        "link": request_link(approval.request_id),
        "metadata": metadata,
        **fields,
    }


def approval_required(approval: LeaveApproval, level: ApprovalLevel, approver: User) -> Dict[str, Any]:
    """Ask the resolved approver of the active level for a decision."""
    return _content(
        approval,
        approver,
        type="approval_required",
        title="Leave request awaiting your approval",
        message=(
            f"{_display_name(approval.requester)}'s leave request {approval.request_id} "
            f"needs your decision at level {level.level_number} ({level.approver_role})."
        ),
        priority=Priority.HIGH,
        metadata={"level_number": level.level_number},
    )


def request_approved(approval: LeaveApproval) -> Dict[str, Any]:
    return _content(
        approval,
        approval.requester,
        type="leave_approved",
        title="Leave request approved",
        message=f"Your leave request {approval.request_id} was approved at every level.",
    )


def request_rejected(approval: LeaveApproval, level: ApprovalLevel) -> Dict[str, Any]:
    return _content(
        approval,
        approval.requester,
        type="leave_rejected",
        title="Leave request rejected",
        message=(
            f"Your leave request {approval.request_id} was rejected at level {level.level_number} "
            f"({level.approver_role}). Notes: {level.comments or 'No comment provided.'}"
        ),
        priority=Priority.HIGH,
        metadata={"level_number": level.level_number},
    )


def request_cancelled(approval: LeaveApproval, level: ApprovalLevel, approver: User) -> Dict[str, Any]:
    return _content(
        approval,
        approver,
        type="leave_cancelled",
        title="Leave request withdrawn",
        message=(
            f"{_display_name(approval.requester)} withdrew leave request {approval.request_id}; "
            f"no decision is needed at level {level.level_number}."
        ),
        priority=Priority.LOW,
        metadata={"level_number": level.level_number},
    )


def approval_reminder(approval: LeaveApproval, level: ApprovalLevel, approver: User) -> Dict[str, Any]:
    return _content(
        approval,
        approver,
        type="leave_reminder",
        title="Reminder: leave request awaiting your approval",
        message=(
            f"Leave request {approval.request_id} from {_display_name(approval.requester)} "
            f"is still waiting for your decision at level {level.level_number}."
        ),
        metadata={"level_number": level.level_number},
    )


def escalation_notice(approval: LeaveApproval, level: ApprovalLevel, approver: User, threshold_hours: int) -> Dict[str, Any]:
    return _content(
        approval,
        approver,
        type="escalation",
        title="Escalated leave request - action required",
        message=(
            f"Leave request {approval.request_id} from {_display_name(approval.requester)} has been "
            f"waiting at level {level.level_number} ({level.approver_role}) for more than "
            f"{threshold_hours} hours."
        ),
        priority=Priority.URGENT,
        metadata={"level_number": level.level_number, "tier": "approver"},
    )


def oversight_notice(
    approval: LeaveApproval,
    level: ApprovalLevel,
    member: User,
    threshold_hours: int,
) -> Dict[str, Any]:
    return _content(
        approval,
        member,
        type="escalation",
        title="Leave request stalled in approval",
        message=(
            f"Leave request {approval.request_id} from {_display_name(approval.requester)} has been "
            f"pending at level {level.level_number} ({level.approver_role}) for more than "
            f"{threshold_hours} hours and needs oversight."
        ),
        priority=Priority.URGENT,
        metadata={"level_number": level.level_number, "tier": "oversight"},
    )
