"""JSON endpoints over the approval state machine."""
from __future__ import annotations

from typing import Any, Dict

from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.views.decorators.http import require_GET, require_POST

from .delegation import DelegationResolver
from .directory import get_directory
from .exceptions import Unauthorized, WorkflowError
from .forms import CancelForm, DecisionForm, DelegationForm
from .models import ApprovalLevel, AuditEvent, LeaveApproval
from .workflow import ApprovalStateMachine


def _error_response(exc: WorkflowError) -> JsonResponse:
    return JsonResponse(
        {"error": exc.code, "detail": "; ".join(exc.messages)},
        status=exc.http_status,
    )


def _form_errors(form) -> JsonResponse:
    return JsonResponse({"error": "invalid_input", "detail": form.errors.get_json_data()}, status=400)


def _serialize_level(level: ApprovalLevel) -> Dict[str, Any]:
    return {
        "level_number": level.level_number,
        "approver_role": level.approver_role,
        "status": level.status,
        "assigned_to": level.assigned_to_id,
        "acted_by": level.acted_by_id,
        "acted_at": level.acted_at.isoformat() if level.acted_at else None,
        "comments": level.comments,
        "activated_at": level.activated_at.isoformat() if level.activated_at else None,
        "escalated": level.escalated_at is not None,
    }


def _serialize_approval(approval: LeaveApproval) -> Dict[str, Any]:
    active = approval.active_level
    return {
        "request_id": approval.request_id,
        "requester": approval.requester_id,
        "status": approval.status,
        "created_at": approval.created_at.isoformat(),
        "decided_at": approval.decided_at.isoformat() if approval.decided_at else None,
        "active_level": active.level_number if active else None,
        "escalated": approval.is_escalated,
        "levels": [_serialize_level(level) for level in approval.levels.all()],
    }


def _ensure_can_view(user, approval: LeaveApproval) -> None:
    if user.pk == approval.requester_id or get_directory().is_oversight(user):
        return
    involved = any(user.pk in (level.assigned_to_id, level.acted_by_id) for level in approval.levels.all())
    if not involved:
        raise Unauthorized("You are not involved in this leave request.")


@login_required
@require_GET
def approval_detail(request, request_id: str):
    try:
        approval = ApprovalStateMachine().get(request_id)
        _ensure_can_view(request.user, approval)
    except WorkflowError as exc:
        return _error_response(exc)
    return JsonResponse(_serialize_approval(approval))


@login_required
@require_GET
def approval_history(request, request_id: str):
    """Every audit event recorded for one request, oldest first."""
    try:
        approval = ApprovalStateMachine().get(request_id)
        _ensure_can_view(request.user, approval)
    except WorkflowError as exc:
        return _error_response(exc)
    events = [
        {
            "action": event.action,
            "level_number": event.level_number,
            "actor": event.actor_id,
            "timestamp": event.timestamp.isoformat(),
            "previous_status": event.previous_status,
            "new_status": event.new_status,
            "metadata": event.metadata,
        }
        for event in AuditEvent.objects.for_request(request_id)
    ]
    return JsonResponse({"request_id": request_id, "events": events})


@login_required
@require_GET
def approver_inbox(request):
    levels = ApprovalStateMachine().awaiting(request.user)
    return JsonResponse(
        {
            "roles": sorted(get_directory().roles_for(request.user)),
            "results": [
                {
                    "request_id": level.approval.request_id,
                    "requester": level.approval.requester.get_username(),
                    "level_number": level.level_number,
                    "approver_role": level.approver_role,
                    "activated_at": level.activated_at.isoformat(),
                    "escalated": level.escalated_at is not None,
                }
                for level in levels
            ]
        }
    )


@login_required
@require_POST
def act_on_level(request, request_id: str, level_number: int):
    """Approve or reject one approval level."""
    form = DecisionForm(request.POST)
    if not form.is_valid():
        return _form_errors(form)
    try:
        approval = ApprovalStateMachine().act(
            request_id,
            level_number,
            request.user,
            form.cleaned_data["decision"],
            form.cleaned_data["comments"],
        )
    except WorkflowError as exc:
        return _error_response(exc)
    return JsonResponse(_serialize_approval(approval))


@login_required
@require_POST
def cancel_request(request, request_id: str):
    form = CancelForm(request.POST)
    if not form.is_valid():
        return _form_errors(form)
    try:
        approval = ApprovalStateMachine().cancel(request_id, request.user, reason=form.cleaned_data["reason"])
    except WorkflowError as exc:
        return _error_response(exc)
    return JsonResponse(_serialize_approval(approval))


@login_required
@require_POST
def send_reminder(request, request_id: str):
    try:
        delivered = ApprovalStateMachine().remind(request_id, request.user)
    except WorkflowError as exc:
        return _error_response(exc)
    return JsonResponse({"request_id": request_id, "queued": delivered}, status=202)


@login_required
@require_POST
def create_delegation(request):
    form = DelegationForm(request.POST)
    if not form.is_valid():
        return _form_errors(form)
    data = form.cleaned_data
    try:
        delegation = DelegationResolver().create_delegation(
            request.user,
            data["delegate"],
            data["valid_from"],
            data["valid_to"],
            roles=data["roles"],
            request_ids=data["request_ids"],
            notes=data["notes"],
        )
    except WorkflowError as exc:
        return _error_response(exc)
    return JsonResponse(
        {
            "id": delegation.pk,
            "delegator": delegation.delegator_id,
            "delegate": delegation.delegate_id,
            "valid_from": delegation.valid_from.isoformat(),
            "valid_to": delegation.valid_to.isoformat(),
            "roles": delegation.roles,
            "request_ids": delegation.request_ids,
        },
        status=201,
    )
