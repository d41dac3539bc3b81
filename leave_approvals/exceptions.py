"""Error kinds raised by the approval workflow."""
from __future__ import annotations

from django.core.exceptions import ValidationError


class WorkflowError(ValidationError):
    """Base class; callers can rely on ``code`` and ``http_status``."""

    default_code = "workflow_error"
    http_status = 400

    def __init__(self, message: str, *, code: str | None = None, **context):
        super().__init__(message, code=code or self.default_code)
        self.context = context


class InvalidConfiguration(WorkflowError):
    default_code = "invalid_configuration"


class InvalidDecision(WorkflowError):
    default_code = "invalid_decision"


class ApprovalNotFound(WorkflowError):
    default_code = "not_found"
    http_status = 404


class OutOfOrderApproval(WorkflowError):
    default_code = "out_of_order"
    http_status = 409


class AlreadyDecided(WorkflowError):
    default_code = "already_decided"
    http_status = 409


class Unauthorized(WorkflowError):
    default_code = "unauthorized"
    http_status = 403


class DelegationConflict(WorkflowError):
    default_code = "delegation_conflict"
    http_status = 409


class DeliveryFailure(Exception):
    """A single channel could not deliver a notification."""

    def __init__(self, channel: str, reason: str):
        super().__init__(f"{channel}: {reason}")
        self.channel = channel
        self.reason = reason
