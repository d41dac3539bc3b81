"""The multi-level leave approval state machine."""
from __future__ import annotations

import logging
from collections import namedtuple
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from django.contrib.auth import get_user_model
from django.db import transaction
from django.utils import timezone

from . import notifications
from .audit import AuditRecorder
from .conf import workflow_setting
from .delegation import DelegationResolver, ResolvedApprover
from .directory import RoleDirectory, get_directory
from .exceptions import (
    AlreadyDecided,
    ApprovalNotFound,
    DelegationConflict,
    InvalidConfiguration,
    InvalidDecision,
    OutOfOrderApproval,
    Unauthorized,
    WorkflowError,
)
from .models import ApprovalLevel, LeaveApproval, derive_overall_status
from .notification_queue import NotificationQueue

logger = logging.getLogger(__name__)
User = get_user_model()

LevelSpec = namedtuple("LevelSpec", ["level_number", "approver_role"])


def levels_from_roles(roles: Iterable[str]) -> List[LevelSpec]:
    return [LevelSpec(number, role) for number, role in enumerate(roles, start=1)]


@dataclass(frozen=True)
class Transition:
    """A validated ``act`` waiting to be committed against the observed state."""

    approval_id: int
    level_id: int
    request_id: str
    level_number: int
    observed_status: str
    decision: str
    actor: User
    comments: str
    at: datetime


class ApprovalStateMachine:
    """Owns LeaveApproval and ApprovalLevel rows and every change made to them.

    Transitions are committed with a compare-and-swap on the level status, so
    two racing decisions on the same level cannot both win. Notifications go
    through the queue only and are enqueued after the transaction commits.
    """

    DECISIONS = (ApprovalLevel.Status.APPROVED, ApprovalLevel.Status.REJECTED)

    def __init__(
        self,
        queue: Optional[NotificationQueue] = None,
        resolver: Optional[DelegationResolver] = None,
        directory: Optional[RoleDirectory] = None,
        audit: Optional[AuditRecorder] = None,
    ):
        self.directory = directory or get_directory()
        self.audit = audit or AuditRecorder()
        self.resolver = resolver or DelegationResolver(self.directory, self.audit)
        self.queue = queue or NotificationQueue()

    # Submission ------------------------------------------------------------

    def submit(
        self,
        request_id: str,
        requester: User,
        levels: Optional[Sequence[Any]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> LeaveApproval:
        now = now or timezone.now()
        if levels is None:
            levels = levels_from_roles(workflow_setting("DEFAULT_APPROVAL_CHAIN"))
        specs = self._validate_levels(levels)
        if LeaveApproval.objects.filter(request_id=request_id).exists():
            raise InvalidConfiguration(f"Request {request_id} already has an approval workflow.")

        with transaction.atomic():
            approval = LeaveApproval.objects.create(request_id=request_id, requester=requester, created_at=now)
            for spec in specs:
                ApprovalLevel.objects.create(
                    approval=approval,
                    level_number=spec.level_number,
                    approver_role=spec.approver_role,
                    activated_at=now if spec.level_number == 1 else None,
                )
            first_level = approval.levels.get(level_number=1)
            resolved = self._route(approval, first_level, now)
            self.audit.record(
                "submitted",
                request_id=request_id,
                level_number=1,
                actor=requester,
                new_status=LeaveApproval.Status.PENDING,
                metadata={"levels": [[spec.level_number, spec.approver_role] for spec in specs]},
                at=now,
            )
        logger.info("Leave request %s submitted with %d approval level(s)", request_id, len(specs))
        if resolved is not None:
            self._notify(approval, notifications.approval_required(approval, first_level, resolved.user), now)
        return approval

    def _validate_levels(self, levels: Sequence[Any]) -> List[LevelSpec]:
        try:
            specs = [LevelSpec(*level) for level in levels]
        except (TypeError, ValueError) as exc:
            raise InvalidConfiguration(
                "Each approval level must be a (level_number, approver_role) pair."
            ) from exc
        if not specs:
            raise InvalidConfiguration("At least one approval level is required.")
        numbers = [spec.level_number for spec in specs]
        if numbers != list(range(1, len(specs) + 1)):
            raise InvalidConfiguration(
                f"Approval levels must be numbered 1..{len(specs)} in ascending order; got {numbers}."
            )
        for spec in specs:
            if not spec.approver_role:
                raise InvalidConfiguration(f"Level {spec.level_number} has no approver role.")
            if not self.directory.role_exists(spec.approver_role):
                raise InvalidConfiguration(f"Unknown approver role {spec.approver_role!r}.")
        return specs

    # Decisions ---------------------------------------------------------------

    def act(
        self,
        request_id: str,
        level_number: int,
        actor: User,
        decision: str,
        comments: str = "",
        *,
        now: Optional[datetime] = None,
    ) -> LeaveApproval:
        """Approve or reject one level; failures are audited and re-raised."""
        try:
            transition = self.prepare_action(request_id, level_number, actor, decision, comments, now=now)
            return self.commit(transition)
        except WorkflowError as exc:
            self.audit.record(
                "act_rejected",
                request_id=request_id,
                level_number=level_number,
                actor=actor,
                metadata={"error": exc.code, "detail": exc.messages, "decision": decision},
                at=now,
            )
            logger.info("Rejected %s on %s level %s by %s: %s", decision, request_id, level_number, actor.pk, exc.code)
            raise

    def prepare_action(
        self,
        request_id: str,
        level_number: int,
        actor: User,
        decision: str,
        comments: str = "",
        *,
        now: Optional[datetime] = None,
    ) -> Transition:
        """Check every precondition and capture the state the commit will guard on."""
        now = now or timezone.now()
        if decision not in self.DECISIONS:
            raise InvalidDecision(f"Unknown decision {decision!r}; expected approved or rejected.")
        approval = self._load(request_id)
        level = next((item for item in approval.levels.all() if item.level_number == level_number), None)
        if level is None:
            raise ApprovalNotFound(f"Request {request_id} has no level {level_number}.")

        if not level.is_open:
            raise AlreadyDecided(self._decided_message(level), acted_by=level.acted_by_id)
        if not approval.is_pending:
            raise AlreadyDecided(
                f"Request {request_id} is already {approval.get_status_display().lower()}; "
                f"no further decisions are accepted."
            )
        active = approval.active_level
        if active is None or active.level_number != level_number:
            raise OutOfOrderApproval(
                f"Level {level_number} cannot be decided before level "
                f"{active.level_number if active else '?'} is approved."
            )
        if not self.directory.is_active(actor):
            raise Unauthorized("Inactive accounts cannot act on approvals.")
        if not self.resolver.is_authorized(actor, level.approver_role, now, request_id):
            raise Unauthorized(f"You are not the approver for level {level_number} ({level.approver_role}).")

        return Transition(
            approval_id=approval.pk,
            level_id=level.pk,
            request_id=request_id,
            level_number=level_number,
            observed_status=level.status,
            decision=decision,
            actor=actor,
            comments=comments,
            at=now,
        )

    def commit(self, transition: Transition) -> LeaveApproval:
        now = transition.at
        with transaction.atomic():
            updated = ApprovalLevel.objects.filter(pk=transition.level_id, status=transition.observed_status).update(
                status=transition.decision,
                acted_by=transition.actor,
                acted_at=now,
                comments=transition.comments,
            )
            if not updated:
                level = ApprovalLevel.objects.select_related("acted_by").get(pk=transition.level_id)
                raise AlreadyDecided(self._decided_message(level), acted_by=level.acted_by_id)

            approval = LeaveApproval.objects.select_for_update().get(pk=transition.approval_id)
            if not approval.is_pending:
                # Rolls back the level update above.
                raise AlreadyDecided(f"Request {approval.request_id} is already {approval.status}.")

            levels = list(approval.levels.select_related("acted_by"))
            previous_status = approval.status
            approval.status = derive_overall_status(levels)
            if approval.status != LeaveApproval.Status.PENDING:
                approval.decided_at = now
            approval.save(update_fields=["status", "decided_at", "updated_at"])

            decided_level = next(level for level in levels if level.pk == transition.level_id)
            next_level = None
            resolved = None
            if transition.decision == ApprovalLevel.Status.APPROVED:
                next_level = next((level for level in levels if level.level_number > transition.level_number), None)
                if next_level is not None:
                    next_level.activated_at = now
                    next_level.save(update_fields=["activated_at"])
                    resolved = self._route(approval, next_level, now)

            self.audit.record(
                transition.decision,
                request_id=approval.request_id,
                level_number=transition.level_number,
                actor=transition.actor,
                previous_status=transition.observed_status,
                new_status=transition.decision,
                metadata={
                    "overall_previous": previous_status,
                    "overall_status": approval.status,
                    "comments": transition.comments,
                    "next_level": next_level.level_number if next_level else None,
                },
                at=now,
            )

        logger.info(
            "Request %s level %s %s by %s; overall %s",
            approval.request_id,
            transition.level_number,
            transition.decision,
            transition.actor.pk,
            approval.status,
        )
        if approval.status == LeaveApproval.Status.REJECTED:
            self._notify(approval, notifications.request_rejected(approval, decided_level), now)
        elif approval.status == LeaveApproval.Status.APPROVED:
            self._notify(approval, notifications.request_approved(approval), now)
        elif resolved is not None:
            self._notify(approval, notifications.approval_required(approval, next_level, resolved.user), now)
        return approval

    # Cancellation ----------------------------------------------------------

    def cancel(self, request_id: str, actor: User, *, reason: str = "", now: Optional[datetime] = None) -> LeaveApproval:
        now = now or timezone.now()
        try:
            approval = self._load(request_id)
            if not self.directory.is_active(actor):
                raise Unauthorized("Inactive accounts cannot cancel leave requests.")
            if approval.requester_id != actor.pk:
                raise Unauthorized("Only the original requester can cancel a leave request.")
            if not approval.is_pending:
                raise AlreadyDecided(f"Request {request_id} is already {approval.status} and cannot be cancelled.")
            active = approval.active_level
            with transaction.atomic():
                updated = LeaveApproval.objects.filter(pk=approval.pk, status=LeaveApproval.Status.PENDING).update(
                    status=LeaveApproval.Status.CANCELLED,
                    decided_at=now,
                    updated_at=now,
                )
                if not updated:
                    raise AlreadyDecided(f"Request {request_id} was decided while cancelling.")
                self.audit.record(
                    "cancelled",
                    request_id=request_id,
                    level_number=active.level_number if active else None,
                    actor=actor,
                    previous_status=LeaveApproval.Status.PENDING,
                    new_status=LeaveApproval.Status.CANCELLED,
                    metadata={"reason": reason},
                    at=now,
                )
        except WorkflowError as exc:
            self.audit.record(
                "cancel_rejected",
                request_id=request_id,
                actor=actor,
                metadata={"error": exc.code, "detail": exc.messages},
                at=now,
            )
            raise

        approval.refresh_from_db()
        logger.info("Leave request %s cancelled by %s", request_id, actor.pk)
        if active is not None:
            resolved = self._resolve_for_notice(approval, active, now)
            if resolved is not None:
                self._notify(approval, notifications.request_cancelled(approval, active, resolved.user), now)
        return approval

    # Reminders and lookups -------------------------------------------------

    def remind(self, request_id: str, actor: User, *, now: Optional[datetime] = None) -> bool:
        """Nudge the active approver. Returns False when no one can be reached."""
        now = now or timezone.now()
        approval = self._load(request_id)
        if actor.pk != approval.requester_id and not self.directory.is_oversight(actor):
            raise Unauthorized("Only the requester or an oversight member can send reminders.")
        active = approval.active_level
        if active is None:
            raise AlreadyDecided(f"Request {request_id} has no level awaiting a decision.")
        resolved = self._resolve_for_notice(approval, active, now)
        self.audit.record(
            "reminder_sent",
            request_id=request_id,
            level_number=active.level_number,
            actor=actor,
            previous_status=active.status,
            new_status=active.status,
            metadata={"recipient_user_id": resolved.user.pk if resolved else None},
            at=now,
        )
        if resolved is None:
            return False
        self._notify(approval, notifications.approval_reminder(approval, active, resolved.user), now)
        return True

    def awaiting(self, user: User, *, now: Optional[datetime] = None) -> List[ApprovalLevel]:
        """Active levels the user may decide right now, oldest first."""
        now = now or timezone.now()
        levels = (
            ApprovalLevel.objects.active()
            .select_related("approval", "approval__requester")
            .prefetch_related("approval__levels")
            .order_by("activated_at", "pk")
        )
        inbox = []
        for level in levels:
            if level.approval.active_level != level:
                continue
            try:
                if self.resolver.is_authorized(user, level.approver_role, now, level.approval.request_id):
                    inbox.append(level)
            except DelegationConflict:
                logger.error("Skipping %s in inbox of %s: routing conflict", level, user.pk)
        return inbox

    def get(self, request_id: str) -> LeaveApproval:
        return self._load(request_id)

    # Internals -------------------------------------------------------------

    def _load(self, request_id: str) -> LeaveApproval:
        try:
            return (
                LeaveApproval.objects.select_related("requester")
                .prefetch_related("levels", "levels__acted_by")
                .get(request_id=request_id)
            )
        except LeaveApproval.DoesNotExist:
            raise ApprovalNotFound(f"No approval workflow exists for request {request_id}.") from None

    @staticmethod
    def _decided_message(level: ApprovalLevel) -> str:
        if level.acted_by_id and level.acted_at:
            return (
                f"Level {level.level_number} was already {level.status} by "
                f"{level.acted_by.get_username()} at {level.acted_at:%Y-%m-%d %H:%M}."
            )
        return f"Level {level.level_number} is no longer pending."

    def _route(self, approval: LeaveApproval, level: ApprovalLevel, now: datetime) -> Optional[ResolvedApprover]:
        """Resolve and record who should act on a freshly activated level."""
        resolved = self._resolve_for_notice(approval, level, now)
        if resolved is None:
            return None
        level.assigned_to = resolved.user
        if resolved.via_delegation:
            level.status = ApprovalLevel.Status.DELEGATED
        level.save(update_fields=["assigned_to", "status"])
        return resolved

    def _resolve_for_notice(
        self,
        approval: LeaveApproval,
        level: ApprovalLevel,
        now: datetime,
    ) -> Optional[ResolvedApprover]:
        try:
            resolved = self.resolver.resolve_approver(level.approver_role, now, approval.request_id)
        except DelegationConflict as exc:
            logger.error("Routing conflict for %s level %s: %s", approval.request_id, level.level_number, exc.messages)
            self.audit.record(
                "routing_conflict",
                request_id=approval.request_id,
                level_number=level.level_number,
                metadata={"role": level.approver_role, **self._jsonable(exc.context)},
                at=now,
            )
            return None
        if resolved is None:
            logger.warning("No approver configured for role %s (request %s)", level.approver_role, approval.request_id)
        return resolved

    def _notify(self, approval: LeaveApproval, content: Dict[str, Any], now: datetime) -> None:
        try:
            self.queue.enqueue(now=now, **content)
        except Exception as exc:
            # The decision is already committed; a queue outage must not undo it.
            logger.exception("Could not enqueue %s notification for %s", content.get("type"), approval.request_id)
            self.audit.record(
                "notification_enqueue_failed",
                request_id=approval.request_id,
                metadata={"type": content.get("type"), "error": repr(exc)},
                at=now,
            )

    @staticmethod
    def _jsonable(context: Dict[str, Any]) -> Dict[str, Any]:
        return {key: value for key, value in context.items() if isinstance(value, (str, int, list, type(None)))}
