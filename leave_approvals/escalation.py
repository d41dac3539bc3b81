"""Periodic escalation of approval levels that have waited too long."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from . import notifications
from .audit import AuditRecorder
from .conf import workflow_setting
from .delegation import DelegationResolver
from .directory import RoleDirectory, get_directory
from .exceptions import DelegationConflict
from .models import ApprovalLevel, ScheduledTask
from .notification_queue import NotificationQueue

logger = logging.getLogger(__name__)

TASK_NAME = "leave_approvals.escalation"


@dataclass
class EscalationReport:
    scanned: int = 0
    escalated: int = 0
    oversight_escalated: int = 0
    notifications: int = 0
    conflicts: int = 0


class EscalationScheduler:
    """Scans active levels and enqueues escalation notices.

    Escalation only notifies. A level's status is never touched; the
    ``escalated_at`` and ``oversight_escalated_at`` flags record that a tier
    has fired for the current activation so later runs stay quiet.
    """

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
        self.interval = timedelta(seconds=workflow_setting("ESCALATION_INTERVAL"))
        self.lease = timedelta(seconds=workflow_setting("SCHEDULER_LEASE"))
        self.approver_threshold = workflow_setting("ESCALATION_THRESHOLD_HOURS")
        self.oversight_threshold = workflow_setting("OVERSIGHT_THRESHOLD_HOURS")

    def run_once(self, now: Optional[datetime] = None, force: bool = False) -> Optional[EscalationReport]:
        """Run one scan unless another run holds the lease or the interval has not elapsed.

        Returns ``None`` when the run was skipped.
        """
        now = now or timezone.now()
        if not self._acquire(now, force):
            return None
        error = ""
        try:
            report = self.scan(now)
        except Exception as exc:
            error = repr(exc)
            logger.exception("Escalation run failed")
            raise
        finally:
            self._release(now, error)
        logger.info(
            "Escalation run: scanned=%d escalated=%d oversight=%d notifications=%d conflicts=%d",
            report.scanned,
            report.escalated,
            report.oversight_escalated,
            report.notifications,
            report.conflicts,
        )
        return report

    def scan(self, now: datetime) -> EscalationReport:
        report = EscalationReport()
        levels = (
            ApprovalLevel.objects.active()
            .select_related("approval", "approval__requester")
            .prefetch_related("approval__levels")
            .order_by("activated_at", "pk")
        )
        for level in levels:
            approval = level.approval
            if approval.active_level != level:
                continue
            report.scanned += 1
            hours = level.hours_pending(now)
            try:
                if hours >= self.approver_threshold and level.escalated_at is None:
                    self._escalate_to_approver(approval, level, now, report)
            except DelegationConflict as exc:
                report.conflicts += 1
                logger.error("Cannot escalate %s: %s", level, exc.messages)
                self.audit.record(
                    "routing_conflict",
                    request_id=approval.request_id,
                    level_number=level.level_number,
                    metadata={"role": level.approver_role, "during": "escalation"},
                    at=now,
                )
            # The oversight tier does not depend on resolving the approver.
            if hours >= self.oversight_threshold and level.oversight_escalated_at is None:
                self._escalate_to_oversight(approval, level, now, report)
        return report

    def _escalate_to_approver(self, approval, level, now, report) -> None:
        resolved = self.resolver.resolve_approver(level.approver_role, now, approval.request_id)
        if resolved is None:
            logger.warning("No approver to escalate %s to", level)
            return
        with transaction.atomic():
            claimed = ApprovalLevel.objects.filter(
                pk=level.pk,
                status__in=ApprovalLevel.OPEN_STATUSES,
                escalated_at__isnull=True,
            ).update(escalated_at=now)
            if not claimed:
                return
            self.queue.enqueue(
                now=now,
                **notifications.escalation_notice(approval, level, resolved.user, self.approver_threshold),
            )
            self.audit.record(
                "escalated",
                request_id=approval.request_id,
                level_number=level.level_number,
                previous_status=level.status,
                new_status=level.status,
                metadata={
                    "tier": "approver",
                    "recipient_user_id": resolved.user.pk,
                    "hours_pending": round(level.hours_pending(now), 2),
                },
                at=now,
            )
        report.escalated += 1
        report.notifications += 1
        logger.info("Escalated %s to %s", level, resolved.user.pk)

    def _escalate_to_oversight(self, approval, level, now, report) -> None:
        members = self.directory.oversight_members()
        if not members:
            logger.warning("No oversight members to escalate %s to", level)
        with transaction.atomic():
            claimed = ApprovalLevel.objects.filter(
                pk=level.pk,
                status__in=ApprovalLevel.OPEN_STATUSES,
                oversight_escalated_at__isnull=True,
            ).update(oversight_escalated_at=now)
            if not claimed:
                return
            for member in members:
                self.queue.enqueue(
                    now=now,
                    **notifications.oversight_notice(approval, level, member, self.oversight_threshold),
                )
            self.audit.record(
                "escalated_to_oversight",
                request_id=approval.request_id,
                level_number=level.level_number,
                previous_status=level.status,
                new_status=level.status,
                metadata={
                    "tier": "oversight",
                    "recipient_user_ids": [member.pk for member in members],
                    "hours_pending": round(level.hours_pending(now), 2),
                },
                at=now,
            )
        report.oversight_escalated += 1
        report.notifications += len(members)
        logger.info("Escalated %s to %d oversight member(s)", level, len(members))

    # Overlap guard ---------------------------------------------------------

    def _acquire(self, now: datetime, force: bool) -> bool:
        task, _ = ScheduledTask.objects.get_or_create(name=TASK_NAME)
        if task.running_since is not None:
            if now - task.running_since < self.lease:
                logger.info("Escalation run skipped: another run started at %s", task.running_since.isoformat())
                return False
            logger.error(
                "Abandoning escalation run started at %s; lease of %s expired",
                task.running_since.isoformat(),
                self.lease,
            )
            self.audit.record(
                "scheduler_run_abandoned",
                metadata={"task": TASK_NAME, "running_since": task.running_since.isoformat()},
                at=now,
            )
        elif not force and task.last_started_at and now - task.last_started_at < self.interval:
            logger.debug("Escalation run skipped: last run at %s", task.last_started_at.isoformat())
            return False

        claimed = ScheduledTask.objects.filter(pk=task.pk, running_since=task.running_since).update(
            running_since=now,
            last_started_at=now,
        )
        if not claimed:
            logger.info("Escalation run skipped: lost the race for the lease")
        return bool(claimed)

    def _release(self, started_at: datetime, error: str) -> None:
        released = ScheduledTask.objects.filter(name=TASK_NAME, running_since=started_at).update(
            running_since=None,
            last_finished_at=timezone.now(),
            last_error=error,
            run_count=F("run_count") + 1,
        )
        if not released:
            logger.warning("Escalation run started at %s finished after its lease was taken over", started_at.isoformat())
