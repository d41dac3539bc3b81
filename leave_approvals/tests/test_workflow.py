from __future__ import annotations

from unittest import mock

from ..exceptions import (
    AlreadyDecided,
    ApprovalNotFound,
    DelegationConflict,
    InvalidConfiguration,
    InvalidDecision,
    OutOfOrderApproval,
    Unauthorized,
)
from ..models import ApprovalLevel, AuditEvent, Delegation, LeaveApproval, QueuedNotification
from .base import THREE_LEVELS, TWO_LEVELS, WorkflowTestCase

APPROVED = ApprovalLevel.Status.APPROVED
REJECTED = ApprovalLevel.Status.REJECTED


class SubmitTests(WorkflowTestCase):
    def test_submit_creates_pending_levels_and_notifies_first_approver(self):
        approval = self.submit("REQ-1", THREE_LEVELS)

        self.assertEqual(approval.status, LeaveApproval.Status.PENDING)
        levels = list(approval.levels.all())
        self.assertEqual([level.level_number for level in levels], [1, 2, 3])
        self.assertTrue(all(level.status == ApprovalLevel.Status.PENDING for level in levels))
        self.assertEqual(levels[0].activated_at, self.now)
        self.assertEqual(levels[0].assigned_to, self.manager)
        self.assertIsNone(levels[1].activated_at)
        self.assertEqual(approval.active_level, levels[0])

        entry = QueuedNotification.objects.get()
        self.assertEqual(entry.type, "approval_required")
        self.assertEqual(entry.recipient_user, self.manager)
        self.assertEqual(entry.priority, QueuedNotification.Priority.HIGH)
        self.assertEqual(entry.request_id, "REQ-1")
        self.assertEqual(AuditEvent.objects.for_request("REQ-1").get().action, "submitted")

    def test_submit_without_levels_uses_default_chain(self):
        approval = self.machine.submit("REQ-DEFAULT", self.employee, now=self.now)
        self.assertEqual(
            list(approval.levels.values_list("level_number", "approver_role")),
            [(1, "LINE_MANAGER"), (2, "HR_OFFICER")],
        )

    def test_malformed_level_sequences_are_rejected_without_side_effects(self):
        bad_sequences = [
            [],
            [(1, "LINE_MANAGER"), (3, "HR_OFFICER")],
            [(2, "HR_OFFICER"), (1, "LINE_MANAGER")],
            [(0, "LINE_MANAGER")],
            [(1, "LINE_MANAGER"), (1, "HR_OFFICER")],
            [(1, "NOT_A_ROLE")],
            [(1, "LINE_MANAGER", "extra")],
            [1, 2],
            [(1,)],
            [None],
        ]
        for levels in bad_sequences:
            with self.subTest(levels=levels):
                with self.assertRaises(InvalidConfiguration):
                    self.machine.submit("REQ-BAD", self.employee, levels, now=self.now)
        self.assertFalse(LeaveApproval.objects.exists())
        self.assertFalse(ApprovalLevel.objects.exists())
        self.assertFalse(QueuedNotification.objects.exists())

    def test_duplicate_request_id_is_rejected(self):
        self.submit("REQ-1")
        with self.assertRaises(InvalidConfiguration):
            self.submit("REQ-1")
        self.assertEqual(LeaveApproval.objects.count(), 1)


class ActTests(WorkflowTestCase):
    def test_two_level_approval_end_to_end(self):
        self.submit("REQ-A", TWO_LEVELS)

        approval = self.machine.act("REQ-A", 1, self.manager, APPROVED, "Fine by me", now=self.at(1))
        self.assertEqual(approval.status, LeaveApproval.Status.PENDING)
        second = self.level("REQ-A", 2)
        self.assertEqual(second.activated_at, self.at(1))
        self.assertEqual(approval.active_level.level_number, 2)

        approval = self.machine.act("REQ-A", 2, self.hr, APPROVED, now=self.at(2))
        self.assertEqual(approval.status, LeaveApproval.Status.APPROVED)
        self.assertEqual(approval.decided_at, self.at(2))

        entries = list(QueuedNotification.objects.order_by("created_at", "id"))
        self.assertEqual(
            [(entry.type, entry.recipient_user) for entry in entries],
            [
                ("approval_required", self.manager),
                ("approval_required", self.hr),
                ("leave_approved", self.employee),
            ],
        )
        self.assertEqual(
            list(AuditEvent.objects.for_request("REQ-A").values_list("action", flat=True)),
            ["submitted", "approved", "approved"],
        )
        first = self.level("REQ-A", 1)
        self.assertEqual(first.acted_by, self.manager)
        self.assertEqual(first.comments, "Fine by me")
        self.assertLevelOrdering("REQ-A")

    def test_rejection_is_terminal(self):
        self.submit("REQ-B", THREE_LEVELS)

        approval = self.machine.act("REQ-B", 1, self.manager, REJECTED, "No cover that week", now=self.at(1))
        self.assertEqual(approval.status, LeaveApproval.Status.REJECTED)

        with self.assertRaises(AlreadyDecided):
            self.machine.act("REQ-B", 2, self.hr, APPROVED, now=self.at(2))
        with self.assertRaises(AlreadyDecided):
            self.machine.act("REQ-B", 1, self.manager, APPROVED, now=self.at(2))

        self.assertEqual(self.level("REQ-B", 2).status, ApprovalLevel.Status.PENDING)
        self.assertEqual(self.level("REQ-B", 3).status, ApprovalLevel.Status.PENDING)
        rejected_notice = QueuedNotification.objects.get(type="leave_rejected")
        self.assertEqual(rejected_notice.recipient_user, self.employee)
        self.assertIn("No cover that week", rejected_notice.message)
        self.assertEqual(AuditEvent.objects.filter(request_id="REQ-B", action="act_rejected").count(), 2)
        self.assertLevelOrdering("REQ-B")

    def test_already_decided_message_names_the_decider(self):
        self.submit("REQ-1")
        self.machine.act("REQ-1", 1, self.manager, APPROVED, now=self.at(1))
        with self.assertRaises(AlreadyDecided) as ctx:
            self.machine.act("REQ-1", 1, self.manager, APPROVED, now=self.at(2))
        self.assertIn("manager", ctx.exception.messages[0])

    def test_racing_commits_on_same_level_only_one_wins(self):
        self.submit("REQ-C", TWO_LEVELS)
        first = self.machine.prepare_action("REQ-C", 1, self.manager, APPROVED, now=self.at(1))
        second = self.machine.prepare_action("REQ-C", 1, self.manager, REJECTED, "late", now=self.at(1))

        self.machine.commit(first)
        with self.assertRaises(AlreadyDecided):
            self.machine.commit(second)

        approval = LeaveApproval.objects.get(request_id="REQ-C")
        self.assertEqual(approval.status, LeaveApproval.Status.PENDING)
        self.assertEqual(self.level("REQ-C", 1).status, APPROVED)
        self.assertEqual(self.level("REQ-C", 1).comments, "")
        self.assertEqual(AuditEvent.objects.filter(request_id="REQ-C", action="approved").count(), 1)
        self.assertFalse(AuditEvent.objects.filter(request_id="REQ-C", action="rejected").exists())

    def test_out_of_order_act_is_refused(self):
        self.submit("REQ-1")
        with self.assertRaises(OutOfOrderApproval):
            self.machine.act("REQ-1", 2, self.hr, APPROVED, now=self.at(1))
        self.assertEqual(self.level("REQ-1", 2).status, ApprovalLevel.Status.PENDING)

    def test_only_resolved_approver_may_act(self):
        self.submit("REQ-1")
        with self.assertRaises(Unauthorized):
            self.machine.act("REQ-1", 1, self.hr, APPROVED, now=self.at(1))
        with self.assertRaises(Unauthorized):
            self.machine.act("REQ-1", 1, self.employee, APPROVED, now=self.at(1))

    def test_inactive_approver_is_unauthorized(self):
        self.submit("REQ-1")
        self.manager.is_active = False
        self.manager.save(update_fields=["is_active"])
        with self.assertRaises(Unauthorized):
            self.machine.act("REQ-1", 1, self.manager, APPROVED, now=self.at(1))

    def test_unknown_decision_and_missing_targets(self):
        self.submit("REQ-1")
        with self.assertRaises(InvalidDecision):
            self.machine.act("REQ-1", 1, self.manager, "maybe", now=self.at(1))
        with self.assertRaises(ApprovalNotFound):
            self.machine.act("REQ-404", 1, self.manager, APPROVED, now=self.at(1))
        with self.assertRaises(ApprovalNotFound):
            self.machine.act("REQ-1", 7, self.manager, APPROVED, now=self.at(1))

    def test_failed_act_is_audited_with_error_code(self):
        self.submit("REQ-1")
        with self.assertRaises(Unauthorized):
            self.machine.act("REQ-1", 1, self.hr, APPROVED, now=self.at(1))
        event = AuditEvent.objects.get(action="act_rejected")
        self.assertEqual(event.actor_id, str(self.hr.pk))
        self.assertEqual(event.level_number, 1)
        self.assertEqual(event.metadata["error"], "unauthorized")

    def test_enqueue_failure_does_not_undo_decision(self):
        self.submit("REQ-1")
        with mock.patch.object(self.machine.queue, "enqueue", side_effect=RuntimeError("queue down")):
            with self.assertLogs("leave_approvals.workflow", level="ERROR"):
                approval = self.machine.act("REQ-1", 1, self.manager, APPROVED, now=self.at(1))
        self.assertEqual(self.level("REQ-1", 1).status, APPROVED)
        self.assertEqual(approval.active_level.level_number, 2)
        self.assertTrue(AuditEvent.objects.filter(action="notification_enqueue_failed").exists())


class DelegatedRoutingTests(WorkflowTestCase):
    def setUp(self):
        super().setUp()
        Delegation.objects.create(
            delegator=self.manager,
            delegate=self.deputy,
            valid_from=self.at(-1),
            valid_to=self.at(24 * 5),
        )

    def test_level_is_routed_to_delegate(self):
        self.submit("REQ-1")
        first = self.level("REQ-1", 1)
        self.assertEqual(first.status, ApprovalLevel.Status.DELEGATED)
        self.assertEqual(first.assigned_to, self.deputy)
        self.assertEqual(QueuedNotification.objects.get().recipient_user, self.deputy)

        with self.assertRaises(Unauthorized):
            self.machine.act("REQ-1", 1, self.manager, APPROVED, now=self.at(1))
        approval = self.machine.act("REQ-1", 1, self.deputy, APPROVED, now=self.at(1))
        self.assertEqual(approval.active_level.level_number, 2)
        self.assertEqual(self.level("REQ-1", 1).acted_by, self.deputy)

    def test_inbox_follows_delegation(self):
        self.submit("REQ-1")
        self.assertEqual([level.approval.request_id for level in self.machine.awaiting(self.deputy, now=self.at(1))], ["REQ-1"])
        self.assertEqual(self.machine.awaiting(self.manager, now=self.at(1)), [])

    def test_overlapping_delegations_fail_closed(self):
        Delegation.objects.create(
            delegator=self.manager,
            delegate=self.hr,
            valid_from=self.at(-1),
            valid_to=self.at(24),
        )
        with self.assertLogs("leave_approvals", level="ERROR"):
            approval = self.submit("REQ-1")
        self.assertEqual(approval.status, LeaveApproval.Status.PENDING)
        self.assertFalse(QueuedNotification.objects.exists())
        self.assertTrue(AuditEvent.objects.filter(request_id="REQ-1", action="routing_conflict").exists())

        with self.assertRaises(DelegationConflict):
            self.machine.act("REQ-1", 1, self.deputy, APPROVED, now=self.at(1))
        self.assertEqual(self.level("REQ-1", 1).status, ApprovalLevel.Status.PENDING)


class CancelTests(WorkflowTestCase):
    def test_requester_cancels_pending_request(self):
        self.submit("REQ-1")
        approval = self.machine.cancel("REQ-1", self.employee, reason="Plans changed", now=self.at(1))

        self.assertEqual(approval.status, LeaveApproval.Status.CANCELLED)
        self.assertEqual(approval.decided_at, self.at(1))
        notice = QueuedNotification.objects.get(type="leave_cancelled")
        self.assertEqual(notice.recipient_user, self.manager)
        event = AuditEvent.objects.get(request_id="REQ-1", action="cancelled")
        self.assertEqual(event.previous_status, "pending")
        self.assertEqual(event.new_status, "cancelled")

        with self.assertRaises(AlreadyDecided):
            self.machine.act("REQ-1", 1, self.manager, APPROVED, now=self.at(2))
        with self.assertRaises(AlreadyDecided):
            self.machine.cancel("REQ-1", self.employee, now=self.at(2))

    def test_only_requester_can_cancel(self):
        self.submit("REQ-1")
        with self.assertRaises(Unauthorized):
            self.machine.cancel("REQ-1", self.manager, now=self.at(1))
        self.assertEqual(LeaveApproval.objects.get().status, LeaveApproval.Status.PENDING)
        self.assertTrue(AuditEvent.objects.filter(action="cancel_rejected").exists())

    def test_inactive_requester_cannot_cancel(self):
        self.submit("REQ-1")
        self.employee.is_active = False
        self.employee.save(update_fields=["is_active"])
        with self.assertRaises(Unauthorized):
            self.machine.cancel("REQ-1", self.employee, now=self.at(1))
        self.assertEqual(LeaveApproval.objects.get().status, LeaveApproval.Status.PENDING)
        self.assertFalse(QueuedNotification.objects.filter(type="leave_cancelled").exists())

    def test_decided_request_cannot_be_cancelled(self):
        self.submit("REQ-1")
        self.machine.act("REQ-1", 1, self.manager, REJECTED, "No", now=self.at(1))
        with self.assertRaises(AlreadyDecided):
            self.machine.cancel("REQ-1", self.employee, now=self.at(2))
        self.assertEqual(LeaveApproval.objects.get().status, LeaveApproval.Status.REJECTED)


class ReminderAndInboxTests(WorkflowTestCase):
    def test_repeated_reminders_collapse_into_one_pending_entry(self):
        self.submit("REQ-1")
        self.assertTrue(self.machine.remind("REQ-1", self.employee, now=self.at(1)))
        self.assertTrue(self.machine.remind("REQ-1", self.employee, now=self.at(2)))

        reminders = QueuedNotification.objects.filter(type="leave_reminder")
        self.assertEqual(reminders.count(), 1)
        self.assertEqual(reminders.get().recipient_user, self.manager)
        self.assertEqual(AuditEvent.objects.filter(action="reminder_sent").count(), 2)

    def test_oversight_member_may_remind_but_others_may_not(self):
        self.submit("REQ-1")
        self.assertTrue(self.machine.remind("REQ-1", self.hr, now=self.at(1)))
        with self.assertRaises(Unauthorized):
            self.machine.remind("REQ-1", self.deputy, now=self.at(1))

    def test_awaiting_lists_only_active_levels_for_user(self):
        self.submit("REQ-1", hours=0)
        self.submit("REQ-2", hours=1)

        inbox = self.machine.awaiting(self.manager, now=self.at(2))
        self.assertEqual([level.approval.request_id for level in inbox], ["REQ-1", "REQ-2"])
        self.assertEqual(self.machine.awaiting(self.hr, now=self.at(2)), [])

        self.machine.act("REQ-1", 1, self.manager, APPROVED, now=self.at(3))
        self.assertEqual([level.approval.request_id for level in self.machine.awaiting(self.hr, now=self.at(3))], ["REQ-1"])
        self.assertEqual(len(self.machine.awaiting(self.manager, now=self.at(3))), 1)

    def test_ordering_holds_across_mixed_sequences(self):
        self.submit("REQ-1", THREE_LEVELS)
        attempts = [
            (3, self.director),
            (2, self.hr),
            (1, self.manager),
            (3, self.director),
            (2, self.hr),
            (3, self.director),
        ]
        for hours, (number, actor) in enumerate(attempts, start=1):
            try:
                self.machine.act("REQ-1", number, actor, APPROVED, now=self.at(hours))
            except OutOfOrderApproval:
                pass
            self.assertLevelOrdering("REQ-1")
        self.assertEqual(LeaveApproval.objects.get().status, LeaveApproval.Status.APPROVED)
