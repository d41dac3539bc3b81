from __future__ import annotations

from ..delegation import DelegationResolver
from ..exceptions import DelegationConflict, InvalidConfiguration, Unauthorized
from ..models import ApproverRole, AuditEvent, Delegation
from .base import WorkflowTestCase


class DelegationResolverTests(WorkflowTestCase):
    def setUp(self):
        super().setUp()
        self.resolver = DelegationResolver()

    def _delegate(self, start=0, end=48, **kwargs):
        kwargs.setdefault("delegator", self.manager)
        kwargs.setdefault("delegate", self.deputy)
        return Delegation.objects.create(valid_from=self.at(start), valid_to=self.at(end), **kwargs)

    def test_designated_approver_without_delegation(self):
        resolved = self.resolver.resolve_approver("LINE_MANAGER", self.now)
        self.assertEqual(resolved.user, self.manager)
        self.assertFalse(resolved.via_delegation)

    def test_role_without_approver_resolves_to_none(self):
        ApproverRole.objects.filter(code="LINE_MANAGER").update(designated_approver=None)
        self.assertIsNone(self.resolver.resolve_approver("LINE_MANAGER", self.now))
        self.assertIsNone(self.resolver.resolve_approver("NO_SUCH_ROLE", self.now))

    def test_active_delegation_routes_to_delegate_inside_window_only(self):
        delegation = self._delegate(start=1, end=10)

        self.assertEqual(self.resolver.resolve_approver("LINE_MANAGER", self.at(0)).user, self.manager)
        resolved = self.resolver.resolve_approver("LINE_MANAGER", self.at(1))
        self.assertEqual(resolved.user, self.deputy)
        self.assertEqual(resolved.delegation, delegation)
        self.assertEqual(self.resolver.resolve_approver("LINE_MANAGER", self.at(10)).user, self.manager)

    def test_scoped_delegation_applies_to_its_roles_and_requests(self):
        self._delegate(roles=["HR_DIRECTOR"])
        self.assertEqual(self.resolver.resolve_approver("LINE_MANAGER", self.at(1)).user, self.manager)

        Delegation.objects.all().delete()
        self._delegate(request_ids=["REQ-7"])
        self.assertEqual(self.resolver.resolve_approver("LINE_MANAGER", self.at(1), "REQ-7").user, self.deputy)
        self.assertEqual(self.resolver.resolve_approver("LINE_MANAGER", self.at(1), "REQ-8").user, self.manager)

    def test_revoked_delegation_no_longer_applies(self):
        delegation = self._delegate()
        self.resolver.revoke(delegation, actor=self.manager, now=self.at(2))

        self.assertEqual(self.resolver.resolve_approver("LINE_MANAGER", self.at(1)).user, self.deputy)
        self.assertEqual(self.resolver.resolve_approver("LINE_MANAGER", self.at(3)).user, self.manager)
        self.assertTrue(AuditEvent.objects.filter(action="delegation_revoked").exists())

    def test_delegation_is_not_chained(self):
        self._delegate()
        self._delegate(delegator=self.deputy, delegate=self.hr)
        self.assertEqual(self.resolver.resolve_approver("LINE_MANAGER", self.at(1)).user, self.deputy)

    def test_overlapping_live_delegations_raise_conflict(self):
        self._delegate(start=0, end=48)
        self._delegate(start=24, end=72, delegate=self.hr)

        self.assertEqual(self.resolver.resolve_approver("LINE_MANAGER", self.at(1)).user, self.deputy)
        with self.assertLogs("leave_approvals.delegation", level="ERROR"):
            with self.assertRaises(DelegationConflict):
                self.resolver.resolve_approver("LINE_MANAGER", self.at(30))

    def test_is_authorized_checks_resolution_and_activity(self):
        self._delegate()
        self.assertTrue(self.resolver.is_authorized(self.deputy, "LINE_MANAGER", self.at(1)))
        self.assertFalse(self.resolver.is_authorized(self.manager, "LINE_MANAGER", self.at(1)))

        self.deputy.is_active = False
        self.deputy.save(update_fields=["is_active"])
        self.assertFalse(self.resolver.is_authorized(self.deputy, "LINE_MANAGER", self.at(1)))


class DelegationManagementTests(WorkflowTestCase):
    def setUp(self):
        super().setUp()
        self.resolver = DelegationResolver()

    def test_create_delegation_records_audit_event(self):
        delegation = self.resolver.create_delegation(
            self.manager,
            self.deputy,
            self.at(1),
            self.at(24),
            roles=["LINE_MANAGER"],
            notes="Annual leave",
            now=self.now,
        )
        self.assertEqual(delegation.roles, ["LINE_MANAGER"])
        event = AuditEvent.objects.get(action="delegation_created")
        self.assertEqual(event.actor_id, str(self.manager.pk))
        self.assertEqual(event.metadata["delegation_id"], delegation.pk)

    def test_invalid_windows_are_rejected(self):
        cases = [
            (self.manager, self.manager, self.at(1), self.at(2)),
            (self.manager, self.deputy, self.at(2), self.at(2)),
            (self.manager, self.deputy, self.at(5), self.at(2)),
            (self.manager, self.deputy, self.at(-5), self.at(-1)),
        ]
        for delegator, delegate, start, end in cases:
            with self.subTest(start=start, end=end):
                with self.assertRaises(InvalidConfiguration):
                    self.resolver.create_delegation(delegator, delegate, start, end, now=self.now)
        self.assertFalse(Delegation.objects.exists())

    def test_overlapping_delegation_is_rejected_at_creation(self):
        self.resolver.create_delegation(self.manager, self.deputy, self.at(0), self.at(24), now=self.now)
        with self.assertRaises(DelegationConflict):
            self.resolver.create_delegation(self.manager, self.hr, self.at(12), self.at(36), now=self.now)

        # Back-to-back windows do not overlap.
        self.resolver.create_delegation(self.manager, self.hr, self.at(24), self.at(36), now=self.now)
        self.assertEqual(Delegation.objects.filter(delegator=self.manager).count(), 2)

    def test_revoked_window_can_be_replaced(self):
        first = self.resolver.create_delegation(self.manager, self.deputy, self.at(1), self.at(24), now=self.now)
        self.resolver.revoke(first, actor=self.manager, now=self.now)
        self.resolver.create_delegation(self.manager, self.hr, self.at(1), self.at(24), now=self.now)
        self.assertEqual(self.resolver.resolve_approver("LINE_MANAGER", self.at(2)).user, self.hr)

    def test_only_delegator_or_oversight_may_revoke(self):
        delegation = self.resolver.create_delegation(self.manager, self.deputy, self.at(0), self.at(24), now=self.now)
        with self.assertRaises(Unauthorized):
            self.resolver.revoke(delegation, actor=self.deputy, now=self.at(1))

        revoked = self.resolver.revoke(delegation, actor=self.hr, now=self.at(1))
        self.assertEqual(revoked.revoked_at, self.at(1))
