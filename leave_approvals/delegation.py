"""Resolve who must act on a role, taking active delegations into account."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from django.contrib.auth import get_user_model
from django.db import transaction
from django.utils import timezone

from .audit import AuditRecorder
from .directory import RoleDirectory, get_directory
from .exceptions import DelegationConflict, InvalidConfiguration, Unauthorized
from .models import Delegation

logger = logging.getLogger(__name__)
User = get_user_model()


@dataclass(frozen=True)
class ResolvedApprover:
    user: User
    role: str
    delegation: Optional[Delegation] = None

    @property
    def via_delegation(self) -> bool:
        return self.delegation is not None


class DelegationResolver:
    """Maps a role to the user who must act on it at a given moment.

    Fails closed: overlapping live delegations for the same delegator raise
    ``DelegationConflict`` instead of picking one of them.
    """

    def __init__(self, directory: Optional[RoleDirectory] = None, audit: Optional[AuditRecorder] = None):
        self.directory = directory or get_directory()
        self.audit = audit or AuditRecorder()

    def active_delegation(
        self,
        delegator: User,
        at_time: datetime,
        role: str,
        request_id: Optional[str] = None,
    ) -> Optional[Delegation]:
        live = list(Delegation.objects.active_at(at_time).filter(delegator=delegator).select_related("delegate"))
        if len(live) > 1:
            logger.error(
                "Delegator %s has %d overlapping delegations at %s",
                delegator.pk,
                len(live),
                at_time.isoformat(),
            )
            raise DelegationConflict(
                f"{delegator.get_username()} has {len(live)} overlapping active delegations.",
                delegator_id=delegator.pk,
                delegation_ids=[delegation.pk for delegation in live],
            )
        if live and live[0].covers(role, request_id):
            return live[0]
        return None

    def resolve_approver(
        self,
        role: str,
        at_time: Optional[datetime] = None,
        request_id: Optional[str] = None,
    ) -> Optional[ResolvedApprover]:
        at_time = at_time or timezone.now()
        approver = self.directory.designated_approver(role)
        if approver is None:
            return None
        delegation = self.active_delegation(approver, at_time, role, request_id)
        if delegation is not None:
            return ResolvedApprover(user=delegation.delegate, role=role, delegation=delegation)
        return ResolvedApprover(user=approver, role=role)

    def is_authorized(
        self,
        user: User,
        role: str,
        at_time: Optional[datetime] = None,
        request_id: Optional[str] = None,
    ) -> bool:
        if not self.directory.is_active(user):
            return False
        resolved = self.resolve_approver(role, at_time, request_id)
        return resolved is not None and resolved.user.pk == user.pk

    @transaction.atomic
    def create_delegation(
        self,
        delegator: User,
        delegate: User,
        valid_from: datetime,
        valid_to: datetime,
        *,
        roles: Iterable[str] = (),
        request_ids: Iterable[str] = (),
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> Delegation:
        now = now or timezone.now()
        if delegator.pk == delegate.pk:
            raise InvalidConfiguration("Approvers cannot delegate to themselves.")
        if valid_from >= valid_to:
            raise InvalidConfiguration("Delegation start must be before its end.")
        if valid_to <= now:
            raise InvalidConfiguration("Delegation window has already ended.")

        # Lock the delegator's rows so two concurrent creations cannot both pass the overlap check.
        overlapping = list(
            Delegation.objects.select_for_update().overlapping(delegator, valid_from, valid_to)
        )
        if overlapping:
            raise DelegationConflict(
                "An active delegation already exists for this period.",
                delegation_ids=[delegation.pk for delegation in overlapping],
            )

        delegation = Delegation.objects.create(
            delegator=delegator,
            delegate=delegate,
            valid_from=valid_from,
            valid_to=valid_to,
            roles=sorted(set(roles)),
            request_ids=sorted(set(request_ids)),
            notes=notes,
        )
        self.audit.record(
            "delegation_created",
            actor=delegator,
            new_status="active",
            metadata={
                "delegation_id": delegation.pk,
                "delegate_id": delegate.pk,
                "valid_from": valid_from.isoformat(),
                "valid_to": valid_to.isoformat(),
                "roles": delegation.roles,
                "request_ids": delegation.request_ids,
            },
            at=now,
        )
        logger.info("Delegation %s created: %s -> %s", delegation.pk, delegator.pk, delegate.pk)
        return delegation

    @transaction.atomic
    def revoke(self, delegation: Delegation, *, actor: User, now: Optional[datetime] = None) -> Delegation:
        now = now or timezone.now()
        if actor.pk != delegation.delegator_id and not self.directory.is_oversight(actor):
            raise Unauthorized("Only the delegator or an oversight member can revoke a delegation.")
        updated = Delegation.objects.filter(pk=delegation.pk, revoked_at__isnull=True).update(revoked_at=now)
        delegation.refresh_from_db(fields=["revoked_at"])
        if updated:
            self.audit.record(
                "delegation_revoked",
                actor=actor,
                previous_status="active",
                new_status="revoked",
                metadata={"delegation_id": delegation.pk},
                at=now,
            )
        return delegation
