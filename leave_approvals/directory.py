"""Identity and role lookups consulted by the workflow."""
from __future__ import annotations

from typing import List, Optional, Set

from django.contrib.auth import get_user_model
from django.utils.module_loading import import_string

from .conf import workflow_setting
from .models import ApproverRole

User = get_user_model()


class RoleDirectory:
    """Default identity provider backed by ``ApproverRole`` and the auth user."""

    def role_exists(self, role: str) -> bool:
        return ApproverRole.objects.filter(code=role).exists()

    def designated_approver(self, role: str) -> Optional[User]:
        approver_role = (
            ApproverRole.objects.select_related("designated_approver").filter(code=role).first()
        )
        if approver_role is None:
            return None
        return approver_role.designated_approver

    def oversight_members(self) -> List[User]:
        """Active members of every oversight role, each listed once."""
        return list(
            User.objects.filter(
                approver_roles__is_oversight=True,
                is_active=True,
            )
            .distinct()
            .order_by("pk")
        )

    def roles_for(self, user: User) -> Set[str]:
        codes = set(user.approver_roles.values_list("code", flat=True))
        codes.update(user.designated_roles.values_list("code", flat=True))
        return codes

    def is_active(self, user: Optional[User]) -> bool:
        return bool(user is not None and user.is_active)

    def is_oversight(self, user: User) -> bool:
        return self.is_active(user) and user.approver_roles.filter(is_oversight=True).exists()


def get_directory() -> RoleDirectory:
    return import_string(workflow_setting("DIRECTORY_CLASS"))()
