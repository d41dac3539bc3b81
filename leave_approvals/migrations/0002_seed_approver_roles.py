# Generated manually to seed the default approver roles.
from __future__ import annotations

from django.db import migrations

DEFAULT_ROLES = [
    ("LINE_MANAGER", "Line Manager", False),
    ("HR_OFFICER", "HR Officer", True),
    ("HR_DIRECTOR", "HR Director", True),
]


def seed_roles(apps, schema_editor):
    ApproverRole = apps.get_model("leave_approvals", "ApproverRole")
    for code, name, oversight in DEFAULT_ROLES:
        ApproverRole.objects.get_or_create(
            code=code,
            defaults={"name": name, "is_oversight": oversight},
        )


def remove_roles(apps, schema_editor):
    ApproverRole = apps.get_model("leave_approvals", "ApproverRole")
    ApproverRole.objects.filter(code__in=[code for code, *_ in DEFAULT_ROLES]).delete()


class Migration(migrations.Migration):

    dependencies = [
        ("leave_approvals", "0001_initial"),
    ]

    operations = [
        migrations.RunPython(seed_roles, remove_roles),
    ]
