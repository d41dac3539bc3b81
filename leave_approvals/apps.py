from django.apps import AppConfig


class LeaveApprovalsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "leave_approvals"
    verbose_name = "Leave approvals"

    def ready(self) -> None:
        # Registers the audit deletion guard.
        from . import signals  # noqa: F401
