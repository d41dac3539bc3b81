"""Admin configuration for the approval workflow."""
from django.contrib import admin

from .models import (
    ApprovalLevel,
    ApproverRole,
    AuditEvent,
    Delegation,
    LeaveApproval,
    Notification,
    QueuedNotification,
    ScheduledTask,
)


class ReadOnlyAdminMixin:
    """Rows owned by the workflow core; visible here but never edited."""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


class ApprovalLevelInline(admin.TabularInline):
    model = ApprovalLevel
    extra = 0
    can_delete = False
    fields = (
        "level_number",
        "approver_role",
        "status",
        "assigned_to",
        "acted_by",
        "acted_at",
        "comments",
        "activated_at",
        "escalated_at",
        "oversight_escalated_at",
    )
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(ApproverRole)
class ApproverRoleAdmin(admin.ModelAdmin):
    list_display = ("code", "name", "designated_approver", "is_oversight")
    list_filter = ("is_oversight",)
    search_fields = ("code", "name", "designated_approver__username")
    autocomplete_fields = ("designated_approver",)
    filter_horizontal = ("members",)


@admin.register(LeaveApproval)
class LeaveApprovalAdmin(admin.ModelAdmin):
    list_display = ("request_id", "requester", "status", "created_at", "decided_at")
    list_filter = ("status",)
    search_fields = ("request_id", "requester__username")
    readonly_fields = ("request_id", "requester", "status", "created_at", "updated_at", "decided_at")
    ordering = ("-created_at",)
    inlines = [ApprovalLevelInline]

    def has_add_permission(self, request):
        return False


@admin.register(Delegation)
class DelegationAdmin(admin.ModelAdmin):
    list_display = ("delegator", "delegate", "valid_from", "valid_to", "revoked_at")
    list_filter = ("valid_from",)
    search_fields = ("delegator__username", "delegate__username")
    autocomplete_fields = ("delegator", "delegate")
    readonly_fields = ("created_at", "revoked_at")


@admin.register(QueuedNotification)
class QueuedNotificationAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "type",
        "recipient_user",
        "request_id",
        "priority",
        "status",
        "delivery_attempts",
        "created_at",
        "expires_at",
    )
    list_filter = ("status", "priority", "type")
    search_fields = ("request_id", "title", "recipient_user__username", "recipient_staff_id")
    ordering = ("-created_at",)


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ("user", "title", "type", "is_read", "created_at")
    list_filter = ("is_read", "type")
    search_fields = ("user__username", "title")


@admin.register(AuditEvent)
class AuditEventAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("timestamp", "action", "request_id", "level_number", "actor_id", "previous_status", "new_status")
    list_filter = ("action",)
    search_fields = ("request_id", "actor_id")
    ordering = ("-timestamp",)


@admin.register(ScheduledTask)
class ScheduledTaskAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("name", "running_since", "last_started_at", "last_finished_at", "run_count")
