"""URL routing for the approval workflow endpoints."""
from django.urls import path

from . import views

app_name = "leave_approvals"

urlpatterns = [
    path("inbox/", views.approver_inbox, name="inbox"),
    path("requests/<str:request_id>/", views.approval_detail, name="detail"),
    path("requests/<str:request_id>/history/", views.approval_history, name="history"),
    path(
        "requests/<str:request_id>/levels/<int:level_number>/decision/",
        views.act_on_level,
        name="act",
    ),
    path("requests/<str:request_id>/cancel/", views.cancel_request, name="cancel"),
    path("requests/<str:request_id>/remind/", views.send_reminder, name="remind"),
    path("delegations/", views.create_delegation, name="create_delegation"),
]
