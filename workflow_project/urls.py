"""URL configuration for workflow_project."""
from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("admin/", admin.site.urls),
    path("approvals/", include("leave_approvals.urls")),
]
