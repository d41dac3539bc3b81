"""Forms validating input to the approval JSON endpoints."""
from __future__ import annotations

from typing import Any

from django import forms
from django.contrib.auth import get_user_model

from .models import ApprovalLevel, ApproverRole

User = get_user_model()


class DecisionForm(forms.Form):
    """An approver's decision on one level, with an optional comment."""

    decision = forms.ChoiceField(
        choices=[
            (ApprovalLevel.Status.APPROVED, "Approve"),
            (ApprovalLevel.Status.REJECTED, "Reject"),
        ]
    )
    comments = forms.CharField(
        required=False,
        widget=forms.Textarea(attrs={"rows": 2, "placeholder": "Add a note for the employee"}),
        label="Comment",
    )

    def clean(self) -> dict[str, Any]:
        cleaned = super().clean()
        if cleaned.get("decision") == ApprovalLevel.Status.REJECTED and not cleaned.get("comments"):
            raise forms.ValidationError("Please provide a comment when rejecting a request.")
        return cleaned


class CancelForm(forms.Form):
    reason = forms.CharField(required=False, max_length=500)


class DelegationForm(forms.Form):
    """Hand an approver's authority to a substitute for a period of time."""

    delegate = forms.ModelChoiceField(
        queryset=User.objects.filter(is_active=True).order_by("username"),
        label="Substitute approver",
    )
    valid_from = forms.DateTimeField()
    valid_to = forms.DateTimeField()
    roles = forms.MultipleChoiceField(required=False, choices=())
    request_ids = forms.CharField(
        required=False,
        help_text="Comma-separated request ids; leave empty to cover every request.",
    )
    notes = forms.CharField(required=False, widget=forms.Textarea(attrs={"rows": 2}))

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.fields["roles"].choices = [(role.code, role.name) for role in ApproverRole.objects.all()]

    def clean_request_ids(self) -> list[str]:
        raw = self.cleaned_data.get("request_ids") or ""
        return [item.strip() for item in raw.split(",") if item.strip()]

    def clean(self) -> dict[str, Any]:
        cleaned = super().clean()
        start = cleaned.get("valid_from")
        end = cleaned.get("valid_to")
        if start and end and start >= end:
            raise forms.ValidationError("The delegation must end after it starts.")
        return cleaned
