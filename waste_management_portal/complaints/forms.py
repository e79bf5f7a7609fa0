from pathlib import Path

from django import forms
from django.conf import settings
from django.core.exceptions import ValidationError

from . import exceptions
from .models import Complaint, User


def validate_evidence(file_obj):
    extension = Path(file_obj.name).suffix.lower()
    if extension not in settings.ALLOWED_EVIDENCE_EXTENSIONS:
        allowed = ", ".join(sorted(ext.lstrip(".").upper() for ext in settings.ALLOWED_EVIDENCE_EXTENSIONS))
        raise ValidationError(f"Only {allowed} images are allowed.")
    if file_obj.size > settings.EVIDENCE_MAX_BYTES:
        limit_mb = settings.EVIDENCE_MAX_BYTES // (1024 * 1024)
        raise ValidationError(f"Each image must be {limit_mb}MB or smaller.")


def read_evidence(file_obj):
    """Return ``(payload, extension)`` for an uploaded evidence image."""
    if not file_obj:
        return None, ""
    file_obj.seek(0)
    return file_obj.read(), Path(file_obj.name).suffix.lower()


def cleaned_or_raise(form):
    if form.is_valid():
        return form.cleaned_data
    raise exceptions.ValidationError(
        details={field: [str(error) for error in errors] for field, errors in form.errors.items()},
    )


class EvidenceField(forms.FileField):
    default_validators = [validate_evidence]


class RegistrationForm(forms.Form):
    email = forms.EmailField()
    password = forms.CharField(strip=False)
    name = forms.CharField(max_length=255)
    role = forms.ChoiceField(choices=User.Role.choices, required=False)
    phone = forms.CharField(max_length=32, required=False)

    def clean_email(self):
        return self.cleaned_data["email"].lower()

    def clean_role(self):
        return self.cleaned_data.get("role") or User.Role.CITIZEN


class LoginForm(forms.Form):
    email = forms.EmailField()
    password = forms.CharField(strip=False)


class ComplaintForm(forms.ModelForm):
    image = EvidenceField(required=False)

    class Meta:
        model = Complaint
        fields = ["title", "description", "latitude", "longitude", "address", "priority"]

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fields["priority"].required = False

    def clean_priority(self):
        return self.cleaned_data.get("priority") or Complaint.Priority.MEDIUM


class AssignWorkerForm(forms.Form):
    worker_id = forms.UUIDField()


class CompleteWorkForm(forms.Form):
    before_image = EvidenceField(required=False)
    after_image = EvidenceField(required=False)


class VerifyCompletionForm(forms.Form):
    approved = forms.NullBooleanField()
    feedback = forms.CharField(max_length=500, required=False)

    def clean_approved(self):
        approved = self.cleaned_data.get("approved")
        if approved is None:
            raise ValidationError("Specify whether the work is approved.")
        return approved


class FeedbackForm(forms.Form):
    feedback = forms.CharField(max_length=500, required=False)
    rating = forms.IntegerField(required=False)
