import json
import logging
import mimetypes

from django.http import HttpResponse, JsonResponse
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt

from . import exceptions
from .audit import AuditLog
from .forms import (
    AssignWorkerForm,
    CompleteWorkForm,
    ComplaintForm,
    FeedbackForm,
    LoginForm,
    RegistrationForm,
    VerifyCompletionForm,
    cleaned_or_raise,
    read_evidence,
)
from .identity import IdentityProvider
from .models import Complaint, User
from .policy import Action, require, visibility_filter
from .serializers import serialize_complaint, serialize_log_entry, serialize_user
from .stats import dashboard_stats
from .workflow import WorkflowEngine

logger = logging.getLogger(__name__)

EVIDENCE_KINDS = ("original", "before", "after")


def bearer_token(request):
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def request_data(request):
    if request.content_type == "application/json":
        try:
            data = json.loads(request.body or b"{}")
        except json.JSONDecodeError as exc:
            raise exceptions.ValidationError("Request body is not valid JSON.") from exc
        if not isinstance(data, dict):
            raise exceptions.ValidationError("Request body must be a JSON object.")
        return data
    return request.POST


def error_response(exc):
    return JsonResponse({"error": exc.message, "details": exc.details}, status=exc.status_code)


@method_decorator(csrf_exempt, name="dispatch")
class ApiView(View):
    """Base view for the JSON API.

    Authenticates the bearer token and turns ``ComplaintError`` subclasses
    into JSON error responses with the matching status code.
    """

    authentication_required = True

    def dispatch(self, request, *args, **kwargs):
        self.identity = IdentityProvider()
        self.engine = WorkflowEngine.default()
        try:
            if self.authentication_required:
                self.subject = self.identity.verify(bearer_token(request))
            return super().dispatch(request, *args, **kwargs)
        except exceptions.ComplaintError as exc:
            if exc.status_code >= 500:
                logger.error("API request failed", extra={"path": request.path, "method": request.method})
            return error_response(exc)

    def get_complaint(self, complaint_id, action=Action.GET):
        complaint = self.engine.store.get(complaint_id)
        require(self.subject, action, complaint)
        return complaint


class RegisterView(ApiView):
    authentication_required = False

    def post(self, request):
        data = cleaned_or_raise(RegistrationForm(request_data(request)))
        user, token = self.identity.register(
            email=data["email"],
            password=data["password"],
            name=data["name"],
            role=data["role"],
            phone=data["phone"],
        )
        return JsonResponse({"token": token, "user": serialize_user(user)}, status=201)


class LoginView(ApiView):
    authentication_required = False

    def post(self, request):
        data = cleaned_or_raise(LoginForm(request_data(request)))
        user, token = self.identity.authenticate(data["email"], data["password"])
        return JsonResponse({"token": token, "user": serialize_user(user)})


class ComplaintListView(ApiView):
    def get(self, request):
        require(self.subject, Action.LIST)
        status = request.GET.get("status", "").strip()
        priority = request.GET.get("priority", "").strip()
        if status and status not in Complaint.Status.values:
            raise exceptions.ValidationError(details={"status": ["Select a valid status."]})
        if priority and priority not in Complaint.Priority.values:
            raise exceptions.ValidationError(details={"priority": ["Select a valid priority."]})

        complaints = self.engine.store.list(
            visibility_filter(self.subject.role, self.subject.id),
            status=status or None,
            priority=priority or None,
        )
        return JsonResponse({"complaints": [serialize_complaint(c) for c in complaints]})

    def post(self, request):
        data = cleaned_or_raise(ComplaintForm(request.POST, request.FILES))
        image, extension = read_evidence(data.get("image"))
        complaint = self.engine.submit(
            self.subject,
            title=data["title"],
            description=data["description"],
            latitude=data["latitude"],
            longitude=data["longitude"],
            address=data["address"],
            priority=data["priority"],
            image=image,
            image_extension=extension,
        )
        complaint = self.engine.store.get(complaint.pk)
        return JsonResponse({"complaint": serialize_complaint(complaint)}, status=201)


class ComplaintDetailView(ApiView):
    def get(self, request, complaint_id):
        complaint = self.get_complaint(complaint_id)
        return JsonResponse({"complaint": serialize_complaint(complaint)})


class ComplaintActionView(ApiView):
    """Runs one workflow transition and returns the updated complaint."""

    def perform(self, request, complaint_id):
        raise NotImplementedError

    def post(self, request, complaint_id):
        complaint = self.perform(request, complaint_id)
        complaint = self.engine.store.get(complaint.pk)
        return JsonResponse({"complaint": serialize_complaint(complaint)})


class AssignWorkerView(ComplaintActionView):
    def perform(self, request, complaint_id):
        data = cleaned_or_raise(AssignWorkerForm(request_data(request)))
        return self.engine.assign(self.subject, complaint_id, data["worker_id"])


class StartWorkView(ComplaintActionView):
    def perform(self, request, complaint_id):
        return self.engine.start(self.subject, complaint_id)


class CompleteWorkView(ComplaintActionView):
    def perform(self, request, complaint_id):
        data = cleaned_or_raise(CompleteWorkForm(request.POST, request.FILES))
        before = read_evidence(data.get("before_image")) if data.get("before_image") else None
        after = read_evidence(data.get("after_image")) if data.get("after_image") else None
        return self.engine.complete_with_evidence(self.subject, complaint_id, before, after)


class VerifyCompletionView(ComplaintActionView):
    def perform(self, request, complaint_id):
        data = cleaned_or_raise(VerifyCompletionForm(request_data(request)))
        return self.engine.verify(self.subject, complaint_id, data["approved"], data["feedback"])


class FeedbackView(ComplaintActionView):
    def perform(self, request, complaint_id):
        data = cleaned_or_raise(FeedbackForm(request_data(request)))
        return self.engine.feedback(self.subject, complaint_id, data["feedback"], data["rating"])


class ActivityLogView(ApiView):
    def get(self, request, complaint_id):
        complaint = self.get_complaint(complaint_id, Action.VIEW_LOG)
        entries = AuditLog().list_by_complaint(complaint.pk)
        return JsonResponse({"logs": [serialize_log_entry(entry) for entry in entries]})


class EvidenceDownloadView(ApiView):
    def get(self, request, complaint_id, kind):
        if kind not in EVIDENCE_KINDS:
            raise exceptions.NotFound("Evidence not found.")
        complaint = self.get_complaint(complaint_id)
        reference = complaint.evidence_ref(kind)
        payload = self.engine.blob_store.get(reference)
        content_type = mimetypes.guess_type(reference)[0] or "application/octet-stream"
        return HttpResponse(payload, content_type=content_type)


class WorkerListView(ApiView):
    def get(self, request):
        require(self.subject, Action.LIST_WORKERS)
        workers = User.objects.filter(role=User.Role.WORKER, is_active=True).order_by("full_name")
        return JsonResponse({"workers": [serialize_user(worker) for worker in workers]})


class UserListView(ApiView):
    def get(self, request):
        require(self.subject, Action.MANAGE_USERS)
        users = User.objects.order_by("full_name", "email")
        role = request.GET.get("role", "").strip()
        if role:
            if role not in User.Role.values:
                raise exceptions.ValidationError(details={"role": ["Select a valid role."]})
            users = users.filter(role=role)
        return JsonResponse({"users": [serialize_user(user) for user in users]})


class UserDetailView(ApiView):
    def get(self, request, user_id):
        require(self.subject, Action.MANAGE_USERS)
        user = User.objects.filter(pk=user_id).first()
        if user is None:
            raise exceptions.NotFound("User not found.")
        return JsonResponse({"user": serialize_user(user)})


class UserActivationView(ApiView):
    active = True

    def post(self, request, user_id):
        require(self.subject, Action.MANAGE_USERS)
        user = User.objects.filter(pk=user_id).first()
        if user is None:
            raise exceptions.NotFound("User not found.")
        if user.pk == self.subject.id and not self.active:
            raise exceptions.ValidationError("You cannot deactivate your own account.")
        user.is_active = self.active
        user.save(update_fields=["is_active"])
        logger.info(
            "User activation changed",
            extra={"user_id": str(user.pk), "is_active": user.is_active, "changed_by": str(self.subject.id)},
        )
        return JsonResponse({"user": serialize_user(user)})


class DashboardStatsView(ApiView):
    def get(self, request):
        return JsonResponse({"stats": dashboard_stats(self.subject).as_dict()})
