"""Complaint lifecycle engine.

Status graph::

    pending -> assigned -> in_progress -> completed -> verified
                  ^                           |
                  +-------- rejected ---------+

Every operation runs its checks in the same order: input validation,
complaint lookup, the actor's role, the status precondition, then
ownership of the complaint (reporter or assigned worker). ``assign``
checks the role before it resolves the target worker. The
complaint row is locked for the whole check-and-write sequence and the
activity log entry is written in the same transaction as the complaint,
so a failed operation leaves both untouched.
"""
import logging
from decimal import Decimal, InvalidOperation

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.utils import timezone

from . import exceptions
from .audit import AuditLog
from .blobs import DjangoStorageBlobStore
from .models import ActivityLog, Complaint, User
from .policy import Action, require, require_role
from .store import ComplaintStore

logger = logging.getLogger(__name__)

Status = Complaint.Status

# Statuses each transition may start from.
ALLOWED_SOURCES = {
    Action.ASSIGN: {Status.PENDING, Status.ASSIGNED},
    Action.START: {Status.ASSIGNED},
    Action.COMPLETE: {Status.IN_PROGRESS},
    Action.VERIFY: {Status.COMPLETED},
    Action.FEEDBACK: {Status.VERIFIED},
}

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 1000
MAX_FEEDBACK_LENGTH = 500
MIN_RATING = 1
MAX_RATING = 5


def _require_status(complaint, action):
    allowed = ALLOWED_SOURCES[action]
    if complaint.status not in allowed:
        logger.warning(
            "Rejected status transition",
            extra={"complaint_id": str(complaint.pk), "status": complaint.status, "action": str(action)},
        )
        raise exceptions.InvalidTransition(
            f"Cannot {action.value} a complaint whose status is {complaint.status}."
        )


def _coordinate(value, field, bound, errors):
    try:
        number = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        errors[field] = ["Enter a number."]
        return None
    if not number.is_finite() or not -bound <= number <= bound:
        errors[field] = [f"Must be between -{bound} and {bound}."]
        return None
    return number


class WorkflowEngine:
    def __init__(self, store, audit_log, blob_store):
        self.store = store
        self.audit_log = audit_log
        self.blob_store = blob_store

    @classmethod
    def default(cls):
        return cls(ComplaintStore(), AuditLog(), DjangoStorageBlobStore())

    def _transition(self, subject, complaint_id, action, apply):
        """Lock, check and mutate one complaint, then record the activity entry.

        ``apply`` gets the locked complaint after the access check and returns
        ``(changed_fields, log_action, log_details)``.
        """
        entry = {}

        def mutator(complaint):
            require_role(subject, action)
            _require_status(complaint, action)
            require(subject, action, complaint)
            changed_fields, entry["action"], entry["details"] = apply(complaint)
            return changed_fields

        with transaction.atomic():
            complaint = self.store.update(complaint_id, mutator)
            self.audit_log.append(complaint, subject.id, entry["action"], entry["details"])

        logger.info(
            "Complaint transition committed",
            extra={
                "complaint_id": str(complaint.pk),
                "user_id": str(subject.id),
                "action": entry["action"],
                "status": complaint.status,
            },
        )
        return complaint

    def submit(self, subject, title, description, latitude, longitude, address,
               priority=Complaint.Priority.MEDIUM, image=None, image_extension=""):
        errors = {}
        title = (title or "").strip()
        description = (description or "").strip()
        address = (address or "").strip()
        if not title:
            errors["title"] = ["This field is required."]
        elif len(title) > MAX_TITLE_LENGTH:
            errors["title"] = [f"Must not exceed {MAX_TITLE_LENGTH} characters."]
        if not description:
            errors["description"] = ["This field is required."]
        elif len(description) > MAX_DESCRIPTION_LENGTH:
            errors["description"] = [f"Must not exceed {MAX_DESCRIPTION_LENGTH} characters."]
        if not address:
            errors["address"] = ["This field is required."]
        latitude = _coordinate(latitude, "latitude", 90, errors)
        longitude = _coordinate(longitude, "longitude", 180, errors)
        priority = priority or Complaint.Priority.MEDIUM
        if priority not in Complaint.Priority.values:
            errors["priority"] = ["Select a valid priority."]
        if errors:
            raise exceptions.ValidationError(details=errors)

        require(subject, Action.SUBMIT)

        image_ref = self.blob_store.put(image, image_extension) if image else ""

        with transaction.atomic():
            complaint = self.store.create(
                reporter_id=subject.id,
                title=title,
                description=description,
                latitude=latitude,
                longitude=longitude,
                address=address,
                priority=priority,
                original_evidence_ref=image_ref,
            )
            self.audit_log.append(
                complaint,
                subject.id,
                ActivityLog.Action.CREATED,
                "Complaint submitted by citizen",
            )

        logger.info(
            "Complaint submitted",
            extra={"complaint_id": str(complaint.pk), "user_id": str(subject.id)},
        )
        return complaint

    def assign(self, subject, complaint_id, worker_id):
        # Worker ids are only resolved for agents.
        require_role(subject, Action.ASSIGN)
        try:
            worker = User.objects.filter(pk=worker_id).first() if worker_id else None
        except DjangoValidationError:
            worker = None
        if worker is None:
            raise exceptions.NotFound("Worker not found.")
        if worker.role != User.Role.WORKER:
            raise exceptions.ValidationError(details={"worker_id": ["Assigned user must be a worker."]})
        if not worker.is_active:
            raise exceptions.ValidationError(details={"worker_id": ["Assigned worker is not active."]})

        def apply(complaint):
            complaint.status = Status.ASSIGNED
            complaint.assigned_worker = worker
            complaint.assigned_at = timezone.now()
            return (
                ["status", "assigned_worker", "assigned_at"],
                ActivityLog.Action.ASSIGNED,
                f"Complaint assigned to worker: {worker.full_name}",
            )

        return self._transition(subject, complaint_id, Action.ASSIGN, apply)

    def start(self, subject, complaint_id):
        def apply(complaint):
            complaint.status = Status.IN_PROGRESS
            return ["status"], ActivityLog.Action.STARTED, "Work started on complaint"

        return self._transition(subject, complaint_id, Action.START, apply)

    def complete_with_evidence(self, subject, complaint_id, before_image, after_image):
        """Store both evidence images, then record the completion.

        Images are ``(payload, extension)`` pairs. Nothing is stored unless
        both are present, and the transition is only attempted once both
        blobs have been stored.
        """
        before_payload = before_image[0] if before_image else None
        after_payload = after_image[0] if after_image else None
        self._check_evidence(before_payload, after_payload)
        before_ref = self.blob_store.put(*before_image)
        after_ref = self.blob_store.put(*after_image)
        return self.complete(subject, complaint_id, before_ref, after_ref)

    def _check_evidence(self, before, after):
        errors = {}
        if not before:
            errors["before_image"] = ["A before photo is required."]
        if not after:
            errors["after_image"] = ["An after photo is required."]
        if errors:
            raise exceptions.ValidationError(details=errors)

    def complete(self, subject, complaint_id, before_evidence_ref, after_evidence_ref):
        """Record finished work; both evidence references are mandatory."""
        self._check_evidence(before_evidence_ref, after_evidence_ref)

        def apply(complaint):
            complaint.status = Status.COMPLETED
            complaint.completed_at = timezone.now()
            complaint.before_evidence_ref = before_evidence_ref
            complaint.after_evidence_ref = after_evidence_ref
            return (
                ["status", "completed_at", "before_evidence_ref", "after_evidence_ref"],
                ActivityLog.Action.COMPLETED,
                "Work completed with before/after photos",
            )

        return self._transition(subject, complaint_id, Action.COMPLETE, apply)

    def verify(self, subject, complaint_id, approved, feedback=""):
        """Approve completed work, or send it back to the same worker."""
        feedback = (feedback or "").strip()

        def apply(complaint):
            if approved:
                complaint.status = Status.VERIFIED
                complaint.verified_at = timezone.now()
                log_action = ActivityLog.Action.VERIFIED
                changed = ["status", "verified_at"]
            else:
                complaint.status = Status.ASSIGNED
                log_action = ActivityLog.Action.REJECTED
                changed = ["status"]
            details = feedback or f"Complaint {log_action.value} by agent"
            return changed, log_action, details

        return self._transition(subject, complaint_id, Action.VERIFY, apply)

    def feedback(self, subject, complaint_id, feedback, rating):
        feedback = (feedback or "").strip()
        errors = {}
        if isinstance(rating, bool) or not isinstance(rating, int):
            errors["rating"] = ["A whole-number rating is required."]
        elif not MIN_RATING <= rating <= MAX_RATING:
            errors["rating"] = [f"Rating must be between {MIN_RATING} and {MAX_RATING}."]
        if len(feedback) > MAX_FEEDBACK_LENGTH:
            errors["feedback"] = [f"Must not exceed {MAX_FEEDBACK_LENGTH} characters."]
        if errors:
            raise exceptions.ValidationError(details=errors)

        def apply(complaint):
            if complaint.has_feedback:
                raise exceptions.InvalidTransition("Feedback has already been submitted for this complaint.")
            complaint.citizen_feedback = feedback
            complaint.citizen_rating = rating
            return (
                ["citizen_feedback", "citizen_rating"],
                ActivityLog.Action.FEEDBACK,
                f"Citizen provided feedback and rating: {rating}/5",
            )

        return self._transition(subject, complaint_id, Action.FEEDBACK, apply)
