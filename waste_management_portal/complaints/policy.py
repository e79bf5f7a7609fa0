"""Role-based access rules for complaint actions.

Rules are evaluated in order and the first match wins; anything not
explicitly allowed is denied. Nothing here is cached or stateful.
"""
import logging

from django.db import models

from .exceptions import Forbidden
from .models import User
from .store import ComplaintFilter

logger = logging.getLogger(__name__)

Role = User.Role


class Action(models.TextChoices):
    SUBMIT = "submit", "Submit complaint"
    ASSIGN = "assign", "Assign worker"
    START = "start", "Start work"
    COMPLETE = "complete", "Complete work"
    VERIFY = "verify", "Verify completion"
    FEEDBACK = "feedback", "Submit feedback"
    LIST = "list", "List complaints"
    GET = "get", "View complaint"
    VIEW_LOG = "view_log", "View activity log"
    LIST_WORKERS = "list_workers", "List workers"
    MANAGE_USERS = "manage_users", "Manage users"


READ_ACTIONS = {Action.LIST, Action.GET, Action.VIEW_LOG}
AGENT_ACTIONS = {Action.ASSIGN, Action.VERIFY, Action.LIST_WORKERS, Action.MANAGE_USERS}
WORKER_ACTIONS = {Action.START, Action.COMPLETE}


def _same(left, right) -> bool:
    return left is not None and right is not None and str(left) == str(right)


def authorize(role, subject_id, action, complaint=None) -> bool:
    if role == Role.AGENT:
        return action in AGENT_ACTIONS or action in READ_ACTIONS
    if role == Role.WORKER:
        if action in WORKER_ACTIONS or action in (Action.GET, Action.VIEW_LOG):
            return complaint is not None and _same(complaint.assigned_worker_id, subject_id)
        return action == Action.LIST
    if role == Role.CITIZEN:
        if action == Action.SUBMIT or action == Action.LIST:
            return True
        if action == Action.FEEDBACK or action in (Action.GET, Action.VIEW_LOG):
            return complaint is not None and _same(complaint.reporter_id, subject_id)
        return False
    raise ValueError(f"Unknown role: {role!r}")


def role_permits(role, action) -> bool:
    """Whether ``role`` may ever perform ``action``, ignoring ownership."""
    if role == Role.AGENT:
        return action in AGENT_ACTIONS or action in READ_ACTIONS
    if role == Role.WORKER:
        return action in WORKER_ACTIONS or action in READ_ACTIONS
    if role == Role.CITIZEN:
        return action == Action.SUBMIT or action == Action.FEEDBACK or action in READ_ACTIONS
    raise ValueError(f"Unknown role: {role!r}")


def require_role(subject, action) -> None:
    if not role_permits(subject.role, action):
        _deny(subject, action)


def require(subject, action, complaint=None) -> None:
    """Raise ``Forbidden`` unless ``subject`` may perform ``action``."""
    if not authorize(subject.role, subject.id, action, complaint):
        _deny(subject, action, complaint)


def _deny(subject, action, complaint=None):
    logger.warning(
        "Access denied",
        extra={
            "user_id": str(subject.id),
            "role": subject.role,
            "action": str(action),
            "complaint_id": str(complaint.pk) if complaint is not None else None,
        },
    )
    raise Forbidden()


def visibility_filter(role, subject_id) -> ComplaintFilter:
    """The slice of complaints a subject may list."""
    if role == Role.AGENT:
        return ComplaintFilter.all()
    if role == Role.WORKER:
        return ComplaintFilter.by_worker(subject_id)
    if role == Role.CITIZEN:
        return ComplaintFilter.by_reporter(subject_id)
    raise ValueError(f"Unknown role: {role!r}")
