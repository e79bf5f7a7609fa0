"""Role-scoped dashboard counters.

Counts are recomputed from the complaints table on every call so they can
never drift from the stored statuses.
"""
from dataclasses import asdict, dataclass, field

from django.db.models import Count, Q

from .models import Complaint, User

Status = Complaint.Status

OPEN_STATUSES = (Status.PENDING, Status.ASSIGNED, Status.IN_PROGRESS)
WORKING_STATUSES = (Status.ASSIGNED, Status.IN_PROGRESS)
DONE_STATUSES = (Status.COMPLETED, Status.VERIFIED)


@dataclass(frozen=True)
class AgentStats:
    total_complaints: int
    pending_complaints: int
    assigned_complaints: int
    in_progress_complaints: int
    completed_complaints: int
    verified_complaints: int
    status_breakdown: dict = field(default_factory=dict)
    priority_breakdown: dict = field(default_factory=dict)

    def as_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class WorkerStats:
    assigned_tasks: int
    completed_tasks: int
    pending_tasks: int

    def as_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class CitizenStats:
    my_complaints: int
    resolved_complaints: int
    pending_complaints: int

    def as_dict(self):
        return asdict(self)


def _breakdown(queryset, field_name, choices):
    counts = {value: 0 for value in choices.values}
    for row in queryset.values(field_name).annotate(count=Count("id")).order_by():
        counts[row[field_name]] = row["count"]
    return counts


def agent_stats():
    complaints = Complaint.objects.all()
    totals = complaints.aggregate(
        total=Count("id"),
        pending=Count("id", filter=Q(status=Status.PENDING)),
        assigned=Count("id", filter=Q(status=Status.ASSIGNED)),
        in_progress=Count("id", filter=Q(status=Status.IN_PROGRESS)),
        done=Count("id", filter=Q(status__in=DONE_STATUSES)),
        verified=Count("id", filter=Q(status=Status.VERIFIED)),
    )
    return AgentStats(
        total_complaints=totals["total"],
        pending_complaints=totals["pending"],
        assigned_complaints=totals["assigned"],
        in_progress_complaints=totals["in_progress"],
        completed_complaints=totals["done"],
        verified_complaints=totals["verified"],
        status_breakdown=_breakdown(complaints, "status", Complaint.Status),
        priority_breakdown=_breakdown(complaints, "priority", Complaint.Priority),
    )


def worker_stats(worker_id):
    totals = Complaint.objects.filter(assigned_worker_id=worker_id).aggregate(
        assigned=Count("id"),
        done=Count("id", filter=Q(status__in=DONE_STATUSES)),
        working=Count("id", filter=Q(status__in=WORKING_STATUSES)),
    )
    return WorkerStats(
        assigned_tasks=totals["assigned"],
        completed_tasks=totals["done"],
        pending_tasks=totals["working"],
    )


def citizen_stats(citizen_id):
    totals = Complaint.objects.filter(reporter_id=citizen_id).aggregate(
        total=Count("id"),
        verified=Count("id", filter=Q(status=Status.VERIFIED)),
        open=Count("id", filter=Q(status__in=OPEN_STATUSES)),
    )
    return CitizenStats(
        my_complaints=totals["total"],
        resolved_complaints=totals["verified"],
        pending_complaints=totals["open"],
    )


def dashboard_stats(subject):
    if subject.role == User.Role.AGENT:
        return agent_stats()
    if subject.role == User.Role.WORKER:
        return worker_stats(subject.id)
    if subject.role == User.Role.CITIZEN:
        return citizen_stats(subject.id)
    raise ValueError(f"Unknown role: {subject.role!r}")
