import logging
from dataclasses import dataclass
from enum import Enum

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import DatabaseError, transaction

from .exceptions import NotFound, StorageFault
from .models import Complaint

logger = logging.getLogger(__name__)


class FilterKind(Enum):
    ALL = "all"
    BY_REPORTER = "by_reporter"
    BY_WORKER = "by_worker"


@dataclass(frozen=True)
class ComplaintFilter:
    kind: FilterKind
    subject_id: object = None

    @classmethod
    def all(cls):
        return cls(FilterKind.ALL)

    @classmethod
    def by_reporter(cls, reporter_id):
        return cls(FilterKind.BY_REPORTER, reporter_id)

    @classmethod
    def by_worker(cls, worker_id):
        return cls(FilterKind.BY_WORKER, worker_id)


def _base_queryset():
    return Complaint.objects.select_related("reporter", "assigned_worker")


_FILTER_QUERIES = {
    FilterKind.ALL: lambda subject_id: _base_queryset(),
    FilterKind.BY_REPORTER: lambda subject_id: _base_queryset().filter(reporter_id=subject_id),
    FilterKind.BY_WORKER: lambda subject_id: _base_queryset().filter(assigned_worker_id=subject_id),
}


class ComplaintStore:
    """Persistence for complaint records.

    The store performs no business validation. ``update`` locks the row for
    the duration of the surrounding transaction so that concurrent updates
    to the same complaint are applied one after another.
    """

    def create(self, **fields) -> Complaint:
        try:
            return Complaint.objects.create(**fields)
        except DatabaseError as exc:
            logger.exception("Failed to create complaint")
            raise StorageFault("Could not save complaint.") from exc

    def get(self, complaint_id) -> Complaint:
        try:
            return _base_queryset().get(pk=complaint_id)
        except (Complaint.DoesNotExist, DjangoValidationError, ValueError):
            raise NotFound("Complaint not found.")
        except DatabaseError as exc:
            logger.exception("Failed to load complaint", extra={"complaint_id": str(complaint_id)})
            raise StorageFault("Could not load complaint.") from exc

    def update(self, complaint_id, mutator) -> Complaint:
        """Apply ``mutator`` to the locked complaint row and persist the result.

        ``mutator`` receives the current complaint and returns the names of the
        fields it changed. Any exception it raises aborts the update and is
        propagated unchanged.
        """
        with transaction.atomic():
            try:
                complaint = Complaint.objects.select_for_update().get(pk=complaint_id)
            except (Complaint.DoesNotExist, DjangoValidationError, ValueError):
                raise NotFound("Complaint not found.")
            except DatabaseError as exc:
                logger.exception("Failed to lock complaint", extra={"complaint_id": str(complaint_id)})
                raise StorageFault("Could not load complaint.") from exc
            changed_fields = list(mutator(complaint) or [])
            if changed_fields:
                try:
                    complaint.save(update_fields=[*changed_fields, "updated_at"])
                except DatabaseError as exc:
                    logger.exception(
                        "Failed to update complaint",
                        extra={"complaint_id": str(complaint_id)},
                    )
                    raise StorageFault("Could not save complaint.") from exc
            return complaint

    def list(self, complaint_filter: ComplaintFilter, status=None, priority=None):
        queryset = _FILTER_QUERIES[complaint_filter.kind](complaint_filter.subject_id)
        if status:
            queryset = queryset.filter(status=status)
        if priority:
            queryset = queryset.filter(priority=priority)
        try:
            return list(queryset.order_by("-created_at"))
        except DatabaseError as exc:
            logger.exception("Failed to list complaints", extra={"filter_kind": complaint_filter.kind.value})
            raise StorageFault("Could not load complaints.") from exc
