import logging

from django.db import DatabaseError

from .exceptions import StorageFault
from .models import ActivityLog

logger = logging.getLogger(__name__)


class AuditLog:
    """Append-only record of the actions taken against complaints.

    Entries are only ever inserted. Callers that need the entry to commit
    together with a complaint update must call ``append`` inside the same
    ``transaction.atomic()`` block.
    """

    def append(self, complaint, user_id, action, details=""):
        try:
            return ActivityLog.objects.create(
                complaint=complaint,
                user_id=user_id,
                action=action,
                details=details,
            )
        except DatabaseError as exc:
            logger.exception(
                "Failed to append activity log entry",
                extra={"complaint_id": str(complaint.pk), "action": action},
            )
            raise StorageFault("Could not record activity log entry.") from exc

    def list_by_complaint(self, complaint_id):
        """Entries for one complaint, newest first."""
        return list(
            ActivityLog.objects.select_related("user")
            .filter(complaint_id=complaint_id)
            .order_by("-created_at", "-id")
        )

    def replay(self, complaint_id):
        """Entries for one complaint in the order they were recorded."""
        return list(
            ActivityLog.objects.select_related("user")
            .filter(complaint_id=complaint_id)
            .order_by("created_at", "id")
        )
