def _timestamp(value):
    return value.isoformat() if value else None


def serialize_user(user):
    return {
        "id": str(user.pk),
        "email": user.email,
        "name": user.full_name,
        "phone": user.phone,
        "role": user.role,
        "is_active": user.is_active,
    }


def serialize_complaint(complaint):
    worker = complaint.assigned_worker
    return {
        "id": str(complaint.pk),
        "title": complaint.title,
        "description": complaint.description,
        "latitude": str(complaint.latitude),
        "longitude": str(complaint.longitude),
        "address": complaint.address,
        "status": complaint.status,
        "priority": complaint.priority,
        "reporter_id": str(complaint.reporter_id),
        "reporter_name": complaint.reporter.full_name,
        "reporter_email": complaint.reporter.email,
        "assigned_worker_id": str(worker.pk) if worker else None,
        "assigned_worker_name": worker.full_name if worker else None,
        "assigned_at": _timestamp(complaint.assigned_at),
        "completed_at": _timestamp(complaint.completed_at),
        "verified_at": _timestamp(complaint.verified_at),
        "has_original_evidence": bool(complaint.original_evidence_ref),
        "has_before_evidence": bool(complaint.before_evidence_ref),
        "has_after_evidence": bool(complaint.after_evidence_ref),
        "citizen_feedback": complaint.citizen_feedback or None,
        "citizen_rating": complaint.citizen_rating,
        "created_at": _timestamp(complaint.created_at),
        "updated_at": _timestamp(complaint.updated_at),
    }


def serialize_log_entry(entry):
    return {
        "id": entry.pk,
        "complaint_id": str(entry.complaint_id),
        "user_id": str(entry.user_id),
        "user_name": entry.user.full_name,
        "user_role": entry.user.role,
        "action": entry.action,
        "details": entry.details,
        "created_at": _timestamp(entry.created_at),
    }
