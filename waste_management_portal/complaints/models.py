import uuid

from django.contrib.auth.models import AbstractUser, BaseUserManager
from django.core.exceptions import PermissionDenied
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Q


class UserManager(BaseUserManager):
    use_in_migrations = True

    def _create_user(self, email, password, **extra_fields):
        if not email:
            raise ValueError("An email address is required.")
        email = self.normalize_email(email).lower()
        user = self.model(email=email, **extra_fields)
        user.set_password(password)
        user.save(using=self._db)
        return user

    def create_user(self, email, password=None, **extra_fields):
        extra_fields.setdefault("is_staff", False)
        extra_fields.setdefault("is_superuser", False)
        return self._create_user(email, password, **extra_fields)

    def create_superuser(self, email, password=None, **extra_fields):
        extra_fields.setdefault("is_staff", True)
        extra_fields.setdefault("is_superuser", True)
        extra_fields.setdefault("role", User.Role.AGENT)
        return self._create_user(email, password, **extra_fields)


class User(AbstractUser):
    class Role(models.TextChoices):
        CITIZEN = "citizen", "Citizen"
        AGENT = "agent", "Agent"
        WORKER = "worker", "Worker"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    username = None
    first_name = None
    last_name = None
    email = models.EmailField(unique=True)
    full_name = models.CharField(max_length=255)
    phone = models.CharField(max_length=32, blank=True)
    role = models.CharField(max_length=20, choices=Role.choices, default=Role.CITIZEN)

    USERNAME_FIELD = "email"
    REQUIRED_FIELDS = ["full_name"]

    objects = UserManager()

    class Meta:
        db_table = "users"
        ordering = ["full_name"]

    def __str__(self):
        return f"{self.full_name} <{self.email}>"

    def get_full_name(self):
        return self.full_name

    def get_short_name(self):
        return self.full_name

    def save(self, *args, **kwargs):
        update_fields = kwargs.get("update_fields")
        if not self._state.adding and (update_fields is None or "role" in update_fields):
            stored_role = User.objects.filter(pk=self.pk).values_list("role", flat=True).first()
            if stored_role is not None and stored_role != self.role:
                raise ValueError("A user's role cannot be changed after registration.")
        super().save(*args, **kwargs)


class Complaint(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        ASSIGNED = "assigned", "Assigned"
        IN_PROGRESS = "in_progress", "In Progress"
        COMPLETED = "completed", "Completed"
        VERIFIED = "verified", "Verified"

    class Priority(models.TextChoices):
        LOW = "low", "Low"
        MEDIUM = "medium", "Medium"
        HIGH = "high", "High"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    reporter = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        related_name="reported_complaints",
    )
    title = models.CharField(max_length=200)
    description = models.TextField(max_length=1000)
    latitude = models.DecimalField(
        max_digits=10,
        decimal_places=8,
        validators=[MinValueValidator(-90), MaxValueValidator(90)],
    )
    longitude = models.DecimalField(
        max_digits=11,
        decimal_places=8,
        validators=[MinValueValidator(-180), MaxValueValidator(180)],
    )
    address = models.CharField(max_length=255)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
    )
    priority = models.CharField(
        max_length=20,
        choices=Priority.choices,
        default=Priority.MEDIUM,
    )
    assigned_worker = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        related_name="assigned_complaints",
        null=True,
        blank=True,
    )
    assigned_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    verified_at = models.DateTimeField(null=True, blank=True)
    original_evidence_ref = models.CharField(max_length=255, blank=True)
    before_evidence_ref = models.CharField(max_length=255, blank=True)
    after_evidence_ref = models.CharField(max_length=255, blank=True)
    citizen_feedback = models.TextField(max_length=500, blank=True)
    citizen_rating = models.PositiveSmallIntegerField(
        null=True,
        blank=True,
        validators=[MinValueValidator(1), MaxValueValidator(5)],
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "complaints"
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(status="pending", assigned_worker__isnull=True)
                    | (~Q(status="pending") & Q(assigned_worker__isnull=False))
                ),
                name="complaint_worker_matches_status",
            ),
            models.CheckConstraint(
                condition=Q(citizen_rating__isnull=True) | Q(citizen_rating__gte=1, citizen_rating__lte=5),
                name="complaint_rating_in_range",
            ),
        ]
        indexes = [
            models.Index(fields=["reporter", "status"], name="complaint_reporter_status_idx"),
            models.Index(fields=["assigned_worker", "status"], name="complaint_worker_status_idx"),
        ]

    def __str__(self):
        return f"{self.title} ({self.get_status_display()})"

    @property
    def has_feedback(self) -> bool:
        return self.citizen_rating is not None

    def evidence_ref(self, kind: str) -> str:
        return {
            "original": self.original_evidence_ref,
            "before": self.before_evidence_ref,
            "after": self.after_evidence_ref,
        }.get(kind, "")

    def delete(self, *args, **kwargs):
        raise PermissionDenied("Complaints are never deleted.")


class ActivityLog(models.Model):
    class Action(models.TextChoices):
        CREATED = "created", "Created"
        ASSIGNED = "assigned", "Assigned"
        STARTED = "started", "Started"
        COMPLETED = "completed", "Completed"
        VERIFIED = "verified", "Verified"
        REJECTED = "rejected", "Rejected"
        FEEDBACK = "feedback", "Feedback"

    complaint = models.ForeignKey(
        Complaint,
        on_delete=models.PROTECT,
        related_name="activity_logs",
    )
    user = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        related_name="activity_logs",
    )
    action = models.CharField(max_length=20, choices=Action.choices)
    details = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "activity_logs"
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["complaint", "created_at"], name="activity_complaint_time_idx"),
        ]

    def __str__(self):
        return f"{self.action} by {self.user_id} on {self.complaint_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise PermissionDenied("Activity log entries are immutable.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise PermissionDenied("Activity log entries are immutable.")
