import functools
import json
import shutil
import tempfile
import threading
from collections import Counter
from types import SimpleNamespace
from unittest import mock

from django.core.exceptions import PermissionDenied
from django.core.files.uploadedfile import SimpleUploadedFile
from django.db import DatabaseError, connection, connections
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.urls import reverse

from . import exceptions
from .audit import AuditLog
from .identity import IdentityProvider, Subject
from .models import ActivityLog, Complaint, User
from .policy import Action, authorize, visibility_filter
from .stats import agent_stats, citizen_stats, dashboard_stats, worker_stats
from .store import ComplaintFilter, ComplaintStore, FilterKind
from .workflow import WorkflowEngine

PASSWORD = "StrongPass123!"

# Edges of the lifecycle graph, including the rejection loop.
TRANSITION_GRAPH = {
    Complaint.Status.PENDING: {Complaint.Status.ASSIGNED},
    Complaint.Status.ASSIGNED: {Complaint.Status.ASSIGNED, Complaint.Status.IN_PROGRESS},
    Complaint.Status.IN_PROGRESS: {Complaint.Status.COMPLETED},
    Complaint.Status.COMPLETED: {Complaint.Status.VERIFIED, Complaint.Status.ASSIGNED},
    Complaint.Status.VERIFIED: {Complaint.Status.VERIFIED},
}


class MediaRootMixin:
    def setUp(self):
        super().setUp()
        self.media_root = tempfile.mkdtemp()
        self.media_override = override_settings(MEDIA_ROOT=self.media_root)
        self.media_override.enable()

    def tearDown(self):
        self.media_override.disable()
        shutil.rmtree(self.media_root, ignore_errors=True)
        super().tearDown()


class PortalFixturesMixin(MediaRootMixin):
    def setUp(self):
        super().setUp()
        self.citizen = User.objects.create_user(
            email="citizen@example.com",
            password=PASSWORD,
            full_name="Carla Citizen",
            role=User.Role.CITIZEN,
        )
        self.other_citizen = User.objects.create_user(
            email="other@example.com",
            password=PASSWORD,
            full_name="Omar Other",
            role=User.Role.CITIZEN,
        )
        self.agent = User.objects.create_user(
            email="agent@example.com",
            password=PASSWORD,
            full_name="Ada Agent",
            role=User.Role.AGENT,
        )
        self.worker = User.objects.create_user(
            email="worker@example.com",
            password=PASSWORD,
            full_name="Wes Worker",
            role=User.Role.WORKER,
        )
        self.other_worker = User.objects.create_user(
            email="worker2@example.com",
            password=PASSWORD,
            full_name="Wanda Worker",
            role=User.Role.WORKER,
        )
        self.engine = WorkflowEngine.default()

    def subject(self, user):
        return Subject.from_user(user)

    def create_complaint(self, user=None, **kwargs):
        data = {
            "title": "Overflowing bins",
            "description": "Bins near the bus stop have not been emptied for days.",
            "latitude": "12.9716",
            "longitude": "77.5946",
            "address": "Bus stop, Main Road",
        }
        data.update(kwargs)
        return self.engine.submit(self.subject(user or self.citizen), **data)

    def evidence_refs(self):
        return (
            self.engine.blob_store.put(b"before-bytes", ".png"),
            self.engine.blob_store.put(b"after-bytes", ".png"),
        )

    def advance_to(self, complaint, status):
        agent, worker = self.subject(self.agent), self.subject(self.worker)
        if status == Complaint.Status.PENDING:
            return Complaint.objects.get(pk=complaint.pk)
        self.engine.assign(agent, complaint.pk, self.worker.pk)
        if status == Complaint.Status.ASSIGNED:
            return Complaint.objects.get(pk=complaint.pk)
        self.engine.start(worker, complaint.pk)
        if status == Complaint.Status.IN_PROGRESS:
            return Complaint.objects.get(pk=complaint.pk)
        self.engine.complete(worker, complaint.pk, *self.evidence_refs())
        if status == Complaint.Status.COMPLETED:
            return Complaint.objects.get(pk=complaint.pk)
        self.engine.verify(agent, complaint.pk, approved=True)
        return Complaint.objects.get(pk=complaint.pk)

    def log_count(self, complaint):
        return ActivityLog.objects.filter(complaint=complaint).count()


class WorkflowEngineTests(PortalFixturesMixin, TestCase):
    def test_end_to_end_lifecycle_appends_one_entry_per_step(self):
        citizen, agent, worker = self.subject(self.citizen), self.subject(self.agent), self.subject(self.worker)
        audit_log = AuditLog()
        observed = []

        def check_step(complaint, status, action, actor):
            complaint = Complaint.objects.get(pk=complaint.pk)
            observed.append(complaint.status)
            self.assertEqual(complaint.status, status)
            entries = audit_log.list_by_complaint(complaint.pk)
            self.assertEqual(len(entries), len(observed))
            self.assertEqual(entries[0].action, action)
            self.assertEqual(entries[0].user_id, actor.pk)
            return complaint

        complaint = self.create_complaint()
        complaint = check_step(complaint, Complaint.Status.PENDING, ActivityLog.Action.CREATED, self.citizen)

        self.engine.assign(agent, complaint.pk, self.worker.pk)
        complaint = check_step(complaint, Complaint.Status.ASSIGNED, ActivityLog.Action.ASSIGNED, self.agent)
        self.assertEqual(complaint.assigned_worker, self.worker)
        self.assertIsNotNone(complaint.assigned_at)

        self.engine.start(worker, complaint.pk)
        check_step(complaint, Complaint.Status.IN_PROGRESS, ActivityLog.Action.STARTED, self.worker)

        self.engine.complete(worker, complaint.pk, *self.evidence_refs())
        complaint = check_step(complaint, Complaint.Status.COMPLETED, ActivityLog.Action.COMPLETED, self.worker)
        self.assertIsNotNone(complaint.completed_at)
        self.assertTrue(complaint.before_evidence_ref)
        self.assertTrue(complaint.after_evidence_ref)

        self.engine.verify(agent, complaint.pk, approved=True)
        complaint = check_step(complaint, Complaint.Status.VERIFIED, ActivityLog.Action.VERIFIED, self.agent)
        self.assertIsNotNone(complaint.verified_at)

        self.engine.feedback(citizen, complaint.pk, "Cleaned up well.", 4)
        complaint = check_step(complaint, Complaint.Status.VERIFIED, ActivityLog.Action.FEEDBACK, self.citizen)
        self.assertEqual(complaint.citizen_rating, 4)
        self.assertEqual(complaint.citizen_feedback, "Cleaned up well.")

        for previous, current in zip(observed, observed[1:]):
            self.assertIn(current, TRANSITION_GRAPH[previous])

        replayed = [entry.action for entry in audit_log.replay(complaint.pk)]
        self.assertEqual(
            replayed,
            ["created", "assigned", "started", "completed", "verified", "feedback"],
        )

    def test_start_on_pending_complaint_is_invalid_transition_without_audit(self):
        complaint = self.create_complaint()
        with self.assertRaises(exceptions.InvalidTransition):
            self.engine.start(self.subject(self.worker), complaint.pk)
        complaint.refresh_from_db()
        self.assertEqual(complaint.status, Complaint.Status.PENDING)
        self.assertEqual(self.log_count(complaint), 1)

    def test_complete_before_start_is_invalid_transition(self):
        complaint = self.advance_to(self.create_complaint(), Complaint.Status.ASSIGNED)
        with self.assertRaises(exceptions.InvalidTransition):
            self.engine.complete(self.subject(self.worker), complaint.pk, *self.evidence_refs())
        complaint.refresh_from_db()
        self.assertEqual(complaint.status, Complaint.Status.ASSIGNED)
        self.assertIsNone(complaint.completed_at)

    def test_complete_requires_both_evidence_refs_regardless_of_role(self):
        complaint = self.advance_to(self.create_complaint(), Complaint.Status.IN_PROGRESS)
        before, after = self.evidence_refs()
        for user in (self.worker, self.other_worker, self.agent, self.citizen):
            for refs in ((before, ""), ("", after), ("", "")):
                with self.subTest(user=user.email, refs=refs):
                    with self.assertRaises(exceptions.ValidationError):
                        self.engine.complete(self.subject(user), complaint.pk, *refs)
        complaint.refresh_from_db()
        self.assertEqual(complaint.status, Complaint.Status.IN_PROGRESS)
        self.assertEqual(self.log_count(complaint), 3)

    def test_complete_with_missing_upload_stores_nothing(self):
        complaint = self.advance_to(self.create_complaint(), Complaint.Status.IN_PROGRESS)
        with mock.patch.object(self.engine.blob_store, "put") as put:
            with self.assertRaises(exceptions.ValidationError):
                self.engine.complete_with_evidence(
                    self.subject(self.worker), complaint.pk, (b"before", ".png"), None
                )
        put.assert_not_called()

    def test_blob_failure_prevents_completion(self):
        complaint = self.advance_to(self.create_complaint(), Complaint.Status.IN_PROGRESS)
        with mock.patch.object(self.engine.blob_store, "put", side_effect=exceptions.StorageFault()):
            with self.assertRaises(exceptions.StorageFault):
                self.engine.complete_with_evidence(
                    self.subject(self.worker),
                    complaint.pk,
                    (b"before", ".png"),
                    (b"after", ".png"),
                )
        complaint.refresh_from_db()
        self.assertEqual(complaint.status, Complaint.Status.IN_PROGRESS)
        self.assertEqual(self.log_count(complaint), 3)

    def test_start_and_complete_forbidden_for_other_worker(self):
        complaint = self.advance_to(self.create_complaint(), Complaint.Status.ASSIGNED)
        with self.assertRaises(exceptions.Forbidden):
            self.engine.start(self.subject(self.other_worker), complaint.pk)

        self.engine.start(self.subject(self.worker), complaint.pk)
        with self.assertRaises(exceptions.Forbidden):
            self.engine.complete(self.subject(self.other_worker), complaint.pk, *self.evidence_refs())

        complaint.refresh_from_db()
        self.assertEqual(complaint.status, Complaint.Status.IN_PROGRESS)
        self.assertEqual(self.log_count(complaint), 3)

    def test_role_checks_on_transitions(self):
        complaint = self.create_complaint()
        with self.assertRaises(exceptions.Forbidden):
            self.engine.assign(self.subject(self.citizen), complaint.pk, self.worker.pk)
        with self.assertRaises(exceptions.Forbidden):
            self.engine.assign(self.subject(self.worker), complaint.pk, self.worker.pk)
        with self.assertRaises(exceptions.Forbidden):
            self.create_complaint(user=self.agent)
        self.assertEqual(self.log_count(complaint), 1)

    def test_rejection_returns_to_assigned_and_keeps_worker(self):
        complaint = self.advance_to(self.create_complaint(), Complaint.Status.COMPLETED)
        self.engine.verify(self.subject(self.agent), complaint.pk, approved=False, feedback="Bins still full.")

        complaint.refresh_from_db()
        self.assertEqual(complaint.status, Complaint.Status.ASSIGNED)
        self.assertEqual(complaint.assigned_worker, self.worker)
        self.assertIsNone(complaint.verified_at)
        self.assertIsNotNone(complaint.completed_at)

        latest = AuditLog().list_by_complaint(complaint.pk)[0]
        self.assertEqual(latest.action, ActivityLog.Action.REJECTED)
        self.assertEqual(latest.details, "Bins still full.")

        self.engine.start(self.subject(self.worker), complaint.pk)
        complaint.refresh_from_db()
        self.assertEqual(complaint.status, Complaint.Status.IN_PROGRESS)

    def test_verify_default_details(self):
        complaint = self.advance_to(self.create_complaint(), Complaint.Status.COMPLETED)
        self.engine.verify(self.subject(self.agent), complaint.pk, approved=True)
        latest = AuditLog().list_by_complaint(complaint.pk)[0]
        self.assertEqual(latest.details, "Complaint verified by agent")

    def test_verify_requires_completed_status(self):
        complaint = self.advance_to(self.create_complaint(), Complaint.Status.IN_PROGRESS)
        with self.assertRaises(exceptions.InvalidTransition):
            self.engine.verify(self.subject(self.agent), complaint.pk, approved=True)
        complaint.refresh_from_db()
        self.assertIsNone(complaint.verified_at)

    def test_reassignment_allowed_before_work_starts(self):
        complaint = self.advance_to(self.create_complaint(), Complaint.Status.ASSIGNED)
        self.engine.assign(self.subject(self.agent), complaint.pk, self.other_worker.pk)
        complaint.refresh_from_db()
        self.assertEqual(complaint.assigned_worker, self.other_worker)
        self.assertEqual(self.log_count(complaint), 3)

    def test_assign_rejected_once_work_has_started(self):
        for status in (Complaint.Status.IN_PROGRESS, Complaint.Status.COMPLETED, Complaint.Status.VERIFIED):
            with self.subTest(status=status):
                complaint = self.advance_to(self.create_complaint(title=f"Issue {status}"), status)
                with self.assertRaises(exceptions.InvalidTransition):
                    self.engine.assign(self.subject(self.agent), complaint.pk, self.other_worker.pk)
                complaint.refresh_from_db()
                self.assertEqual(complaint.assigned_worker, self.worker)

    def test_assign_checks_role_before_resolving_worker(self):
        complaint = self.create_complaint()
        for user in (self.citizen, self.worker):
            for worker_id in ("7b0f5f62-0000-4000-8000-000000000000", self.citizen.pk, self.other_worker.pk):
                with self.subTest(user=user.email, worker_id=worker_id):
                    with self.assertRaises(exceptions.Forbidden):
                        self.engine.assign(self.subject(user), complaint.pk, worker_id)
        self.assertEqual(self.log_count(complaint), 1)

    def test_assign_target_must_be_active_worker(self):
        complaint = self.create_complaint()
        agent = self.subject(self.agent)
        with self.assertRaises(exceptions.ValidationError):
            self.engine.assign(agent, complaint.pk, self.citizen.pk)
        with self.assertRaises(exceptions.NotFound):
            self.engine.assign(agent, complaint.pk, "7b0f5f62-0000-4000-8000-000000000000")

        self.worker.is_active = False
        self.worker.save(update_fields=["is_active"])
        with self.assertRaises(exceptions.ValidationError):
            self.engine.assign(agent, complaint.pk, self.worker.pk)
        self.assertEqual(self.log_count(complaint), 1)

    def test_unknown_complaint_is_not_found(self):
        with self.assertRaises(exceptions.NotFound):
            self.engine.start(self.subject(self.worker), "7b0f5f62-0000-4000-8000-000000000000")
        with self.assertRaises(exceptions.NotFound):
            self.engine.start(self.subject(self.worker), "not-a-uuid")

    def test_feedback_rating_validated_before_any_change(self):
        complaint = self.advance_to(self.create_complaint(), Complaint.Status.VERIFIED)
        for rating in (0, 6, None, "4", True):
            with self.subTest(rating=rating):
                with self.assertRaises(exceptions.ValidationError):
                    self.engine.feedback(self.subject(self.citizen), complaint.pk, "ok", rating)
        complaint.refresh_from_db()
        self.assertIsNone(complaint.citizen_rating)
        self.assertEqual(self.log_count(complaint), 5)

    def test_feedback_only_by_reporter_on_verified_complaint(self):
        complaint = self.advance_to(self.create_complaint(), Complaint.Status.COMPLETED)
        with self.assertRaises(exceptions.InvalidTransition):
            self.engine.feedback(self.subject(self.citizen), complaint.pk, "Too early", 3)

        self.engine.verify(self.subject(self.agent), complaint.pk, approved=True)
        with self.assertRaises(exceptions.Forbidden):
            self.engine.feedback(self.subject(self.other_citizen), complaint.pk, "Not mine", 1)
        with self.assertRaises(exceptions.Forbidden):
            self.engine.feedback(self.subject(self.agent), complaint.pk, "Agent", 5)

    def test_feedback_can_only_be_given_once(self):
        complaint = self.advance_to(self.create_complaint(), Complaint.Status.VERIFIED)
        citizen = self.subject(self.citizen)
        self.engine.feedback(citizen, complaint.pk, "Great", 5)
        with self.assertRaises(exceptions.InvalidTransition):
            self.engine.feedback(citizen, complaint.pk, "Changed my mind", 1)
        complaint.refresh_from_db()
        self.assertEqual(complaint.citizen_rating, 5)
        self.assertEqual(complaint.status, Complaint.Status.VERIFIED)

    def test_submit_validates_input(self):
        with self.assertRaises(exceptions.ValidationError) as ctx:
            self.create_complaint(title="", latitude="95", longitude="abc", priority="urgent")
        self.assertEqual(
            set(ctx.exception.details),
            {"title", "latitude", "longitude", "priority"},
        )
        self.assertFalse(Complaint.objects.exists())

    def test_submit_stores_original_image(self):
        complaint = self.create_complaint(image=b"photo-bytes", image_extension=".jpg")
        self.assertTrue(complaint.original_evidence_ref.endswith(".jpg"))
        self.assertEqual(self.engine.blob_store.get(complaint.original_evidence_ref), b"photo-bytes")
        self.assertEqual(complaint.priority, Complaint.Priority.MEDIUM)

    def test_activity_log_entries_are_immutable(self):
        complaint = self.create_complaint()
        entry = ActivityLog.objects.get(complaint=complaint)
        entry.details = "rewritten"
        with self.assertRaises(PermissionDenied):
            entry.save()
        with self.assertRaises(PermissionDenied):
            entry.delete()
        with self.assertRaises(PermissionDenied):
            complaint.delete()


class ComplaintStoreTests(PortalFixturesMixin, TestCase):
    def test_list_filters_by_variant(self):
        store = ComplaintStore()
        mine = self.create_complaint()
        theirs = self.create_complaint(user=self.other_citizen)
        self.advance_to(theirs, Complaint.Status.ASSIGNED)

        self.assertEqual({c.pk for c in store.list(visibility_filter(User.Role.AGENT, self.agent.pk))}, {mine.pk, theirs.pk})
        self.assertEqual([c.pk for c in store.list(visibility_filter(User.Role.CITIZEN, self.citizen.pk))], [mine.pk])
        self.assertEqual([c.pk for c in store.list(visibility_filter(User.Role.WORKER, self.worker.pk))], [theirs.pk])
        self.assertEqual(store.list(visibility_filter(User.Role.WORKER, self.other_worker.pk)), [])

    def test_update_aborts_when_mutator_raises(self):
        store = ComplaintStore()
        complaint = self.create_complaint()

        def mutator(locked):
            locked.title = "Changed"
            raise exceptions.InvalidTransition()

        with self.assertRaises(exceptions.InvalidTransition):
            store.update(complaint.pk, mutator)
        self.assertEqual(store.get(complaint.pk).title, "Overflowing bins")

    def test_get_unknown_is_not_found(self):
        with self.assertRaises(exceptions.NotFound):
            ComplaintStore().get("7b0f5f62-0000-4000-8000-000000000000")

    def test_read_errors_become_storage_faults(self):
        store = ComplaintStore()
        complaint = self.create_complaint()
        with mock.patch("django.db.models.query.QuerySet._fetch_all", side_effect=DatabaseError("disk I/O error")):
            with self.assertRaises(exceptions.StorageFault):
                store.get(complaint.pk)
            with self.assertRaises(exceptions.StorageFault):
                store.list(ComplaintFilter.all())


class DatabaseSettingsTests(SimpleTestCase):
    def test_sqlite_transactions_take_the_write_lock_up_front(self):
        if connection.vendor != "sqlite":
            self.skipTest("Only SQLite needs an explicit transaction mode.")
        self.assertEqual(connection.settings_dict["OPTIONS"]["transaction_mode"], "IMMEDIATE")


class ConcurrentTransitionTests(PortalFixturesMixin, TransactionTestCase):
    def setUp(self):
        if connection.vendor == "sqlite" and connection.is_in_memory_db():
            self.skipTest("Concurrent connections need a shared database file.")
        super().setUp()

    def run_concurrently(self, calls):
        barrier = threading.Barrier(len(calls))
        outcomes = []

        def run(call):
            barrier.wait()
            try:
                outcome = call()
            except exceptions.ComplaintError as exc:
                outcome = exc
            finally:
                connections.close_all()
            outcomes.append(outcome)

        threads = [threading.Thread(target=run, args=(call,)) for call in calls]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)
        self.assertEqual(len(outcomes), len(calls))
        return outcomes

    def test_concurrent_assignments_are_applied_one_after_another(self):
        complaint = self.create_complaint()
        crew = [
            User.objects.create_user(
                email=f"crew{index}@example.com",
                password=PASSWORD,
                full_name=f"Crew Member {index}",
                role=User.Role.WORKER,
            )
            for index in range(6)
        ]
        agent = self.subject(self.agent)

        outcomes = self.run_concurrently(
            [functools.partial(self.engine.assign, agent, complaint.pk, worker.pk) for worker in crew]
        )

        self.assertFalse([o for o in outcomes if isinstance(o, exceptions.StorageFault)])
        succeeded = [o for o in outcomes if isinstance(o, Complaint)]
        self.assertEqual(len(succeeded), len(crew))
        assigned_entries = ActivityLog.objects.filter(complaint=complaint, action=ActivityLog.Action.ASSIGNED)
        self.assertEqual(assigned_entries.count(), len(succeeded))

        complaint.refresh_from_db()
        latest = AuditLog().list_by_complaint(complaint.pk)[0]
        self.assertEqual(latest.details, f"Complaint assigned to worker: {complaint.assigned_worker.full_name}")

    def test_concurrent_starts_let_exactly_one_through(self):
        complaint = self.advance_to(self.create_complaint(), Complaint.Status.ASSIGNED)
        worker = self.subject(self.worker)

        outcomes = self.run_concurrently(
            [functools.partial(self.engine.start, worker, complaint.pk) for _ in range(4)]
        )

        started = [o for o in outcomes if isinstance(o, Complaint)]
        rejected = [o for o in outcomes if isinstance(o, exceptions.InvalidTransition)]
        self.assertEqual((len(started), len(rejected)), (1, 3))
        self.assertEqual(
            ActivityLog.objects.filter(complaint=complaint, action=ActivityLog.Action.STARTED).count(),
            1,
        )


class AccessPolicyTests(SimpleTestCase):
    reporter_id = "reporter"
    worker_id = "worker"

    def complaint(self, worker_id=None):
        return SimpleNamespace(pk="c1", reporter_id=self.reporter_id, assigned_worker_id=worker_id)

    def test_agent_rules(self):
        complaint = self.complaint(self.worker_id)
        for action in (Action.ASSIGN, Action.VERIFY, Action.GET, Action.LIST, Action.VIEW_LOG, Action.LIST_WORKERS):
            self.assertTrue(authorize(User.Role.AGENT, "agent", action, complaint))
        for action in (Action.SUBMIT, Action.START, Action.COMPLETE, Action.FEEDBACK):
            self.assertFalse(authorize(User.Role.AGENT, "agent", action, complaint))

    def test_worker_only_acts_on_own_assignments(self):
        assigned = self.complaint(self.worker_id)
        unassigned = self.complaint(None)
        other = self.complaint("someone-else")
        for action in (Action.START, Action.COMPLETE, Action.GET, Action.VIEW_LOG):
            self.assertTrue(authorize(User.Role.WORKER, self.worker_id, action, assigned))
            self.assertFalse(authorize(User.Role.WORKER, self.worker_id, action, unassigned))
            self.assertFalse(authorize(User.Role.WORKER, self.worker_id, action, other))
        for action in (Action.ASSIGN, Action.VERIFY, Action.FEEDBACK, Action.SUBMIT, Action.LIST_WORKERS):
            self.assertFalse(authorize(User.Role.WORKER, self.worker_id, action, assigned))

    def test_citizen_rules(self):
        complaint = self.complaint(self.worker_id)
        self.assertTrue(authorize(User.Role.CITIZEN, "anyone", Action.SUBMIT))
        self.assertTrue(authorize(User.Role.CITIZEN, self.reporter_id, Action.FEEDBACK, complaint))
        self.assertFalse(authorize(User.Role.CITIZEN, "anyone", Action.FEEDBACK, complaint))
        self.assertTrue(authorize(User.Role.CITIZEN, self.reporter_id, Action.GET, complaint))
        self.assertFalse(authorize(User.Role.CITIZEN, "anyone", Action.GET, complaint))
        for action in (Action.ASSIGN, Action.START, Action.COMPLETE, Action.VERIFY, Action.LIST_WORKERS):
            self.assertFalse(authorize(User.Role.CITIZEN, self.reporter_id, action, complaint))

    def test_unknown_role_raises(self):
        with self.assertRaises(ValueError):
            authorize("mayor", "id", Action.LIST)

    def test_visibility_filters(self):
        self.assertEqual(visibility_filter(User.Role.AGENT, "a").kind, FilterKind.ALL)
        self.assertEqual(visibility_filter(User.Role.WORKER, "w").kind, FilterKind.BY_WORKER)
        self.assertEqual(visibility_filter(User.Role.CITIZEN, "c").kind, FilterKind.BY_REPORTER)


class DashboardStatsTests(PortalFixturesMixin, TestCase):
    def recount(self, queryset):
        return Counter(queryset.values_list("status", flat=True))

    def test_agent_stats_after_assigning_three_of_five(self):
        complaints = [self.create_complaint(title=f"Issue {index}") for index in range(5)]
        for complaint in complaints[:3]:
            self.engine.assign(self.subject(self.agent), complaint.pk, self.worker.pk)

        stats = agent_stats()
        self.assertEqual(stats.total_complaints, 5)
        self.assertEqual(stats.pending_complaints, 2)
        self.assertEqual(stats.assigned_complaints, 3)
        self.assertEqual(stats.status_breakdown["assigned"], 3)
        self.assertEqual(stats.status_breakdown["pending"], 2)
        self.assertEqual(stats.status_breakdown["verified"], 0)
        self.assertEqual(stats.priority_breakdown["medium"], 5)

    def test_stats_match_full_recount(self):
        self.create_complaint(title="Pending")
        self.advance_to(self.create_complaint(title="Started"), Complaint.Status.IN_PROGRESS)
        self.advance_to(self.create_complaint(title="Done"), Complaint.Status.COMPLETED)
        self.advance_to(
            self.create_complaint(user=self.other_citizen, title="Verified"),
            Complaint.Status.VERIFIED,
        )

        counts = self.recount(Complaint.objects.all())
        stats = agent_stats()
        self.assertEqual(stats.total_complaints, sum(counts.values()))
        self.assertEqual(stats.in_progress_complaints, counts["in_progress"])
        self.assertEqual(stats.completed_complaints, counts["completed"] + counts["verified"])
        self.assertEqual(stats.status_breakdown, {status: counts[status] for status in Complaint.Status.values})

        worker = worker_stats(self.worker.pk)
        self.assertEqual(worker.assigned_tasks, 3)
        self.assertEqual(worker.completed_tasks, 2)
        self.assertEqual(worker.pending_tasks, 1)

        citizen = citizen_stats(self.citizen.pk)
        self.assertEqual(citizen.my_complaints, 3)
        self.assertEqual(citizen.resolved_complaints, 0)
        self.assertEqual(citizen.pending_complaints, 2)

        other = dashboard_stats(self.subject(self.other_citizen))
        self.assertEqual(other.as_dict(), {"my_complaints": 1, "resolved_complaints": 1, "pending_complaints": 0})


class IdentityProviderTests(TestCase):
    def test_register_and_authenticate(self):
        identity = IdentityProvider()
        user, token = identity.register("New@Example.com", PASSWORD, "New Person", User.Role.WORKER, "+100")
        self.assertEqual(user.email, "new@example.com")
        self.assertEqual(identity.verify(token), Subject(id=user.pk, role=User.Role.WORKER, name="New Person"))

        logged_in, login_token = identity.authenticate("new@example.com", PASSWORD)
        self.assertEqual(logged_in, user)
        self.assertEqual(identity.verify(login_token).id, user.pk)

        with self.assertRaises(exceptions.InvalidCredentials):
            identity.authenticate("new@example.com", "wrong-password")

    def test_duplicate_email_conflicts(self):
        identity = IdentityProvider()
        identity.register("dup@example.com", PASSWORD, "First")
        with self.assertRaises(exceptions.Conflict):
            identity.register("DUP@example.com", PASSWORD, "Second")

    def test_weak_password_and_bad_role_rejected(self):
        identity = IdentityProvider()
        with self.assertRaises(exceptions.ValidationError):
            identity.register("weak@example.com", "123", "Weak")
        with self.assertRaises(exceptions.ValidationError):
            identity.register("mayor@example.com", PASSWORD, "Mayor", role="mayor")
        self.assertFalse(User.objects.exists())

    def test_invalid_expired_and_inactive_tokens(self):
        user = User.objects.create_user(email="t@example.com", password=PASSWORD, full_name="Token")
        identity = IdentityProvider()
        token = identity.issue_token(user)

        with self.assertRaises(exceptions.InvalidCredentials):
            identity.verify(token + "tampered")
        with self.assertRaises(exceptions.InvalidCredentials):
            IdentityProvider(max_age=-1).verify(token)

        user.is_active = False
        user.save(update_fields=["is_active"])
        with self.assertRaises(exceptions.InvalidCredentials):
            identity.verify(token)

    def test_role_is_immutable(self):
        user = User.objects.create_user(email="r@example.com", password=PASSWORD, full_name="Role")
        user.role = User.Role.AGENT
        with self.assertRaises(ValueError):
            user.save()


class ComplaintApiTests(PortalFixturesMixin, TestCase):
    def auth(self, user):
        return {"HTTP_AUTHORIZATION": f"Bearer {IdentityProvider().issue_token(user)}"}

    def post_json(self, url, data, user):
        return self.client.post(url, data=json.dumps(data), content_type="application/json", **self.auth(user))

    def image(self, name="photo.png", content=b"\x89PNG fake image"):
        return SimpleUploadedFile(name, content, content_type="image/png")

    def test_register_and_login(self):
        response = self.post_json(
            reverse("complaints:register"),
            {"email": "fresh@example.com", "password": PASSWORD, "name": "Fresh", "phone": "+1"},
            self.citizen,
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["user"]["role"], User.Role.CITIZEN)
        self.assertTrue(response.json()["token"])

        duplicate = self.post_json(
            reverse("complaints:register"),
            {"email": "fresh@example.com", "password": PASSWORD, "name": "Fresh"},
            self.citizen,
        )
        self.assertEqual(duplicate.status_code, 409)

        login = self.client.post(
            reverse("complaints:login"),
            data=json.dumps({"email": "fresh@example.com", "password": PASSWORD}),
            content_type="application/json",
        )
        self.assertEqual(login.status_code, 200)

        bad_login = self.client.post(
            reverse("complaints:login"),
            data=json.dumps({"email": "fresh@example.com", "password": "nope"}),
            content_type="application/json",
        )
        self.assertEqual(bad_login.status_code, 401)

    def test_requests_without_token_are_rejected(self):
        response = self.client.get(reverse("complaints:complaint_list"))
        self.assertEqual(response.status_code, 401)
        response = self.client.get(reverse("complaints:complaint_list"), HTTP_AUTHORIZATION="Bearer garbage")
        self.assertEqual(response.status_code, 401)

    def test_full_lifecycle_over_http(self):
        response = self.client.post(
            reverse("complaints:complaint_list"),
            data={
                "title": "Dumped mattresses",
                "description": "Three mattresses dumped beside the school gate.",
                "latitude": "12.9352",
                "longitude": "77.6245",
                "address": "School Road",
                "priority": "high",
                "image": self.image(),
            },
            **self.auth(self.citizen),
        )
        self.assertEqual(response.status_code, 201)
        body = response.json()["complaint"]
        self.assertEqual(body["status"], "pending")
        self.assertTrue(body["has_original_evidence"])
        complaint_id = body["id"]
        kwargs = {"complaint_id": complaint_id}

        response = self.post_json(
            reverse("complaints:complaint_assign", kwargs=kwargs),
            {"worker_id": str(self.worker.pk)},
            self.agent,
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["complaint"]["assigned_worker_name"], "Wes Worker")

        response = self.client.post(reverse("complaints:complaint_start", kwargs=kwargs), **self.auth(self.worker))
        self.assertEqual(response.json()["complaint"]["status"], "in_progress")

        response = self.client.post(
            reverse("complaints:complaint_complete", kwargs=kwargs),
            data={"before_image": self.image("before.png", b"before"), "after_image": self.image("after.jpg", b"after")},
            **self.auth(self.worker),
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["complaint"]["status"], "completed")

        evidence = self.client.get(
            reverse("complaints:complaint_evidence", kwargs={**kwargs, "kind": "after"}),
            **self.auth(self.citizen),
        )
        self.assertEqual(evidence.status_code, 200)
        self.assertEqual(evidence.content, b"after")
        self.assertEqual(evidence["Content-Type"], "image/jpeg")

        response = self.post_json(
            reverse("complaints:complaint_verify", kwargs=kwargs),
            {"approved": True},
            self.agent,
        )
        self.assertEqual(response.json()["complaint"]["status"], "verified")

        response = self.post_json(
            reverse("complaints:complaint_feedback", kwargs=kwargs),
            {"feedback": "Quick work", "rating": 4},
            self.citizen,
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["complaint"]["citizen_rating"], 4)

        logs = self.client.get(reverse("complaints:complaint_logs", kwargs=kwargs), **self.auth(self.citizen))
        actions = [entry["action"] for entry in logs.json()["logs"]]
        self.assertEqual(actions, ["feedback", "verified", "completed", "started", "assigned", "created"])
        self.assertEqual(logs.json()["logs"][0]["user_role"], "citizen")

    def test_error_status_codes(self):
        complaint = self.create_complaint()
        kwargs = {"complaint_id": complaint.pk}

        response = self.client.post(reverse("complaints:complaint_start", kwargs=kwargs), **self.auth(self.worker))
        self.assertEqual(response.status_code, 409)

        response = self.post_json(
            reverse("complaints:complaint_assign", kwargs=kwargs),
            {"worker_id": str(self.worker.pk)},
            self.citizen,
        )
        self.assertEqual(response.status_code, 403)

        response = self.post_json(
            reverse("complaints:complaint_assign", kwargs={"complaint_id": "7b0f5f62-0000-4000-8000-000000000000"}),
            {"worker_id": str(self.worker.pk)},
            self.agent,
        )
        self.assertEqual(response.status_code, 404)

        self.engine.assign(self.subject(self.agent), complaint.pk, self.worker.pk)
        self.engine.start(self.subject(self.worker), complaint.pk)
        response = self.client.post(
            reverse("complaints:complaint_complete", kwargs=kwargs),
            data={"before_image": self.image("before.png")},
            **self.auth(self.worker),
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("after_image", response.json()["details"])

        response = self.client.post(
            reverse("complaints:complaint_complete", kwargs=kwargs),
            data={"before_image": self.image("before.gif"), "after_image": self.image("after.png")},
            **self.auth(self.worker),
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("before_image", response.json()["details"])
        self.assertEqual(self.log_count(complaint), 3)

    def test_invalid_feedback_rating_returns_400(self):
        complaint = self.advance_to(self.create_complaint(), Complaint.Status.VERIFIED)
        response = self.post_json(
            reverse("complaints:complaint_feedback", kwargs={"complaint_id": complaint.pk}),
            {"feedback": "Too good", "rating": 9},
            self.citizen,
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("rating", response.json()["details"])

    def test_list_is_scoped_by_role(self):
        mine = self.create_complaint()
        theirs = self.create_complaint(user=self.other_citizen)
        self.advance_to(theirs, Complaint.Status.ASSIGNED)
        url = reverse("complaints:complaint_list")

        def ids(user, **params):
            response = self.client.get(url, data=params, **self.auth(user))
            self.assertEqual(response.status_code, 200)
            return {item["id"] for item in response.json()["complaints"]}

        self.assertEqual(ids(self.agent), {str(mine.pk), str(theirs.pk)})
        self.assertEqual(ids(self.agent, status="pending"), {str(mine.pk)})
        self.assertEqual(ids(self.citizen), {str(mine.pk)})
        self.assertEqual(ids(self.worker), {str(theirs.pk)})
        self.assertEqual(ids(self.other_worker), set())

        response = self.client.get(url, data={"status": "lost"}, **self.auth(self.agent))
        self.assertEqual(response.status_code, 400)

    def test_detail_and_logs_hidden_from_other_users(self):
        complaint = self.create_complaint(user=self.other_citizen)
        kwargs = {"complaint_id": complaint.pk}
        for name in ("complaints:complaint_detail", "complaints:complaint_logs"):
            response = self.client.get(reverse(name, kwargs=kwargs), **self.auth(self.citizen))
            self.assertEqual(response.status_code, 403)
            response = self.client.get(reverse(name, kwargs=kwargs), **self.auth(self.worker))
            self.assertEqual(response.status_code, 403)
            response = self.client.get(reverse(name, kwargs=kwargs), **self.auth(self.agent))
            self.assertEqual(response.status_code, 200)

    def test_missing_evidence_is_not_found(self):
        complaint = self.create_complaint()
        response = self.client.get(
            reverse("complaints:complaint_evidence", kwargs={"complaint_id": complaint.pk, "kind": "before"}),
            **self.auth(self.citizen),
        )
        self.assertEqual(response.status_code, 404)

    def test_worker_list_and_activation_are_agent_only(self):
        response = self.client.get(reverse("complaints:worker_list"), **self.auth(self.citizen))
        self.assertEqual(response.status_code, 403)

        response = self.client.post(
            reverse("complaints:user_deactivate", kwargs={"user_id": self.other_worker.pk}),
            **self.auth(self.agent),
        )
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["user"]["is_active"])

        response = self.client.get(reverse("complaints:worker_list"), **self.auth(self.agent))
        self.assertEqual([w["email"] for w in response.json()["workers"]], ["worker@example.com"])

        response = self.client.post(
            reverse("complaints:user_activate", kwargs={"user_id": self.other_worker.pk}),
            **self.auth(self.agent),
        )
        self.assertTrue(response.json()["user"]["is_active"])

        response = self.client.post(
            reverse("complaints:user_deactivate", kwargs={"user_id": self.agent.pk}),
            **self.auth(self.agent),
        )
        self.assertEqual(response.status_code, 400)

    def test_dashboard_stats_per_role(self):
        complaint = self.create_complaint()
        self.engine.assign(self.subject(self.agent), complaint.pk, self.worker.pk)
        url = reverse("complaints:dashboard_stats")

        agent = self.client.get(url, **self.auth(self.agent)).json()["stats"]
        self.assertEqual(agent["total_complaints"], 1)
        self.assertEqual(agent["status_breakdown"]["assigned"], 1)

        worker = self.client.get(url, **self.auth(self.worker)).json()["stats"]
        self.assertEqual(worker, {"assigned_tasks": 1, "completed_tasks": 0, "pending_tasks": 1})

        citizen = self.client.get(url, **self.auth(self.citizen)).json()["stats"]
        self.assertEqual(citizen, {"my_complaints": 1, "resolved_complaints": 0, "pending_complaints": 1})

    def test_user_list_and_detail_are_agent_only(self):
        url = reverse("complaints:user_list")
        response = self.client.get(url, **self.auth(self.agent))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()["users"]), User.objects.count())

        response = self.client.get(url, data={"role": "citizen"}, **self.auth(self.agent))
        self.assertEqual(
            {user["email"] for user in response.json()["users"]},
            {"citizen@example.com", "other@example.com"},
        )
        response = self.client.get(url, data={"role": "mayor"}, **self.auth(self.agent))
        self.assertEqual(response.status_code, 400)

        detail_url = reverse("complaints:user_detail", kwargs={"user_id": self.citizen.pk})
        response = self.client.get(detail_url, **self.auth(self.agent))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["user"]["name"], "Carla Citizen")

        for user in (self.citizen, self.worker):
            self.assertEqual(self.client.get(url, **self.auth(user)).status_code, 403)
            self.assertEqual(self.client.get(detail_url, **self.auth(user)).status_code, 403)

        response = self.client.get(
            reverse("complaints:user_detail", kwargs={"user_id": "7b0f5f62-0000-4000-8000-000000000000"}),
            **self.auth(self.agent),
        )
        self.assertEqual(response.status_code, 404)

    def test_assign_with_unknown_worker_is_forbidden_for_non_agents(self):
        complaint = self.create_complaint()
        response = self.post_json(
            reverse("complaints:complaint_assign", kwargs={"complaint_id": complaint.pk}),
            {"worker_id": "7b0f5f62-0000-4000-8000-000000000000"},
            self.citizen,
        )
        self.assertEqual(response.status_code, 403)
