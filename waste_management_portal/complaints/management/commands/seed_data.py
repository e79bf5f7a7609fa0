from django.core.management.base import BaseCommand

from complaints.identity import Subject
from complaints.models import Complaint, User
from complaints.workflow import WorkflowEngine

SEED_USERS = [
    ("admin@wastesystem.com", "AgentPass123!", "System Administrator", User.Role.AGENT, "+1234567890"),
    ("worker@wastesystem.com", "WorkerPass123!", "John Worker", User.Role.WORKER, "+1234567891"),
    ("citizen@wastesystem.com", "CitizenPass123!", "Jane Citizen", User.Role.CITIZEN, "+1234567892"),
]

SAMPLE_COMPLAINTS = [
    {
        "title": "Overflowing Garbage Bins",
        "description": "Municipal bins have not been emptied for a week near the market.",
        "latitude": "12.97160000",
        "longitude": "77.59460000",
        "address": "Zone 2 - Market Street",
        "priority": Complaint.Priority.HIGH,
        "progress": "pending",
    },
    {
        "title": "Illegal Dumping Site",
        "description": "Construction debris dumped on the footpath beside the park.",
        "latitude": "12.93520000",
        "longitude": "77.62450000",
        "address": "Park Road, Block A",
        "priority": Complaint.Priority.MEDIUM,
        "progress": "in_progress",
    },
    {
        "title": "Missed Household Collection",
        "description": "Door-to-door collection skipped the whole lane twice this month.",
        "latitude": "12.91410000",
        "longitude": "77.63180000",
        "address": "4th Cross, Sector 6",
        "priority": Complaint.Priority.LOW,
        "progress": "verified",
    },
]


class Command(BaseCommand):
    help = "Seed the database with sample users and complaints."

    def handle(self, *args, **options):
        users = {}
        for email, password, name, role, phone in SEED_USERS:
            user = User.objects.filter(email=email).first()
            if user is None:
                user = User.objects.create_user(
                    email=email,
                    password=password,
                    full_name=name,
                    role=role,
                    phone=phone,
                )
            users[role] = user

        agent = Subject.from_user(users[User.Role.AGENT])
        worker = Subject.from_user(users[User.Role.WORKER])
        citizen = Subject.from_user(users[User.Role.CITIZEN])
        engine = WorkflowEngine.default()

        created_count = 0
        for item in SAMPLE_COMPLAINTS:
            if Complaint.objects.filter(reporter_id=citizen.id, title=item["title"]).exists():
                continue
            complaint = engine.submit(
                citizen,
                title=item["title"],
                description=item["description"],
                latitude=item["latitude"],
                longitude=item["longitude"],
                address=item["address"],
                priority=item["priority"],
            )
            created_count += 1
            if item["progress"] == "pending":
                continue

            engine.assign(agent, complaint.pk, worker.id)
            engine.start(worker, complaint.pk)
            if item["progress"] == "in_progress":
                continue

            before = engine.blob_store.put(b"seed-before", ".png")
            after = engine.blob_store.put(b"seed-after", ".png")
            engine.complete(worker, complaint.pk, before, after)
            engine.verify(agent, complaint.pk, approved=True)
            engine.feedback(citizen, complaint.pk, "Cleared quickly, thank you.", 5)

        self.stdout.write(self.style.SUCCESS("Seed complete."))
        self.stdout.write(
            self.style.WARNING(
                "Credentials: "
                + ", ".join(f"{email} / {password}" for email, password, *_ in SEED_USERS)
            )
        )
        self.stdout.write(self.style.SUCCESS(f"New complaints created: {created_count}"))
