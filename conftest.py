import os
import tempfile
from datetime import timedelta

import pytest

_TMP = tempfile.mkdtemp(prefix="cems-test-")
os.environ["DATABASE_PATH"] = os.path.join(_TMP, "test.db")
os.environ["TICKET_DIR"] = os.path.join(_TMP, "tickets")
os.environ["SECRET_KEY"] = "test-secret"
os.environ["PAYMENT_SIMULATION"] = "true"
os.environ["MAIL_SUPPRESS_SEND"] = "true"

from fastapi.testclient import TestClient  # noqa: E402
from fastapi_mail import FastMail  # noqa: E402
from fastapi_mail.errors import ConnectionErrors  # noqa: E402
from passlib.hash import bcrypt  # noqa: E402

import main  # noqa: E402
from main import app, db, scheduler  # noqa: E402
from models import Event, User  # noqa: E402
from utils import new_id, utcnow  # noqa: E402

TICKET_DIR = os.environ["TICKET_DIR"]


class Mailbox:
    """Messages fastapi-mail dispatched during a test. Set `fail` to refuse delivery."""

    def __init__(self, outbox):
        self.outbox = outbox
        self.fail = False


@pytest.fixture(autouse=True)
def clean_db():
    with db.transaction() as cursor:
        for table in ("payments", "registrations", "events", "users"):
            cursor.execute(f"DELETE FROM {table}")
    scheduler.clear()
    yield


@pytest.fixture(autouse=True)
def mailbox(monkeypatch):
    send_message = FastMail.send_message

    with main.notifier.fast_mail.record_messages() as outbox:
        box = Mailbox(outbox)

        async def guarded_send(fast_mail, message, template_name=None):
            if box.fail:
                raise ConnectionErrors("Exception raised [Errno 111] Connection refused")
            await send_message(fast_mail, message, template_name)

        monkeypatch.setattr(FastMail, "send_message", guarded_send)
        yield box


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def create_user():
    def _create(name="Test Student", email=None, role="student", password="password123"):
        user = User(
            id=new_id(),
            name=name,
            email=email or f"{new_id()[:10]}@example.com",
            password=bcrypt.using(rounds=4).hash(password),
            role=role,
            department="CSE",
            year=2,
            created_at=utcnow(),
        )
        db.add_user(user)
        return user
    return _create


@pytest.fixture
def organizer(create_user):
    return create_user(name="Test Organizer", email="organizer@example.com", role="organizer")


@pytest.fixture
def admin(create_user):
    return create_user(name="Test Admin", email="admin@example.com", role="admin")


@pytest.fixture
def student(create_user):
    return create_user(name="Test Student", email="student@example.com")


@pytest.fixture
def login(client):
    def _login(user, password="password123"):
        response = client.post("/auth/login", json={"email": user.email, "password": password})
        return {"Authorization": f"Bearer {response.json()['access_token']}"}
    return _login


@pytest.fixture
def create_event(organizer):
    def _create(capacity=10, is_paid=False, price=0.0, is_active=True, organizer_id=None,
                title="Tech Talk", starts_in=timedelta(days=7), duration=timedelta(hours=2)):
        start = utcnow().replace(microsecond=0) + starts_in
        event = Event(
            id=new_id(),
            title=title,
            description="An event for tests",
            start_date=start,
            end_date=start + duration,
            location="Main Hall",
            category="technical",
            capacity=capacity,
            organizer_id=organizer_id or organizer.id,
            is_paid=is_paid,
            price=price,
            is_active=is_active,
            created_at=utcnow(),
        )
        assert main.manager.add_event(event)
        return event
    return _create


@pytest.fixture
def ticket_files():
    def _list():
        return os.listdir(TICKET_DIR) if os.path.isdir(TICKET_DIR) else []
    return _list
