"""Shared fixtures for the santarooms test suite."""

from __future__ import annotations

import base64
import random
from datetime import timedelta

import pytest

from santarooms import create_app
from santarooms.extensions import db
from santarooms.models import Participant, Room, utcnow
from santarooms.security import email_digest, encrypt_email, hash_password
from santarooms.services.store import ParticipantRecord, RoomRecord, RoomStore

TEST_KEY = bytes(range(32))
TEST_KEY_B64 = base64.b64encode(TEST_KEY).decode("ascii")


# ---------------------------------------------------------------------------
# In-memory collaborators for the draw scheduler
# ---------------------------------------------------------------------------

class FakeStore(RoomStore):
    def __init__(self):
        self.rooms: dict[str, RoomRecord] = {}
        self.participants: dict[str, list[ParticipantRecord]] = {}
        self.calls: list[tuple] = []
        self.fail_list_rooms = False
        self.fail_list_participants: set[str] = set()
        self.fail_mark: set[str] = set()
        self.claimed: set[str] = set()

    def add_room(self, room_id, names, deadline=None, draw_completed=False, key=TEST_KEY):
        deadline = deadline or utcnow() - timedelta(hours=1)
        self.rooms[room_id] = RoomRecord(
            id=room_id, name=f"Room {room_id}", deadline=deadline, draw_completed=draw_completed,
        )
        self.participants[room_id] = [
            ParticipantRecord(
                id=i + 1,
                room_id=room_id,
                name=name,
                email_ciphertext=encrypt_email(key, f"{name.lower()}@example.com"),
            )
            for i, name in enumerate(names)
        ]
        return self.rooms[room_id]

    def list_rooms(self):
        self.calls.append(("list_rooms",))
        if self.fail_list_rooms:
            raise RuntimeError("database is down")
        return list(self.rooms.values())

    def list_participants(self, room_id):
        self.calls.append(("list_participants", room_id))
        if room_id in self.fail_list_participants:
            raise RuntimeError("participants unavailable")
        return list(self.participants[room_id])

    def claim_draw(self, room_id):
        self.calls.append(("claim_draw", room_id))
        if self.rooms[room_id].draw_completed or room_id in self.claimed:
            return False
        self.claimed.add(room_id)
        return True

    def release_draw(self, room_id):
        self.calls.append(("release_draw", room_id))
        self.claimed.discard(room_id)

    def mark_draw_completed(self, room_id):
        self.calls.append(("mark_draw_completed", room_id))
        if room_id in self.fail_mark:
            raise RuntimeError("write failed")
        room = self.rooms[room_id]
        if room.draw_completed:
            return False
        self.rooms[room_id] = RoomRecord(
            id=room.id, name=room.name, deadline=room.deadline, draw_completed=True,
        )
        return True

    def call_names(self):
        return [c[0] for c in self.calls]


class FakeNotifier:
    def __init__(self, fail_for: set[str] | None = None):
        self.fail_for = fail_for or set()
        self.attempts: list = []
        self.delivered: list = []

    def notify(self, assignment, room):
        self.attempts.append(assignment)
        if assignment.giver.name in self.fail_for:
            raise RuntimeError(f"mailbox full for {assignment.giver.name}")
        self.delivered.append(assignment)


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def fake_notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


# ---------------------------------------------------------------------------
# Flask application
# ---------------------------------------------------------------------------

@pytest.fixture
def app(tmp_path):
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'test.db'}",
        "SANTA_PII_KEY": TEST_KEY_B64,
        "SANTA_SCHEDULER_ENABLED": False,
        "SANTA_NOTIFIER": "log",
        "WTF_CSRF_ENABLED": False,
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_room(app):
    def _make_room(name="Office party", deadline=None, admin_password="admin-pw", join_password="join-pw",
                   draw_completed=False):
        room = Room(
            name=name,
            deadline=deadline or utcnow() + timedelta(days=7),
            admin_password_hash=hash_password(admin_password),
            join_password_hash=hash_password(join_password),
            draw_completed=draw_completed,
        )
        db.session.add(room)
        db.session.commit()
        return room
    return _make_room


@pytest.fixture
def make_participant(app):
    def _make_participant(room, name, email=None, password="pw"):
        email = email or f"{name.lower()}@example.com"
        p = Participant(
            room_id=room.id,
            name=name,
            email_ciphertext=encrypt_email(TEST_KEY, email),
            email_digest=email_digest(TEST_KEY, email),
            password_hash=hash_password(password),
        )
        db.session.add(p)
        db.session.commit()
        return p
    return _make_participant


@pytest.fixture
def notifier_factory():
    return FakeNotifier
