import base64
from datetime import timedelta

import pytest
from click.testing import CliRunner

from santarooms import create_app
from santarooms.cli import keygen_command
from santarooms.extensions import db
from santarooms.models import Participant, Room, utcnow
from santarooms.security import StartupFatal, email_digest, encrypt_email, hash_password, load_pii_key
from santarooms.services.notifier import LogNotifier, SmtpNotifier


def base_config(tmp_path, **overrides):
    config = {
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'app.db'}",
        "SANTA_PII_KEY": base64.b64encode(bytes(32)).decode(),
        "SANTA_SCHEDULER_ENABLED": False,
    }
    config.update(overrides)
    return config


def test_missing_key_is_fatal(tmp_path):
    with pytest.raises(StartupFatal):
        create_app(base_config(tmp_path, SANTA_PII_KEY=""))


def test_wrong_length_key_is_fatal(tmp_path):
    with pytest.raises(StartupFatal):
        create_app(base_config(tmp_path, SANTA_PII_KEY=base64.b64encode(bytes(16)).decode()))


def test_unreachable_database_is_fatal(tmp_path):
    missing_dir = tmp_path / "nope" / "deeper"
    with pytest.raises(StartupFatal):
        create_app(base_config(tmp_path, SQLALCHEMY_DATABASE_URI=f"sqlite:///{missing_dir / 'app.db'}"))


def test_app_wires_scheduler_and_notifier(tmp_path):
    app = create_app(base_config(tmp_path))
    scheduler = app.extensions["draw_scheduler"]
    assert not scheduler.running
    assert isinstance(scheduler.notifier, LogNotifier)
    assert app.extensions["pii_key"] == bytes(32)

    smtp_app = create_app(base_config(tmp_path, SANTA_NOTIFIER="smtp", SANTA_SMTP_HOST="mail.example.com"))
    notifier = smtp_app.extensions["draw_scheduler"].notifier
    assert isinstance(notifier, SmtpNotifier)
    assert notifier.host == "mail.example.com"


def test_draw_now_command(tmp_path):
    app = create_app(base_config(tmp_path))
    with app.app_context():
        db.create_all()
    result = app.test_cli_runner().invoke(args=["draw-now"])
    assert result.exit_code == 0
    assert "No rooms were drawn." in result.output


def test_keygen_command():
    result = CliRunner().invoke(keygen_command)
    assert result.exit_code == 0
    assert len(load_pii_key(result.output.strip())) == 32


def test_scheduler_stays_off_under_flask_cli(tmp_path, monkeypatch):
    monkeypatch.setenv("FLASK_RUN_FROM_CLI", "true")
    monkeypatch.delenv("SANTA_SCHEDULER_ENABLED", raising=False)
    config = base_config(tmp_path)
    del config["SANTA_SCHEDULER_ENABLED"]

    app = create_app(config)

    assert app.config["SANTA_SCHEDULER_ENABLED"] is False
    assert not app.extensions["draw_scheduler"].running


def test_two_processes_draw_a_room_once(tmp_path):
    """A draw-now run that overlaps the server's own tick sends nothing."""
    server = create_app(base_config(tmp_path))
    command = create_app(base_config(tmp_path))
    key = server.extensions["pii_key"]

    with server.app_context():
        db.create_all()
        room = Room(
            name="Office party",
            deadline=utcnow() - timedelta(hours=1),
            admin_password_hash=hash_password("a"),
            join_password_hash=hash_password("j"),
        )
        db.session.add(room)
        db.session.flush()
        for name in ["Alice", "Bob", "Carol"]:
            email = f"{name.lower()}@example.com"
            db.session.add(Participant(
                room_id=room.id,
                name=name,
                email_ciphertext=encrypt_email(key, email),
                email_digest=email_digest(key, email),
                password_hash=hash_password("pw"),
            ))
        db.session.commit()
        room_id = room.id

    sent = []
    overlapping = []

    class InterleavingNotifier:
        def notify(self, assignment, room):
            if not overlapping:
                overlapping.append(command.extensions["draw_scheduler"].tick())
            sent.append(assignment.giver.name)

    server_scheduler = server.extensions["draw_scheduler"]
    server_scheduler.notifier = InterleavingNotifier()
    command.extensions["draw_scheduler"].notifier = InterleavingNotifier()

    [result] = server_scheduler.tick()

    assert overlapping == [[]]
    assert sorted(sent) == ["Alice", "Bob", "Carol"]
    assert result.completed
    with server.app_context():
        assert db.session.get(Room, room_id).draw_completed
