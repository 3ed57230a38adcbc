"""Delivery of "you are gifting X" messages.

A notifier sends exactly one message per call and raises :class:`SendFailure`
when it cannot. It never retries; the draw scheduler decides what a failed
send means for the room.

Usage::

    notifier = SmtpNotifier(
        host="smtp.example.com",
        port=587,
        sender="santa@example.com",
        username="santa@example.com",
        password="app-password",
    )
    notifier.notify(assignment, room)
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage

logger = logging.getLogger(__name__)


class SendFailure(RuntimeError):
    pass


def build_message(sender: str, assignment, room) -> EmailMessage:
    giver = assignment.giver
    msg = EmailMessage()
    msg["Subject"] = f"Your Secret Santa draw for {room.name}"
    msg["From"] = sender
    msg["To"] = giver.email
    msg.set_content(
        f"Hi {giver.name},\n\n"
        f"The draw for \"{room.name}\" has happened.\n"
        f"You are gifting: {assignment.giftee_name}\n\n"
        "Keep it secret!\n"
    )
    return msg


class Notifier:
    """Base class for notification transports."""

    def notify(self, assignment, room) -> None:
        raise NotImplementedError


@dataclass
class SmtpNotifier(Notifier):
    host: str
    port: int = 587
    sender: str = ""
    username: str = ""
    password: str = ""
    use_tls: bool = True
    timeout: float = 10.0

    def notify(self, assignment, room) -> None:
        msg = build_message(self.sender, assignment, room)
        try:
            self._smtp_send(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise SendFailure(f"SMTP delivery to participant {assignment.giver.id} failed") from e
        logger.info("Notification sent: room=%s participant=%s", room.id, assignment.giver.id)

    def _smtp_send(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls(context=ssl.create_default_context())
            if self.username:
                server.login(self.username, self.password)
            server.send_message(msg)


class LogNotifier(Notifier):
    """Development transport: records that a message would have gone out."""

    def __init__(self) -> None:
        self.sent_count = 0

    def notify(self, assignment, room) -> None:
        self.sent_count += 1
        logger.info(
            "Notification issued (log transport): room=%s participant=%s",
            room.id, assignment.giver.id,
        )
