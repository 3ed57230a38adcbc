import uuid
from datetime import datetime, timezone

from .extensions import db


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_room_id() -> str:
    return uuid.uuid4().hex


class Room(db.Model):
    __tablename__ = "rooms"

    id = db.Column(db.String(32), primary_key=True, default=_new_room_id)
    name = db.Column(db.String(64), unique=True, nullable=False)

    # argon2 hashes (see security.hash_password)
    admin_password_hash = db.Column(db.String(255), nullable=False)
    join_password_hash = db.Column(db.String(255), nullable=False)

    deadline = db.Column(db.DateTime, nullable=False)

    # Flipped once by the draw scheduler; never reset.
    draw_completed = db.Column(db.Boolean, default=False, nullable=False)
    drawn_at = db.Column(db.DateTime, nullable=True)
    # Lease taken by whichever process is drawing the room right now.
    draw_claimed_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    participants = db.relationship(
        "Participant",
        back_populates="room",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Participant.registered_at",
    )

    @property
    def is_open(self) -> bool:
        return not self.draw_completed and utcnow() < self.deadline


class Participant(db.Model):
    __tablename__ = "participants"

    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(db.String(32), db.ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False)
    name = db.Column(db.String(64), nullable=False)

    # nonce || AES-GCM ciphertext of the address. Never stored in plaintext.
    email_ciphertext = db.Column(db.LargeBinary, nullable=False)
    # Keyed HMAC of the normalized address, only used for uniqueness.
    email_digest = db.Column(db.String(64), nullable=False)

    password_hash = db.Column(db.String(255), nullable=False)

    registered_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    room = db.relationship("Room", back_populates="participants")

    __table_args__ = (
        db.UniqueConstraint("room_id", "name", name="uq_participant_room_name"),
        db.UniqueConstraint("room_id", "email_digest", name="uq_participant_room_email"),
    )
