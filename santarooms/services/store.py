from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Participant, Room, utcnow

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    pass


@dataclass(frozen=True)
class RoomRecord:
    id: str
    name: str
    deadline: datetime
    draw_completed: bool


@dataclass(frozen=True)
class ParticipantRecord:
    id: int
    room_id: str
    name: str
    email_ciphertext: bytes


class RoomStore:
    """What the draw scheduler needs from persistent state."""

    def list_rooms(self) -> list[RoomRecord]:
        raise NotImplementedError

    def list_participants(self, room_id: str) -> list[ParticipantRecord]:
        raise NotImplementedError

    def claim_draw(self, room_id: str) -> bool:
        """
        Take the room's draw lease. Returns False when the room is already
        drawn or another worker holds a live lease on it.
        """
        raise NotImplementedError

    def release_draw(self, room_id: str) -> None:
        """Give the lease back after a draw that did not go ahead."""
        raise NotImplementedError

    def mark_draw_completed(self, room_id: str) -> bool:
        """Flip the room's flag. Returns False if it was already flipped."""
        raise NotImplementedError


class SqlRoomStore(RoomStore):
    """
    RoomStore over the Flask-SQLAlchemy models.

    Each call runs in its own application context so the store can be used
    from the scheduler's worker thread; results are detached snapshots.
    """

    def __init__(self, app, claim_ttl: timedelta = timedelta(hours=1)):
        self.app = app
        self.claim_ttl = claim_ttl

    def list_rooms(self) -> list[RoomRecord]:
        with self.app.app_context():
            try:
                rooms = db.session.execute(select(Room).order_by(Room.deadline)).scalars().all()
                return [
                    RoomRecord(id=r.id, name=r.name, deadline=r.deadline, draw_completed=r.draw_completed)
                    for r in rooms
                ]
            except SQLAlchemyError as e:
                raise StoreError("Failed to list rooms") from e

    def list_participants(self, room_id: str) -> list[ParticipantRecord]:
        with self.app.app_context():
            try:
                rows = db.session.execute(
                    select(Participant)
                    .filter_by(room_id=room_id)
                    .order_by(Participant.registered_at, Participant.id)
                ).scalars().all()
                return [
                    ParticipantRecord(id=p.id, room_id=p.room_id, name=p.name, email_ciphertext=p.email_ciphertext)
                    for p in rows
                ]
            except SQLAlchemyError as e:
                raise StoreError(f"Failed to list participants of room {room_id}") from e

    def mark_draw_completed(self, room_id: str) -> bool:
        with self.app.app_context():
            try:
                # Conditional so the flag can only ever go false -> true once.
                result = db.session.execute(
                    update(Room)
                    .where(Room.id == room_id, Room.draw_completed.is_(False))
                    .values(draw_completed=True, drawn_at=utcnow())
                )
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                raise StoreError(f"Failed to mark room {room_id} as drawn") from e

        if result.rowcount == 0:
            logger.warning("Room %s was already marked drawn", room_id)
            return False
        return True

    def claim_draw(self, room_id: str) -> bool:
        now = utcnow()
        with self.app.app_context():
            try:
                # A lease older than claim_ttl belongs to a worker that died mid-draw.
                result = db.session.execute(
                    update(Room)
                    .where(
                        Room.id == room_id,
                        Room.draw_completed.is_(False),
                        or_(Room.draw_claimed_at.is_(None), Room.draw_claimed_at < now - self.claim_ttl),
                    )
                    .values(draw_claimed_at=now)
                )
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                raise StoreError(f"Failed to claim room {room_id} for drawing") from e
        return result.rowcount == 1

    def release_draw(self, room_id: str) -> None:
        with self.app.app_context():
            try:
                db.session.execute(
                    update(Room)
                    .where(Room.id == room_id, Room.draw_completed.is_(False))
                    .values(draw_claimed_at=None)
                )
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                raise StoreError(f"Failed to release draw lease on room {room_id}") from e
