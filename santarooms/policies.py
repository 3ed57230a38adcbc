from __future__ import annotations

from flask import redirect, url_for, flash, request, session
from flask.views import MethodView

from .extensions import db
from .models import Room

JOINED_ROOMS_KEY = "joined_rooms"
ADMIN_ROOMS_KEY = "admin_rooms"


def _granted(key: str, room_id: str) -> bool:
    return room_id in session.get(key, [])


def grant(key: str, room_id: str) -> None:
    rooms = list(session.get(key, []))
    if room_id not in rooms:
        rooms.append(room_id)
    session[key] = rooms


def has_joined(room_id: str) -> bool:
    return _granted(JOINED_ROOMS_KEY, room_id)


def is_room_admin(room_id: str) -> bool:
    return _granted(ADMIN_ROOMS_KEY, room_id)


def load_room(room_id: str) -> Room:
    return db.get_or_404(Room, room_id)


# --------- Class-based view Mixins ----------

class JoinRequiredMixin(MethodView):
    """The visitor must have entered the room's join password this session."""
    def dispatch_request(self, *args, **kwargs):
        room_id = kwargs["room_id"]
        if not has_joined(room_id) and not is_room_admin(room_id):
            flash("Enter the room's join password first.", "info")
            return redirect(url_for("rooms.join", room_id=room_id))
        return super().dispatch_request(*args, **kwargs)


class RoomAdminRequiredMixin(MethodView):
    def dispatch_request(self, *args, **kwargs):
        room_id = kwargs["room_id"]
        if not is_room_admin(room_id):
            flash("Enter the room's admin password first.", "info")
            return redirect(url_for("rooms.admin_login", room_id=room_id))
        return super().dispatch_request(*args, **kwargs)


class OpenRoomRequiredMixin(MethodView):
    """
    Allows GET always.
    Blocks POST/PUT/PATCH/DELETE once the deadline passed or the draw ran.
    """
    def dispatch_request(self, *args, **kwargs):
        if request.method in {"POST", "PUT", "PATCH", "DELETE"}:
            room = load_room(kwargs["room_id"])
            if not room.is_open:
                flash("This room is closed: the deadline has passed.", "info")
                return redirect(url_for("rooms.detail", room_id=room.id))
        return super().dispatch_request(*args, **kwargs)
