from __future__ import annotations

from datetime import datetime

from flask import Blueprint, render_template, redirect, url_for, flash, request, current_app
from flask.views import MethodView
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Room, Participant, utcnow
from ..policies import (
    ADMIN_ROOMS_KEY,
    JOINED_ROOMS_KEY,
    JoinRequiredMixin,
    OpenRoomRequiredMixin,
    RoomAdminRequiredMixin,
    grant,
    has_joined,
    is_room_admin,
    load_room,
)
from ..security import email_digest, encrypt_email, hash_password, verify_password


rooms_bp = Blueprint("rooms", __name__, url_prefix="/rooms")

DEADLINE_FORMAT = "%Y-%m-%dT%H:%M"


def _parse_deadline(value: str) -> datetime | None:
    try:
        return datetime.strptime(value, DEADLINE_FORMAT)
    except ValueError:
        return None


def _room_name_taken(name: str) -> bool:
    return Room.query.filter_by(name=name).first() is not None


def _name_enrolled(room_id: str, name: str) -> bool:
    return Participant.query.filter_by(room_id=room_id, name=name).first() is not None


def _email_enrolled(room_id: str, digest: str) -> bool:
    return Participant.query.filter_by(room_id=room_id, email_digest=digest).first() is not None


class CreateRoomView(MethodView):
    def get(self):
        return render_template("rooms/create.html")

    def post(self):
        name = (request.form.get("name") or "").strip()
        deadline = _parse_deadline((request.form.get("deadline") or "").strip())
        admin_password = request.form.get("admin_password") or ""
        join_password = request.form.get("join_password") or ""

        if not name:
            flash("Room name is required.", "error")
            return render_template("rooms/create.html")

        if deadline is None:
            flash("Deadline must look like 2025-12-20T18:00 (UTC).", "error")
            return render_template("rooms/create.html")

        if deadline <= utcnow():
            flash("Deadline must be in the future.", "error")
            return render_template("rooms/create.html")

        if not admin_password or not join_password:
            flash("Both an admin password and a join password are required.", "error")
            return render_template("rooms/create.html")

        if _room_name_taken(name):
            flash("That room name is already taken.", "error")
            return render_template("rooms/create.html")

        room = Room(
            name=name,
            deadline=deadline,
            admin_password_hash=hash_password(admin_password),
            join_password_hash=hash_password(join_password),
        )
        db.session.add(room)
        try:
            db.session.commit()
        except IntegrityError:
            # Someone created the same name between the check and the insert.
            db.session.rollback()
            flash("That room name is already taken.", "error")
            return render_template("rooms/create.html")

        grant(ADMIN_ROOMS_KEY, room.id)
        grant(JOINED_ROOMS_KEY, room.id)
        flash("Room created. Share its link and join password with your participants.", "success")
        return redirect(url_for("rooms.detail", room_id=room.id))


class RoomDetailView(MethodView):
    def get(self, room_id: str):
        room = load_room(room_id)
        return render_template(
            "rooms/detail.html",
            room=room,
            num_participants=Participant.query.filter_by(room_id=room.id).count(),
            joined=has_joined(room.id),
            is_admin=is_room_admin(room.id),
        )


class JoinView(MethodView):
    def get(self, room_id: str):
        room = load_room(room_id)
        return render_template("rooms/join.html", room=room)

    def post(self, room_id: str):
        room = load_room(room_id)
        password = request.form.get("join_password") or ""
        if not password or not verify_password(password, room.join_password_hash):
            flash("Wrong join password.", "error")
            return render_template("rooms/join.html", room=room)

        grant(JOINED_ROOMS_KEY, room.id)
        return redirect(url_for("rooms.enroll", room_id=room.id))


class EnrollView(JoinRequiredMixin, OpenRoomRequiredMixin):
    def get(self, room_id: str):
        room = load_room(room_id)
        return render_template("rooms/enroll.html", room=room)

    def post(self, room_id: str):
        room = load_room(room_id)
        name = (request.form.get("name") or "").strip()
        email = (request.form.get("email") or "").strip()
        password = request.form.get("password") or ""

        if not name or not email or not password:
            flash("Name, email and password are all required.", "error")
            return render_template("rooms/enroll.html", room=room)

        if "@" not in email:
            flash("That does not look like an email address.", "error")
            return render_template("rooms/enroll.html", room=room)

        if _name_enrolled(room.id, name):
            flash("That name is already taken in this room.", "error")
            return render_template("rooms/enroll.html", room=room)

        key = current_app.extensions["pii_key"]
        digest = email_digest(key, email)
        if _email_enrolled(room.id, digest):
            flash("That email is already enrolled in this room.", "error")
            return render_template("rooms/enroll.html", room=room)

        p = Participant(
            room_id=room.id,
            name=name,
            email_ciphertext=encrypt_email(key, email),
            email_digest=digest,
            password_hash=hash_password(password),
        )
        db.session.add(p)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            flash("That name or email is already enrolled in this room.", "error")
            return render_template("rooms/enroll.html", room=room)

        flash("You're in! You'll get an email with your giftee once the deadline passes.", "success")
        return redirect(url_for("rooms.detail", room_id=room.id))


class WithdrawView(JoinRequiredMixin, OpenRoomRequiredMixin):
    def post(self, room_id: str):
        room = load_room(room_id)
        name = (request.form.get("name") or "").strip()
        password = request.form.get("password") or ""

        p = Participant.query.filter_by(room_id=room.id, name=name).first()
        if not p or not password or not verify_password(password, p.password_hash):
            flash("Invalid name or password.", "error")
            return redirect(url_for("rooms.detail", room_id=room.id))

        db.session.delete(p)
        db.session.commit()
        flash("You have left the room.", "success")
        return redirect(url_for("rooms.detail", room_id=room.id))


class AdminLoginView(MethodView):
    def get(self, room_id: str):
        room = load_room(room_id)
        return render_template("rooms/admin_login.html", room=room)

    def post(self, room_id: str):
        room = load_room(room_id)
        password = request.form.get("admin_password") or ""
        if not password or not verify_password(password, room.admin_password_hash):
            flash("Wrong admin password.", "error")
            return render_template("rooms/admin_login.html", room=room)

        grant(ADMIN_ROOMS_KEY, room.id)
        return redirect(url_for("rooms.admin", room_id=room.id))


class AdminView(RoomAdminRequiredMixin):
    def get(self, room_id: str):
        room = load_room(room_id)
        participants = Participant.query.filter_by(room_id=room.id).order_by(Participant.name.asc()).all()
        return render_template("rooms/admin.html", room=room, participants=participants)


class AdminDeleteParticipantView(RoomAdminRequiredMixin, OpenRoomRequiredMixin):
    def post(self, room_id: str, participant_id: int):
        p = Participant.query.filter_by(room_id=room_id, id=participant_id).first_or_404()
        db.session.delete(p)
        db.session.commit()
        flash(f"Removed participant: {p.name}", "success")
        return redirect(url_for("rooms.admin", room_id=room_id))


# Register routes
rooms_bp.add_url_rule("/new", view_func=CreateRoomView.as_view("create"), methods=["GET", "POST"])
rooms_bp.add_url_rule("/<room_id>", view_func=RoomDetailView.as_view("detail"))
rooms_bp.add_url_rule("/<room_id>/join", view_func=JoinView.as_view("join"), methods=["GET", "POST"])
rooms_bp.add_url_rule("/<room_id>/enroll", view_func=EnrollView.as_view("enroll"), methods=["GET", "POST"])
rooms_bp.add_url_rule("/<room_id>/withdraw", view_func=WithdrawView.as_view("withdraw"), methods=["POST"])

rooms_bp.add_url_rule("/<room_id>/admin/login", view_func=AdminLoginView.as_view("admin_login"), methods=["GET", "POST"])
rooms_bp.add_url_rule("/<room_id>/admin", view_func=AdminView.as_view("admin"))
rooms_bp.add_url_rule(
    "/<room_id>/admin/participants/<int:participant_id>/delete",
    view_func=AdminDeleteParticipantView.as_view("admin_delete_participant"),
    methods=["POST"],
)
