from __future__ import annotations

from flask import Blueprint, render_template
from flask.views import MethodView

from ..models import Room, utcnow


public_bp = Blueprint("public", __name__)


class LandingView(MethodView):
    def get(self):
        now = utcnow()
        return render_template(
            "landing.html",
            num_open_rooms=Room.query.filter(Room.draw_completed.is_(False), Room.deadline > now).count(),
            num_drawn_rooms=Room.query.filter_by(draw_completed=True).count(),
        )


public_bp.add_url_rule("/", view_func=LandingView.as_view("landing"))
