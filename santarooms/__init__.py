from __future__ import annotations

import atexit
import logging
import os
from datetime import timedelta
from typing import Any, Mapping

from flask import Flask
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .extensions import db, migrate, csrf
from .security import StartupFatal, load_pii_key
from .services.draw import DrawScheduler
from .services.notifier import LogNotifier, SmtpNotifier
from .services.store import SqlRoomStore
from .views.public import public_bp
from .views.rooms import rooms_bp

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _configure_logging(level_name: str) -> None:
    root = logging.getLogger()
    level = getattr(logging, level_name.upper(), logging.INFO)
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)


def _build_notifier(app: Flask):
    if app.config["SANTA_NOTIFIER"] == "smtp":
        return SmtpNotifier(
            host=app.config["SANTA_SMTP_HOST"],
            port=app.config["SANTA_SMTP_PORT"],
            sender=app.config["SANTA_SMTP_SENDER"],
            username=app.config["SANTA_SMTP_USERNAME"],
            password=app.config["SANTA_SMTP_PASSWORD"],
            use_tls=app.config["SANTA_SMTP_USE_TLS"],
            timeout=app.config["SANTA_SMTP_TIMEOUT"],
        )
    return LogNotifier()


def create_app(config: Mapping[str, Any] | None = None) -> Flask:
    app = Flask(__name__)

    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-change-me")
    app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get("DATABASE_URL", "sqlite:///santarooms.db")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    # Base64 of 32 random bytes; `santarooms-keygen` prints one.
    app.config["SANTA_PII_KEY"] = os.environ.get("SANTA_PII_KEY", "")

    # `flask <command>` processes only start the timer when asked to.
    app.config["SANTA_SCHEDULER_ENABLED"] = _env_bool(
        "SANTA_SCHEDULER_ENABLED", os.environ.get("FLASK_RUN_FROM_CLI") != "true"
    )
    app.config["SANTA_DRAW_INTERVAL_SECONDS"] = int(os.environ.get("SANTA_DRAW_INTERVAL_SECONDS", "3600"))
    app.config["SANTA_STORE_TIMEOUT"] = float(os.environ.get("SANTA_STORE_TIMEOUT", "10"))
    app.config["SANTA_DRAW_CLAIM_TTL_SECONDS"] = int(os.environ.get("SANTA_DRAW_CLAIM_TTL_SECONDS", "3600"))

    app.config["SANTA_NOTIFIER"] = os.environ.get("SANTA_NOTIFIER", "log").strip().lower()
    app.config["SANTA_SMTP_HOST"] = os.environ.get("SANTA_SMTP_HOST", "localhost")
    app.config["SANTA_SMTP_PORT"] = int(os.environ.get("SANTA_SMTP_PORT", "587"))
    app.config["SANTA_SMTP_SENDER"] = os.environ.get("SANTA_SMTP_SENDER", "santa@localhost")
    app.config["SANTA_SMTP_USERNAME"] = os.environ.get("SANTA_SMTP_USERNAME", "")
    app.config["SANTA_SMTP_PASSWORD"] = os.environ.get("SANTA_SMTP_PASSWORD", "")
    app.config["SANTA_SMTP_USE_TLS"] = _env_bool("SANTA_SMTP_USE_TLS", True)
    app.config["SANTA_SMTP_TIMEOUT"] = float(os.environ.get("SANTA_SMTP_TIMEOUT", "10"))

    app.config["LOG_LEVEL"] = os.environ.get("LOG_LEVEL", "INFO")

    if config:
        app.config.update(config)

    # Store calls must not hang a tick forever.
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
        app.config.setdefault(
            "SQLALCHEMY_ENGINE_OPTIONS",
            {"connect_args": {"timeout": app.config["SANTA_STORE_TIMEOUT"], "check_same_thread": False}},
        )
    else:
        app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", {"pool_timeout": app.config["SANTA_STORE_TIMEOUT"]})

    _configure_logging(app.config["LOG_LEVEL"])

    # Decode once; a broken key must stop the process here.
    app.extensions["pii_key"] = load_pii_key(app.config["SANTA_PII_KEY"])

    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)

    with app.app_context():
        try:
            db.session.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            raise StartupFatal("Database is unreachable") from e
        finally:
            db.session.remove()

    # Blueprints
    app.register_blueprint(public_bp)
    app.register_blueprint(rooms_bp)

    draw_scheduler = DrawScheduler(
        store=SqlRoomStore(app, claim_ttl=timedelta(seconds=app.config["SANTA_DRAW_CLAIM_TTL_SECONDS"])),
        notifier=_build_notifier(app),
        key=app.extensions["pii_key"],
        interval_seconds=app.config["SANTA_DRAW_INTERVAL_SECONDS"],
    )
    app.extensions["draw_scheduler"] = draw_scheduler

    from .cli import register_commands
    register_commands(app)

    if app.config["SANTA_SCHEDULER_ENABLED"]:
        draw_scheduler.start()
        atexit.register(draw_scheduler.stop)

    return app
