import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .security import generate_pii_key


@click.command("draw-now")
@with_appcontext
def draw_now_command():
    """Run one draw tick immediately."""
    results = current_app.extensions["draw_scheduler"].tick()
    if not results:
        click.echo("No rooms were drawn.")
    for r in results:
        if r.double_draw:
            status = "ALREADY DRAWN ELSEWHERE"
        elif r.completed:
            status = "completed"
        else:
            status = "NOT MARKED DRAWN"
        click.echo(
            f"Room {r.room_id}: {r.assignments} assignments, {r.sent} sent, "
            f"{r.failed} failed, {r.excluded} excluded ({status})"
        )


@click.command("init-db")
@with_appcontext
def init_db_command():
    """Create all tables."""
    db.create_all()
    click.echo("Database tables created.")


@click.command("santarooms-keygen")
def keygen_command():
    """Print a fresh base64 value for SANTA_PII_KEY."""
    click.echo(generate_pii_key())


def register_commands(app):
    app.cli.add_command(draw_now_command)
    app.cli.add_command(init_db_command)
