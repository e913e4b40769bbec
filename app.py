import logging
import time
from datetime import timedelta

from flask import Flask, jsonify
from config import Config
from routes import (
    health_bp,
    resource_bp,
    availability_bp,
    booking_bp,
    participant_bp,
    waitlist_bp,
    payments_bp,
    webhook_bp,
    audit_bp,
)

from models import db
from flask_migrate import Migrate
from services.errors import BookingError
from services.notifications import Notifier
from utils.auth_context import load_current_identity

logger = logging.getLogger(__name__)


def create_app(config_object=None):
    app = Flask(__name__)
    app.config.from_object(config_object or Config)

    logging.basicConfig(
        level=getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(resource_bp)
    app.register_blueprint(availability_bp)
    app.register_blueprint(booking_bp)
    app.register_blueprint(participant_bp)
    app.register_blueprint(waitlist_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhook_bp)
    app.register_blueprint(audit_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    # Booking emails
    Notifier(app)

    @app.before_request
    def _load_identity():
        load_current_identity()

    @app.errorhandler(BookingError)
    def _booking_error(exc):
        if exc.status_code >= 500:
            logger.error("Booking error: %s", exc.message)
        else:
            logger.info("%s: %s", exc.code, exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        # CSP can be strict if you serve frontend separately; for API it's fine to keep minimal:
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp


    register_cli(app)


    return app

#-------------------------
import click
from services import sweeper
from security import tokens

def register_cli(app):
    def _offer_ttl():
        return timedelta(minutes=app.config.get("WAITLIST_OFFER_MINUTES", 120))

    @app.cli.command("sweep")
    @click.option("--loop", is_flag=True, help="Keep sweeping until interrupted.")
    @click.option("--interval", default=60, show_default=True, help="Seconds between sweeps with --loop.")
    def sweep(loop, interval):
        """Reap expired holds, complete past bookings, lapse waitlist offers."""
        notifier = app.extensions.get("booking_notifier")
        while True:
            counts = sweeper.run_once(db.session, notifier=notifier, waitlist_offer_ttl=_offer_ttl())
            click.echo(
                f"reaped={counts['reaped']} completed={counts['completed']} "
                f"offers_expired={counts['offers_expired']}"
            )
            if not loop:
                break
            time.sleep(interval)

    @app.cli.command("reap-holds")
    def reap_holds():
        """Cancel holds whose TTL has passed."""
        notifier = app.extensions.get("booking_notifier")
        count = sweeper.reap_expired_holds(db.session, notifier=notifier, waitlist_offer_ttl=_offer_ttl())
        click.echo(f"{count} expired holds cancelled")

    @app.cli.command("complete-bookings")
    def complete_bookings():
        """Mark confirmed bookings whose end time has passed as completed."""
        count = sweeper.complete_finished(db.session)
        click.echo(f"{count} bookings completed")

    @app.cli.command("issue-token")
    @click.argument("subject")
    @click.option("--purpose", type=click.Choice(["reschedule", "cancel", "magic_link"]), default="magic_link")
    @click.option("--ttl-minutes", default=60, show_default=True)
    def issue_token(subject, purpose, ttl_minutes):
        """Issue a single-use token bound to SUBJECT (e.g. reservation:42)."""
        raw = tokens.issue(db.session, subject, timedelta(minutes=ttl_minutes), purpose=purpose, commit=True)
        click.echo(raw)

#-------------------------




if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
