import os
import logging
from datetime import timedelta

import click
from flask import Flask, jsonify

from billing_engine.config import config_by_name
from billing_engine.extensions import db, migrate, csrf, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from billing_engine import models  # noqa: F401

    # --- Register blueprints ---
    from billing_engine.blueprints.webhooks import webhooks_bp
    from billing_engine.blueprints.checkout import checkout_bp
    from billing_engine.blueprints.billing import billing_bp

    app.register_blueprint(webhooks_bp)
    app.register_blueprint(checkout_bp)
    app.register_blueprint(billing_bp)

    # Exempt webhooks from CSRF: raw body needed for Stripe signature verification
    csrf.exempt(webhooks_bp)

    # --- Error handlers (JSON API, no templates) ---
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "not_found", "message": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "method_not_allowed", "message": "Method not allowed"}), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "rate_limited", "message": "Too many requests"}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "server_error", "message": "Internal server error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON only; nothing should ever be rendered or framed
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        response.headers["Cache-Control"] = "no-store"
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("sweep-correlations")
    def sweep_correlations():
        """Delete checkout correlations past their expiry.

        Usage:
            flask sweep-correlations
        """
        from billing_engine.services.correlation_service import purge_expired_correlations

        count = purge_expired_correlations()
        db.session.commit()
        click.echo(f"Purged {count} expired checkout correlation(s).")

    @app.cli.command("dunning-sweep")
    @click.option("--dry-run", is_flag=True, help="Show what would be sent without actually sending.")
    def dunning_sweep(dry_run):
        """Escalate overdue dunning cases and send due reminders.

        Run daily from cron.

        Usage:
            flask dunning-sweep
            flask dunning-sweep --dry-run
        """
        from billing_engine.services.dunning_service import process_dunning_sweep
        process_dunning_sweep(dry_run=dry_run)

    @app.cli.command("prune-events")
    @click.option(
        "--days",
        type=int,
        default=None,
        help="Retention in days (default: PROCESSED_EVENT_RETENTION_DAYS).",
    )
    def prune_events(days):
        """Delete idempotency ledger rows older than the retention window.

        Stripe stops redelivering long before the window closes, so pruned
        event IDs can no longer arrive.

        Usage:
            flask prune-events
            flask prune-events --days 30
        """
        from billing_engine.models.processed_event import ProcessedEvent
        from billing_engine.timeutils import utcnow

        days = days if days is not None else app.config["PROCESSED_EVENT_RETENTION_DAYS"]
        cutoff = utcnow() - timedelta(days=days)
        count = (
            ProcessedEvent.query
            .filter(ProcessedEvent.processed_at < cutoff)
            .delete(synchronize_session=False)
        )
        db.session.commit()
        click.echo(f"Pruned {count} processed event(s) older than {days} days.")

    @app.cli.command("deactivate-resource")
    @click.argument("resource_id")
    def deactivate_resource(resource_id):
        """Archive a retired resource's Stripe products and stop selling its slots.

        Existing bookings are left alone; they end with their subscriptions.

        Usage:
            flask deactivate-resource judge-123
        """
        from billing_engine.services.catalog_service import deactivate_products

        count = deactivate_products(resource_id)
        db.session.commit()
        click.echo(f"Deactivated {count} product(s) for resource {resource_id}.")
