"""Application factory and process entry point for the subscription billing service."""

from __future__ import annotations

import logging
import os
from decimal import Decimal

from dotenv import load_dotenv
from flask import Flask, jsonify
from sqlalchemy import event

from config import enable_sqlite_fks, load_config
from extensions import db, limiter
from models import Tax
from routes import register_blueprints
from services.event_log import EventLog
from services.renewal import run_renewal_job
from services.scheduler import init_renewal_scheduler

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def _seed_taxes():
    """Create the default tax reference rows if none exist."""
    if Tax.query.count() > 0:
        return
    db.session.add_all([
        Tax(name="Standard VAT", rate=Decimal("20.00"), is_default=True),
        Tax(name="Reduced VAT", rate=Decimal("5.00")),
    ])
    db.session.commit()
    logger.info("Seeded default tax rates")


def create_app():
    """Create and configure the Flask application."""
    app_cfg, renewal_cfg, db_uri = load_config()

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["APP_CONFIG"] = app_cfg
    app.config["RENEWAL_CONFIG"] = renewal_cfg
    app.config["RATELIMIT_ENABLED"] = os.environ.get(
        "RATELIMIT_ENABLED", "true"
    ).lower() in ("true", "1", "yes")

    # Initialize extensions
    limiter.init_app(app)
    db.init_app(app)

    # SQLite foreign key enforcement
    if "sqlite" in db_uri:
        with app.app_context():
            event.listen(db.engine, "connect", enable_sqlite_fks)

    with app.app_context():
        db.create_all()
        _seed_taxes()

    register_blueprints(app)

    event_log = EventLog(renewal_cfg.event_log_path)
    app.extensions["renewal_event_log"] = event_log
    init_renewal_scheduler(app, renewal_cfg, run_renewal_job, event_log)

    @app.errorhandler(404)
    def not_found(_error):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(429)
    def ratelimit_handler(_error):
        return jsonify({"error": "Too many requests, try again later"}), 429

    @app.errorhandler(500)
    def internal_error(_error):
        db.session.rollback()
        logger.error("Unhandled error: %s", _error)
        return jsonify({"error": "Internal server error"}), 500

    return app


# ---------------------------------------------------------------------------
# Process entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app = create_app()
    host = os.environ.get("FLASK_HOST", "127.0.0.1")
    port = int(os.environ.get("FLASK_PORT", 5000))
    logger.info("Starting application on %s:%s", host, port)
    try:
        # The reloader would start a second scheduler in the child process.
        app.run(host=host, port=port, debug=False, use_reloader=False)
    finally:
        app.extensions["renewal_scheduler"].stop()
