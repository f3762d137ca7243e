"""Operational endpoints for the subscription renewal job."""

import logging

from flask import Blueprint, jsonify, request

from extensions import limiter
from services.event_log import get_event_log
from services.scheduler import get_scheduler
from utils import safe_int

logger = logging.getLogger(__name__)

renewals_bp = Blueprint("renewals", __name__, url_prefix="/api/renewals")


@renewals_bp.route("/trigger", methods=["POST"])
@limiter.limit("5 per minute")
def trigger():
    """Run the renewal job now, through the same non-overlapping tick."""
    scheduler = get_scheduler()
    if scheduler.is_busy:
        return jsonify({"success": False, "error": "Renewal job already running"}), 409
    logger.info("Manually triggering subscription renewal job")
    run = scheduler.tick()
    if run is None:
        return jsonify({
            "success": False,
            "error": "Renewal job did not complete, see the renewal log",
        }), 500
    return jsonify({"success": True, "result": run.summary()})


@renewals_bp.route("/logs")
def logs():
    limit = safe_int(request.args.get("limit"), 0)
    events = get_event_log().read(limit or None)
    return jsonify({"logs": events, "count": len(events)})


@renewals_bp.route("/status")
def status():
    scheduler = get_scheduler()
    return jsonify({
        "running": scheduler.is_running,
        "busy": scheduler.is_busy,
        "schedule": scheduler.expression,
        "timezone": scheduler.timezone,
        "last_run_at": scheduler.last_run_at.isoformat() if scheduler.last_run_at else None,
    })
