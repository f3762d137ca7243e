"""Append-only renewal event log.

Events are kept as a JSON array in a single file::

    [{"timestamp": "...", "type": "invoice-created",
      "subscription_id": 7, "data": {"invoice_no": "...", ...}}, ...]

Each append reads the array back, adds one entry and rewrites the file.  An
unreadable or corrupt file is reset to an empty array instead of failing the
caller.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from typing import Any, Optional

from utils import utc_now

logger = logging.getLogger(__name__)


class E:
    """Event type constants."""

    JOB_START = "job-start"
    JOB_END = "job-end"
    JOB_SKIPPED = "job-skipped"
    JOB_ERROR = "job-error"
    INVOICE_CREATED = "invoice-created"
    PAYMENT_RECORDED = "payment-recorded"
    RENEWAL_FAILED = "renewal-failed"


class EventLog:
    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _load(self) -> list:
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                content = handle.read().strip()
        except OSError as exc:
            logger.warning("Could not read event log %s: %s", self.path, exc)
            return []
        if not content:
            return []
        try:
            events = json.loads(content)
        except ValueError:
            logger.warning("Event log %s is corrupt, starting a new one", self.path)
            return []
        if not isinstance(events, list):
            logger.warning("Event log %s is not a list, starting a new one", self.path)
            return []
        return events

    def _write(self, events: list) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(events, handle, indent=2, default=str)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def append(
        self,
        event_type: str,
        subscription_id: Optional[int] = None,
        **data: Any,
    ) -> dict:
        """Record one event and return it."""
        entry = {
            "timestamp": utc_now().isoformat(),
            "type": event_type,
            "subscription_id": subscription_id,
            "data": data,
        }
        with self._lock:
            events = self._load()
            events.append(entry)
            try:
                self._write(events)
            except OSError:
                # Billing records are already committed at this point.
                logger.exception("Could not write event log %s (%s)", self.path, event_type)
        logger.debug("event=%s subscription=%s data=%s", event_type, subscription_id, data)
        return entry

    def read(self, limit: Optional[int] = None) -> list:
        """Return recorded events, oldest first; *limit* keeps the newest N."""
        with self._lock:
            events = self._load()
        if limit:
            return events[-limit:]
        return events


def get_event_log(app=None) -> EventLog:
    """Return the event log registered on *app* (default: current app)."""
    if app is None:
        from flask import current_app

        app = current_app
    return app.extensions["renewal_event_log"]
