"""Configuration loading: YAML file plus environment-variable overrides."""

from __future__ import annotations

import logging
import os

import yaml

from config_models import AppConfig, RenewalConfig

logger = logging.getLogger(__name__)

DEFAULT_RENEWAL_CRON = "0 2 * * *"
DEFAULT_RENEWAL_TZ = "UTC"
DEFAULT_RENEWAL_LOG = os.path.join(".cron-logs", "invoices.json")
KNOWN_BILLING_PERIODS = ("DAILY", "WEEKLY", "MONTHLY", "YEARLY")


def _as_bool(raw) -> bool:
    return str(raw).lower() in ("true", "1", "yes")


def _parse_periods(raw) -> list[str]:
    """Normalise a billing period list given as YAML list or comma string."""
    if isinstance(raw, str):
        items = raw.split(",")
    else:
        items = list(raw or [])
    periods = [str(p).strip().upper() for p in items if str(p).strip()]
    unknown = [p for p in periods if p not in KNOWN_BILLING_PERIODS]
    if unknown:
        raise ValueError(f"Unknown billing period(s): {', '.join(unknown)}")
    return periods or list(KNOWN_BILLING_PERIODS)


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, RenewalConfig, database_uri).
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    renewal_cfg = raw.get("renewal", {})
    db_cfg = raw.get("database", {})

    periods = os.environ.get("SUBSCRIPTION_RENEWAL_PERIODS")
    if periods is None:
        periods = renewal_cfg.get("billing_periods", list(KNOWN_BILLING_PERIODS))

    renewal = RenewalConfig(
        enabled=_as_bool(
            os.environ.get(
                "SUBSCRIPTION_RENEWAL_ENABLED", renewal_cfg.get("enabled", True)
            )
        ),
        schedule=os.environ.get(
            "SUBSCRIPTION_RENEWAL_CRON",
            renewal_cfg.get("schedule", DEFAULT_RENEWAL_CRON),
        ),
        timezone=os.environ.get(
            "SUBSCRIPTION_RENEWAL_TZ",
            renewal_cfg.get("timezone", DEFAULT_RENEWAL_TZ),
        ),
        event_log_path=os.environ.get(
            "SUBSCRIPTION_RENEWAL_LOG",
            renewal_cfg.get("event_log", DEFAULT_RENEWAL_LOG),
        ),
        billing_periods=_parse_periods(periods),
    )
    if not renewal.enabled:
        logger.warning("Subscription renewal scheduler is disabled by configuration.")

    return (
        AppConfig(
            name=app_cfg.get("name", "Subscription Billing"),
            base_currency=app_cfg.get("base_currency", "INR"),
        ),
        renewal,
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///subscriptions.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
