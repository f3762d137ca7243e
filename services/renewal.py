"""Recurring billing: renewal invoice and payment generation."""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from zoneinfo import ZoneInfo

from flask import current_app
from sqlalchemy import or_

from extensions import db
from models import Invoice, InvoiceLine, Payment, RecurringPlan, Subscription
from services.billing_dates import RenewalDecision, is_renewal_due
from services.event_log import E, EventLog, get_event_log
from utils import local_now

logger = logging.getLogger(__name__)

_Q2 = Decimal("0.01")
RENEWAL_PAYMENT_METHOD = "CREDIT_CARD"


@dataclass
class RenewalRun:
    """Outcome of one pass over the eligible subscriptions."""
    now: datetime.datetime
    checked: int = 0
    due: int = 0
    skipped_empty: int = 0
    invoice_ids: list[int] = field(default_factory=list)
    failed_subscription_ids: list[int] = field(default_factory=list)

    def summary(self) -> dict:
        return {
            "now": self.now.isoformat(),
            "checked": self.checked,
            "due": self.due,
            "invoiced": len(self.invoice_ids),
            "skipped_empty": self.skipped_empty,
            "failed": len(self.failed_subscription_ids),
        }


def generate_invoice_number(
    subscription: Subscription, now: datetime.datetime, tz_name: str = "UTC"
) -> str:
    """``INV-<subscription_no>-<epoch millis>``; a naive *now* is wall clock in *tz_name*."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=ZoneInfo(tz_name))
    millis = int(now.timestamp() * 1000)
    return f"INV-{subscription.subscription_no}-{millis}"


def renewal_candidates(now: datetime.datetime, periods=None) -> list[Subscription]:
    """Active subscriptions on a recurring plan that have not ended yet."""
    query = (
        Subscription.query.join(
            RecurringPlan, Subscription.recurring_plan_id == RecurringPlan.id
        )
        .filter(Subscription.status == "ACTIVE")
        .filter(
            or_(Subscription.end_date.is_(None), Subscription.end_date > now.date())
        )
    )
    if periods:
        query = query.filter(RecurringPlan.billing_period.in_(list(periods)))
    return query.order_by(Subscription.id).all()


def _count_unbilled_periods(now: datetime.datetime, periods) -> int:
    """Active subscriptions whose billing period the scheduler does not bill."""
    return (
        Subscription.query.join(
            RecurringPlan, Subscription.recurring_plan_id == RecurringPlan.id
        )
        .filter(Subscription.status == "ACTIVE")
        .filter(~RecurringPlan.billing_period.in_(list(periods)))
        .filter(
            or_(Subscription.end_date.is_(None), Subscription.end_date > now.date())
        )
        .count()
    )


def check_renewal(subscription: Subscription, now: datetime.datetime) -> RenewalDecision:
    """Anchor on the latest invoice, or on creation for never-billed subscriptions."""
    latest = subscription.latest_invoice
    latest_issue = latest.issue_date if latest else None
    anchor = latest_issue or subscription.created_at
    return is_renewal_due(
        anchor,
        now,
        latest_issue,
        subscription.end_date,
        subscription.billing_period or "MONTHLY",
    )


def build_renewal_invoice(
    subscription: Subscription, now: datetime.datetime, tz_name: Optional[str] = None
) -> Invoice:
    """Build (but do not persist) a PAID invoice from the current subscription lines.

    Totals are recomputed from the lines rather than copied from the
    subscription snapshot.  No discount is applied.
    """
    if tz_name is None:
        tz_name = current_app.config["RENEWAL_CONFIG"].timezone
    subtotal = Decimal("0")
    tax_total = Decimal("0")
    invoice_lines = []

    for line in subscription.lines:
        unit_price = Decimal(str(line.unit_price))
        if line.tax_rate is not None:
            tax_rate = Decimal(str(line.tax_rate))
        elif line.tax is not None:
            tax_rate = Decimal(str(line.tax.rate))
        else:
            tax_rate = Decimal("0")

        line_subtotal = (unit_price * line.quantity).quantize(_Q2, rounding=ROUND_HALF_UP)
        line_tax = (line_subtotal * tax_rate / Decimal("100")).quantize(
            _Q2, rounding=ROUND_HALF_UP
        )
        invoice_lines.append(
            InvoiceLine(
                product_id=line.product_id,
                tax_id=line.tax_id,
                tax_rate=tax_rate,
                quantity=line.quantity,
                unit_price=unit_price,
                tax_amount=line_tax,
                amount=line_subtotal + line_tax,
            )
        )
        subtotal += line_subtotal
        tax_total += line_tax

    return Invoice(
        invoice_no=generate_invoice_number(subscription, now, tz_name),
        subscription_id=subscription.id,
        status="PAID",
        issue_date=now,
        due_date=subscription.end_date or now.date(),
        subtotal=subtotal,
        tax_amount=tax_total,
        total_amount=subtotal + tax_total,
        lines=invoice_lines,
    )


def renew_subscription(
    subscription: Subscription,
    now: datetime.datetime,
    event_log: EventLog,
) -> Optional[Invoice]:
    """Persist the renewal invoice and its payment in one transaction.

    Returns ``None`` for a subscription without lines.
    """
    if not subscription.lines:
        logger.info("Subscription %s has no lines, nothing to bill", subscription.id)
        return None

    invoice = build_renewal_invoice(subscription, now)
    payment = Payment(
        method=RENEWAL_PAYMENT_METHOD,
        amount=invoice.total_amount,
        payment_date=now,
        subscription_id=subscription.id,
        user_id=subscription.user_id,
    )
    invoice.payments.append(payment)
    db.session.add(invoice)
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Renewed subscription %s: invoice %s total %s",
        subscription.id, invoice.invoice_no, invoice.total_amount,
    )
    event_log.append(
        E.INVOICE_CREATED,
        subscription.id,
        invoice_no=invoice.invoice_no,
        invoice_id=invoice.id,
        total=invoice.total_amount,
    )
    event_log.append(
        E.PAYMENT_RECORDED,
        subscription.id,
        invoice_id=invoice.id,
        payment_id=payment.id,
        amount=payment.amount,
    )
    return invoice


def run_renewal_job(
    now: Optional[datetime.datetime] = None,
    event_log: Optional[EventLog] = None,
    periods=None,
) -> RenewalRun:
    """Bill every eligible subscription whose cycle is due.

    Must run inside an application context.  A failure on one subscription
    is rolled back, logged and recorded; the remaining subscriptions are
    still processed.
    """
    renewal_cfg = current_app.config["RENEWAL_CONFIG"]
    if now is None:
        now = local_now(renewal_cfg.timezone)
    if event_log is None:
        event_log = get_event_log()
    if periods is None:
        periods = renewal_cfg.billing_periods

    run = RenewalRun(now=now)
    logger.info("Subscription renewal job started at %s", now.isoformat())
    event_log.append(E.JOB_START, now=now.isoformat(), periods=list(periods))

    unbilled = _count_unbilled_periods(now, periods)
    if unbilled:
        logger.warning(
            "%s active subscription(s) use a billing period outside %s and were not checked",
            unbilled, ", ".join(periods),
        )

    for subscription in renewal_candidates(now, periods):
        subscription_id = subscription.id
        run.checked += 1
        try:
            decision = check_renewal(subscription, now)
            if not decision.due:
                continue
            run.due += 1
            invoice = renew_subscription(subscription, now, event_log)
            if invoice is None:
                run.skipped_empty += 1
            else:
                run.invoice_ids.append(invoice.id)
        except Exception as exc:
            db.session.rollback()
            run.failed_subscription_ids.append(subscription_id)
            logger.exception("Renewal failed for subscription %s", subscription_id)
            event_log.append(E.RENEWAL_FAILED, subscription_id, error=str(exc))

    logger.info("Subscription renewal job finished: %s", run.summary())
    event_log.append(E.JOB_END, **run.summary())
    return run
