"""Tests for renewal invoice and payment generation."""

import datetime
from decimal import Decimal

import services.renewal as renewal
from extensions import db
from models import Invoice, Payment, Subscription, SubscriptionLine
from services.event_log import E, get_event_log
from services.renewal import (
    build_renewal_invoice,
    check_renewal,
    generate_invoice_number,
    renewal_candidates,
    run_renewal_job,
)

FEB_15 = datetime.datetime(2025, 2, 15, 2, 0)


def _event_types(app):
    return [e["type"] for e in get_event_log(app).read()]


class TestRenewalHelpers:
    def test_invoice_number_format(self, app, sample_data):
        with app.app_context():
            subscription = db.session.get(Subscription, sample_data["subscription_id"])
            number = generate_invoice_number(subscription, datetime.datetime(2025, 2, 15))
            assert number == "INV-SO001-1739577600000"

    def test_invoice_number_uses_configured_zone(self, app, sample_data):
        with app.app_context():
            subscription = db.session.get(Subscription, sample_data["subscription_id"])
            # Midnight in Bratislava (UTC+1 in February) is 23:00 UTC the day before
            number = generate_invoice_number(
                subscription, datetime.datetime(2025, 2, 15), "Europe/Bratislava"
            )
            assert number == "INV-SO001-1739574000000"

    def test_candidates_exclude_inactive_and_ended(self, app, sample_data):
        with app.app_context():
            weekly = db.session.get(Subscription, sample_data["weekly_subscription_id"])
            weekly.status = "CLOSED"
            monthly = db.session.get(Subscription, sample_data["subscription_id"])
            monthly.end_date = datetime.date(2025, 2, 15)
            db.session.commit()
            assert renewal_candidates(FEB_15) == []

    def test_candidates_filtered_by_period(self, app, sample_data):
        with app.app_context():
            ids = [s.id for s in renewal_candidates(FEB_15, ["WEEKLY"])]
            assert ids == [sample_data["weekly_subscription_id"]]

    def test_never_billed_subscription_anchors_on_creation(self, app, sample_data):
        with app.app_context():
            subscription = db.session.get(Subscription, sample_data["subscription_id"])
            decision = check_renewal(subscription, FEB_15)
            assert decision.due is True
            assert decision.target_date == datetime.date(2025, 2, 15)

    def test_invoice_recomputed_from_lines(self, app, sample_data):
        with app.app_context():
            subscription = db.session.get(Subscription, sample_data["subscription_id"])
            subscription.total_amount = Decimal("1.00")  # stale snapshot
            invoice = build_renewal_invoice(subscription, FEB_15)
            assert invoice.status == "PAID"
            assert invoice.subtotal == Decimal("250.00")
            assert invoice.tax_amount == Decimal("42.50")
            assert invoice.total_amount == Decimal("292.50")
            assert invoice.due_date == datetime.date(2025, 2, 15)
            assert [line.tax_amount for line in invoice.lines] == [
                Decimal("40.00"),
                Decimal("2.50"),
            ]
            db.session.rollback()


class TestRenewalJob:
    def test_creates_paid_invoice_and_payment(self, app, sample_data):
        with app.app_context():
            run = run_renewal_job(now=FEB_15, periods=["MONTHLY"])
            assert run.due == 1
            assert len(run.invoice_ids) == 1

            invoice = db.session.get(Invoice, run.invoice_ids[0])
            assert invoice.subscription_id == sample_data["subscription_id"]
            assert invoice.status == "PAID"
            assert invoice.issue_date == FEB_15
            assert invoice.total_amount == Decimal("292.50")
            assert len(invoice.lines) == 2
            assert len(invoice.payments) == 1
            payment = invoice.payments[0]
            assert payment.method == "CREDIT_CARD"
            assert payment.amount == Decimal("292.50")
            assert payment.user_id == sample_data["user_id"]
            assert invoice.is_fully_paid

        assert _event_types(app) == [
            E.JOB_START,
            E.INVOICE_CREATED,
            E.PAYMENT_RECORDED,
            E.JOB_END,
        ]

    def test_second_run_same_month_is_noop(self, app, sample_data):
        with app.app_context():
            run_renewal_job(now=FEB_15, periods=["MONTHLY"])
            again = run_renewal_job(
                now=datetime.datetime(2025, 2, 28, 2, 0), periods=["MONTHLY"]
            )
            assert again.checked == 1
            assert again.due == 0
            assert Invoice.query.count() == 1
            assert Payment.query.count() == 1

    def test_next_month_bills_again(self, app, sample_data):
        with app.app_context():
            run_renewal_job(now=FEB_15, periods=["MONTHLY"])
            early = run_renewal_job(
                now=datetime.datetime(2025, 3, 14, 2, 0), periods=["MONTHLY"]
            )
            assert early.due == 0
            on_time = run_renewal_job(
                now=datetime.datetime(2025, 3, 15, 2, 0), periods=["MONTHLY"]
            )
            assert on_time.due == 1
            assert Invoice.query.count() == 2

    def test_unpaid_draft_invoice_does_not_block(self, app, sample_data):
        with app.app_context():
            db.session.add(Invoice(
                invoice_no="INV-SO001-DRAFT",
                subscription_id=sample_data["subscription_id"],
                status="DRAFT",
                issue_date=datetime.datetime(2025, 2, 3, 10, 0),
                total_amount=Decimal("10.00"),
            ))
            db.session.commit()
            subscription = db.session.get(Subscription, sample_data["subscription_id"])
            decision = check_renewal(subscription, datetime.datetime(2025, 2, 20, 2, 0))
            assert decision.due is True
            assert decision.target_date == datetime.date(2025, 2, 15)

            run = run_renewal_job(
                now=datetime.datetime(2025, 2, 20, 2, 0), periods=["MONTHLY"]
            )
            assert run.due == 1
            assert len(run.invoice_ids) == 1

    def test_cancelled_invoice_does_not_block(self, app, sample_data):
        with app.app_context():
            run = run_renewal_job(now=FEB_15, periods=["MONTHLY"])
            invoice = db.session.get(Invoice, run.invoice_ids[0])
            invoice.status = "CANCELLED"
            db.session.commit()
            again = run_renewal_job(
                now=datetime.datetime(2025, 2, 20, 2, 0), periods=["MONTHLY"]
            )
            assert again.due == 1

    def test_subscription_without_lines_is_skipped(self, app, sample_data):
        with app.app_context():
            SubscriptionLine.query.filter_by(
                subscription_id=sample_data["subscription_id"]
            ).delete()
            db.session.commit()
            db.session.expire_all()
            run = run_renewal_job(now=FEB_15, periods=["MONTHLY"])
            assert run.due == 1
            assert run.skipped_empty == 1
            assert run.invoice_ids == []
            assert Invoice.query.count() == 0

    def test_failure_is_isolated(self, app, sample_data, monkeypatch):
        original = renewal.build_renewal_invoice
        failing_id = sample_data["subscription_id"]

        def flaky(subscription, now):
            if subscription.id == failing_id:
                raise RuntimeError("line data broken")
            return original(subscription, now)

        monkeypatch.setattr(renewal, "build_renewal_invoice", flaky)
        # Wednesday of the week after the weekly subscription's anchor
        now = datetime.datetime(2025, 2, 19, 2, 0)
        with app.app_context():
            monthly = db.session.get(Subscription, failing_id)
            monthly.created_at = datetime.datetime(2025, 1, 19, 9, 0)
            db.session.commit()

            run = run_renewal_job(now=now)
            assert run.failed_subscription_ids == [failing_id]
            assert len(run.invoice_ids) == 1
            invoice = db.session.get(Invoice, run.invoice_ids[0])
            assert invoice.subscription_id == sample_data["weekly_subscription_id"]

        events = get_event_log(app).read()
        failed = [e for e in events if e["type"] == E.RENEWAL_FAILED]
        assert len(failed) == 1
        assert failed[0]["subscription_id"] == failing_id
        assert failed[0]["data"]["error"] == "line data broken"
        assert events[-1]["type"] == E.JOB_END
        assert events[-1]["data"]["failed"] == 1

    def test_periods_not_enabled_are_not_billed(self, app, sample_data):
        with app.app_context():
            run = run_renewal_job(
                now=datetime.datetime(2025, 2, 19, 2, 0), periods=["MONTHLY"]
            )
            assert run.checked == 1
            assert Invoice.query.filter_by(
                subscription_id=sample_data["weekly_subscription_id"]
            ).count() == 0

    def test_defaults_from_configuration(self, app, sample_data):
        with app.app_context():
            run = run_renewal_job(now=FEB_15)
            assert run.checked == 2
