"""SQLAlchemy models for subscriptions, invoices, payments and tax reference data."""

from __future__ import annotations

from decimal import Decimal

from extensions import db
from utils import utc_now

# ---------------------------------------------------------------------------
# Enumerations (stored as plain strings)
# ---------------------------------------------------------------------------

SUBSCRIPTION_STATUSES = ("DRAFT", "QUOTATION", "CONFIRMED", "ACTIVE", "CLOSED")
BILLING_PERIODS = ("DAILY", "WEEKLY", "MONTHLY", "YEARLY")
INVOICE_STATUSES = ("DRAFT", "CONFIRMED", "PAID", "CANCELLED")
PAYMENT_METHODS = ("CASH", "UPI", "CREDIT_CARD", "DEBIT_CARD", "BANK_TRANSFER", "OTHER")
DISCOUNT_TYPES = ("PERCENTAGE", "FIXED")

_MONEY = db.Numeric(12, 2, asdecimal=True)
_RATE = db.Numeric(5, 2, asdecimal=True)


# ---------------------------------------------------------------------------
# Users & catalog (owned by external collaborators, read here)
# ---------------------------------------------------------------------------

class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    name = db.Column(db.String(120))
    created_at = db.Column(db.DateTime, default=utc_now)


class Tax(db.Model):
    """Reference tax rate, e.g. ``GST 18%``."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(80), nullable=False)
    rate = db.Column(_RATE, nullable=False, default=0)
    is_default = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utc_now)


class Product(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    sales_price = db.Column(_MONEY, nullable=False, default=0)
    tax_id = db.Column(db.Integer, db.ForeignKey("tax.id"))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)

    tax = db.relationship("Tax")


class RecurringPlan(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    billing_period = db.Column(db.String(20), nullable=False, default="MONTHLY")
    created_at = db.Column(db.DateTime, default=utc_now)


class Discount(db.Model):
    """Checkout discount code; PERCENTAGE values are percent, FIXED are amounts."""
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(60), unique=True, nullable=False)
    type = db.Column(db.String(20), nullable=False, default="PERCENTAGE")
    value = db.Column(_MONEY, nullable=False, default=0)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date)
    minimum_purchase = db.Column(_MONEY, default=0)
    minimum_quantity = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=utc_now)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

class Subscription(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    subscription_no = db.Column(db.String(30), unique=True, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    recurring_plan_id = db.Column(db.Integer, db.ForeignKey("recurring_plan.id"))
    status = db.Column(db.String(20), nullable=False, default="DRAFT")
    end_date = db.Column(db.Date)
    subtotal = db.Column(_MONEY, default=0)
    tax_amount = db.Column(_MONEY, default=0)
    total_amount = db.Column(_MONEY, default=0)
    created_at = db.Column(db.DateTime, default=utc_now)

    user = db.relationship("User")
    recurring_plan = db.relationship("RecurringPlan")
    lines = db.relationship(
        "SubscriptionLine",
        backref="subscription",
        cascade="all, delete-orphan",
        order_by="SubscriptionLine.id",
    )
    invoices = db.relationship(
        "Invoice",
        order_by="Invoice.issue_date.desc()",
        viewonly=True,
    )

    __table_args__ = (
        db.Index("ix_subscription_status", "status"),
    )

    @property
    def billing_period(self):
        return self.recurring_plan.billing_period if self.recurring_plan else None

    @property
    def latest_invoice(self):
        """Most recently issued paid-against invoice that was not cancelled, or None.

        Invoices without any payment do not count as a billed cycle.
        """
        for invoice in self.invoices:
            if invoice.status != "CANCELLED" and invoice.payments:
                return invoice
        return None


class SubscriptionLine(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(
        db.Integer, db.ForeignKey("subscription.id"), nullable=False
    )
    product_id = db.Column(db.Integer, db.ForeignKey("product.id"), nullable=False)
    tax_id = db.Column(db.Integer, db.ForeignKey("tax.id"))
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(_MONEY, nullable=False)
    tax_rate = db.Column(_RATE, default=0)
    amount = db.Column(_MONEY, default=0)

    product = db.relationship("Product")
    tax = db.relationship("Tax")

    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_subscription_line_quantity"),
    )


# ---------------------------------------------------------------------------
# Invoices & payments
# ---------------------------------------------------------------------------

class Invoice(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    invoice_no = db.Column(db.String(60), unique=True, nullable=False)
    subscription_id = db.Column(
        db.Integer, db.ForeignKey("subscription.id"), nullable=False
    )
    status = db.Column(db.String(20), nullable=False, default="DRAFT")
    issue_date = db.Column(db.DateTime, nullable=False, default=utc_now)
    due_date = db.Column(db.Date)
    subtotal = db.Column(_MONEY, default=0)
    tax_amount = db.Column(_MONEY, default=0)
    total_amount = db.Column(_MONEY, default=0)
    discount_code = db.Column(db.String(60))
    discount_amount = db.Column(_MONEY, default=0)
    created_at = db.Column(db.DateTime, default=utc_now)

    subscription = db.relationship("Subscription")
    lines = db.relationship(
        "InvoiceLine",
        backref="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLine.id",
    )
    payments = db.relationship("Payment", backref="invoice", order_by="Payment.id")

    __table_args__ = (
        db.Index("ix_invoice_subscription_issue", "subscription_id", "issue_date"),
        db.Index("ix_invoice_status", "status"),
    )

    @property
    def amount_paid(self) -> Decimal:
        return sum((Decimal(str(p.amount or 0)) for p in self.payments), Decimal("0"))

    @property
    def is_fully_paid(self) -> bool:
        return self.amount_paid >= Decimal(str(self.total_amount or 0))


class InvoiceLine(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("product.id"), nullable=False)
    tax_id = db.Column(db.Integer, db.ForeignKey("tax.id"))
    tax_rate = db.Column(_RATE)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(_MONEY, nullable=False)
    tax_amount = db.Column(_MONEY, default=0)
    amount = db.Column(_MONEY, default=0)

    product = db.relationship("Product")
    tax = db.relationship("Tax")


class Payment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    method = db.Column(db.String(20), nullable=False)
    amount = db.Column(_MONEY, nullable=False)
    payment_date = db.Column(db.DateTime, nullable=False, default=utc_now)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id"), nullable=False)
    subscription_id = db.Column(
        db.Integer, db.ForeignKey("subscription.id"), nullable=False
    )
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"))
    created_at = db.Column(db.DateTime, default=utc_now)

    user = db.relationship("User")

    __table_args__ = (
        db.Index("ix_payment_invoice_id", "invoice_id"),
    )
