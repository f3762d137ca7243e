"""Manual invoice payments recorded by staff."""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal
from typing import Optional

from extensions import db
from models import PAYMENT_METHODS, Invoice, Payment
from utils import money, safe_decimal, utc_now

logger = logging.getLogger(__name__)

PAYABLE_STATUSES = ("DRAFT", "CONFIRMED")


class PaymentError(ValueError):
    """Raised when a payment cannot be recorded."""


def record_invoice_payment(
    invoice: Invoice,
    amount,
    method: str = "CASH",
    user_id: Optional[int] = None,
    payment_date: Optional[datetime.datetime] = None,
) -> Payment:
    """Record a payment against *invoice* and mark it PAID once settled.

    Raises ``PaymentError`` for an unknown method, a non-positive amount, or
    an invoice that is not awaiting payment.
    """
    method = str(method or "CASH").upper()
    if method not in PAYMENT_METHODS:
        raise PaymentError(f"Invalid payment method: {method}")
    value = safe_decimal(amount)
    if value <= Decimal("0"):
        raise PaymentError("Valid amount is required")
    if invoice.status not in PAYABLE_STATUSES:
        raise PaymentError(
            "Payments can only be recorded for confirmed or draft invoices"
        )

    payment = Payment(
        method=method,
        amount=money(value),
        payment_date=payment_date or utc_now(),
        subscription_id=invoice.subscription_id,
        user_id=user_id,
    )
    invoice.payments.append(payment)
    db.session.flush()
    if invoice.is_fully_paid:
        invoice.status = "PAID"
        logger.info("Invoice %s fully paid", invoice.invoice_no)
    db.session.commit()
    logger.info(
        "Recorded %s payment of %s for invoice %s", method, payment.amount, invoice.invoice_no
    )
    return payment
