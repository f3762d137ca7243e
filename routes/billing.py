"""Tax breakdown and invoice payment endpoints."""

import logging
from decimal import Decimal

from flask import Blueprint, current_app, jsonify, request

from extensions import db
from models import Invoice, Subscription
from services.breakdown import (
    build_invoice_document,
    cart_breakdown,
    invoice_breakdown,
    subscription_breakdown,
)
from services.discounts import DiscountError
from services.payments import PaymentError, record_invoice_payment
from utils import parse_datetime, safe_decimal, safe_int

logger = logging.getLogger(__name__)

billing_bp = Blueprint("billing", __name__, url_prefix="/api")


def _invoice_payload(invoice: Invoice) -> dict:
    return {
        "id": invoice.id,
        "invoice_no": invoice.invoice_no,
        "status": invoice.status,
        "total_amount": str(invoice.total_amount),
        "amount_paid": str(invoice.amount_paid),
        "payments": [
            {
                "id": p.id,
                "method": p.method,
                "amount": str(p.amount),
                "payment_date": p.payment_date.isoformat() if p.payment_date else None,
            }
            for p in invoice.payments
        ],
    }


@billing_bp.route("/cart/breakdown", methods=["POST"])
def cart_totals():
    """Subtotal / discount / tax / total for a cart that has no order yet."""
    body = request.get_json(silent=True) or {}
    items = body.get("items") or []
    if not items:
        return jsonify({"error": "Cart is empty"}), 400
    for item in items:
        if not isinstance(item, dict) or safe_int(item.get("quantity", 1), 0) < 1:
            return jsonify({"error": "Quantity must be at least 1"}), 400
        if safe_decimal(item.get("unit_price"), Decimal("0")) < 0:
            return jsonify({"error": "Unit price cannot be negative"}), 400
    try:
        allocation, discount = cart_breakdown(items, body.get("discount_code"))
    except DiscountError as exc:
        return jsonify({"error": str(exc)}), 400
    payload = allocation.to_dict()
    payload["discount_code"] = discount.code if discount else None
    return jsonify(payload)


@billing_bp.route("/subscriptions/<int:subscription_id>/breakdown")
def subscription_totals(subscription_id: int):
    subscription = db.get_or_404(Subscription, subscription_id)
    return jsonify(subscription_breakdown(subscription).to_dict())


@billing_bp.route("/invoices/<int:invoice_id>/breakdown")
def invoice_totals(invoice_id: int):
    invoice = db.get_or_404(Invoice, invoice_id)
    return jsonify(invoice_breakdown(invoice).to_dict())


@billing_bp.route("/invoices/<int:invoice_id>/document")
def invoice_document(invoice_id: int):
    """Data for the PDF export of an invoice."""
    invoice = db.get_or_404(Invoice, invoice_id)
    currency = current_app.config["APP_CONFIG"].base_currency
    return jsonify(build_invoice_document(invoice, currency))


@billing_bp.route("/invoices/<int:invoice_id>/payments", methods=["POST"])
def add_payment(invoice_id: int):
    invoice = db.get_or_404(Invoice, invoice_id)
    body = request.get_json(silent=True) or {}
    payment_date = None
    if body.get("payment_date"):
        payment_date = parse_datetime(body["payment_date"])
        if payment_date is None:
            return jsonify({"error": "Invalid payment date"}), 400
    try:
        record_invoice_payment(
            invoice,
            body.get("amount"),
            method=body.get("method", "CASH"),
            user_id=safe_int(body.get("user_id"), None),
            payment_date=payment_date,
        )
    except PaymentError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify({"message": "Payment recorded", "invoice": _invoice_payload(invoice)}), 201
