"""Tax breakdowns for carts, subscriptions, invoices and printable documents.

Each surface adapts its own rows and hands them to
:func:`services.tax.allocate_taxes`; the fallback display names come from the
``Tax`` reference table.
"""

from __future__ import annotations

import datetime
from decimal import Decimal
from typing import Optional

from extensions import db
from models import Invoice, Product, Subscription, Tax
from services.discounts import resolve_discount
from services.tax import (
    TaxAllocation,
    allocate_taxes,
    format_rate,
    known_tax_names,
    subtotal_of,
    to_tax_lines,
)
from utils import money, safe_decimal, safe_int


def tax_name_table() -> dict:
    """Rate -> name lookup seeded from the Tax reference data."""
    return known_tax_names(Tax.query.order_by(Tax.is_default.desc(), Tax.id).all())


def _default_tax() -> Optional[Tax]:
    return Tax.query.filter_by(is_default=True).order_by(Tax.id).first()


def _tax_payload(tax: Tax) -> dict:
    return {"id": tax.id, "name": tax.name, "rate": str(tax.rate)}


def fill_cart_taxes(items: list[dict]) -> list[dict]:
    """Complete cart items from the catalog.

    Items without a tax take the product's tax, else the default tax; items
    without a price take the product's sales price.
    """
    default_tax = None
    filled = []
    for item in items:
        item = dict(item)
        product = None
        if item.get("product_id") is not None:
            product = db.session.get(Product, safe_int(item["product_id"]))
        if item.get("unit_price") in (None, "") and product is not None:
            item["unit_price"] = str(product.sales_price)
        if not item.get("tax") and item.get("tax_rate") in (None, ""):
            tax = product.tax if product is not None else None
            if tax is None:
                default_tax = default_tax or _default_tax()
                tax = default_tax
            if tax is not None:
                item["tax"] = _tax_payload(tax)
        filled.append(item)
    return filled


def cart_breakdown(
    items: list[dict],
    discount_code: Optional[str] = None,
    today: Optional[datetime.date] = None,
):
    """Breakdown for a cart before any order exists.

    Returns ``(allocation, discount)``; *discount* is ``None`` when no code
    was given.  Raises ``DiscountError`` for a code that does not apply.
    """
    lines = to_tax_lines(fill_cart_taxes(items))
    subtotal = subtotal_of(lines)
    discount = None
    discount_amount = Decimal("0")
    if discount_code:
        quantity = sum(line.quantity for line in lines)
        discount, discount_amount = resolve_discount(
            discount_code, subtotal, quantity, today or datetime.date.today()
        )
    allocation = allocate_taxes(lines, subtotal, discount_amount, tax_name_table())
    return allocation, discount


def subscription_breakdown(subscription: Subscription, discount_amount=0) -> TaxAllocation:
    """Order confirmation / order detail breakdown from subscription lines."""
    return allocate_taxes(subscription.lines, None, discount_amount, tax_name_table())


def invoice_breakdown(invoice: Invoice) -> TaxAllocation:
    """Invoice detail breakdown using each line's precomputed tax."""
    return allocate_taxes(
        invoice.lines,
        invoice.subtotal,
        invoice.discount_amount or 0,
        tax_name_table(),
    )


def build_invoice_document(invoice: Invoice, currency: str = "INR") -> dict:
    """Printable invoice payload for the document renderer (PDF export)."""
    lines = []
    for line in invoice.lines:
        rate = line.tax_rate if line.tax_rate is not None else (
            line.tax.rate if line.tax else None
        )
        lines.append({
            "product": line.product.name if line.product else "Item",
            "quantity": line.quantity,
            "unit_price": str(money(line.unit_price)),
            "tax_id": line.tax_id,
            "tax_name": line.tax.name if line.tax else None,
            "tax_rate": str(rate) if rate is not None else None,
            "tax_label": f"{format_rate(safe_decimal(rate))}%" if rate else "-",
            "tax_amount": str(money(line.tax_amount)),
            "amount": str(money(line.amount)),
        })

    allocation = allocate_taxes(
        lines, invoice.subtotal, invoice.discount_amount or 0, tax_name_table()
    )
    subscription = invoice.subscription
    return {
        "invoice_no": invoice.invoice_no,
        "status": invoice.status,
        "issue_date": invoice.issue_date.isoformat() if invoice.issue_date else None,
        "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
        "subscription_no": subscription.subscription_no if subscription else None,
        "customer": subscription.user.email if subscription and subscription.user else None,
        "currency": currency,
        "lines": lines,
        "untaxed_amount": str(allocation.subtotal),
        "discount_code": invoice.discount_code,
        "discount_amount": str(allocation.discount_amount),
        "tax_breakdown": [
            {"name": e.name, "amount": str(e.amount)} for e in allocation.final_breakdown
        ],
        "tax_amount": str(allocation.tax_amount),
        "total": str(allocation.total),
        "amount_paid": str(money(invoice.amount_paid)),
    }
