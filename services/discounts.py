"""Discount code resolution for checkout and cart totals."""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal

from sqlalchemy import func

from models import Discount
from services.tax import clamp_discount
from utils import money, safe_decimal

logger = logging.getLogger(__name__)


class DiscountError(ValueError):
    """Raised when a discount code cannot be applied."""


def discount_amount_for(discount: Discount, subtotal) -> Decimal:
    """Amount *discount* takes off *subtotal*, capped at the subtotal."""
    subtotal = safe_decimal(subtotal)
    value = safe_decimal(discount.value)
    if discount.type == "PERCENTAGE":
        raw = subtotal * value / Decimal("100")
    else:
        raw = value
    return money(clamp_discount(subtotal, raw))


def resolve_discount(code: str, subtotal, quantity: int, today: datetime.date):
    """Validate *code* against the cart and return ``(discount, amount)``."""
    code = (code or "").strip()
    if not code:
        raise DiscountError("Invalid discount code")

    discount = Discount.query.filter(func.lower(Discount.code) == code.lower()).first()
    if not discount:
        raise DiscountError("Invalid discount code")
    if discount.start_date and discount.start_date > today:
        raise DiscountError("Discount not active yet")
    if discount.end_date and discount.end_date < today:
        raise DiscountError("Discount has expired")
    if safe_decimal(subtotal) < safe_decimal(discount.minimum_purchase):
        raise DiscountError("Minimum purchase not met")
    if quantity < (discount.minimum_quantity or 0):
        raise DiscountError("Minimum quantity not met")

    amount = discount_amount_for(discount, subtotal)
    logger.info("Applied discount %s: %s off %s", discount.code, amount, subtotal)
    return discount, amount
