"""Tax allocation engine.

Every surface that shows a subtotal / discount / tax / total block (cart,
order confirmation, order detail, invoice detail, PDF export) computes it
here, so the figures agree everywhere.

Lines are grouped into tax buckets, keyed by tax identity when a line
references a :class:`~models.Tax` row, otherwise by ``rate-<rate>``.  Raw
bucket amounts are computed on pre-discount prices and then scaled by the
*tax ratio*::

    tax_ratio = (subtotal - discount) / subtotal        (1 when subtotal <= 0)
    total     = subtotal - discount + sum(scaled bucket amounts)

The module is pure: no database access and no shared state.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from utils import CENT, money, safe_decimal, safe_int

_ZERO = Decimal("0")
_ONE = Decimal("1")
_HUNDRED = Decimal("100")


# ---------------------------------------------------------------------------
# Canonical shapes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TaxLine:
    """Normalised priced line.

    ``tax_amount`` is set only for lines of an already-issued invoice, where
    the absolute tax was fixed at issue time and must not be recomputed.
    """
    quantity: int
    unit_price: Decimal
    rate: Optional[Decimal] = None
    tax_id: Optional[int] = None
    tax_name: Optional[str] = None
    tax_amount: Optional[Decimal] = None

    @property
    def line_subtotal(self) -> Decimal:
        return Decimal(self.quantity) * self.unit_price


@dataclass
class TaxGroup:
    key: str
    name: str
    rate: Optional[Decimal]
    raw_amount: Decimal


@dataclass(frozen=True)
class BreakdownEntry:
    name: str
    rate: Optional[Decimal]
    amount: Decimal


@dataclass
class TaxAllocation:
    subtotal: Decimal
    discount_amount: Decimal
    tax_ratio: Decimal
    tax_groups: list[TaxGroup] = field(default_factory=list)
    final_breakdown: list[BreakdownEntry] = field(default_factory=list)

    @property
    def tax_amount(self) -> Decimal:
        return sum((entry.amount for entry in self.final_breakdown), _ZERO)

    @property
    def taxable_amount(self) -> Decimal:
        return self.subtotal - self.discount_amount

    @property
    def total(self) -> Decimal:
        return self.taxable_amount + self.tax_amount

    def to_dict(self) -> dict:
        return {
            "subtotal": str(self.subtotal),
            "discount_amount": str(self.discount_amount),
            "tax_ratio": str(self.tax_ratio),
            "tax_groups": [
                {
                    "key": g.key,
                    "name": g.name,
                    "rate": str(g.rate) if g.rate is not None else None,
                    "raw_amount": str(money(g.raw_amount)),
                }
                for g in self.tax_groups
            ],
            "tax_breakdown": [
                {
                    "name": e.name,
                    "rate": str(e.rate) if e.rate is not None else None,
                    "amount": str(e.amount),
                }
                for e in self.final_breakdown
            ],
            "tax_amount": str(self.tax_amount),
            "total": str(self.total),
        }


# ---------------------------------------------------------------------------
# Input adapters
# ---------------------------------------------------------------------------

def _optional_decimal(value) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return safe_decimal(value, None)


def line_from_mapping(item: Mapping) -> TaxLine:
    """Cart items and document payloads.

    Accepts ``{"quantity", "unit_price", "tax": {"id", "name", "rate"}}`` or
    the flat ``tax_id`` / ``tax_name`` / ``tax_rate`` / ``tax_amount`` keys.
    """
    tax = item.get("tax") or {}
    rate = tax.get("rate") if tax else None
    if rate is None:
        rate = item.get("tax_rate")
    return TaxLine(
        quantity=safe_int(item.get("quantity"), 1),
        unit_price=safe_decimal(item.get("unit_price")),
        rate=_optional_decimal(rate),
        tax_id=tax.get("id") if tax else item.get("tax_id"),
        tax_name=(tax.get("name") if tax else None) or item.get("tax_name"),
        tax_amount=_optional_decimal(item.get("tax_amount")),
    )


def line_from_subscription_line(line) -> TaxLine:
    """Subscription lines carry a rate snapshot and optionally a Tax row."""
    tax = getattr(line, "tax", None)
    rate = line.tax_rate
    if rate is None and tax is not None:
        rate = tax.rate
    return TaxLine(
        quantity=safe_int(line.quantity, 1),
        unit_price=safe_decimal(line.unit_price),
        rate=_optional_decimal(rate),
        tax_id=tax.id if tax is not None else None,
        tax_name=tax.name if tax is not None else None,
    )


def line_from_invoice_line(line) -> TaxLine:
    """Issued invoice lines keep their precomputed absolute tax amount."""
    tax = getattr(line, "tax", None)
    rate = line.tax_rate
    if rate is None and tax is not None:
        rate = tax.rate
    return TaxLine(
        quantity=safe_int(line.quantity, 1),
        unit_price=safe_decimal(line.unit_price),
        rate=_optional_decimal(rate),
        tax_id=tax.id if tax is not None else None,
        tax_name=tax.name if tax is not None else None,
        tax_amount=_optional_decimal(line.tax_amount),
    )


def to_tax_lines(rows: Iterable) -> list[TaxLine]:
    """Normalise any supported line shape into :class:`TaxLine` objects."""
    result = []
    for row in rows:
        if isinstance(row, TaxLine):
            result.append(row)
        elif isinstance(row, Mapping):
            result.append(line_from_mapping(row))
        elif hasattr(row, "tax_amount"):
            result.append(line_from_invoice_line(row))
        else:
            result.append(line_from_subscription_line(row))
    return result


# ---------------------------------------------------------------------------
# Algorithm
# ---------------------------------------------------------------------------

def subtotal_of(lines: Iterable[TaxLine]) -> Decimal:
    return sum((line.line_subtotal for line in lines), _ZERO)


def clamp_discount(subtotal, discount_amount) -> Decimal:
    """Hold the discount within ``[0, subtotal]``."""
    subtotal = max(safe_decimal(subtotal), _ZERO)
    discount = max(safe_decimal(discount_amount), _ZERO)
    return min(discount, subtotal)


def compute_tax_ratio(subtotal, discount_amount) -> Decimal:
    subtotal = safe_decimal(subtotal)
    if subtotal <= _ZERO:
        return _ONE
    discount = clamp_discount(subtotal, discount_amount)
    return (subtotal - discount) / subtotal


def format_rate(rate: Decimal) -> str:
    """``Decimal("18.00")`` -> ``"18"``, ``Decimal("5.50")`` -> ``"5.5"``."""
    return f"{rate.quantize(CENT).normalize():f}"


def rate_key(rate: Decimal) -> str:
    return f"rate-{rate.quantize(CENT)}"


def known_tax_names(taxes: Iterable) -> dict[Decimal, str]:
    """Build the rate -> display name table from Tax rows or (rate, name) pairs."""
    names: dict[Decimal, str] = {}
    for tax in taxes:
        if isinstance(tax, tuple):
            rate, name = tax
        else:
            rate, name = tax.rate, tax.name
        rate = _optional_decimal(rate)
        if rate is None or not name:
            continue
        names.setdefault(rate.quantize(CENT), name)
    return names


def _effective_rate(line: TaxLine) -> Optional[Decimal]:
    if line.rate is not None and line.rate > _ZERO:
        return line.rate
    if line.tax_amount is not None and line.line_subtotal > _ZERO:
        return (line.tax_amount * _HUNDRED / line.line_subtotal).quantize(CENT)
    return None


def _raw_tax(line: TaxLine) -> Decimal:
    if line.tax_amount is not None:
        return line.tax_amount
    if line.rate is None or line.rate <= _ZERO:
        return _ZERO
    return line.line_subtotal * line.rate / _HUNDRED


def _group_name(line: TaxLine, rate: Optional[Decimal], names: Mapping) -> str:
    if line.tax_name:
        return line.tax_name
    if rate is None:
        return "Tax"
    known = names.get(rate.quantize(CENT))
    if known:
        return known
    return f"Tax ({format_rate(rate)}%)"


def group_taxes(lines: Iterable[TaxLine], names: Optional[Mapping] = None) -> list[TaxGroup]:
    """Accumulate raw tax per bucket, in order of first appearance.

    Lines that carry no tax are skipped; the remaining lines are still
    processed.
    """
    names = names or {}
    groups: dict[str, TaxGroup] = {}
    for line in lines:
        raw = _raw_tax(line)
        if raw <= _ZERO:
            continue
        rate = _effective_rate(line)
        if line.tax_id is not None:
            key = str(line.tax_id)
        elif rate is not None:
            key = rate_key(rate)
        else:
            key = "tax"
        group = groups.get(key)
        if group is None:
            groups[key] = TaxGroup(
                key=key,
                name=_group_name(line, rate, names),
                rate=rate.quantize(CENT) if rate is not None else None,
                raw_amount=raw,
            )
        else:
            group.raw_amount += raw
    return list(groups.values())


def allocate_taxes(
    lines: Iterable,
    subtotal=None,
    discount_amount=_ZERO,
    names: Optional[Mapping] = None,
) -> TaxAllocation:
    """Produce the grouped, discount-scaled tax breakdown for *lines*.

    *subtotal* defaults to the sum of ``quantity * unit_price``.  Negative or
    oversized discounts are clamped, never rejected.
    """
    tax_lines = to_tax_lines(lines)
    if subtotal is None:
        subtotal = subtotal_of(tax_lines)
    subtotal = max(money(subtotal), _ZERO)
    discount = money(clamp_discount(subtotal, discount_amount))
    ratio = compute_tax_ratio(subtotal, discount)

    groups = group_taxes(tax_lines, names)
    breakdown = [
        BreakdownEntry(name=g.name, rate=g.rate, amount=money(g.raw_amount * ratio))
        for g in groups
    ]
    return TaxAllocation(
        subtotal=subtotal,
        discount_amount=discount,
        tax_ratio=ratio,
        tax_groups=groups,
        final_breakdown=breakdown,
    )
