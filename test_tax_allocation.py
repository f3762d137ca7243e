"""Tests for the tax allocation engine (no application needed)."""

from decimal import Decimal

from services.tax import (
    TaxLine,
    allocate_taxes,
    clamp_discount,
    compute_tax_ratio,
    format_rate,
    group_taxes,
    known_tax_names,
    line_from_mapping,
)


def _line(quantity, price, rate=None, **kwargs):
    return TaxLine(
        quantity=quantity,
        unit_price=Decimal(price),
        rate=Decimal(rate) if rate is not None else None,
        **kwargs,
    )


class TestTaxRatio:
    def test_discount_scales_tax(self):
        # Discount of 10% scales the 18% tax down to 162
        allocation = allocate_taxes([_line(1, "1000", "18")], discount_amount=Decimal("100"))
        assert allocation.tax_ratio == Decimal("0.9")
        assert allocation.tax_groups[0].raw_amount == Decimal("180")
        assert allocation.final_breakdown[0].amount == Decimal("162.00")
        assert allocation.tax_amount == Decimal("162.00")
        assert allocation.total == Decimal("1062.00")

    def test_zero_subtotal_ratio_is_one(self):
        # Nothing to discount, so tax is never scaled
        assert compute_tax_ratio(Decimal("0"), Decimal("50")) == Decimal("1")
        allocation = allocate_taxes([], subtotal=Decimal("0"), discount_amount=Decimal("50"))
        assert allocation.tax_ratio == Decimal("1")
        assert allocation.discount_amount == Decimal("0.00")
        assert allocation.total == Decimal("0.00")

    def test_no_discount_ratio_is_one(self):
        allocation = allocate_taxes([_line(2, "50", "20")])
        assert allocation.tax_ratio == Decimal("1")
        assert allocation.total == Decimal("120.00")

    def test_oversized_discount_is_clamped(self):
        allocation = allocate_taxes([_line(1, "1000", "18")], discount_amount=Decimal("2000"))
        assert allocation.discount_amount == Decimal("1000.00")
        assert allocation.tax_ratio == Decimal("0")
        assert allocation.tax_amount == Decimal("0.00")
        assert allocation.total == Decimal("0.00")

    def test_negative_discount_is_clamped(self):
        assert clamp_discount(Decimal("100"), Decimal("-5")) == Decimal("0")
        allocation = allocate_taxes([_line(1, "100", "10")], discount_amount=Decimal("-5"))
        assert allocation.discount_amount == Decimal("0.00")
        assert allocation.total == Decimal("110.00")


class TestTaxGrouping:
    def test_zero_rate_line_skipped_later_lines_processed(self):
        # A zero-rate line must not stop the lines after it
        lines = [
            _line(1, "100", "0"),
            _line(1, "100", "18"),
            _line(2, "50", "5"),
        ]
        allocation = allocate_taxes(lines)
        assert [g.key for g in allocation.tax_groups] == ["rate-18.00", "rate-5.00"]
        assert allocation.tax_amount == Decimal("23.00")
        assert allocation.total == Decimal("323.00")

    def test_line_without_rate_skipped(self):
        groups = group_taxes([_line(1, "100"), _line(1, "100", "10")])
        assert len(groups) == 1
        assert groups[0].raw_amount == Decimal("10")

    def test_groups_by_tax_id_first(self):
        lines = [
            _line(1, "100", "20", tax_id=7, tax_name="Standard VAT"),
            _line(3, "10", "20", tax_id=7, tax_name="Standard VAT"),
            _line(1, "100", "20"),
        ]
        groups = group_taxes(lines)
        assert [g.key for g in groups] == ["7", "rate-20.00"]
        assert groups[0].name == "Standard VAT"
        assert groups[0].raw_amount == Decimal("26")

    def test_group_order_follows_first_appearance(self):
        lines = [_line(1, "10", "5"), _line(1, "10", "18"), _line(1, "10", "5")]
        assert [g.key for g in group_taxes(lines)] == ["rate-5.00", "rate-18.00"]

    def test_known_rate_name_used_when_line_has_none(self):
        names = known_tax_names([(Decimal("18"), "GST 18%")])
        groups = group_taxes([_line(1, "100", "18")], names)
        assert groups[0].name == "GST 18%"

    def test_fallback_name_formats_rate(self):
        groups = group_taxes([_line(1, "100", "18.00"), _line(1, "100", "5.5")])
        assert [g.name for g in groups] == ["Tax (18%)", "Tax (5.5%)"]

    def test_precomputed_tax_amount_kept(self):
        line = _line(1, "100", tax_amount=Decimal("7.77"))
        allocation = allocate_taxes([line])
        assert allocation.tax_groups[0].key == "rate-7.77"
        assert allocation.tax_amount == Decimal("7.77")

    def test_half_up_rounding_per_group(self):
        allocation = allocate_taxes([_line(1, "33.33", "18")])
        assert allocation.final_breakdown[0].amount == Decimal("6.00")


class TestTaxAdapters:
    def test_nested_tax_mapping(self):
        line = line_from_mapping({
            "quantity": "2",
            "unit_price": "10.00",
            "tax": {"id": 1, "name": "VAT", "rate": "20"},
        })
        assert line.quantity == 2
        assert line.unit_price == Decimal("10.00")
        assert line.rate == Decimal("20")
        assert line.tax_id == 1
        assert line.tax_name == "VAT"

    def test_flat_mapping(self):
        line = line_from_mapping({
            "quantity": 1,
            "unit_price": "99.90",
            "tax_rate": "5",
            "tax_amount": "5.00",
        })
        assert line.rate == Decimal("5")
        assert line.tax_amount == Decimal("5.00")
        assert line.tax_id is None

    def test_mapping_and_tax_line_agree(self):
        items = [{"quantity": 1, "unit_price": "1000", "tax_rate": "18"}]
        from_items = allocate_taxes(items, discount_amount=Decimal("100"))
        from_lines = allocate_taxes([_line(1, "1000", "18")], discount_amount=Decimal("100"))
        assert from_items.to_dict() == from_lines.to_dict()

    def test_deterministic(self):
        lines = [_line(3, "19.99", "18"), _line(1, "5", "5")]
        first = allocate_taxes(lines, discount_amount=Decimal("7.50")).to_dict()
        second = allocate_taxes(lines, discount_amount=Decimal("7.50")).to_dict()
        assert first == second

    def test_to_dict_keys(self):
        payload = allocate_taxes([_line(1, "10", "10")]).to_dict()
        assert payload["subtotal"] == "10.00"
        assert payload["tax_breakdown"] == [
            {"name": "Tax (10%)", "rate": "10.00", "amount": "1.00"}
        ]
        assert payload["total"] == "11.00"


class TestFormatRate:
    def test_whole_number(self):
        assert format_rate(Decimal("18.00")) == "18"
        assert format_rate(Decimal("20")) == "20"

    def test_fraction(self):
        assert format_rate(Decimal("5.50")) == "5.5"
