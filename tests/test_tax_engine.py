# tests/test_tax_engine.py
import pytest

from app.services import tax_engine


@pytest.mark.parametrize("amount, expected", [
    ("12.34", 1234),
    (12.345, 1235),
    (0.005, 1),
    (100, 10000),
])
def test_parse_amount_rounds_half_up(amount, expected):
    assert tax_engine.parse_amount(amount) == expected


def test_format_amount_returns_major_units():
    assert tax_engine.format_amount(1234) == 12.34
    assert tax_engine.format_amount(0, "INR") == 0.0


def test_percentage_of_rounds_half_up():
    # 333 * 18% = 59.94
    assert tax_engine.percentage_of(333, 18) == 60
    # 250 * 10% = 25.0
    assert tax_engine.percentage_of(250, 10) == 25
    # 5 * 10% = 0.5
    assert tax_engine.percentage_of(5, 10) == 1


def test_regional_defaults():
    assert tax_engine.get_tax_config("IN") == tax_engine.TaxConfig("GST", 18)
    assert tax_engine.get_tax_config("EU").rate == 20
    assert tax_engine.get_tax_config("MARS") == tax_engine.NO_TAX
    assert tax_engine.get_tax_config(None) == tax_engine.NO_TAX


def test_clinic_tax_rules_override_region():
    config = tax_engine.get_tax_config("IN", {"tax_type": "VAT", "rate": 7.5})
    assert config == tax_engine.TaxConfig("VAT", 7.5)


def test_zero_rate_region_charges_nothing():
    result = tax_engine.calculate_tax([{"type": "consultation", "amount": 10000}], "US")
    assert result["total_tax"] == 0
    assert result["tax_breakdown"] == []


def test_tax_per_item_with_item_override():
    items = [
        {"type": "consultation", "amount": 10000},
        {"type": "medication", "amount": 5000, "tax_rate": 5},
        {"type": "procedure", "amount": 2000, "tax_rate": 0},
    ]
    result = tax_engine.calculate_tax(items, "IN")

    assert result["tax_type"] == "GST"
    assert [entry["amount"] for entry in result["tax_breakdown"]] == [1800, 250, 0]
    assert [entry["rate"] for entry in result["tax_breakdown"]] == [18, 5, 0]
    assert result["total_tax"] == 2050
