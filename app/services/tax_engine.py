# app/services/tax_engine.py
"""Region tax rules and money conversion. All amounts are integer minor units."""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Union

CURRENCY_DECIMALS = {
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "INR": 2,
    "AED": 2,
    "SAR": 2,
    "AUD": 2,
    "CAD": 2,
}
DEFAULT_DECIMALS = 2


class TaxConfig(NamedTuple):
    tax_type: str
    rate: float


DEFAULT_TAX_RULES = {
    "US": TaxConfig("SALES_TAX", 0),  # varies by state
    "EU": TaxConfig("VAT", 20),
    "IN": TaxConfig("GST", 18),
    "CA": TaxConfig("GST", 5),
    "AU": TaxConfig("GST", 10),
    "ME": TaxConfig("VAT", 5),
    "APAC": TaxConfig("VAT", 0),  # varies by country
}
NO_TAX = TaxConfig("NONE", 0)


def _round_half_up(value: Union[Decimal, float]) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def currency_decimals(currency: Optional[str]) -> int:
    return CURRENCY_DECIMALS.get((currency or "").upper(), DEFAULT_DECIMALS)


def parse_amount(amount: Union[str, int, float, Decimal], currency: str = "USD") -> int:
    """Major units ("12.34", 12.34) to minor units (1234)."""
    scaled = Decimal(str(amount)) * (Decimal(10) ** currency_decimals(currency))
    return _round_half_up(scaled)


def format_amount(amount: int, currency: str = "USD") -> float:
    """Minor units (1234) to major units (12.34)."""
    decimals = currency_decimals(currency)
    return float(Decimal(amount) / (Decimal(10) ** decimals))


def get_tax_config(region: Optional[str], tax_rules: Optional[Dict[str, Any]] = None) -> TaxConfig:
    """Clinic tax rules win over the regional default."""
    if tax_rules and tax_rules.get("tax_type"):
        return TaxConfig(tax_rules["tax_type"], tax_rules.get("rate") or 0)
    return DEFAULT_TAX_RULES.get(getattr(region, "value", region), NO_TAX)


def percentage_of(amount: int, rate: Union[int, float]) -> int:
    return _round_half_up(Decimal(amount) * Decimal(str(rate)) / Decimal(100))


def calculate_tax(items: Iterable[Dict[str, Any]], region: Optional[str],
                  tax_rules: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Per-item tax over `items` ({"type", "amount", "tax_rate"?}).

    Returns total_tax and one breakdown entry per item. An item without its own
    tax_rate uses the clinic/region rate. No tax applies when the config is NONE or 0%.
    """
    config = get_tax_config(region, tax_rules)
    if config.tax_type == "NONE" or not config.rate:
        return {"total_tax": 0, "tax_breakdown": [], "tax_type": config.tax_type, "rate": 0}

    breakdown: List[Dict[str, Any]] = []
    total_tax = 0
    for item in items:
        rate = item.get("tax_rate")
        rate = config.rate if rate is None else rate
        tax = percentage_of(item["amount"], rate)
        breakdown.append({
            "tax_type": config.tax_type,
            "rate": rate,
            "amount": tax,
            "taxable_amount": item["amount"],
        })
        total_tax += tax
    return {"total_tax": total_tax, "tax_breakdown": breakdown, "tax_type": config.tax_type, "rate": config.rate}
