"""
Agreement pricing - component breakdown for agreement lines and agreements.

Records created before itemized pricing store only a flat total. The same
rule is applied at line and agreement level so totals never diverge
between the two granularities.
"""

from typing import Any, Mapping

from billing.models import AgreementLinePricing, ItemizedPricing, LegacyPricing


LINE_TOTAL_FIELD = "line_total"
AGREEMENT_TOTAL_FIELD = "total_amount"

_COST_FIELDS = (
    "base_rate",
    "insurance_cost",
    "maintenance_cost",
    "roadside_cost",
    "replacement_cost",
)


def calculate_agreement_line_pricing(line: Mapping[str, Any]) -> AgreementLinePricing:
    """Breakdown for one stored agreement line."""
    return _resolve_pricing(line, LINE_TOTAL_FIELD)


def calculate_agreement_pricing(agreement: Mapping[str, Any]) -> AgreementLinePricing:
    """Breakdown for a whole stored agreement."""
    return _resolve_pricing(agreement, AGREEMENT_TOTAL_FIELD)


def sum_line_pricing(pricings: list[AgreementLinePricing]) -> ItemizedPricing:
    """
    Component-wise total across lines.

    Legacy lines contribute their flat total as base rate, so the sum
    equals the sum of the lines' calculated totals.
    """
    totals = {field: sum(getattr(p, field) for p in pricings) for field in _COST_FIELDS}
    return ItemizedPricing(
        **totals,
        calculated_total=sum(p.calculated_total for p in pricings),
    )


# --- Internal ---

def _resolve_pricing(record: Mapping[str, Any], total_field: str) -> AgreementLinePricing:
    """
    Itemized when a base rate is stored, legacy flat total otherwise.

    Components are read from the record itself or its rate_breakdown.
    """
    components = record.get("rate_breakdown") or record

    if components.get("base_rate") is None:
        stored_total = float(record.get(total_field) or 0)
        return LegacyPricing(base_rate=stored_total, calculated_total=stored_total)

    costs = {field: float(components.get(field) or 0) for field in _COST_FIELDS}
    return ItemizedPricing(
        **costs,
        insurance_package=components.get("insurance_package"),
        calculated_total=sum(costs.values()),
    )
