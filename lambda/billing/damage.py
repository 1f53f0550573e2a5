"""
Damage liability - per-marker charge assessment and checkout/check-in diff.

Liability tiers by repair cost:
- pre-existing:        never charged
- below 500:           customer pays in full, no claim
- 500 up to 1500:      customer pays up to the excess, insurer the rest
- above 1500:          insurance claim, customer pays the excess
"""

from billing.config import (
    DEFAULT_INSURANCE_EXCESS,
    MINOR_DAMAGE_CEILING,
    MODERATE_DAMAGE_CEILING,
)
from billing.models import (
    DamageCharge,
    DamageComparisonReport,
    DamageMarker,
    InspectionRecord,
    InspectionType,
)
from billing import rates


def calculate_damage_charge(
    marker: DamageMarker,
    is_pre_existing: bool,
    insurance_excess: float = DEFAULT_INSURANCE_EXCESS,
) -> DamageCharge:
    """
    Classifies one damage marker into a liability tier.

    customer_liability + insurance_covers == repair_cost for every
    chargeable result; both are zero for pre-existing damage.
    """
    repair_cost, is_estimate = rates.damage_repair_cost(marker.type, marker.severity)

    base = {
        "damage_id": marker.id,
        "damage_type": marker.type,
        "severity": marker.severity,
        "repair_cost": repair_cost,
        "is_estimate": is_estimate,
    }

    if is_pre_existing:
        return DamageCharge(
            **base,
            customer_liability=0.0,
            insurance_covers=0.0,
            requires_insurance_claim=False,
            is_pre_existing=True,
            chargeable=False,
        )

    if repair_cost < MINOR_DAMAGE_CEILING:
        return DamageCharge(
            **base,
            customer_liability=repair_cost,
            insurance_covers=0.0,
            requires_insurance_claim=False,
            is_pre_existing=False,
            chargeable=True,
        )

    if repair_cost <= MODERATE_DAMAGE_CEILING:
        return DamageCharge(
            **base,
            customer_liability=min(repair_cost, insurance_excess),
            insurance_covers=max(0.0, repair_cost - insurance_excess),
            requires_insurance_claim=True,
            is_pre_existing=False,
            chargeable=True,
        )

    # An excess above the repair cost would make the insurer share negative
    customer_liability = min(insurance_excess, repair_cost)
    return DamageCharge(
        **base,
        customer_liability=customer_liability,
        insurance_covers=repair_cost - customer_liability,
        requires_insurance_claim=True,
        is_pre_existing=False,
        chargeable=True,
    )


def calculate_all_damages(
    checkout_markers: list[DamageMarker],
    checkin_markers: list[DamageMarker],
    insurance_excess: float = DEFAULT_INSURANCE_EXCESS,
) -> list[DamageCharge]:
    """
    Assesses every check-in marker against the checkout set.

    A marker is pre-existing iff its id was recorded at checkout.
    There is no positional or descriptive matching.
    """
    checkout_ids = {marker.id for marker in checkout_markers}
    return [
        calculate_damage_charge(marker, marker.id in checkout_ids, insurance_excess)
        for marker in checkin_markers
    ]


def compare_inspections(
    checkout: InspectionRecord,
    checkin: InspectionRecord,
    insurance_excess: float = DEFAULT_INSURANCE_EXCESS,
) -> DamageComparisonReport:
    """
    Damage diff between two inspections, with liability totals.

    LEGACY inspections carry no markers and compare as empty sets.
    """
    checkout_markers = _markers(checkout)
    checkin_markers = _markers(checkin)

    charges = calculate_all_damages(checkout_markers, checkin_markers, insurance_excess)
    chargeable = [c for c in charges if c.chargeable]

    return DamageComparisonReport(
        charges=charges,
        new_damage_count=len(chargeable),
        pre_existing_count=sum(1 for c in charges if c.is_pre_existing),
        total_chargeable_amount=sum(c.customer_liability for c in chargeable),
        total_insurance_amount=sum(c.insurance_covers for c in chargeable),
        requires_insurance_claim=any(c.requires_insurance_claim for c in chargeable),
        has_estimates=any(c.is_estimate for c in charges),
    )


def _markers(inspection: InspectionRecord) -> list[DamageMarker]:
    if inspection.type == InspectionType.LEGACY:
        return []
    return inspection.damage_markers
