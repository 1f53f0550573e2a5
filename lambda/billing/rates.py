"""
Rate tables - lookups over the configured rate and cost tables.

Every lookup has a required default entry so a missing key never
blocks a settlement. Tables themselves live in config.
"""

import logging

from billing.config import (
    EXCESS_KM_RATES,
    LATE_RETURN_HOURLY_RATES,
    CLEANING_FEES,
    DAMAGE_COST_MATRIX,
    DAMAGE_FALLBACK_TYPE,
    DAMAGE_DEFAULT_COST,
    DEFAULT_VEHICLE_CLASS,
)
from billing.models import CleaningType, DamageSeverity, VehicleClass

logger = logging.getLogger("billing.rates")


def excess_km_rate(vehicle_class: VehicleClass | str) -> float:
    """Per-km rate for kilometres driven beyond the allowance."""
    return _class_rate(EXCESS_KM_RATES, vehicle_class)


def late_return_hourly_rate(vehicle_class: VehicleClass | str) -> float:
    """Per-hour rate for late returns within the full-day threshold."""
    return _class_rate(LATE_RETURN_HOURLY_RATES, vehicle_class)


def cleaning_fee(cleaning_type: CleaningType | str) -> float:
    key = _key(cleaning_type)
    if key not in CLEANING_FEES:
        logger.warning("cleaning_fee_unknown_type cleaning_type=%s", key)
        return CLEANING_FEES[CleaningType.NONE.value]
    return CLEANING_FEES[key]


def damage_repair_cost(damage_type: str, severity: DamageSeverity | str) -> tuple[float, bool]:
    """
    Base repair cost for a damage type and severity.

    Returns (cost, is_estimate). Unknown types use the OTHER row;
    if that misses too, DAMAGE_DEFAULT_COST applies. is_estimate is
    True whenever the exact (type, severity) cell was not found.
    """
    severity_key = _key(severity)
    row = DAMAGE_COST_MATRIX.get(damage_type)

    if row is not None and severity_key in row:
        return float(row[severity_key]), False

    fallback = DAMAGE_COST_MATRIX.get(DAMAGE_FALLBACK_TYPE, {})
    if row is None and severity_key in fallback:
        logger.warning(
            "damage_cost_fallback_row damage_type=%s severity=%s fallback=%s",
            damage_type, severity_key, DAMAGE_FALLBACK_TYPE,
        )
        return float(fallback[severity_key]), True

    logger.warning(
        "damage_cost_default damage_type=%s severity=%s default=%s",
        damage_type, severity_key, DAMAGE_DEFAULT_COST,
    )
    return DAMAGE_DEFAULT_COST, True


# --- Internal ---

def _class_rate(table: dict[str, float], vehicle_class: VehicleClass | str) -> float:
    key = _key(vehicle_class)
    if key not in table:
        logger.warning("rate_unknown_vehicle_class vehicle_class=%s default=%s", key, DEFAULT_VEHICLE_CLASS)
        return table[DEFAULT_VEHICLE_CLASS]
    return table[key]


def _key(value) -> str:
    """Enum members and plain strings both index the tables by value."""
    return value.value if hasattr(value, "value") else str(value)
