"""
Usage charges - fuel, mileage, cleaning, late return, and tolls.

Pure functions over usage facts recorded at checkout and check-in.
Favorable outcomes (more fuel returned, early return, under the km
allowance) are clamped to a zero charge, never a negative one.
"""

import math
from datetime import datetime

from billing.config import (
    FUEL_PRICE_PER_LITER,
    DEFAULT_TANK_CAPACITY_LITERS,
    DEFAULT_KM_GRACE,
    KM_ROUNDING_STEP,
    LATE_RETURN_GRACE_HOURS,
    FULL_DAY_THRESHOLD_HOURS,
    SALIK_RATE_PER_TRIP,
)
from billing.models import (
    CleaningType,
    FuelPolicy,
    LateReturnCharge,
    MileageCharge,
    VehicleClass,
)
from billing import rates


def calculate_fuel_charge(
    checkout_level: float,
    checkin_level: float,
    policy: FuelPolicy | str = FuelPolicy.FULL_TO_FULL,
    tank_capacity: float = DEFAULT_TANK_CAPACITY_LITERS,
) -> float:
    """
    Fuel shortfall charge from tank levels given as percentages.

    FULL_TO_FULL: shortfall billed per liter.
    SAME_TO_SAME: no charge when returned at the checkout level.
    PREPAID:      never charged.
    """
    policy = FuelPolicy(policy)
    difference = checkout_level - checkin_level

    if policy == FuelPolicy.PREPAID:
        return 0.0
    if policy == FuelPolicy.SAME_TO_SAME and difference == 0:
        return 0.0
    if difference <= 0:
        return 0.0

    shortage_liters = (difference / 100) * tank_capacity
    return shortage_liters * FUEL_PRICE_PER_LITER


def calculate_excess_km_charge(
    checkout_odometer: float,
    checkin_odometer: float,
    included_km: float,
    vehicle_class: VehicleClass | str = VehicleClass.STANDARD,
    grace_period: float = DEFAULT_KM_GRACE,
) -> MileageCharge:
    """
    Excess kilometre charge beyond the allowance plus grace.

    The billable distance is rounded UP to the next KM_ROUNDING_STEP.
    """
    km_driven = checkin_odometer - checkout_odometer
    excess_km = max(0.0, km_driven - included_km - grace_period)
    rounded_km = math.ceil(excess_km / KM_ROUNDING_STEP) * KM_ROUNDING_STEP

    return MileageCharge(
        excess_km=excess_km,
        rounded_km=rounded_km,
        charge=rounded_km * rates.excess_km_rate(vehicle_class),
    )


def calculate_cleaning_fee(cleaning_type: CleaningType | str) -> float:
    """Flat fee by cleaning category. Smoking fees are non-refundable."""
    return rates.cleaning_fee(cleaning_type)


def calculate_late_return_charge(
    scheduled_return: datetime,
    actual_return: datetime,
    daily_rate: float,
    vehicle_class: VehicleClass | str = VehicleClass.STANDARD,
    grace_period_hours: float = LATE_RETURN_GRACE_HOURS,
) -> LateReturnCharge:
    """
    Late return charge after the grace period.

    Up to FULL_DAY_THRESHOLD_HOURS late: hourly rate, partial hours
    rounded up. Beyond it: the daily rate replaces the hourly accrual.
    """
    diff_hours = (actual_return - scheduled_return).total_seconds() / 3600
    late_hours = max(0.0, diff_hours - grace_period_hours)

    if late_hours == 0:
        return LateReturnCharge(late_hours=0.0, charge=0.0, is_full_day=False)

    if late_hours > FULL_DAY_THRESHOLD_HOURS:
        return LateReturnCharge(late_hours=late_hours, charge=daily_rate, is_full_day=True)

    hourly_rate = rates.late_return_hourly_rate(vehicle_class)
    return LateReturnCharge(
        late_hours=late_hours,
        charge=math.ceil(late_hours) * hourly_rate,
        is_full_day=False,
    )


def calculate_salik_charge(trips: int, rate_per_trip: float = SALIK_RATE_PER_TRIP) -> float:
    """Toll gate charge for trips recorded during the rental."""
    return max(0, trips) * rate_per_trip
