"""
Settlement - charge aggregation, VAT, and deposit netting.

VAT is applied once, to the combined subtotal, never per category.
"""

from datetime import datetime

from billing.config import (
    VAT_RATE,
    DEFAULT_INSURANCE_EXCESS,
    DEFAULT_KM_GRACE,
    DEFAULT_TANK_CAPACITY_LITERS,
)
from billing.models import (
    ChargeBreakdown,
    CleaningType,
    DepositSettlement,
    FuelPolicy,
    InspectionRecord,
    RentalSettlement,
    TotalCharges,
    VehicleClass,
)
from billing.charges import (
    calculate_fuel_charge,
    calculate_excess_km_charge,
    calculate_cleaning_fee,
    calculate_late_return_charge,
    calculate_salik_charge,
)
from billing.damage import compare_inspections


def calculate_vat(amount: float) -> float:
    return amount * VAT_RATE


def calculate_total_charges(charges: ChargeBreakdown) -> TotalCharges:
    """Sums the six charge categories and adds VAT to the subtotal."""
    subtotal = (
        charges.damage_charges
        + charges.fuel_charge
        + charges.excess_km_charge
        + charges.cleaning_fee
        + charges.late_return_charge
        + charges.salik_charge
    )
    vat = calculate_vat(subtotal)

    return TotalCharges(
        **charges.model_dump(),
        subtotal=subtotal,
        vat=vat,
        total=subtotal + vat,
    )


def calculate_deposit_refund(security_deposit: float, total_charges: float) -> DepositSettlement:
    """Nets charges against the held deposit: refund or amount still due."""
    balance = security_deposit - total_charges

    if balance >= 0:
        return DepositSettlement(refund=balance, additional_payment=0.0)
    return DepositSettlement(refund=0.0, additional_payment=abs(balance))


def settle_rental(
    checkout: InspectionRecord,
    checkin: InspectionRecord,
    *,
    scheduled_return: datetime,
    actual_return: datetime,
    daily_rate: float,
    included_km: float,
    security_deposit: float,
    vehicle_class: VehicleClass | str = VehicleClass.STANDARD,
    fuel_policy: FuelPolicy | str = FuelPolicy.FULL_TO_FULL,
    tank_capacity: float = DEFAULT_TANK_CAPACITY_LITERS,
    cleaning_type: CleaningType | str = CleaningType.NONE,
    salik_trips: int = 0,
    km_grace: float = DEFAULT_KM_GRACE,
    insurance_excess: float = DEFAULT_INSURANCE_EXCESS,
) -> RentalSettlement:
    """
    Full check-in settlement from the two inspections and rental terms.

    Damage is charged at the customer-liability share of new damage only.
    """
    fuel_charge = calculate_fuel_charge(checkout.fuel_level, checkin.fuel_level, fuel_policy, tank_capacity)

    mileage = calculate_excess_km_charge(
        checkout.odometer_reading,
        checkin.odometer_reading,
        included_km,
        vehicle_class,
        km_grace,
    )
    cleaning = calculate_cleaning_fee(cleaning_type)
    late_return = calculate_late_return_charge(scheduled_return, actual_return, daily_rate, vehicle_class)
    salik = calculate_salik_charge(salik_trips)
    damage = compare_inspections(checkout, checkin, insurance_excess)

    totals = calculate_total_charges(ChargeBreakdown(
        damage_charges=damage.total_chargeable_amount,
        fuel_charge=fuel_charge,
        excess_km_charge=mileage.charge,
        cleaning_fee=cleaning,
        late_return_charge=late_return.charge,
        salik_charge=salik,
    ))

    return RentalSettlement(
        fuel_charge=fuel_charge,
        mileage=mileage,
        cleaning_fee=cleaning,
        late_return=late_return,
        salik_charge=salik,
        damage=damage,
        totals=totals,
        deposit=calculate_deposit_refund(security_deposit, totals.total),
    )
