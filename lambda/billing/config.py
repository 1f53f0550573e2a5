"""
Configuration for the rental charge and billing engine.

All rates, thresholds, and table names in one place.
Change here, not in business logic modules.
"""

import os

# --- Tax ---

VAT_RATE: float = 0.05

# --- Fuel ---

FUEL_PRICE_PER_LITER: float = 4.5
DEFAULT_TANK_CAPACITY_LITERS: float = 60.0

# --- Mileage ---

DEFAULT_KM_GRACE: float = 50.0
KM_ROUNDING_STEP: int = 10

EXCESS_KM_RATES: dict[str, float] = {
    "economy": 1.5,
    "standard": 2.0,
    "luxury": 2.5,
    "premium": 3.0,
}

# --- Late return ---

LATE_RETURN_GRACE_HOURS: float = 1.0
FULL_DAY_THRESHOLD_HOURS: float = 3.0

LATE_RETURN_HOURLY_RATES: dict[str, float] = {
    "economy": 50.0,
    "standard": 75.0,
    "luxury": 100.0,
    "premium": 150.0,
}

# Vehicle class used when a rate table has no entry for the requested class
DEFAULT_VEHICLE_CLASS: str = "standard"

# --- Cleaning ---

CLEANING_FEES: dict[str, float] = {
    "none": 0.0,
    "light": 100.0,
    "deep": 200.0,
    "smoking": 500.0,
}

# --- Tolls ---

SALIK_RATE_PER_TRIP: float = 8.0

# --- Damage ---

DEFAULT_INSURANCE_EXCESS: float = 1500.0
MINOR_DAMAGE_CEILING: float = 500.0      # below: customer pays in full
MODERATE_DAMAGE_CEILING: float = 1500.0  # up to and including: excess applies
DAMAGE_DEFAULT_COST: float = 500.0
DAMAGE_FALLBACK_TYPE: str = "OTHER"

# Base repair cost (AED) by damage type and severity
DAMAGE_COST_MATRIX: dict[str, dict[str, float]] = {
    "SCRATCH": {"minor": 250, "moderate": 600, "major": 1200},
    "DENT": {"minor": 450, "moderate": 850, "major": 2500},
    "CRACK": {"minor": 600, "moderate": 1000, "major": 2000},
    "PAINT": {"minor": 350, "moderate": 700, "major": 1500},
    "GLASS": {"minor": 500, "moderate": 1200, "major": 2500},
    "TIRE": {"minor": 400, "moderate": 800, "major": 1600},
    "BROKEN": {"minor": 400, "moderate": 800, "major": 1800},
    "MISSING": {"minor": 500, "moderate": 1000, "major": 2000},
    "BENT": {"minor": 450, "moderate": 900, "major": 2200},
    "CAVED": {"minor": 600, "moderate": 1200, "major": 3000},
    "LOOSE": {"minor": 200, "moderate": 500, "major": 1000},
    "CRACKED": {"minor": 500, "moderate": 1000, "major": 2000},
    "FADED": {"minor": 300, "moderate": 600, "major": 1200},
    "SCRAPPED": {"minor": 400, "moderate": 800, "major": 1500},
    "PILLED": {"minor": 250, "moderate": 500, "major": 1000},
    "CRUSHED": {"minor": 800, "moderate": 1500, "major": 3500},
    "OTHER": {"minor": 300, "moderate": 600, "major": 1200},
}

# --- Settlement ---

DEFAULT_SECURITY_DEPOSIT: float = 1500.0

# --- Cost sheets ---

DEFAULT_FINANCING_RATE_PERCENT: float = 6.0
DEFAULT_OVERHEAD_PERCENT: float = 5.0
DEFAULT_TARGET_MARGIN_PERCENT: float = 15.0

# Residual value by lease term: (longest term in months, residual %).
# Terms beyond the last entry use LONG_TERM_RESIDUAL_VALUE_PERCENT.
RESIDUAL_VALUE_BY_TERM: list[tuple[int, float]] = [
    (12, 85.0),
    (18, 75.0),
    (24, 65.0),
    (30, 55.0),
]
LONG_TERM_RESIDUAL_VALUE_PERCENT: float = 45.0

# Multiplier on the suggested rate for short leases; longer terms pay none
SHORT_LEASE_PREMIUM: list[tuple[int, float]] = [
    (12, 1.25),
    (18, 1.15),
    (24, 1.10),
]

LOW_MARGIN_PERCENT: float = 5.0
MARGIN_WARNING_PERCENT: float = 10.0

# Submitting a cost sheet approves it immediately unless an explicit gate is wanted
COST_SHEET_AUTO_APPROVE: bool = os.environ.get("COST_SHEET_AUTO_APPROVE", "true").lower() == "true"

# --- Storage ---

COST_SHEETS_TABLE: str = os.environ.get("COST_SHEETS_TABLE", "quote_cost_sheets")
COST_SHEET_LINES_TABLE: str = os.environ.get("COST_SHEET_LINES_TABLE", "quote_cost_sheet_lines")
COST_SHEET_APPROVALS_TABLE: str = os.environ.get("COST_SHEET_APPROVALS_TABLE", "cost_sheet_approvals")
AGREEMENT_LINES_TABLE: str = os.environ.get("AGREEMENT_LINES_TABLE", "agreement_lines")
BILLING_CYCLES_TABLE: str = os.environ.get("BILLING_CYCLES_TABLE", "contract_billing_cycles")
TOLLS_FINES_TABLE: str = os.environ.get("TOLLS_FINES_TABLE", "tolls_fines")
EXPENSES_TABLE: str = os.environ.get("EXPENSES_TABLE", "contract_expenses")
COMPLIANCE_EXCEPTIONS_TABLE: str = os.environ.get("COMPLIANCE_EXCEPTIONS_TABLE", "compliance_exceptions")
