"""
Domain models for the rental charge and billing engine.

All Pydantic models in one place. Imported by the calculators, the
storage layer, the service layer, and the handler. Single source of
truth for data contracts.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from billing.config import (
    DEFAULT_FINANCING_RATE_PERCENT,
    DEFAULT_OVERHEAD_PERCENT,
    DEFAULT_TARGET_MARGIN_PERCENT,
)


# --- Domain Enums ---

class FuelPolicy(str, Enum):
    """Governs whether a fuel-level delta produces a charge."""
    FULL_TO_FULL = "FULL_TO_FULL"
    SAME_TO_SAME = "SAME_TO_SAME"
    PREPAID = "PREPAID"


class CleaningType(str, Enum):
    NONE = "none"
    LIGHT = "light"
    DEEP = "deep"
    SMOKING = "smoking"


class VehicleClass(str, Enum):
    """Drives per-km and per-hour rate tiers."""
    ECONOMY = "economy"
    STANDARD = "standard"
    LUXURY = "luxury"
    PREMIUM = "premium"


class DamageSeverity(str, Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"


class InspectionType(str, Enum):
    """
    OUT / IN are itemized inspections with damage markers.
    LEGACY records predate marker capture and carry none.
    """
    OUT = "OUT"
    IN = "IN"
    LEGACY = "LEGACY"


class CostSheetStatus(str, Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalAction(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    REQUESTED_CHANGES = "requested_changes"


class MarginBand(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    LOW = "low"


class BillingCycleStatus(str, Enum):
    OPEN = "open"
    FINALIZED = "finalized"
    INVOICED = "invoiced"


# --- Inspection Context ---

class DamageMarker(BaseModel):
    """
    A single damage mark captured during inspection.

    The id is stable across checkout and check-in inspections for the
    same physical damage.
    """
    id: str
    type: str
    severity: DamageSeverity
    position: str | None = None
    photos: list[str] = []
    notes: str | None = None


class DamageCharge(BaseModel):
    """Liability split for one damage marker."""
    damage_id: str
    damage_type: str
    severity: DamageSeverity
    repair_cost: float = Field(ge=0.0)
    customer_liability: float = Field(ge=0.0)
    insurance_covers: float = Field(ge=0.0)
    requires_insurance_claim: bool
    is_pre_existing: bool
    chargeable: bool

    # True when the repair cost came from a fallback row, not the matrix
    is_estimate: bool = False


class InspectionRecord(BaseModel):
    """Usage facts recorded at checkout (OUT) or check-in (IN)."""
    type: InspectionType
    fuel_level: float = Field(ge=0.0, le=100.0)
    odometer_reading: float = Field(ge=0.0)
    damage_markers: list[DamageMarker] = []
    timestamp: datetime | None = None
    inspector_name: str | None = None


class DamageComparisonReport(BaseModel):
    """Checkout vs. check-in damage diff with liability totals."""
    charges: list[DamageCharge] = []
    new_damage_count: int = 0
    pre_existing_count: int = 0
    total_chargeable_amount: float = 0.0
    total_insurance_amount: float = 0.0
    requires_insurance_claim: bool = False
    has_estimates: bool = False


# --- Charge Context ---

class MileageCharge(BaseModel):
    excess_km: float = Field(ge=0.0)
    rounded_km: float = Field(ge=0.0)
    charge: float = Field(ge=0.0)


class LateReturnCharge(BaseModel):
    late_hours: float = Field(ge=0.0)
    charge: float = Field(ge=0.0)
    is_full_day: bool = False


class ChargeBreakdown(BaseModel):
    """The six billable charge categories before tax."""
    damage_charges: float = Field(0.0, ge=0.0)
    fuel_charge: float = Field(0.0, ge=0.0)
    excess_km_charge: float = Field(0.0, ge=0.0)
    cleaning_fee: float = Field(0.0, ge=0.0)
    late_return_charge: float = Field(0.0, ge=0.0)
    salik_charge: float = Field(0.0, ge=0.0)


class TotalCharges(ChargeBreakdown):
    subtotal: float = Field(ge=0.0)
    vat: float = Field(ge=0.0)
    total: float = Field(ge=0.0)


class DepositSettlement(BaseModel):
    """Exactly one side is non-zero, or both are zero at exact balance."""
    refund: float = Field(ge=0.0)
    additional_payment: float = Field(ge=0.0)


class RentalSettlement(BaseModel):
    """Full check-in settlement: per-category detail plus totals."""
    fuel_charge: float
    mileage: MileageCharge
    cleaning_fee: float
    late_return: LateReturnCharge
    salik_charge: float
    damage: DamageComparisonReport
    totals: TotalCharges
    deposit: DepositSettlement


# --- Pricing Context ---

class _LinePricing(BaseModel):
    base_rate: float = 0.0
    insurance_cost: float = 0.0
    insurance_package: str | None = None
    maintenance_cost: float = 0.0
    roadside_cost: float = 0.0
    replacement_cost: float = 0.0
    calculated_total: float = 0.0


class ItemizedPricing(_LinePricing):
    """Line or agreement stored with a per-component breakdown."""
    has_breakdown: Literal[True] = True
    is_legacy: Literal[False] = False


class LegacyPricing(_LinePricing):
    """
    Record that predates itemized pricing. The stored flat total is
    reported as the base rate; every other component is zero.
    """
    has_breakdown: Literal[False] = False
    is_legacy: Literal[True] = True


AgreementLinePricing = Union[ItemizedPricing, LegacyPricing]


# --- Cost Sheet Context ---

class CostSheetLine(BaseModel):
    """Per-vehicle-line monthly cost and rate for a quote."""
    id: str | None = None
    cost_sheet_id: str | None = None
    line_no: int = Field(ge=1)
    vehicle_id: str | None = None
    vehicle_class_id: str | None = None
    quantity: int = Field(1, ge=0)
    lease_term_months: int = Field(ge=1)

    acquisition_cost_aed: float = Field(0.0, ge=0.0)
    residual_value_percent: float | None = Field(None, ge=0.0, le=100.0)
    insurance_per_month_aed: float = Field(0.0, ge=0.0)
    maintenance_per_month_aed: float = Field(0.0, ge=0.0)
    registration_admin_per_month_aed: float = Field(0.0, ge=0.0)
    other_costs_per_month_aed: float = Field(0.0, ge=0.0)

    # Derived
    total_cost_per_month_aed: float = 0.0
    suggested_rate_per_month_aed: float = 0.0
    quoted_rate_per_month_aed: float = 0.0
    actual_margin_percent: float = 0.0


class CostSheet(BaseModel):
    """
    Versioned cost approval artifact for a quote.

    Lifecycle: draft -> pending_approval -> approved | rejected.
    Recalculating anything but a draft creates the next version.
    """
    id: str
    quote_id: str
    cost_sheet_no: str | None = None
    version: int = Field(1, ge=1)
    # Bumped on every stored update; writes are conditional on it
    revision: int = Field(0, ge=0)
    status: CostSheetStatus = CostSheetStatus.DRAFT

    financing_rate_percent: float = DEFAULT_FINANCING_RATE_PERCENT
    overhead_percent: float = DEFAULT_OVERHEAD_PERCENT
    target_margin_percent: float = DEFAULT_TARGET_MARGIN_PERCENT
    # None derives the residual from each line's lease term
    residual_value_percent: float | None = Field(None, ge=0.0, le=100.0)
    notes_assumptions: str | None = None

    submitted_at: str | None = None
    submitted_by: str | None = None
    approved_at: str | None = None
    approved_by: str | None = None
    approval_notes: str | None = None

    lines: list[CostSheetLine] = []


class ApprovedCostSheetLine(CostSheetLine):
    model_config = ConfigDict(frozen=True)


class ApprovedCostSheet(CostSheet):
    """
    Approved versions are immutable: the sheet is frozen and its lines
    are a tuple of frozen lines.
    """
    model_config = ConfigDict(frozen=True)

    status: Literal[CostSheetStatus.APPROVED] = CostSheetStatus.APPROVED
    lines: tuple[ApprovedCostSheetLine, ...] = ()


class CostSheetSummary(BaseModel):
    """Sheet-level totals across all lines."""
    total_monthly_cost: float = 0.0
    total_revenue: float = 0.0
    average_margin: float = 0.0
    lowest_margin_line_no: int | None = None
    lowest_margin: float | None = None


class CostSheetApproval(BaseModel):
    """Audit trail entry for an approval decision."""
    cost_sheet_id: str
    action: ApprovalAction
    approver_user_id: str
    comments: str | None = None
    created_at: str


class AgreementLine(BaseModel):
    """Current agreement line data, as compared against a cost sheet."""
    line_no: int
    vehicle_id: str | None = None
    vehicle_class_id: str | None = None
    monthly_rate: float = 0.0
    lease_term_months: int = 0
    quantity: int = 1


class VehicleChange(BaseModel):
    """One divergence between an approved cost sheet and agreement lines."""
    change_type: Literal["modified", "added", "removed"]
    line_no: int | None = None
    field: str
    approved_value: Any = None
    current_value: Any = None


class SubmissionResult(BaseModel):
    cost_sheet: CostSheet
    low_margin_lines: list[int] = []


# --- Billing Context ---

class TollFine(BaseModel):
    id: str
    contract_id: str
    type: Literal["toll", "fine"]
    total_amount: float = Field(0.0, ge=0.0)
    incident_date: date
    billable_to_contract: bool = True


class ContractExpense(BaseModel):
    id: str
    contract_id: str
    amount: float = Field(0.0, ge=0.0)
    expense_date: date
    description: str | None = None


class ComplianceException(BaseModel):
    id: str
    contract_id: str
    status: str = "open"
    amount: float = Field(0.0, ge=0.0)
    flagged_at: date
    description: str | None = None


class BillingSummary(BaseModel):
    total_expenses: float = 0.0
    total_tolls: float = 0.0
    total_fines: float = 0.0
    total_exceptions: float = 0.0
    subtotal: float = 0.0
    vat: float = 0.0
    grand_total: float = 0.0


class BillingPreview(BaseModel):
    contract_id: str
    period_start: date
    period_end: date
    expenses: list[ContractExpense] = []
    tolls: list[TollFine] = []
    fines: list[TollFine] = []
    exceptions: list[ComplianceException] = []
    summary: BillingSummary


class BillingRequest(BaseModel):
    contract_id: str
    period_start: date
    period_end: date


class BatchBillingResult(BaseModel):
    success: int = 0
    failed: int = 0
    previews: list[BillingPreview] = []
    errors: dict[str, str] = {}


class BillingCycle(BaseModel):
    """
    Billing period for one contract.

    Lifecycle: open -> finalized -> invoiced. Finalized cycles are
    immutable except for the invoiced stamp.
    """
    id: str
    contract_id: str
    billing_cycle_no: str
    period_start: date
    period_end: date
    status: BillingCycleStatus = BillingCycleStatus.OPEN

    total_expenses: float = 0.0
    total_tolls: float = 0.0
    total_fines: float = 0.0
    total_exceptions: float = 0.0
    total_amount: float = 0.0

    generated_at: str | None = None
    finalized_at: str | None = None
    invoice_id: str | None = None
    version: int = Field(1, ge=1)
    # Bumped on every stored update; writes are conditional on it
    revision: int = Field(0, ge=0)


# --- Exceptions ---

class StorageError(Exception):
    """Database operation failed."""
    pass


class CostSheetNotFoundError(Exception):
    """Requested cost sheet does not exist."""
    pass


class BillingCycleNotFoundError(Exception):
    """Requested billing cycle does not exist."""
    pass


class InvalidTransitionError(Exception):
    """Lifecycle transition not allowed from the current state."""
    pass


class ConcurrentModificationError(Exception):
    """Record changed since it was read (optimistic version check failed)."""
    pass
