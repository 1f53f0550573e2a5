"""
Cost sheets - line costing, margins, approval state machine, change detection.

Transitions:
    draft            -> pending_approval
    pending_approval -> approved | rejected | draft (changes requested)
    approved         -> (none; recalculation creates the next version)
    rejected         -> (none; recalculation creates the next version)

All functions here are pure. Persistence and locking live in storage
and service.
"""

from datetime import datetime, timezone

from billing.config import (
    LONG_TERM_RESIDUAL_VALUE_PERCENT,
    LOW_MARGIN_PERCENT,
    MARGIN_WARNING_PERCENT,
    RESIDUAL_VALUE_BY_TERM,
    SHORT_LEASE_PREMIUM,
)
from billing.models import (
    AgreementLine,
    ApprovalAction,
    ApprovedCostSheet,
    CostSheet,
    CostSheetApproval,
    CostSheetLine,
    CostSheetStatus,
    CostSheetSummary,
    InvalidTransitionError,
    MarginBand,
    VehicleChange,
)


ALLOWED_TRANSITIONS: dict[CostSheetStatus, set[CostSheetStatus]] = {
    CostSheetStatus.DRAFT: {CostSheetStatus.PENDING_APPROVAL},
    CostSheetStatus.PENDING_APPROVAL: {
        CostSheetStatus.APPROVED,
        CostSheetStatus.REJECTED,
        CostSheetStatus.DRAFT,
    },
    CostSheetStatus.APPROVED: set(),
    CostSheetStatus.REJECTED: set(),
}


# --- Line costing ---

def calculate_line_costs(line: CostSheetLine, sheet: CostSheet) -> CostSheetLine:
    """
    Monthly cost, suggested rate and actual margin for one line.

    depreciation = acquisition * (1 - residual) / term
    financing    = acquisition * financing rate / 12
    overhead     = operating * overhead rate
    total cost   = depreciation + financing + operating + overhead
    suggested    = total cost / (1 - target margin) * short lease premium

    The residual comes from the line, then the sheet, then the lease
    term schedule.
    """
    residual_percent = line.residual_value_percent
    if residual_percent is None:
        residual_percent = sheet.residual_value_percent
    if residual_percent is None:
        residual_percent = residual_value_for_term(line.lease_term_months)

    depreciation = line.acquisition_cost_aed * (1 - residual_percent / 100) / line.lease_term_months
    financing = line.acquisition_cost_aed * (sheet.financing_rate_percent / 100) / 12
    operating = (
        line.insurance_per_month_aed
        + line.maintenance_per_month_aed
        + line.registration_admin_per_month_aed
        + line.other_costs_per_month_aed
    )
    overhead = operating * sheet.overhead_percent / 100
    total_cost = depreciation + financing + operating + overhead

    margin_divisor = 1 - sheet.target_margin_percent / 100
    suggested = total_cost / margin_divisor if margin_divisor > 0 else total_cost
    suggested *= short_lease_premium(line.lease_term_months)

    quoted = line.quoted_rate_per_month_aed or suggested

    return line.model_copy(update={
        "cost_sheet_id": sheet.id,
        "residual_value_percent": residual_percent,
        "total_cost_per_month_aed": round(total_cost, 2),
        "suggested_rate_per_month_aed": round(suggested, 2),
        "quoted_rate_per_month_aed": round(quoted, 2),
        "actual_margin_percent": round(calculate_margin_percent(quoted, total_cost), 2),
    })


def residual_value_for_term(lease_term_months: int) -> float:
    """Residual value percent for a lease term, from RESIDUAL_VALUE_BY_TERM."""
    return _by_term(RESIDUAL_VALUE_BY_TERM, lease_term_months, LONG_TERM_RESIDUAL_VALUE_PERCENT)


def short_lease_premium(lease_term_months: int) -> float:
    return _by_term(SHORT_LEASE_PREMIUM, lease_term_months, 1.0)


def calculate_margin_percent(quoted_rate: float, total_cost: float) -> float:
    if quoted_rate <= 0:
        return 0.0
    return (quoted_rate - total_cost) / quoted_rate * 100


def margin_band(margin_percent: float, target_margin_percent: float) -> MarginBand:
    if margin_percent >= target_margin_percent:
        return MarginBand.HEALTHY
    if margin_percent >= MARGIN_WARNING_PERCENT:
        return MarginBand.WARNING
    return MarginBand.LOW


def low_margin_lines(sheet: CostSheet) -> list[int]:
    """Line numbers below LOW_MARGIN_PERCENT. Advisory only."""
    return [line.line_no for line in sheet.lines if line.actual_margin_percent < LOW_MARGIN_PERCENT]


def summarize(sheet: CostSheet) -> CostSheetSummary:
    """Monthly cost and revenue across lines, blended margin, and the weakest line."""
    if not sheet.lines:
        return CostSheetSummary()

    total_cost = sum(line.total_cost_per_month_aed for line in sheet.lines)
    total_revenue = sum(line.quoted_rate_per_month_aed for line in sheet.lines)
    lowest = min(sheet.lines, key=lambda line: line.actual_margin_percent)

    return CostSheetSummary(
        total_monthly_cost=round(total_cost, 2),
        total_revenue=round(total_revenue, 2),
        average_margin=round(calculate_margin_percent(total_revenue, total_cost), 2),
        lowest_margin_line_no=lowest.line_no,
        lowest_margin=lowest.actual_margin_percent,
    )


def recalculate(sheet: CostSheet) -> CostSheet:
    """Recomputes every line of a draft in place of its previous figures."""
    _require_status(sheet, CostSheetStatus.DRAFT, "recalculate")
    return sheet.model_copy(update={
        "lines": [calculate_line_costs(line, sheet) for line in sheet.lines],
    })


# --- State machine ---

def submit_for_approval(
    sheet: CostSheet,
    submitted_by: str,
    auto_approve: bool = False,
) -> tuple[CostSheet, CostSheetApproval | None]:
    """
    Moves a draft to pending_approval.

    With auto_approve the submission is approved immediately and the
    approval record is returned alongside; otherwise the record is None.
    """
    _check_transition(sheet, CostSheetStatus.PENDING_APPROVAL)
    pending = sheet.model_copy(update={
        "status": CostSheetStatus.PENDING_APPROVAL,
        "submitted_at": _now(),
        "submitted_by": submitted_by,
    })

    if not auto_approve:
        return pending, None
    return approve(pending, submitted_by, "Auto-approved on submission")


def approve(
    sheet: CostSheet,
    approver_user_id: str,
    notes: str | None = None,
) -> tuple[ApprovedCostSheet, CostSheetApproval]:
    _check_transition(sheet, CostSheetStatus.APPROVED)
    now = _now()
    approved = ApprovedCostSheet(**sheet.model_dump(exclude={"status"}) | {
        "approved_at": now,
        "approved_by": approver_user_id,
        "approval_notes": notes,
    })
    return approved, _approval(sheet, ApprovalAction.APPROVED, approver_user_id, notes, now)


def reject(
    sheet: CostSheet,
    approver_user_id: str,
    notes: str | None = None,
) -> tuple[CostSheet, CostSheetApproval]:
    _check_transition(sheet, CostSheetStatus.REJECTED)
    now = _now()
    rejected = sheet.model_copy(update={
        "status": CostSheetStatus.REJECTED,
        "approval_notes": notes,
    })
    return rejected, _approval(sheet, ApprovalAction.REJECTED, approver_user_id, notes, now)


def request_changes(
    sheet: CostSheet,
    approver_user_id: str,
    notes: str | None = None,
) -> tuple[CostSheet, CostSheetApproval]:
    """Returns a pending sheet to draft for edits, same version."""
    _check_transition(sheet, CostSheetStatus.DRAFT)
    now = _now()
    draft = sheet.model_copy(update={
        "status": CostSheetStatus.DRAFT,
        "submitted_at": None,
        "submitted_by": None,
        "approval_notes": notes,
    })
    return draft, _approval(sheet, ApprovalAction.REQUESTED_CHANGES, approver_user_id, notes, now)


def create_next_version(
    sheet: CostSheet,
    lines: list[CostSheetLine] | None = None,
    latest_version: int | None = None,
) -> CostSheet:
    """
    New draft version derived from an existing sheet.

    The version follows the highest one stored for the quote (latest_version),
    and the id is derived from quote and version, so two drafts racing for
    the same version collide on create. The source sheet is left untouched;
    approved versions stay authoritative until the new draft is approved.
    """
    version = max(sheet.version, latest_version or 0) + 1
    new_id = f"{sheet.quote_id}-v{version}"
    header = sheet.model_dump(exclude={
        "id", "version", "revision", "status", "lines",
        "submitted_at", "submitted_by", "approved_at", "approved_by", "approval_notes",
    })
    draft = CostSheet(
        **header,
        id=new_id,
        version=version,
        status=CostSheetStatus.DRAFT,
        lines=[
            CostSheetLine(**line.model_dump(exclude={"id", "cost_sheet_id"}), cost_sheet_id=new_id)
            for line in (lines if lines is not None else sheet.lines)
        ],
    )
    return recalculate(draft)


def latest_approved(sheets: list[CostSheet]) -> ApprovedCostSheet | None:
    """The authoritative version for billing: highest approved version."""
    approved = [s for s in sheets if s.status == CostSheetStatus.APPROVED]
    if not approved:
        return None
    latest = max(approved, key=lambda s: s.version)
    if isinstance(latest, ApprovedCostSheet):
        return latest
    return ApprovedCostSheet(**latest.model_dump(exclude={"status"}))


# --- Change detection ---

_COMPARED_FIELDS = (
    # (cost sheet line field, agreement line field)
    ("vehicle_id", "vehicle_id"),
    ("vehicle_class_id", "vehicle_class_id"),
    ("quoted_rate_per_month_aed", "monthly_rate"),
    ("lease_term_months", "lease_term_months"),
    ("quantity", "quantity"),
)


def detect_vehicle_changes(
    approved: ApprovedCostSheet,
    current_lines: list[AgreementLine],
) -> list[VehicleChange]:
    """
    Divergences between the approved cost sheet and current agreement lines.

    Lines are compared by position. Advisory: nothing is mutated.
    """
    changes: list[VehicleChange] = []
    approved_lines = sorted(approved.lines, key=lambda line: line.line_no)
    current = sorted(current_lines, key=lambda line: line.line_no)

    if len(approved_lines) != len(current):
        changes.append(VehicleChange(
            change_type="modified",
            field="line_count",
            approved_value=len(approved_lines),
            current_value=len(current),
        ))

    for sheet_line, agreement_line in zip(approved_lines, current):
        for sheet_field, agreement_field in _COMPARED_FIELDS:
            approved_value = getattr(sheet_line, sheet_field)
            current_value = getattr(agreement_line, agreement_field)
            if approved_value != current_value:
                changes.append(VehicleChange(
                    change_type="modified",
                    line_no=agreement_line.line_no,
                    field=agreement_field,
                    approved_value=approved_value,
                    current_value=current_value,
                ))

    for extra in current[len(approved_lines):]:
        changes.append(VehicleChange(
            change_type="added", line_no=extra.line_no, field="line", current_value=extra.vehicle_id,
        ))
    for missing in approved_lines[len(current):]:
        changes.append(VehicleChange(
            change_type="removed", line_no=missing.line_no, field="line", approved_value=missing.vehicle_id,
        ))

    return changes


# --- Internal ---

def _check_transition(sheet: CostSheet, target: CostSheetStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[sheet.status]:
        raise InvalidTransitionError(
            f"Cost sheet {sheet.id} cannot move from {sheet.status.value} to {target.value}"
        )


def _by_term(table: list[tuple[int, float]], lease_term_months: int, default: float) -> float:
    for max_term, value in table:
        if lease_term_months <= max_term:
            return value
    return default


def _require_status(sheet: CostSheet, status: CostSheetStatus, action: str) -> None:
    if sheet.status != status:
        raise InvalidTransitionError(
            f"Cannot {action} cost sheet {sheet.id} in status {sheet.status.value}"
        )


def _approval(
    sheet: CostSheet,
    action: ApprovalAction,
    approver_user_id: str,
    comments: str | None,
    created_at: str,
) -> CostSheetApproval:
    return CostSheetApproval(
        cost_sheet_id=sheet.id,
        action=action,
        approver_user_id=approver_user_id,
        comments=comments,
        created_at=created_at,
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
