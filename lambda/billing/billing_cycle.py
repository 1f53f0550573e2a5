"""
Billing cycles - period roll-up of expenses, tolls, fines, and exceptions.

Lifecycle: open -> finalized -> invoiced. Totals may only change while
a cycle is open; the invoiced stamp is the only change after finalizing.
"""

from datetime import date, datetime, timezone

from billing.models import (
    BillingCycle,
    BillingCycleStatus,
    BillingPreview,
    BillingSummary,
    ComplianceException,
    ContractExpense,
    InvalidTransitionError,
    TollFine,
)
from billing.settlement import calculate_vat


def summarize_billing(
    expenses: list[ContractExpense],
    tolls: list[TollFine],
    fines: list[TollFine],
    exceptions: list[ComplianceException],
) -> BillingSummary:
    """Pre-tax categories are summed first; VAT applies once to the subtotal."""
    total_expenses = sum(e.amount for e in expenses)
    total_tolls = sum(t.total_amount for t in tolls)
    total_fines = sum(f.total_amount for f in fines)
    total_exceptions = sum(x.amount for x in exceptions)

    subtotal = total_expenses + total_tolls + total_fines + total_exceptions
    vat = calculate_vat(subtotal)

    return BillingSummary(
        total_expenses=total_expenses,
        total_tolls=total_tolls,
        total_fines=total_fines,
        total_exceptions=total_exceptions,
        subtotal=subtotal,
        vat=vat,
        grand_total=subtotal + vat,
    )


def build_billing_preview(
    contract_id: str,
    period_start: date,
    period_end: date,
    expenses: list[ContractExpense],
    tolls_fines: list[TollFine],
    exceptions: list[ComplianceException],
) -> BillingPreview:
    """
    Preview for one contract period.

    Only tolls and fines billable to the contract count; exceptions
    count while still open.
    """
    billable = [t for t in tolls_fines if t.billable_to_contract]
    tolls = [t for t in billable if t.type == "toll"]
    fines = [t for t in billable if t.type == "fine"]
    open_exceptions = [x for x in exceptions if x.status == "open"]

    return BillingPreview(
        contract_id=contract_id,
        period_start=period_start,
        period_end=period_end,
        expenses=expenses,
        tolls=tolls,
        fines=fines,
        exceptions=open_exceptions,
        summary=summarize_billing(expenses, tolls, fines, open_exceptions),
    )


def apply_preview(cycle: BillingCycle, preview: BillingPreview) -> BillingCycle:
    """Writes preview totals onto an open cycle."""
    if cycle.status != BillingCycleStatus.OPEN:
        raise InvalidTransitionError(
            f"Billing cycle {cycle.id} is {cycle.status.value}; totals are frozen"
        )

    summary = preview.summary
    return cycle.model_copy(update={
        "total_expenses": summary.total_expenses,
        "total_tolls": summary.total_tolls,
        "total_fines": summary.total_fines,
        "total_exceptions": summary.total_exceptions,
        "total_amount": summary.subtotal,
        "generated_at": _now(),
    })


def finalize(cycle: BillingCycle) -> BillingCycle:
    if cycle.status != BillingCycleStatus.OPEN:
        raise InvalidTransitionError(
            f"Billing cycle {cycle.id} cannot be finalized from {cycle.status.value}"
        )
    return cycle.model_copy(update={
        "status": BillingCycleStatus.FINALIZED,
        "finalized_at": _now(),
    })


def mark_as_invoiced(cycle: BillingCycle, invoice_id: str) -> BillingCycle:
    if not invoice_id:
        raise InvalidTransitionError("An invoice reference is required to mark a cycle as invoiced")
    if cycle.status != BillingCycleStatus.FINALIZED:
        raise InvalidTransitionError(
            f"Billing cycle {cycle.id} cannot be invoiced from {cycle.status.value}"
        )
    return cycle.model_copy(update={
        "status": BillingCycleStatus.INVOICED,
        "invoice_id": invoice_id,
    })


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
