"""
Billing service - async orchestration over storage and the pure calculators.

Storage calls are blocking boto3 calls and run in worker threads. Every
mutation of a cost sheet or billing cycle holds a per-entity lock for
the read-modify-write, and the write itself is conditional on the state
that was read (see storage), so concurrent approvers cannot lose updates.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date

from billing import billing_cycle, costsheet, storage
from billing.config import COST_SHEET_AUTO_APPROVE
from billing.models import (
    ApprovedCostSheet,
    BatchBillingResult,
    BillingCycle,
    BillingCycleNotFoundError,
    BillingPreview,
    BillingRequest,
    CostSheet,
    CostSheetLine,
    CostSheetNotFoundError,
    CostSheetStatus,
    SubmissionResult,
    VehicleChange,
)

logger = logging.getLogger("billing.service")


class BillingService:
    """
    Cost sheet workflow and billing cycle generation.

    The handler keeps one instance per container; locks are scoped to it.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _lock(self, key: str):
        """Per-entity lock, dropped once no task holds or waits for it."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    # --- Cost sheets ---

    async def get_cost_sheet(self, cost_sheet_id: str) -> CostSheet:
        sheet = await asyncio.to_thread(storage.get_cost_sheet, cost_sheet_id)
        if sheet is None:
            raise CostSheetNotFoundError(f"Cost sheet {cost_sheet_id} not found")
        return sheet

    async def create_cost_sheet(self, sheet: CostSheet) -> CostSheet:
        """Persists a new draft with all line figures calculated."""
        draft = costsheet.recalculate(sheet)
        async with self._lock(f"cost_sheet:{draft.id}"):
            saved = await asyncio.to_thread(storage.save_cost_sheet, draft)
        logger.info("cost_sheet_created cost_sheet_id=%s quote_id=%s version=%s", saved.id, saved.quote_id, saved.version)
        return saved

    async def submit_cost_sheet(
        self,
        cost_sheet_id: str,
        submitted_by: str,
        auto_approve: bool = COST_SHEET_AUTO_APPROVE,
    ) -> SubmissionResult:
        """
        Submits a draft for approval.

        Low-margin lines are reported back but do not block submission.
        """
        async with self._lock(f"cost_sheet:{cost_sheet_id}"):
            sheet = await self.get_cost_sheet(cost_sheet_id)
            submitted, approval = costsheet.submit_for_approval(sheet, submitted_by, auto_approve)
            saved = await asyncio.to_thread(storage.save_cost_sheet, submitted, sheet.status)
            if approval is not None:
                await asyncio.to_thread(storage.save_approval, approval)

        low_margin = costsheet.low_margin_lines(saved)
        if low_margin:
            logger.warning("cost_sheet_low_margin cost_sheet_id=%s lines=%s", saved.id, low_margin)
        logger.info("cost_sheet_submitted cost_sheet_id=%s status=%s", saved.id, saved.status.value)
        return SubmissionResult(cost_sheet=saved, low_margin_lines=low_margin)

    async def approve_cost_sheet(self, cost_sheet_id: str, approver_user_id: str, notes: str | None = None) -> ApprovedCostSheet:
        return await self._decide(cost_sheet_id, costsheet.approve, approver_user_id, notes)

    async def reject_cost_sheet(self, cost_sheet_id: str, approver_user_id: str, notes: str | None = None) -> CostSheet:
        return await self._decide(cost_sheet_id, costsheet.reject, approver_user_id, notes)

    async def request_cost_sheet_changes(self, cost_sheet_id: str, approver_user_id: str, notes: str | None = None) -> CostSheet:
        return await self._decide(cost_sheet_id, costsheet.request_changes, approver_user_id, notes)

    async def recalculate_cost_sheet(
        self,
        cost_sheet_id: str,
        lines: list[CostSheetLine] | None = None,
    ) -> CostSheet:
        """
        Drafts are recalculated in place; any other status yields the next
        version for the quote as a new draft, leaving the source sheet
        untouched.
        """
        async with self._lock(f"cost_sheet:{cost_sheet_id}"):
            sheet = await self.get_cost_sheet(cost_sheet_id)

            if sheet.status == CostSheetStatus.DRAFT:
                updated = sheet if lines is None else sheet.model_copy(update={"lines": lines})
                recalculated = costsheet.recalculate(updated)
                return await asyncio.to_thread(storage.save_cost_sheet, recalculated, sheet.status)

            async with self._lock(f"quote:{sheet.quote_id}"):
                versions = await asyncio.to_thread(storage.list_cost_sheets, sheet.quote_id)
                latest_version = max((s.version for s in versions), default=sheet.version)
                next_version = costsheet.create_next_version(sheet, lines, latest_version)
                saved = await asyncio.to_thread(storage.save_cost_sheet, next_version)

        logger.info(
            "cost_sheet_new_version quote_id=%s from_version=%s to_version=%s",
            sheet.quote_id, sheet.version, saved.version,
        )
        return saved

    async def get_authoritative_cost_sheet(self, quote_id: str) -> ApprovedCostSheet | None:
        """Most recent approved version for a quote, with lines loaded."""
        sheets = await asyncio.to_thread(storage.list_cost_sheets, quote_id)
        latest = costsheet.latest_approved(sheets)
        if latest is None:
            return None
        return await self.get_cost_sheet(latest.id)

    async def detect_vehicle_changes(self, quote_id: str, agreement_id: str) -> list[VehicleChange]:
        """Compares current agreement lines to the authoritative cost sheet."""
        approved, current_lines = await asyncio.gather(
            self.get_authoritative_cost_sheet(quote_id),
            asyncio.to_thread(storage.get_agreement_lines, agreement_id),
        )
        if approved is None:
            return []
        changes = costsheet.detect_vehicle_changes(approved, current_lines)
        if changes:
            logger.info(
                "vehicle_changes_detected quote_id=%s agreement_id=%s count=%s",
                quote_id, agreement_id, len(changes),
            )
        return changes

    async def _decide(self, cost_sheet_id, decision, approver_user_id, notes):
        async with self._lock(f"cost_sheet:{cost_sheet_id}"):
            sheet = await self.get_cost_sheet(cost_sheet_id)
            decided, approval = decision(sheet, approver_user_id, notes)
            saved = await asyncio.to_thread(storage.save_cost_sheet, decided, sheet.status)
            await asyncio.to_thread(storage.save_approval, approval)

        logger.info(
            "cost_sheet_decision cost_sheet_id=%s action=%s approver=%s",
            cost_sheet_id, approval.action.value, approver_user_id,
        )
        return saved

    # --- Billing cycles ---

    async def get_billing_cycle(self, cycle_id: str) -> BillingCycle:
        cycle = await asyncio.to_thread(storage.get_billing_cycle, cycle_id)
        if cycle is None:
            raise BillingCycleNotFoundError(f"Billing cycle {cycle_id} not found")
        return cycle

    async def create_billing_cycle(
        self,
        contract_id: str,
        billing_cycle_no: str,
        period_start: date,
        period_end: date,
    ) -> BillingCycle:
        cycle = BillingCycle(
            id=f"{contract_id}-{billing_cycle_no}",
            contract_id=contract_id,
            billing_cycle_no=billing_cycle_no,
            period_start=period_start,
            period_end=period_end,
        )
        return await asyncio.to_thread(storage.save_billing_cycle, cycle)

    async def generate_billing_preview(
        self,
        contract_id: str,
        period_start: date,
        period_end: date,
    ) -> BillingPreview:
        expenses, tolls_fines, exceptions = await asyncio.gather(
            asyncio.to_thread(storage.fetch_expenses, contract_id, period_start, period_end),
            asyncio.to_thread(storage.fetch_tolls_fines, contract_id, period_start, period_end),
            asyncio.to_thread(storage.fetch_exceptions, contract_id, period_start, period_end),
        )
        return billing_cycle.build_billing_preview(
            contract_id, period_start, period_end, expenses, tolls_fines, exceptions,
        )

    async def generate_billing(self, cycle_id: str) -> BillingCycle:
        """Recomputes an open cycle's totals from its period's items."""
        async with self._lock(f"billing_cycle:{cycle_id}"):
            cycle = await self.get_billing_cycle(cycle_id)
            preview = await self.generate_billing_preview(cycle.contract_id, cycle.period_start, cycle.period_end)
            updated = billing_cycle.apply_preview(cycle, preview)
            return await asyncio.to_thread(storage.save_billing_cycle, updated, cycle.version)

    async def finalize_billing_cycle(self, cycle_id: str) -> BillingCycle:
        return await self._transition_cycle(cycle_id, billing_cycle.finalize)

    async def mark_as_invoiced(self, cycle_id: str, invoice_id: str) -> BillingCycle:
        return await self._transition_cycle(
            cycle_id, lambda cycle: billing_cycle.mark_as_invoiced(cycle, invoice_id),
        )

    async def batch_generate_billing(self, requests: list[BillingRequest]) -> BatchBillingResult:
        """
        Previews for many contracts. Each contract is independent: one
        failure is counted and logged, the rest still complete.
        """
        outcomes = await asyncio.gather(
            *(
                self.generate_billing_preview(r.contract_id, r.period_start, r.period_end)
                for r in requests
            ),
            return_exceptions=True,
        )

        result = BatchBillingResult()
        for request, outcome in zip(requests, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception):
                logger.error(
                    "billing_generation_failed contract_id=%s error=%s",
                    request.contract_id, str(outcome),
                )
                result.failed += 1
                result.errors[request.contract_id] = str(outcome)
                continue
            result.success += 1
            result.previews.append(outcome)
        return result

    async def _transition_cycle(self, cycle_id, transition) -> BillingCycle:
        async with self._lock(f"billing_cycle:{cycle_id}"):
            cycle = await self.get_billing_cycle(cycle_id)
            updated = transition(cycle)
            saved = await asyncio.to_thread(storage.save_billing_cycle, updated, cycle.version)
        logger.info("billing_cycle_transition cycle_id=%s status=%s", cycle_id, saved.status.value)
        return saved
