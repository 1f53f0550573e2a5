"""
Lambda entry point - routes billing API requests to calculators and services.

Parses API Gateway events, coordinates contexts (settlement, pricing,
cost sheets, billing cycles), and formats HTTP responses.

No business logic lives here beyond request parsing and error mapping.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ValidationError as PydanticValidationError

from billing.models import (
    BillingCycleNotFoundError,
    BillingRequest,
    CleaningType,
    ConcurrentModificationError,
    CostSheet,
    CostSheetLine,
    CostSheetNotFoundError,
    FuelPolicy,
    InspectionRecord,
    InvalidTransitionError,
    StorageError,
    VehicleClass,
)
from billing.config import DEFAULT_SECURITY_DEPOSIT, DEFAULT_INSURANCE_EXCESS, DEFAULT_KM_GRACE
from billing.costsheet import summarize
from billing.pricing import calculate_agreement_line_pricing, calculate_agreement_pricing, sum_line_pricing
from billing.service import BillingService
from billing.settlement import settle_rental

logger = logging.getLogger("billing.handler")


class SettlementRequest(BaseModel):
    checkout: InspectionRecord
    checkin: InspectionRecord
    scheduled_return: datetime
    actual_return: datetime
    daily_rate: float
    included_km: float
    security_deposit: float = DEFAULT_SECURITY_DEPOSIT
    vehicle_class: VehicleClass = VehicleClass.STANDARD
    fuel_policy: FuelPolicy = FuelPolicy.FULL_TO_FULL
    cleaning_type: CleaningType = CleaningType.NONE
    salik_trips: int = 0
    km_grace: float = DEFAULT_KM_GRACE
    insurance_excess: float = DEFAULT_INSURANCE_EXCESS


# --- Service cache ---
# One service per Lambda container so its per-entity locks span invocations.

_service: BillingService | None = None


def _get_service() -> BillingService:
    global _service
    if _service is None:
        _service = BillingService()
    return _service


# --- Lambda Entry Point ---

def lambda_handler(event: dict, context: Any) -> dict:
    """
    AWS Lambda handler for API Gateway HTTP API (v2).

    Routes:
    - POST /settlements/calculate
    - POST /pricing/agreement
    - POST /cost-sheets
    - POST /cost-sheets/{id}/submit | approve | reject | request-changes | recalculate
    - GET  /quotes/{quote_id}/vehicle-changes?agreement_id=...
    - POST /billing/preview
    - POST /billing/batch
    - POST /billing-cycles
    - GET  /billing-cycles/{id}
    - POST /billing-cycles/{id}/generate | finalize | invoice

    Never raises exceptions; all errors converted to HTTP responses.
    """
    try:
        http_method = event["requestContext"]["http"]["method"]
        path = event["requestContext"]["http"]["path"].rstrip("/")
        parts = path.split("/")

        if http_method == "POST" and path.endswith("/settlements/calculate"):
            return _handle_settlement(event)

        if http_method == "POST" and path.endswith("/pricing/agreement"):
            return _handle_agreement_pricing(event)

        if "/cost-sheets" in path:
            if http_method == "POST" and path.endswith("/cost-sheets"):
                return _handle_create_cost_sheet(event)
            if http_method == "POST" and parts[-2] != "cost-sheets":
                return _handle_cost_sheet_action(event, cost_sheet_id=parts[-2], action=parts[-1])

        if http_method == "GET" and path.endswith("/vehicle-changes"):
            return _handle_vehicle_changes(event, quote_id=parts[-2])

        if http_method == "POST" and path.endswith("/billing/preview"):
            return _handle_billing_preview(event)

        if http_method == "POST" and path.endswith("/billing/batch"):
            return _handle_batch_billing(event)

        if "/billing-cycles" in path:
            if http_method == "POST" and path.endswith("/billing-cycles"):
                return _handle_create_billing_cycle(event)
            if http_method == "GET" and parts[-2] == "billing-cycles":
                return _handle_get_billing_cycle(cycle_id=parts[-1])
            if http_method == "POST" and parts[-2] != "billing-cycles":
                return _handle_billing_cycle_action(event, cycle_id=parts[-2], action=parts[-1])

        return _error_response(404, "NOT_FOUND", "Route not found")

    except Exception:
        logger.exception("handler_unexpected_error")
        return _error_response(500, "INTERNAL_ERROR", "An unexpected error occurred")


# --- Route Handlers ---

def _handle_settlement(event: dict) -> dict:
    """POST /settlements/calculate: full check-in settlement."""
    def run():
        request = SettlementRequest(**_body(event))
        settlement = settle_rental(
            request.checkout,
            request.checkin,
            scheduled_return=request.scheduled_return,
            actual_return=request.actual_return,
            daily_rate=request.daily_rate,
            included_km=request.included_km,
            security_deposit=request.security_deposit,
            vehicle_class=request.vehicle_class,
            fuel_policy=request.fuel_policy,
            cleaning_type=request.cleaning_type,
            salik_trips=request.salik_trips,
            km_grace=request.km_grace,
            insurance_excess=request.insurance_excess,
        )
        return settlement.model_dump(mode="json")

    return _respond(run)


def _handle_agreement_pricing(event: dict) -> dict:
    """POST /pricing/agreement: breakdown per line and for the agreement."""
    def run():
        body = _body(event)
        lines = [calculate_agreement_line_pricing(line) for line in body.get("lines", [])]
        response = {
            "lines": [p.model_dump(mode="json") for p in lines],
            "lines_total": sum_line_pricing(lines).model_dump(mode="json"),
        }
        if body.get("agreement") is not None:
            response["agreement"] = calculate_agreement_pricing(body["agreement"]).model_dump(mode="json")
        return response

    return _respond(run)


def _handle_create_cost_sheet(event: dict) -> dict:
    """POST /cost-sheets: create a draft with calculated lines."""
    def run():
        sheet = CostSheet(**_body(event))
        saved = asyncio.run(_get_service().create_cost_sheet(sheet))
        return _with_summary(saved)

    return _respond(run, status_code=201)


def _handle_cost_sheet_action(event: dict, cost_sheet_id: str, action: str) -> dict:
    """POST /cost-sheets/{id}/{action}: workflow transitions."""
    def run():
        body = _body(event)
        service = _get_service()

        if action == "submit":
            user = _required(body, "submitted_by")
            kwargs = {"auto_approve": body["auto_approve"]} if "auto_approve" in body else {}
            result = asyncio.run(service.submit_cost_sheet(cost_sheet_id, user, **kwargs))
            return result.model_dump(mode="json")

        if action == "recalculate":
            lines = [CostSheetLine(**line) for line in body["lines"]] if "lines" in body else None
            sheet = asyncio.run(service.recalculate_cost_sheet(cost_sheet_id, lines))
            return _with_summary(sheet)

        decisions = {
            "approve": service.approve_cost_sheet,
            "reject": service.reject_cost_sheet,
            "request-changes": service.request_cost_sheet_changes,
        }
        if action not in decisions:
            raise _RouteNotFound()

        approver = _required(body, "approver_user_id")
        sheet = asyncio.run(decisions[action](cost_sheet_id, approver, body.get("notes")))
        return sheet.model_dump(mode="json")

    return _respond(run)


def _handle_vehicle_changes(event: dict, quote_id: str) -> dict:
    """GET /quotes/{quote_id}/vehicle-changes: staleness of the approved sheet."""
    def run():
        params = event.get("queryStringParameters") or {}
        agreement_id = _required(params, "agreement_id")
        changes = asyncio.run(_get_service().detect_vehicle_changes(quote_id, agreement_id))
        return {
            "quote_id": quote_id,
            "agreement_id": agreement_id,
            "has_changes": bool(changes),
            "changes": [c.model_dump(mode="json") for c in changes],
        }

    return _respond(run)


def _handle_billing_preview(event: dict) -> dict:
    """POST /billing/preview: itemized period totals for one contract."""
    def run():
        request = BillingRequest(**_body(event))
        preview = asyncio.run(_get_service().generate_billing_preview(
            request.contract_id, request.period_start, request.period_end,
        ))
        return preview.model_dump(mode="json")

    return _respond(run)


def _handle_batch_billing(event: dict) -> dict:
    """POST /billing/batch: previews for many contracts, partial success allowed."""
    def run():
        requests = [BillingRequest(**item) for item in _body(event).get("contracts", [])]
        result = asyncio.run(_get_service().batch_generate_billing(requests))
        return result.model_dump(mode="json")

    return _respond(run)


def _handle_create_billing_cycle(event: dict) -> dict:
    """POST /billing-cycles: open a new cycle for a contract period."""
    def run():
        body = _body(event)
        request = BillingRequest(**body)
        cycle = asyncio.run(_get_service().create_billing_cycle(
            request.contract_id,
            _required(body, "billing_cycle_no"),
            request.period_start,
            request.period_end,
        ))
        return cycle.model_dump(mode="json")

    return _respond(run, status_code=201)


def _handle_get_billing_cycle(cycle_id: str) -> dict:
    """GET /billing-cycles/{id}"""
    def run():
        cycle = asyncio.run(_get_service().get_billing_cycle(cycle_id))
        return cycle.model_dump(mode="json")

    return _respond(run)


def _handle_billing_cycle_action(event: dict, cycle_id: str, action: str) -> dict:
    """POST /billing-cycles/{id}/{action}: generate, finalize, invoice."""
    def run():
        service = _get_service()

        if action == "generate":
            cycle = asyncio.run(service.generate_billing(cycle_id))
        elif action == "finalize":
            cycle = asyncio.run(service.finalize_billing_cycle(cycle_id))
        elif action == "invoice":
            invoice_id = _required(_body(event), "invoice_id")
            cycle = asyncio.run(service.mark_as_invoiced(cycle_id, invoice_id))
        else:
            raise _RouteNotFound()

        return cycle.model_dump(mode="json")

    return _respond(run)


# --- Request Helpers ---

class _RouteNotFound(Exception):
    pass


class _MissingField(Exception):
    pass


def _body(event: dict) -> dict:
    return json.loads(event.get("body") or "{}")


def _required(data: dict, field: str):
    value = data.get(field)
    if value is None or value == "":
        raise _MissingField(field)
    return value


def _respond(run, status_code: int = 200) -> dict:
    """Runs a route and maps domain exceptions to HTTP errors."""
    try:
        return _success_response(status_code, run())

    except _RouteNotFound:
        return _error_response(404, "NOT_FOUND", "Route not found")
    except _MissingField as e:
        return _error_response(400, "VALIDATION_ERROR", f"Missing required field: {e}")
    except json.JSONDecodeError:
        return _error_response(400, "VALIDATION_ERROR", "Request body must be valid JSON")
    except PydanticValidationError as e:
        return _error_response(
            400, "VALIDATION_ERROR", "Invalid request",
            details=json.loads(e.json(include_url=False)),
        )
    except CostSheetNotFoundError as e:
        return _error_response(404, "COST_SHEET_NOT_FOUND", str(e))
    except BillingCycleNotFoundError as e:
        return _error_response(404, "BILLING_CYCLE_NOT_FOUND", str(e))
    except InvalidTransitionError as e:
        return _error_response(409, "INVALID_TRANSITION", str(e))
    except ConcurrentModificationError as e:
        return _error_response(409, "CONCURRENT_MODIFICATION", str(e))
    except StorageError:
        logger.exception("handler_storage_error")
        return _error_response(500, "STORAGE_ERROR", "Storage operation failed")


# --- Response Helpers ---

def _with_summary(sheet: CostSheet) -> dict:
    return sheet.model_dump(mode="json") | {"summary": summarize(sheet).model_dump(mode="json")}


def _success_response(status_code: int, data: dict) -> dict:
    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json",
            "Access-Control-Allow-Origin": "*",
        },
        "body": json.dumps(data),
    }


def _error_response(
    status_code: int,
    code: str,
    message: str,
    details: dict | list | str | None = None,
) -> dict:
    error_body: dict[str, Any] = {
        "error": {
            "code": code,
            "message": message,
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if details is not None:
        error_body["error"]["details"] = details

    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json",
            "Access-Control-Allow-Origin": "*",
        },
        "body": json.dumps(error_body),
    }
