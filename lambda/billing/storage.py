"""
Storage layer - DynamoDB operations for cost sheets and billing cycles.

Handles reads of agreement lines and billable period items, and
versioned writes of cost sheets and billing cycles. All database
interaction is isolated here.

Every mutating write carries a condition on the state that was read, so
two writers racing on the same record cannot silently overwrite each
other: the loser gets ConcurrentModificationError.
"""

import json
import logging
from decimal import Decimal
from datetime import date

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from billing.models import (
    AgreementLine,
    ApprovedCostSheet,
    BillingCycle,
    ComplianceException,
    ConcurrentModificationError,
    ContractExpense,
    CostSheet,
    CostSheetApproval,
    CostSheetLine,
    CostSheetStatus,
    StorageError,
    TollFine,
)
from billing.config import (
    COST_SHEETS_TABLE,
    COST_SHEET_LINES_TABLE,
    COST_SHEET_APPROVALS_TABLE,
    AGREEMENT_LINES_TABLE,
    BILLING_CYCLES_TABLE,
    TOLLS_FINES_TABLE,
    EXPENSES_TABLE,
    COMPLIANCE_EXCEPTIONS_TABLE,
)

logger = logging.getLogger("billing.storage")


# --- DynamoDB client cache ---
# Initialized once per Lambda container, reused across invocations.

_dynamodb = None
_tables: dict = {}


def _get_table(name: str):
    """Lazy-initialized DynamoDB table with caching."""
    global _dynamodb

    if name in _tables:
        return _tables[name]

    if _dynamodb is None:
        _dynamodb = boto3.resource("dynamodb")
    _tables[name] = _dynamodb.Table(name)
    return _tables[name]


# --- Cost sheets ---

def get_cost_sheet(cost_sheet_id: str) -> CostSheet | None:
    """
    Retrieves a cost sheet with its lines.

    Approved sheets come back as ApprovedCostSheet. Returns None if the
    sheet does not exist.

    Raises:
        StorageError: If DynamoDB read fails.
    """
    try:
        response = _get_table(COST_SHEETS_TABLE).get_item(Key={"id": cost_sheet_id})
        if "Item" not in response:
            return None

        lines = _query_all(
            _get_table(COST_SHEET_LINES_TABLE),
            KeyConditionExpression=Key("cost_sheet_id").eq(cost_sheet_id),
        )
        return _to_cost_sheet(_from_dynamodb(response["Item"]), lines)
    except Exception as e:
        raise StorageError(f"Failed to retrieve cost sheet {cost_sheet_id}: {e}")


def list_cost_sheets(quote_id: str) -> list[CostSheet]:
    """All versions for a quote, oldest first. Lines are not loaded."""
    try:
        items = _query_all(
            _get_table(COST_SHEETS_TABLE),
            IndexName="quote_id-index",
            KeyConditionExpression=Key("quote_id").eq(quote_id),
        )
        sheets = [_to_cost_sheet(item, []) for item in items]
        return sorted(sheets, key=lambda s: s.version)
    except Exception as e:
        raise StorageError(f"Failed to list cost sheets for quote {quote_id}: {e}")


def save_cost_sheet(
    sheet: CostSheet,
    expected_status: CostSheetStatus | None = None,
) -> CostSheet:
    """
    Writes a cost sheet header and its lines.

    expected_status=None creates the sheet and fails if the id exists.
    Otherwise the write only succeeds while the stored status still
    equals expected_status and the stored revision equals sheet.revision;
    the written revision is bumped. Stored lines missing from sheet.lines
    are deleted.

    Returns:
        The sheet as written.

    Raises:
        ConcurrentModificationError: If the stored state changed.
        StorageError: If DynamoDB write fails.
    """
    if expected_status is None:
        condition = Attr("id").not_exists()
        to_write = sheet
    else:
        condition = (
            Attr("status").eq(CostSheetStatus(expected_status).value)
            & Attr("revision").eq(sheet.revision)
        )
        to_write = sheet.model_copy(update={"revision": sheet.revision + 1})

    header = to_write.model_dump(mode="json", exclude={"lines"})

    try:
        _get_table(COST_SHEETS_TABLE).put_item(
            Item=_to_dynamodb(header),
            ConditionExpression=condition,
        )

        lines_table = _get_table(COST_SHEET_LINES_TABLE)
        stale_line_nos = []
        if expected_status is not None:
            kept = {line.line_no for line in to_write.lines}
            stored = _query_all(lines_table, KeyConditionExpression=Key("cost_sheet_id").eq(sheet.id))
            stale_line_nos = [item["line_no"] for item in stored if item["line_no"] not in kept]

        with lines_table.batch_writer(overwrite_by_pkeys=["cost_sheet_id", "line_no"]) as batch:
            for line_no in stale_line_nos:
                batch.delete_item(Key={"cost_sheet_id": sheet.id, "line_no": line_no})
            for line in to_write.lines:
                batch.put_item(Item=_to_dynamodb(line.model_dump(mode="json")))

        if stale_line_nos:
            logger.info("cost_sheet_lines_removed cost_sheet_id=%s line_nos=%s", sheet.id, stale_line_nos)
        return to_write
    except ClientError as e:
        if _is_condition_failure(e):
            logger.warning(
                "cost_sheet_write_conflict cost_sheet_id=%s expected_status=%s",
                sheet.id, expected_status,
            )
            raise ConcurrentModificationError(
                f"Cost sheet {sheet.id} was modified concurrently"
            )
        raise StorageError(f"Failed to save cost sheet {sheet.id}: {e}")
    except Exception as e:
        raise StorageError(f"Failed to save cost sheet {sheet.id}: {e}")


def save_approval(approval: CostSheetApproval) -> CostSheetApproval:
    try:
        item = approval.model_dump(mode="json")
        item["id"] = f"{approval.cost_sheet_id}#{approval.created_at}"
        _get_table(COST_SHEET_APPROVALS_TABLE).put_item(Item=_to_dynamodb(item))
        return approval
    except Exception as e:
        raise StorageError(f"Failed to save approval for cost sheet {approval.cost_sheet_id}: {e}")


def get_agreement_lines(agreement_id: str) -> list[AgreementLine]:
    try:
        items = _query_all(
            _get_table(AGREEMENT_LINES_TABLE),
            KeyConditionExpression=Key("agreement_id").eq(agreement_id),
        )
        return sorted((AgreementLine(**item) for item in items), key=lambda line: line.line_no)
    except Exception as e:
        raise StorageError(f"Failed to retrieve agreement lines for {agreement_id}: {e}")


# --- Billing cycles ---

def get_billing_cycle(cycle_id: str) -> BillingCycle | None:
    try:
        response = _get_table(BILLING_CYCLES_TABLE).get_item(Key={"id": cycle_id})
        if "Item" not in response:
            return None
        return BillingCycle(**_from_dynamodb(response["Item"]))
    except Exception as e:
        raise StorageError(f"Failed to retrieve billing cycle {cycle_id}: {e}")


def list_billing_cycles(contract_id: str) -> list[BillingCycle]:
    """Cycles for a contract, most recent period first."""
    try:
        items = _query_all(
            _get_table(BILLING_CYCLES_TABLE),
            IndexName="contract_id-index",
            KeyConditionExpression=Key("contract_id").eq(contract_id),
        )
        cycles = [BillingCycle(**item) for item in items]
        return sorted(cycles, key=lambda c: c.period_start, reverse=True)
    except Exception as e:
        raise StorageError(f"Failed to list billing cycles for contract {contract_id}: {e}")


def save_billing_cycle(cycle: BillingCycle, expected_version: int | None = None) -> BillingCycle:
    """
    Writes a billing cycle.

    expected_version=None creates the cycle. Otherwise the stored version
    must equal expected_version, and the written version is bumped.

    Raises:
        ConcurrentModificationError: If the stored version changed.
        StorageError: If DynamoDB write fails.
    """
    if expected_version is None:
        condition = Attr("id").not_exists()
        to_write = cycle
    else:
        condition = Attr("version").eq(expected_version)
        to_write = cycle.model_copy(update={"version": expected_version + 1})

    try:
        _get_table(BILLING_CYCLES_TABLE).put_item(
            Item=_to_dynamodb(to_write.model_dump(mode="json")),
            ConditionExpression=condition,
        )
        return to_write
    except ClientError as e:
        if _is_condition_failure(e):
            logger.warning(
                "billing_cycle_write_conflict cycle_id=%s expected_version=%s",
                cycle.id, expected_version,
            )
            raise ConcurrentModificationError(
                f"Billing cycle {cycle.id} was modified concurrently"
            )
        raise StorageError(f"Failed to save billing cycle {cycle.id}: {e}")
    except Exception as e:
        raise StorageError(f"Failed to save billing cycle {cycle.id}: {e}")


# --- Billable period items ---

def fetch_tolls_fines(contract_id: str, period_start: date, period_end: date) -> list[TollFine]:
    items = _fetch_period_items(TOLLS_FINES_TABLE, contract_id, "incident_date", period_start, period_end)
    return [TollFine(**item) for item in items]


def fetch_expenses(contract_id: str, period_start: date, period_end: date) -> list[ContractExpense]:
    items = _fetch_period_items(EXPENSES_TABLE, contract_id, "expense_date", period_start, period_end)
    return [ContractExpense(**item) for item in items]


def fetch_exceptions(contract_id: str, period_start: date, period_end: date) -> list[ComplianceException]:
    items = _fetch_period_items(COMPLIANCE_EXCEPTIONS_TABLE, contract_id, "flagged_at", period_start, period_end)
    return [ComplianceException(**item) for item in items]


def clear_table_cache() -> None:
    """Clears cached DynamoDB client. Testing only."""
    global _dynamodb
    _dynamodb = None
    _tables.clear()


# --- Internal ---

def _fetch_period_items(
    table_name: str,
    contract_id: str,
    date_field: str,
    period_start: date,
    period_end: date,
) -> list[dict]:
    """Items for a contract with date_field inside [period_start, period_end]."""
    try:
        return _query_all(
            _get_table(table_name),
            IndexName="contract_id-index",
            KeyConditionExpression=Key("contract_id").eq(contract_id),
            FilterExpression=Attr(date_field).between(period_start.isoformat(), period_end.isoformat()),
        )
    except Exception as e:
        raise StorageError(f"Failed to fetch {table_name} for contract {contract_id}: {e}")


def _query_all(table, **kwargs) -> list[dict]:
    """Runs a query across all result pages."""
    items: list[dict] = []
    while True:
        response = table.query(**kwargs)
        items.extend(_from_dynamodb(item) for item in response.get("Items", []))
        last_key = response.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key


def _to_cost_sheet(item: dict, line_items: list[dict]) -> CostSheet:
    line_items = sorted(line_items, key=lambda line: line["line_no"])
    if item.get("status") == CostSheetStatus.APPROVED.value:
        header = {k: v for k, v in item.items() if k != "status"}
        return ApprovedCostSheet(**header, lines=line_items)
    return CostSheet(**item, lines=[CostSheetLine(**line) for line in line_items])


def _is_condition_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _to_dynamodb(data: dict) -> dict:
    """Convert floats to Decimal for DynamoDB compatibility."""
    return json.loads(json.dumps(data), parse_float=Decimal)


def _from_dynamodb(value):
    """Convert DynamoDB Decimals back to int or float."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _from_dynamodb(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_dynamodb(v) for v in value]
    return value
