"""
Integration Tests: Full Pipeline

Strategy:
- Real code: handler.py, service.py, storage.py and the calculators interact for real
- Mocked: DynamoDB (boto3) only, replaced by in-memory tables that honour
  key, filter and condition expressions
- Goal: Verify Bounded Contexts work together correctly end-to-end

Difference vs Unit Tests:
- test_handler.py mocked the service, test_service.py mocked storage
- Here: only the external dependency is mocked, real logic runs through
"""

import json
import pytest
from contextlib import nullcontext
from decimal import Decimal
from unittest.mock import patch

from botocore.exceptions import ClientError

from billing.handler import lambda_handler
from billing.models import ConcurrentModificationError, CostSheetStatus
from billing.storage import clear_table_cache, get_cost_sheet, save_cost_sheet
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


# ============================================================================
# IN-MEMORY DYNAMODB
# ============================================================================

TABLE_KEYS = {
    COST_SHEETS_TABLE: ("id",),
    COST_SHEET_LINES_TABLE: ("cost_sheet_id", "line_no"),
    COST_SHEET_APPROVALS_TABLE: ("id",),
    AGREEMENT_LINES_TABLE: ("agreement_id", "line_no"),
    BILLING_CYCLES_TABLE: ("id",),
    TOLLS_FINES_TABLE: ("id",),
    EXPENSES_TABLE: ("id",),
    COMPLIANCE_EXCEPTIONS_TABLE: ("id",),
}


def matches(condition, item) -> bool:
    """Evaluates the subset of condition expressions storage.py builds."""
    expression = condition.get_expression()
    operator, values = expression["operator"], expression["values"]

    if operator == "AND":
        return all(matches(c, item) for c in values)
    if operator == "attribute_not_exists":
        return values[0].name not in item
    if operator == "=":
        return item.get(values[0].name) == values[1]
    if operator == "BETWEEN":
        value = item.get(values[0].name)
        return value is not None and values[1] <= value <= values[2]
    raise NotImplementedError(operator)


class InMemoryTable:

    def __init__(self, key_names):
        self.key_names = key_names
        self.items = {}

    def _key(self, item):
        return tuple(item[name] for name in self.key_names)

    def put_item(self, Item, ConditionExpression=None):
        existing = self.items.get(self._key(Item), {})
        if ConditionExpression is not None and not matches(ConditionExpression, existing):
            raise ClientError(
                {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
                "PutItem",
            )
        self.items[self._key(Item)] = Item
        return {}

    def delete_item(self, Key):
        self.items.pop(self._key(Key), None)
        return {}

    def get_item(self, Key):
        item = self.items.get(self._key(Key))
        return {"Item": item} if item is not None else {}

    def query(self, KeyConditionExpression, FilterExpression=None, IndexName=None, ExclusiveStartKey=None):
        found = [item for item in self.items.values() if matches(KeyConditionExpression, item)]
        if FilterExpression is not None:
            found = [item for item in found if matches(FilterExpression, item)]
        return {"Items": found}

    def batch_writer(self, overwrite_by_pkeys=None):
        return nullcontext(self)


class InMemoryDynamoDB:

    def __init__(self):
        self.tables = {name: InMemoryTable(keys) for name, keys in TABLE_KEYS.items()}

    def Table(self, name):
        return self.tables[name]


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture(autouse=True)
def clear_cache_after_test():
    yield
    clear_table_cache()


@pytest.fixture
def dynamodb():
    db = InMemoryDynamoDB()
    with patch("billing.storage.boto3.resource", return_value=db):
        yield db


def call(method, path, body=None, query=None):
    event = {
        "requestContext": {"http": {"method": method, "path": path}},
        "body": json.dumps(body) if body is not None else None,
    }
    if query is not None:
        event["queryStringParameters"] = query
    response = lambda_handler(event, None)
    return response["statusCode"], json.loads(response["body"])


COST_SHEET_BODY = {
    "id": "CS-INT-1",
    "quote_id": "Q-INT-1",
    "cost_sheet_no": "CS-2024-001",
    "lines": [
        {
            "line_no": 1,
            "vehicle_id": "VH-1",
            "vehicle_class_id": "suv",
            "lease_term_months": 36,
            "acquisition_cost_aed": 120000,
            "residual_value_percent": 40,
            "insurance_per_month_aed": 300,
            "maintenance_per_month_aed": 200,
            "registration_admin_per_month_aed": 50,
            "quoted_rate_per_month_aed": 3500,
        },
        {
            "line_no": 2,
            "vehicle_id": "VH-2",
            "vehicle_class_id": "sedan",
            "lease_term_months": 24,
            "acquisition_cost_aed": 80000,
            "insurance_per_month_aed": 200,
            "maintenance_per_month_aed": 150,
        },
    ],
}


# ============================================================================
# COST SHEET PIPELINE
# ============================================================================

class TestCostSheetPipeline:

    def test_create_persists_calculated_lines(self, dynamodb):
        status, body = call("POST", "/v1/cost-sheets", COST_SHEET_BODY)

        assert status == 201
        assert body["lines"][0]["total_cost_per_month_aed"] == pytest.approx(3177.5)
        assert body["lines"][0]["actual_margin_percent"] == pytest.approx(9.21)

        stored_lines = dynamodb.tables[COST_SHEET_LINES_TABLE].items
        assert ("CS-INT-1", 1) in stored_lines
        assert stored_lines[("CS-INT-1", 1)]["total_cost_per_month_aed"] == Decimal("3177.5")

    def test_create_twice_conflicts(self, dynamodb):
        call("POST", "/v1/cost-sheets", COST_SHEET_BODY)
        status, body = call("POST", "/v1/cost-sheets", COST_SHEET_BODY)

        assert status == 409
        assert body["error"]["code"] == "CONCURRENT_MODIFICATION"

    def test_submit_approve_and_audit(self, dynamodb):
        call("POST", "/v1/cost-sheets", COST_SHEET_BODY)

        status, body = call("POST", "/v1/cost-sheets/CS-INT-1/submit", {"submitted_by": "sales-1", "auto_approve": False})
        assert status == 200
        assert body["cost_sheet"]["status"] == "pending_approval"
        assert body["low_margin_lines"] == []

        status, body = call("POST", "/v1/cost-sheets/CS-INT-1/approve", {"approver_user_id": "manager-1", "notes": "ok"})
        assert status == 200
        assert body["status"] == "approved"
        assert body["approved_by"] == "manager-1"

        approvals = list(dynamodb.tables[COST_SHEET_APPROVALS_TABLE].items.values())
        assert len(approvals) == 1
        assert approvals[0]["action"] == "approved"

    def test_second_approval_is_rejected(self, dynamodb):
        call("POST", "/v1/cost-sheets", COST_SHEET_BODY)
        call("POST", "/v1/cost-sheets/CS-INT-1/submit", {"submitted_by": "sales-1", "auto_approve": False})
        call("POST", "/v1/cost-sheets/CS-INT-1/approve", {"approver_user_id": "manager-1"})

        status, body = call("POST", "/v1/cost-sheets/CS-INT-1/reject", {"approver_user_id": "manager-2"})

        assert status == 409
        assert body["error"]["code"] == "INVALID_TRANSITION"
        assert dynamodb.tables[COST_SHEETS_TABLE].items[("CS-INT-1",)]["status"] == "approved"

    def test_auto_approve_on_submit(self, dynamodb):
        call("POST", "/v1/cost-sheets", COST_SHEET_BODY)

        status, body = call("POST", "/v1/cost-sheets/CS-INT-1/submit", {"submitted_by": "sales-1", "auto_approve": True})

        assert status == 200
        assert body["cost_sheet"]["status"] == "approved"

    def test_recalculating_approved_sheet_creates_new_version(self, dynamodb):
        call("POST", "/v1/cost-sheets", COST_SHEET_BODY)
        call("POST", "/v1/cost-sheets/CS-INT-1/submit", {"submitted_by": "sales-1", "auto_approve": True})

        status, body = call("POST", "/v1/cost-sheets/CS-INT-1/recalculate")

        assert status == 200
        assert body["id"] != "CS-INT-1"
        assert body["version"] == 2
        assert body["status"] == "draft"
        assert dynamodb.tables[COST_SHEETS_TABLE].items[("CS-INT-1",)]["status"] == "approved"
        assert "summary" in body

    def test_recalculating_draft_with_fewer_lines_removes_the_rest(self, dynamodb):
        call("POST", "/v1/cost-sheets", COST_SHEET_BODY)

        status, body = call("POST", "/v1/cost-sheets/CS-INT-1/recalculate", {"lines": COST_SHEET_BODY["lines"][:1]})

        assert status == 200
        assert len(body["lines"]) == 1
        assert len(get_cost_sheet("CS-INT-1").lines) == 1
        assert ("CS-INT-1", 2) not in dynamodb.tables[COST_SHEET_LINES_TABLE].items

    def test_repeat_recalculation_of_approved_sheet_numbers_versions_uniquely(self, dynamodb):
        call("POST", "/v1/cost-sheets", COST_SHEET_BODY)
        call("POST", "/v1/cost-sheets/CS-INT-1/submit", {"submitted_by": "sales-1", "auto_approve": True})

        _, first = call("POST", "/v1/cost-sheets/CS-INT-1/recalculate")
        _, second = call("POST", "/v1/cost-sheets/CS-INT-1/recalculate")

        assert (first["version"], second["version"]) == (2, 3)
        stored = dynamodb.tables[COST_SHEETS_TABLE].items.values()
        assert sorted(item["version"] for item in stored if item["quote_id"] == "Q-INT-1") == [1, 2, 3]

    def test_stale_cost_sheet_write_is_rejected(self, dynamodb):
        call("POST", "/v1/cost-sheets", COST_SHEET_BODY)
        first_read = get_cost_sheet("CS-INT-1")
        second_read = get_cost_sheet("CS-INT-1")

        save_cost_sheet(first_read.model_copy(update={"notes_assumptions": "A"}), CostSheetStatus.DRAFT)
        with pytest.raises(ConcurrentModificationError):
            save_cost_sheet(second_read.model_copy(update={"notes_assumptions": "B"}), CostSheetStatus.DRAFT)

        assert get_cost_sheet("CS-INT-1").notes_assumptions == "A"

    def test_summary_is_returned_on_create(self, dynamodb):
        _, body = call("POST", "/v1/cost-sheets", COST_SHEET_BODY)

        summary = body["summary"]
        assert summary["total_monthly_cost"] == pytest.approx(sum(l["total_cost_per_month_aed"] for l in body["lines"]))
        assert summary["lowest_margin_line_no"] == 1

    def test_vehicle_changes_against_approved_sheet(self, dynamodb):
        call("POST", "/v1/cost-sheets", COST_SHEET_BODY)
        _, submitted = call("POST", "/v1/cost-sheets/CS-INT-1/submit", {"submitted_by": "sales-1", "auto_approve": True})

        agreement_lines = dynamodb.tables[AGREEMENT_LINES_TABLE]
        for line in submitted["cost_sheet"]["lines"]:
            agreement_lines.put_item(Item={
                "agreement_id": "AG-1",
                "line_no": line["line_no"],
                "vehicle_id": line["vehicle_id"],
                "vehicle_class_id": line["vehicle_class_id"],
                "monthly_rate": Decimal(str(line["quoted_rate_per_month_aed"])),
                "lease_term_months": line["lease_term_months"],
                "quantity": line["quantity"],
            })
        agreement_lines.items[("AG-1", 1)]["monthly_rate"] = Decimal("3300")

        status, body = call("GET", "/v1/quotes/Q-INT-1/vehicle-changes", query={"agreement_id": "AG-1"})

        assert status == 200
        assert body["has_changes"] is True
        assert len(body["changes"]) == 1
        assert body["changes"][0]["field"] == "monthly_rate"
        assert body["changes"][0]["current_value"] == 3300

    def test_missing_cost_sheet_returns_404(self, dynamodb):
        status, body = call("POST", "/v1/cost-sheets/CS-NOPE/approve", {"approver_user_id": "manager-1"})

        assert status == 404
        assert body["error"]["code"] == "COST_SHEET_NOT_FOUND"


# ============================================================================
# BILLING PIPELINE
# ============================================================================

@pytest.fixture
def period_items(dynamodb):
    dynamodb.tables[EXPENSES_TABLE].put_item(Item={
        "id": "E-1", "contract_id": "C-1", "amount": Decimal("300"), "expense_date": "2024-03-05",
    })
    dynamodb.tables[EXPENSES_TABLE].put_item(Item={
        "id": "E-2", "contract_id": "C-1", "amount": Decimal("999"), "expense_date": "2024-04-05",
    })
    dynamodb.tables[TOLLS_FINES_TABLE].put_item(Item={
        "id": "T-1", "contract_id": "C-1", "type": "toll", "total_amount": Decimal("66"),
        "incident_date": "2024-03-03", "billable_to_contract": True,
    })
    dynamodb.tables[TOLLS_FINES_TABLE].put_item(Item={
        "id": "F-1", "contract_id": "C-1", "type": "fine", "total_amount": Decimal("200"),
        "incident_date": "2024-03-09", "billable_to_contract": True,
    })
    dynamodb.tables[TOLLS_FINES_TABLE].put_item(Item={
        "id": "F-2", "contract_id": "C-1", "type": "fine", "total_amount": Decimal("500"),
        "incident_date": "2024-03-10", "billable_to_contract": False,
    })
    dynamodb.tables[COMPLIANCE_EXCEPTIONS_TABLE].put_item(Item={
        "id": "X-1", "contract_id": "C-1", "status": "open", "amount": Decimal("100"), "flagged_at": "2024-03-06",
    })
    return dynamodb


class TestBillingPipeline:

    def test_preview(self, period_items):
        status, body = call("POST", "/v1/billing/preview", {
            "contract_id": "C-1", "period_start": "2024-03-01", "period_end": "2024-03-31",
        })

        assert status == 200
        assert [e["id"] for e in body["expenses"]] == ["E-1"]
        assert [f["id"] for f in body["fines"]] == ["F-1"]
        assert body["summary"]["subtotal"] == pytest.approx(666)
        assert body["summary"]["vat"] == pytest.approx(33.3)
        assert body["summary"]["grand_total"] == pytest.approx(699.3)

    def test_cycle_lifecycle(self, period_items):
        status, cycle = call("POST", "/v1/billing-cycles", {
            "contract_id": "C-1", "billing_cycle_no": "2024-03",
            "period_start": "2024-03-01", "period_end": "2024-03-31",
        })
        assert status == 201
        cycle_id = cycle["id"]

        status, cycle = call("POST", f"/v1/billing-cycles/{cycle_id}/generate")
        assert status == 200
        assert cycle["total_amount"] == pytest.approx(666)
        assert cycle["total_exceptions"] == pytest.approx(100)

        status, cycle = call("POST", f"/v1/billing-cycles/{cycle_id}/finalize")
        assert cycle["status"] == "finalized"

        status, body = call("POST", f"/v1/billing-cycles/{cycle_id}/generate")
        assert status == 409

        status, cycle = call("POST", f"/v1/billing-cycles/{cycle_id}/invoice", {"invoice_id": "INV-100"})
        assert status == 200
        assert cycle["status"] == "invoiced"
        assert cycle["invoice_id"] == "INV-100"

        status, cycle = call("GET", f"/v1/billing-cycles/{cycle_id}")
        assert cycle["status"] == "invoiced"
        assert cycle["version"] == 4

    def test_duplicate_cycle_conflicts(self, period_items):
        body = {
            "contract_id": "C-1", "billing_cycle_no": "2024-03",
            "period_start": "2024-03-01", "period_end": "2024-03-31",
        }
        call("POST", "/v1/billing-cycles", body)
        status, _ = call("POST", "/v1/billing-cycles", body)
        assert status == 409

    def test_batch_across_contracts(self, period_items):
        status, body = call("POST", "/v1/billing/batch", {"contracts": [
            {"contract_id": "C-1", "period_start": "2024-03-01", "period_end": "2024-03-31"},
            {"contract_id": "C-2", "period_start": "2024-03-01", "period_end": "2024-03-31"},
        ]})

        assert status == 200
        assert body["success"] == 2
        assert body["failed"] == 0
        totals = {p["contract_id"]: p["summary"]["grand_total"] for p in body["previews"]}
        assert totals["C-1"] == pytest.approx(699.3)
        assert totals["C-2"] == 0
