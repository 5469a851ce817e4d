"""Tests for ledger tools: customers, orders, payments, statements, dashboard."""

import pytest
from unittest.mock import AsyncMock

from tailorbook.config import ShopConfig
from tailorbook.constants import Partition
from tailorbook.repository import LedgerRepository
from tailorbook.stores import MemoryStore
from tailorbook.tools.ledger_tools import (
    add_customer_tool,
    add_payment_tool,
    check_consistency_tool,
    create_order_tool,
    customer_statement_tool,
    dashboard_summary_tool,
    delete_customer_tool,
    delete_order_tool,
    edit_customer_tool,
    order_debt_tool,
    record_transaction_tool,
    search_customers_tool,
    update_order_status_tool,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _repo(store: MemoryStore | None = None) -> LedgerRepository:
    return LedgerRepository(store or MemoryStore(), config=ShopConfig(shop_name="Best Tailors"))


async def _customer_id(repo: LedgerRepository, name: str = "Ali", phone: str = "0700") -> str:
    result = await add_customer_tool(repo, name, phone)
    return result["customer"]["id"]


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------


class TestAddCustomerTool:
    @pytest.mark.asyncio
    async def test_success(self) -> None:
        result = await add_customer_tool(_repo(), "Ali", "0700", {"neck": 40})
        assert result["success"] is True
        assert result["customer"]["code"] == 1
        assert result["customer"]["measurements"]["neck"] == 40.0
        assert "code 1" in result["message"]

    @pytest.mark.asyncio
    async def test_missing_name(self) -> None:
        result = await add_customer_tool(_repo(), "", "0700")
        assert result["success"] is False
        assert result["error_type"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_unknown_partition(self) -> None:
        result = await add_customer_tool(_repo(), "Ali", "0700", partition="vip")
        assert result["success"] is False
        assert "partition" in result["error"]

    @pytest.mark.asyncio
    async def test_partition_by_string(self) -> None:
        repo = _repo()
        await add_customer_tool(repo, "Ali", "0700", partition="simple")
        assert len((await repo.load(Partition.SIMPLE)).customers) == 1

    @pytest.mark.asyncio
    async def test_non_dict_measurements(self) -> None:
        repo = _repo()
        result = await add_customer_tool(repo, "Ali", "0700", ["neck", 40])
        assert result["success"] is False
        assert result["error_type"] == "ValidationError"
        assert (await repo.load(Partition.PROFESSIONAL)).customers == []

    @pytest.mark.asyncio
    async def test_non_text_name(self) -> None:
        result = await add_customer_tool(_repo(), {"first": "Ali"}, "0700")
        assert result["success"] is False
        assert result["error_type"] == "ValidationError"


class TestEditAndDeleteCustomerTool:
    @pytest.mark.asyncio
    async def test_edit(self) -> None:
        repo = _repo()
        cid = await _customer_id(repo)
        result = await edit_customer_tool(repo, cid, {"address": "Herat"})
        assert result["success"] is True
        assert result["customer"]["address"] == "Herat"

    @pytest.mark.asyncio
    async def test_edit_balance_rejected(self) -> None:
        repo = _repo()
        cid = await _customer_id(repo)
        result = await edit_customer_tool(repo, cid, {"balance": 0})
        assert result["success"] is False

    @pytest.mark.asyncio
    async def test_edit_measurements_not_a_mapping(self) -> None:
        repo = _repo()
        cid = await _customer_id(repo)
        result = await edit_customer_tool(repo, cid, {"measurements": "40/80"})
        assert result["success"] is False
        assert result["error_type"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_delete_with_orders_rejected(self) -> None:
        repo = _repo()
        cid = await _customer_id(repo)
        await create_order_tool(repo, cid, "suit", 100, 0, 100)
        result = await delete_customer_tool(repo, cid)
        assert result["success"] is False
        assert result["error_type"] == "PreconditionViolation"

    @pytest.mark.asyncio
    async def test_delete(self) -> None:
        repo = _repo()
        cid = await _customer_id(repo)
        result = await delete_customer_tool(repo, cid)
        assert result["success"] is True
        assert (await repo.load(Partition.PROFESSIONAL)).customers == []


class TestSearchCustomersTool:
    @pytest.mark.asyncio
    async def test_numeric_term_matches_code(self) -> None:
        repo = _repo()
        await _customer_id(repo, "Ali", "0700")
        await _customer_id(repo, "Sara", "0799")
        result = await search_customers_tool(repo, "2")
        assert [c["name"] for c in result["customers"]] == ["Sara"]

    @pytest.mark.asyncio
    async def test_numeric_term_falls_back_to_phone(self) -> None:
        repo = _repo()
        await _customer_id(repo, "Ali", "0700")
        result = await search_customers_tool(repo, "0700")
        assert [c["name"] for c in result["customers"]] == ["Ali"]

    @pytest.mark.asyncio
    async def test_empty_term_lists_newest_first(self) -> None:
        repo = _repo()
        await _customer_id(repo, "Ali", "0700")
        await _customer_id(repo, "Sara", "0799")
        result = await search_customers_tool(repo)
        assert [c["name"] for c in result["customers"]] == ["Sara", "Ali"]


# ---------------------------------------------------------------------------
# Orders and payments
# ---------------------------------------------------------------------------


class TestCreateOrderTool:
    @pytest.mark.asyncio
    async def test_success(self) -> None:
        repo = _repo()
        cid = await _customer_id(repo)
        result = await create_order_tool(repo, cid, "suit", 3000, 2000, 1000)
        assert result["success"] is True
        assert result["order"]["totalPrice"] == 5000
        assert result["transaction"]["amount"] == 4000
        assert result["balance"] == 4000
        assert result["order_debt"] == 4000
        assert result["settlement"] == "customer_owes"
        assert result["deletable"] is False

    @pytest.mark.asyncio
    async def test_deposit_over_total(self) -> None:
        repo = _repo()
        cid = await _customer_id(repo)
        result = await create_order_tool(repo, cid, "suit", 3000, 2000, 6000)
        assert result["success"] is False
        assert "Deposit" in result["error"]
        assert (await repo.load(Partition.PROFESSIONAL)).orders == []

    @pytest.mark.asyncio
    async def test_storage_failure_reported(self) -> None:
        store = MemoryStore()
        repo = _repo(store)
        cid = await _customer_id(repo)
        store.set = AsyncMock(side_effect=OSError("read-only"))  # type: ignore[method-assign]
        result = await create_order_tool(repo, cid, "suit", 10, 0)
        assert result["success"] is False
        assert result["error_type"] == "PersistenceFailure"


class TestPaymentTools:
    @pytest.mark.asyncio
    async def test_payment_settles(self) -> None:
        repo = _repo()
        cid = await _customer_id(repo)
        order = (await create_order_tool(repo, cid, "suit", 3000, 2000, 1000))["order"]
        result = await add_payment_tool(repo, order["id"], 4000)
        assert result["success"] is True
        assert result["balance"] == 0
        assert result["settlement"] == "settled"
        assert result["deletable"] is True

    @pytest.mark.asyncio
    async def test_zero_payment_rejected(self) -> None:
        repo = _repo()
        cid = await _customer_id(repo)
        order = (await create_order_tool(repo, cid, "suit", 10, 0))["order"]
        result = await add_payment_tool(repo, order["id"], 0)
        assert result["success"] is False

    @pytest.mark.asyncio
    async def test_record_transaction(self) -> None:
        repo = _repo()
        cid = await _customer_id(repo)
        result = await record_transaction_tool(repo, cid, -50, "advance")
        assert result["success"] is True
        assert result["balance"] == -50

    @pytest.mark.asyncio
    async def test_order_debt_tool(self) -> None:
        repo = _repo()
        cid = await _customer_id(repo)
        order = (await create_order_tool(repo, cid, "suit", 100, 0))["order"]
        await add_payment_tool(repo, order["id"], 150)
        result = await order_debt_tool(repo, order["id"])
        assert result["order_debt"] == -50
        assert result["settlement"] == "shop_owes"

    @pytest.mark.asyncio
    async def test_order_debt_unknown_order(self) -> None:
        result = await order_debt_tool(_repo(), "missing")
        assert result["success"] is False


class TestStatusAndDeleteTools:
    @pytest.mark.asyncio
    async def test_ready_returns_notification(self) -> None:
        repo = _repo()
        cid = await _customer_id(repo)
        order = (await create_order_tool(repo, cid, "suit", 10, 0))["order"]
        result = await update_order_status_tool(repo, order["id"], "ready")
        assert result["status"] == "ready"
        assert result["notification"]["customerName"] == "Ali"
        assert result["notification"]["shopName"] == "Best Tailors"

    @pytest.mark.asyncio
    async def test_other_status_has_no_notification(self) -> None:
        repo = _repo()
        cid = await _customer_id(repo)
        order = (await create_order_tool(repo, cid, "suit", 10, 0))["order"]
        result = await update_order_status_tool(repo, order["id"], "sewn")
        assert result["success"] is True
        assert "notification" not in result

    @pytest.mark.asyncio
    async def test_invalid_status(self) -> None:
        repo = _repo()
        cid = await _customer_id(repo)
        order = (await create_order_tool(repo, cid, "suit", 10, 0))["order"]
        result = await update_order_status_tool(repo, order["id"], "lost")
        assert result["success"] is False

    @pytest.mark.asyncio
    async def test_delete_unsettled_rejected(self) -> None:
        repo = _repo()
        cid = await _customer_id(repo)
        order = (await create_order_tool(repo, cid, "suit", 10, 0))["order"]
        result = await delete_order_tool(repo, order["id"])
        assert result["success"] is False
        assert result["error_type"] == "PreconditionViolation"

    @pytest.mark.asyncio
    async def test_delete_settled(self) -> None:
        repo = _repo()
        cid = await _customer_id(repo)
        order = (await create_order_tool(repo, cid, "suit", 10, 0, 10))["order"]
        result = await delete_order_tool(repo, order["id"], customer_id=cid)
        assert result["success"] is True
        ledger = await repo.load(Partition.PROFESSIONAL)
        assert ledger.orders == []
        assert ledger.transactions == []


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


class TestCustomerStatementTool:
    @pytest.mark.asyncio
    async def test_statement(self) -> None:
        repo = _repo()
        cid = await _customer_id(repo)
        order = (await create_order_tool(repo, cid, "suit", 3000, 2000, 1000))["order"]
        await add_payment_tool(repo, order["id"], 1000)
        result = await customer_statement_tool(repo, customer_id=cid)
        assert result["balance"] == 3000
        assert result["computed_balance"] == 3000
        assert result["balance_state"] == "debtor"
        assert result["orders"][0]["order_debt"] == 3000
        assert [t["amount"] for t in result["transactions"]] == [-1000, 4000]
        assert result["deletable"] is False

    @pytest.mark.asyncio
    async def test_lookup_by_code(self) -> None:
        repo = _repo()
        await _customer_id(repo)
        result = await customer_statement_tool(repo, code=1)
        assert result["customer"]["name"] == "Ali"
        assert result["deletable"] is True

    @pytest.mark.asyncio
    async def test_requires_identifier(self) -> None:
        result = await customer_statement_tool(_repo())
        assert result["success"] is False

    @pytest.mark.asyncio
    async def test_unknown_customer(self) -> None:
        result = await customer_statement_tool(_repo(), customer_id="nope")
        assert result["error"] == "Customer not found."


class TestDashboardSummaryTool:
    @pytest.mark.asyncio
    async def test_totals(self) -> None:
        repo = _repo()
        ali = await _customer_id(repo, "Ali", "1")
        sara = await _customer_id(repo, "Sara", "2")
        await _customer_id(repo, "Reza", "3")
        order = (await create_order_tool(repo, ali, "suit", 500, 0))["order"]
        await record_transaction_tool(repo, sara, -200, "advance")
        await update_order_status_tool(repo, order["id"], "ready")

        result = await dashboard_summary_tool(repo)
        assert result["total_customers"] == 3
        assert result["total_orders"] == 1
        assert result["total_debt"] == 500
        assert result["total_credit"] == 200
        assert result["debtor_count"] == 1
        assert result["orders_by_status"]["ready"] == 1
        assert result["orders_by_status"]["pending"] == 0


class TestCheckConsistencyTool:
    @pytest.mark.asyncio
    async def test_reports_and_repairs(self) -> None:
        store = MemoryStore({
            "customers": [{"id": "c1", "name": "A", "phone": "1", "code": 1, "balance": 10}],
            "transactions": [{"id": "t1", "customerId": "c1", "amount": 90}],
        })
        repo = LedgerRepository(store, repair_on_load=False)

        found = await check_consistency_tool(repo)
        assert found["consistent"] is False
        assert found["discrepancies"][0]["computed"] == 90

        fixed = await check_consistency_tool(repo, repair=True)
        assert fixed["repaired"] is True
        assert (await store.get("customers"))[0]["balance"] == 90

        again = await check_consistency_tool(repo)
        assert again["consistent"] is True
