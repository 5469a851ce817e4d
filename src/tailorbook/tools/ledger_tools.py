"""Ledger tools: customers, orders, payments, statements and the dashboard.

Every tool returns a dict with ``success``. Rejected operations return
``success=False`` with an ``error`` naming the rule that failed and an
``error_type`` (the exception class name) so the caller can decide
whether to retry, ask the user to fix input, or report a storage fault.
"""

from __future__ import annotations

import logging
from typing import Any

from tailorbook.constants import SETTLEMENT_EPSILON, OrderStatus, Partition
from tailorbook.errors import LedgerError, ValidationError
from tailorbook.ledger import PartitionLedger
from tailorbook.repository import LedgerRepository

logger = logging.getLogger(__name__)


def _partition(value: Partition | str) -> Partition:
    try:
        return Partition(value)
    except ValueError:
        raise ValidationError(f"Unknown partition: {value!r}") from None


def _failure(exc: LedgerError) -> dict[str, Any]:
    return {
        "success": False,
        "error": exc.reason,
        "error_type": type(exc).__name__,
    }


def _order_summary(ledger: PartitionLedger, order_id: str) -> dict[str, Any]:
    debt = ledger.order_debt(order_id)
    return {
        "order_debt": debt,
        "settlement": ledger.settlement_state(order_id),
        "deletable": abs(debt) < SETTLEMENT_EPSILON,
    }


def _balance_of(ledger: PartitionLedger, customer_id: str) -> float:
    customer = ledger.get_customer(customer_id)
    return customer.balance if customer else 0.0


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------


async def add_customer_tool(
    repo: LedgerRepository,
    name: str,
    phone: str,
    measurements: dict[str, Any] | None = None,
    partition: Partition | str = Partition.PROFESSIONAL,
    address: str | None = None,
    notes: str | None = None,
) -> dict[str, Any]:
    """Create a customer. Name and phone are required; the code is assigned."""
    try:
        customer = await repo.create_customer(
            _partition(partition), name, phone, measurements,
            address=address, notes=notes,
        )
    except LedgerError as e:
        return _failure(e)
    return {
        "success": True,
        "customer": customer.to_dict(),
        "message": f"Customer {customer.name} added with code {customer.code}.",
    }


async def edit_customer_tool(
    repo: LedgerRepository,
    customer_id: str,
    fields: dict[str, Any],
    partition: Partition | str = Partition.PROFESSIONAL,
) -> dict[str, Any]:
    """Update name, phone, measurements, address or notes. Balance and code are read-only."""
    try:
        customer = await repo.update_customer(_partition(partition), customer_id, fields)
    except LedgerError as e:
        return _failure(e)
    return {"success": True, "customer": customer.to_dict()}


async def delete_customer_tool(
    repo: LedgerRepository,
    customer_id: str,
    partition: Partition | str = Partition.PROFESSIONAL,
) -> dict[str, Any]:
    """Delete a customer with no orders and a settled balance."""
    try:
        customer = await repo.delete_customer(_partition(partition), customer_id)
    except LedgerError as e:
        return _failure(e)
    return {
        "success": True,
        "customer_id": customer.id,
        "message": f"Customer {customer.name} deleted.",
    }


async def search_customers_tool(
    repo: LedgerRepository,
    term: str = "",
    partition: Partition | str = Partition.PROFESSIONAL,
) -> dict[str, Any]:
    """Find customers by name/phone substring, or by code when ``term`` is numeric."""
    try:
        ledger = await repo.load(_partition(partition))
    except LedgerError as e:
        return _failure(e)
    term = term.strip()
    if term.isdigit():
        by_code = ledger.find_customer_by_code(int(term))
        if by_code is not None:
            return {"success": True, "customers": [by_code.to_dict()]}
    matches = ledger.search_customers(term)
    return {"success": True, "customers": [c.to_dict() for c in reversed(matches)]}


# ---------------------------------------------------------------------------
# Orders and payments
# ---------------------------------------------------------------------------


async def create_order_tool(
    repo: LedgerRepository,
    customer_id: str,
    description: str,
    cloth_price: Any,
    sewing_fee: Any,
    deposit: Any = 0,
    due_date: str | None = None,
    style_details: dict[str, str] | None = None,
    notes: str | None = None,
    partition: Partition | str = Partition.PROFESSIONAL,
) -> dict[str, Any]:
    """Create an order and its remainder transaction.

    Rejected with no side effects when the deposit exceeds cloth price
    plus sewing fee.

    Returns dict with:
        order: The stored order.
        transaction: The remainder transaction (amount = total - deposit).
        balance: Customer balance after the charge.
        order_debt / settlement / deletable: Per-order settlement view.
    """
    try:
        part = _partition(partition)
        order, tx = await repo.create_order(
            part, customer_id, description, cloth_price, sewing_fee, deposit,
            due_date=due_date, style_details=style_details, notes=notes,
        )
        ledger = await repo.load(part)
    except LedgerError as e:
        return _failure(e)
    result: dict[str, Any] = {
        "success": True,
        "order": order.to_dict(),
        "transaction": tx.to_dict(),
        "balance": _balance_of(ledger, customer_id),
    }
    result.update(_order_summary(ledger, order.id))
    result["message"] = (
        f"Order '{order.description}' created: total {order.total_price:g}, "
        f"deposit {order.deposit:g}, remaining {tx.amount:g}."
    )
    return result


async def add_payment_tool(
    repo: LedgerRepository,
    order_id: str,
    amount: Any,
    customer_id: str | None = None,
    partition: Partition | str = Partition.PROFESSIONAL,
) -> dict[str, Any]:
    """Record a payment toward an order. The amount must be positive."""
    try:
        part = _partition(partition)
        tx = await repo.add_payment(part, order_id, amount, customer_id=customer_id)
        ledger = await repo.load(part)
    except LedgerError as e:
        return _failure(e)
    result: dict[str, Any] = {
        "success": True,
        "transaction": tx.to_dict(),
        "balance": _balance_of(ledger, tx.customer_id),
    }
    result.update(_order_summary(ledger, order_id))
    return result


async def record_transaction_tool(
    repo: LedgerRepository,
    customer_id: str,
    amount: Any,
    description: str,
    partition: Partition | str = Partition.PROFESSIONAL,
) -> dict[str, Any]:
    """Record a free-standing debt (positive amount) or payment (negative amount)."""
    try:
        part = _partition(partition)
        tx = await repo.record_transaction(part, customer_id, amount, description)
        ledger = await repo.load(part)
    except LedgerError as e:
        return _failure(e)
    return {
        "success": True,
        "transaction": tx.to_dict(),
        "balance": _balance_of(ledger, customer_id),
    }


async def update_order_status_tool(
    repo: LedgerRepository,
    order_id: str,
    status: OrderStatus | str,
    partition: Partition | str = Partition.PROFESSIONAL,
) -> dict[str, Any]:
    """Set an order's status. Any state may follow any other.

    When the order enters READY the result carries the ``notification``
    that was handed to the registered ready hooks.
    """
    try:
        event = await repo.update_status(_partition(partition), order_id, status)
    except LedgerError as e:
        return _failure(e)
    result: dict[str, Any] = {
        "success": True,
        "order_id": order_id,
        "status": OrderStatus.parse(status).value,
    }
    if event is not None:
        result["notification"] = event.to_dict()
    return result


async def delete_order_tool(
    repo: LedgerRepository,
    order_id: str,
    customer_id: str | None = None,
    partition: Partition | str = Partition.PROFESSIONAL,
) -> dict[str, Any]:
    """Delete a fully settled order together with its linked transactions."""
    try:
        order = await repo.delete_order(_partition(partition), order_id, customer_id=customer_id)
    except LedgerError as e:
        return _failure(e)
    return {
        "success": True,
        "order_id": order.id,
        "message": f"Order '{order.description}' deleted.",
    }


async def order_debt_tool(
    repo: LedgerRepository,
    order_id: str,
    partition: Partition | str = Partition.PROFESSIONAL,
) -> dict[str, Any]:
    try:
        ledger = await repo.load(_partition(partition))
        if ledger.get_order(order_id) is None:
            raise ValidationError(f"Order {order_id!r} does not exist.")
    except LedgerError as e:
        return _failure(e)
    result: dict[str, Any] = {"success": True, "order_id": order_id}
    result.update(_order_summary(ledger, order_id))
    return result


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


async def customer_statement_tool(
    repo: LedgerRepository,
    customer_id: str | None = None,
    code: int | None = None,
    partition: Partition | str = Partition.PROFESSIONAL,
) -> dict[str, Any]:
    """Return a customer's balance, transaction history (newest first) and orders.

    Read-only. Look the customer up by ``customer_id`` or by ``code``.
    """
    try:
        ledger = await repo.load(_partition(partition))
        if customer_id is not None:
            customer = ledger.get_customer(customer_id)
        elif code is not None:
            customer = ledger.find_customer_by_code(code)
        else:
            raise ValidationError("Provide a customer id or code.")
        if customer is None:
            raise ValidationError("Customer not found.")
    except LedgerError as e:
        return _failure(e)

    orders = []
    for order in ledger.orders_for_customer(customer.id):
        entry = order.to_dict()
        entry.update(_order_summary(ledger, order.id))
        orders.append(entry)

    transactions = ledger.transactions_for_customer(customer.id)
    return {
        "success": True,
        "customer": customer.to_dict(),
        "balance": customer.balance,
        "balance_state": customer.balance_state,
        "computed_balance": ledger.customer_balance_from_transactions(customer.id),
        "orders": orders,
        "transactions": [t.to_dict() for t in reversed(transactions)],
        "deletable": not orders and abs(customer.balance) < SETTLEMENT_EPSILON,
    }


async def dashboard_summary_tool(
    repo: LedgerRepository,
    partition: Partition | str = Partition.PROFESSIONAL,
) -> dict[str, Any]:
    """Counts and money totals for the dashboard view."""
    try:
        ledger = await repo.load(_partition(partition))
    except LedgerError as e:
        return _failure(e)
    status_counts = {status.value: 0 for status in OrderStatus}
    for order in ledger.orders:
        status_counts[order.status.value] += 1
    return {
        "success": True,
        "total_customers": len(ledger.customers),
        "total_orders": len(ledger.orders),
        "total_debt": sum(c.balance for c in ledger.customers if c.balance > 0),
        "total_credit": -sum(c.balance for c in ledger.customers if c.balance < 0),
        "debtor_count": sum(1 for c in ledger.customers if c.balance_state == "debtor"),
        "orders_by_status": status_counts,
    }


async def check_consistency_tool(
    repo: LedgerRepository,
    partition: Partition | str = Partition.PROFESSIONAL,
    repair: bool = False,
) -> dict[str, Any]:
    """Compare cached balances with their transaction sums; optionally repair them."""
    try:
        part = _partition(partition)
        if repair:
            found = await repo.mutate(part, lambda ledger: ledger.repair_balances())
        else:
            found = (await repo.load(part)).check_consistency()
    except LedgerError as e:
        return _failure(e)
    if found:
        logger.warning(
            "%d balance discrepancy(ies) in %s partition%s.",
            len(found), part.value, " (repaired)" if repair else "",
        )
    return {
        "success": True,
        "consistent": not found,
        "repaired": repair and bool(found),
        "discrepancies": [item.to_dict() for item in found],
    }
