"""Customer, order and transaction ledger for one data partition.

Pure data model with no I/O. Amounts follow a single sign convention:
positive transactions increase what the customer owes, negative ones
record payments. ``Customer.balance`` is a cache of the customer's
transaction sum and is updated in lockstep at every mutation site.
"""

from __future__ import annotations

import copy
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tailorbook.constants import SETTLEMENT_EPSILON, OrderStatus
from tailorbook.errors import PreconditionViolation, ValidationError
from tailorbook.notifications import ReadyNotification

logger = logging.getLogger(__name__)

DEFAULT_DATE_FORMAT = "%Y-%m-%d"
UNTITLED_ORDER = "Untitled"


def _new_id() -> str:
    return uuid.uuid4().hex


def _now_ms() -> int:
    return int(time.time() * 1000)


def _today(date_format: str) -> str:
    return datetime.now().strftime(date_format)


def _to_float(value: Any, default: float = 0.0) -> float:
    """Lenient numeric coercion for stored data."""
    if value is None or value == "":
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return _to_float(value)


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _legacy_created_ms(entity_id: str) -> int | None:
    """Older records used ``Date.now()`` ids (optionally ``-tx``/``-pmt`` suffixed)."""
    head = entity_id.split("-", 1)[0]
    if head.isdigit() and len(head) == 13:
        return int(head)
    return None


def _created_ms(value: Any, entity_id: str) -> int | None:
    """Lenient ``createdAtMs`` parse; falls back to the legacy id-derived timestamp."""
    if value is None or value == "":
        return _legacy_created_ms(entity_id)
    if not isinstance(value, bool):
        try:
            number = float(value)
        except (TypeError, ValueError, OverflowError):
            number = math.nan
        if math.isfinite(number):
            return int(number)
    logger.warning("Record %s has invalid createdAtMs %r; ignoring it.", entity_id, value)
    return _legacy_created_ms(entity_id)


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ValidationError("Name and phone number must be text.")
    return str(value).strip()


def _require_amount(label: str, value: Any) -> float:
    """Strict coercion for user-entered money. Rejects negatives and non-numbers."""
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be a number.")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} must be a number.") from None
    if not math.isfinite(number):
        raise ValidationError(f"{label} must be a finite number.")
    if number < 0:
        raise ValidationError(f"{label} cannot be negative.")
    return number


def normalize_measurements(
    raw: dict[str, Any] | None, labels: dict[str, str] | None = None,
) -> dict[str, float]:
    """Coerce measurement values to floats; unset label keys are stored as 0."""
    if raw is not None and not isinstance(raw, dict):
        raise ValidationError("Measurements must be a mapping of name to value.")
    result: dict[str, float] = {key: 0.0 for key in (labels or {})}
    for key, value in (raw or {}).items():
        if value is None or value == "":
            result[str(key)] = 0.0
            continue
        result[str(key)] = _require_amount(f"Measurement '{key}'", value)
    return result


# ---------------------------------------------------------------------------
# Customer
# ---------------------------------------------------------------------------


@dataclass
class Customer:
    """A shop customer with measurements and a cached running balance."""

    id: str
    name: str
    phone: str
    measurements: dict[str, float] = field(default_factory=dict)
    balance: float = 0.0  # >0 customer owes the shop, <0 shop owes the customer
    code: int | None = None
    address: str | None = None
    notes: str | None = None

    @property
    def balance_state(self) -> str:
        if self.balance > SETTLEMENT_EPSILON:
            return "debtor"
        if self.balance < -SETTLEMENT_EPSILON:
            return "creditor"
        return "settled"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "phone": self.phone,
            "address": self.address,
            "notes": self.notes,
            "measurements": dict(self.measurements),
            "balance": self.balance,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Customer:
        raw_code = data.get("code")
        try:
            code = int(raw_code) if raw_code is not None else None
        except (TypeError, ValueError, OverflowError):
            logger.warning(
                "Customer %s has invalid code %r; a new one will be assigned.",
                data.get("id"), raw_code,
            )
            code = None
        raw_measurements = data.get("measurements", {})
        measurements: dict[str, float] = {}
        if isinstance(raw_measurements, dict):
            measurements = {
                str(k): _to_float(v) for k, v in raw_measurements.items()
            }
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            phone=str(data.get("phone", "")),
            measurements=measurements,
            balance=_to_float(data.get("balance")),
            code=code,
            address=_optional_str(data.get("address")),
            notes=_optional_str(data.get("notes")),
        )


# ---------------------------------------------------------------------------
# Order
# ---------------------------------------------------------------------------


@dataclass
class Order:
    """A garment order. Money owed on it lives in its linked transactions."""

    id: str
    customer_id: str
    description: str
    status: OrderStatus = OrderStatus.PENDING
    date_created: str = ""  # display string
    total_price: float = 0.0
    cloth_price: float | None = None
    sewing_fee: float | None = None
    deposit: float = 0.0
    due_date: str | None = None
    style_details: dict[str, str] = field(default_factory=dict)
    notes: str | None = None
    created_at_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "customerId": self.customer_id,
            "description": self.description,
            "status": self.status.value,
            "dateCreated": self.date_created,
            "dueDate": self.due_date,
            "totalPrice": self.total_price,
            "clothPrice": self.cloth_price,
            "sewingFee": self.sewing_fee,
            "deposit": self.deposit,
            "styleDetails": dict(self.style_details),
            "notes": self.notes,
            "createdAtMs": self.created_at_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Order:
        order_id = str(data.get("id", ""))
        raw_status = data.get("status", OrderStatus.PENDING.value)
        try:
            status = OrderStatus.parse(raw_status)
        except ValueError:
            logger.warning(
                "Order %s has unknown status %r; treating as pending.",
                order_id, raw_status,
            )
            status = OrderStatus.PENDING
        raw_style = data.get("styleDetails") or {}
        style_details = (
            {str(k): str(v) for k, v in raw_style.items()}
            if isinstance(raw_style, dict) else {}
        )
        return cls(
            id=order_id,
            customer_id=str(data.get("customerId", "")),
            description=str(data.get("description", "")),
            status=status,
            date_created=str(data.get("dateCreated", "")),
            total_price=_to_float(data.get("totalPrice")),
            cloth_price=_optional_float(data.get("clothPrice")),
            sewing_fee=_optional_float(data.get("sewingFee")),
            deposit=_to_float(data.get("deposit")),
            due_date=_optional_str(data.get("dueDate")),
            style_details=style_details,
            notes=_optional_str(data.get("notes")),
            created_at_ms=_created_ms(data.get("createdAtMs"), order_id),
        )


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------


@dataclass
class Transaction:
    """Immutable money event. Positive = charge, negative = payment."""

    id: str
    customer_id: str
    amount: float
    date: str = ""  # display string
    description: str = ""
    order_id: str | None = None
    created_at_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "customerId": self.customer_id,
            "orderId": self.order_id,
            "amount": self.amount,
            "date": self.date,
            "description": self.description,
            "createdAtMs": self.created_at_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Transaction:
        tx_id = str(data.get("id", ""))
        order_id = data.get("orderId")
        return cls(
            id=tx_id,
            customer_id=str(data.get("customerId", "")),
            amount=_to_float(data.get("amount")),
            date=str(data.get("date", "")),
            description=str(data.get("description", "")),
            order_id=str(order_id) if order_id else None,
            created_at_ms=_created_ms(data.get("createdAtMs"), tx_id),
        )


@dataclass(frozen=True)
class BalanceDiscrepancy:
    """A customer whose cached balance disagrees with its transaction sum."""

    customer_id: str
    cached: float
    computed: float

    @property
    def delta(self) -> float:
        return self.computed - self.cached

    def to_dict(self) -> dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "cached": self.cached,
            "computed": self.computed,
        }


# ---------------------------------------------------------------------------
# PartitionLedger
# ---------------------------------------------------------------------------


def _parse_list(raw: Any, parser: Any, label: str) -> list[Any]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        logger.warning("Stored %s is not a list; ignoring it.", label)
        return []
    return [parser(item) for item in raw if isinstance(item, dict)]


@dataclass
class PartitionLedger:
    """The three collections of one partition plus every operation on them.

    Operations validate fully before mutating, so a raised
    ``ValidationError`` or ``PreconditionViolation`` leaves the ledger
    unchanged. Callers that persist should work on ``copy()`` and only
    keep the result once every write has succeeded.
    """

    customers: list[Customer] = field(default_factory=list)
    orders: list[Order] = field(default_factory=list)
    transactions: list[Transaction] = field(default_factory=list)

    # -- lookups --------------------------------------------------------------

    def get_customer(self, customer_id: str) -> Customer | None:
        return next((c for c in self.customers if c.id == customer_id), None)

    def get_order(self, order_id: str) -> Order | None:
        return next((o for o in self.orders if o.id == order_id), None)

    def _require_customer(self, customer_id: str) -> Customer:
        customer = self.get_customer(customer_id)
        if customer is None:
            raise ValidationError(f"Customer {customer_id!r} does not exist.")
        return customer

    def _require_order(self, order_id: str) -> Order:
        order = self.get_order(order_id)
        if order is None:
            raise ValidationError(f"Order {order_id!r} does not exist.")
        return order

    def orders_for_customer(self, customer_id: str) -> list[Order]:
        return [o for o in self.orders if o.customer_id == customer_id]

    def transactions_for_customer(self, customer_id: str) -> list[Transaction]:
        return [t for t in self.transactions if t.customer_id == customer_id]

    def transactions_for_order(self, order_id: str) -> list[Transaction]:
        return [t for t in self.transactions if t.order_id == order_id]

    def find_customer_by_code(self, code: int) -> Customer | None:
        return next((c for c in self.customers if c.code == code), None)

    def search_customers(self, term: str) -> list[Customer]:
        """Substring match on name or phone; an empty term matches everyone."""
        needle = term.strip()
        if not needle:
            return list(self.customers)
        return [c for c in self.customers if needle in c.name or needle in c.phone]

    # -- customers ------------------------------------------------------------

    def next_code(self) -> int:
        return max((c.code for c in self.customers if c.code is not None), default=0) + 1

    def create_customer(
        self,
        name: str,
        phone: str,
        measurements: dict[str, Any] | None = None,
        *,
        labels: dict[str, str] | None = None,
        address: str | None = None,
        notes: str | None = None,
    ) -> Customer:
        """Append a new customer with the next sequential code and zero balance."""
        name = _clean_text(name)
        phone = _clean_text(phone)
        if not name or not phone:
            raise ValidationError("Name and phone number are required.")
        customer = Customer(
            id=_new_id(),
            name=name,
            phone=phone,
            measurements=normalize_measurements(measurements, labels),
            balance=0.0,
            code=self.next_code(),
            address=address,
            notes=notes,
        )
        self.customers.append(customer)
        return customer

    _EDITABLE_CUSTOMER_FIELDS = frozenset({"name", "phone", "measurements", "address", "notes"})
    _SYSTEM_CUSTOMER_FIELDS = frozenset({"id", "code", "balance"})

    def update_customer(
        self,
        customer_id: str,
        fields: dict[str, Any],
        *,
        labels: dict[str, str] | None = None,
    ) -> Customer:
        """Merge ``fields`` into an existing customer. Balance and code are system-managed."""
        customer = self._require_customer(customer_id)
        if not isinstance(fields, dict):
            raise ValidationError("Customer fields must be a mapping of field to value.")
        forbidden = self._SYSTEM_CUSTOMER_FIELDS.intersection(fields)
        if forbidden:
            raise ValidationError(
                f"Cannot edit system-managed field(s): {', '.join(sorted(forbidden))}."
            )
        unknown = set(fields) - self._EDITABLE_CUSTOMER_FIELDS
        if unknown:
            raise ValidationError(f"Unknown customer field(s): {', '.join(sorted(unknown))}.")

        updates = dict(fields)
        for required in ("name", "phone"):
            if required in updates:
                updates[required] = _clean_text(updates[required])
                if not updates[required]:
                    raise ValidationError("Name and phone number are required.")
        if "measurements" in updates:
            updates["measurements"] = normalize_measurements(updates["measurements"], labels)

        for key, value in updates.items():
            setattr(customer, key, value)
        return customer

    def delete_customer(self, customer_id: str) -> Customer:
        """Remove a customer that owns no orders and has a settled balance."""
        customer = self._require_customer(customer_id)
        open_orders = self.orders_for_customer(customer_id)
        if open_orders:
            raise PreconditionViolation(
                f"Cannot delete customer: they still have {len(open_orders)} order(s). "
                "Delete or settle those orders first."
            )
        if abs(customer.balance) >= SETTLEMENT_EPSILON:
            raise PreconditionViolation(
                f"Cannot delete customer: their balance of {customer.balance:g} is not settled."
            )
        self.customers = [c for c in self.customers if c.id != customer_id]
        return customer

    def backfill_codes(self) -> int:
        """Assign codes to customers missing one in a single pass. Returns count assigned.

        Existing codes are never altered; new ones continue from the running max.
        """
        running_max = max((c.code for c in self.customers if c.code is not None), default=0)
        assigned = 0
        for customer in self.customers:
            if customer.code is None:
                running_max += 1
                customer.code = running_max
                assigned += 1

        seen: set[int] = set()
        for customer in self.customers:
            if customer.code in seen:
                logger.warning("Duplicate customer code %s (customer %s).", customer.code, customer.id)
            seen.add(customer.code)  # type: ignore[arg-type]
        return assigned

    # -- orders & transactions -------------------------------------------------

    def create_order(
        self,
        customer_id: str,
        description: str,
        cloth_price: Any,
        sewing_fee: Any,
        deposit: Any = 0,
        *,
        due_date: str | None = None,
        style_details: dict[str, str] | None = None,
        notes: str | None = None,
        date_format: str = DEFAULT_DATE_FORMAT,
    ) -> tuple[Order, Transaction]:
        """Create a PENDING order and its single remainder transaction.

        The remainder (total minus deposit) is charged to the customer even
        when it is zero, so every order has a linked transaction.
        """
        customer = self._require_customer(customer_id)
        cloth = _require_amount("Cloth price", cloth_price)
        sewing = _require_amount("Sewing fee", sewing_fee)
        received = _require_amount("Deposit", deposit)
        total = cloth + sewing
        if received > total:
            raise ValidationError(
                f"Deposit ({received:g}) cannot exceed the order total ({total:g})."
            )
        remaining = total - received
        today = _today(date_format)
        now_ms = _now_ms()

        order = Order(
            id=_new_id(),
            customer_id=customer_id,
            description=(description or "").strip() or UNTITLED_ORDER,
            status=OrderStatus.PENDING,
            date_created=today,
            total_price=total,
            cloth_price=cloth,
            sewing_fee=sewing,
            deposit=received,
            due_date=due_date,
            style_details={str(k): str(v) for k, v in (style_details or {}).items() if v},
            notes=notes,
            created_at_ms=now_ms,
        )
        tx = Transaction(
            id=_new_id(),
            customer_id=customer_id,
            order_id=order.id,
            amount=remaining,
            date=today,
            description=f"Remainder of order {order.description}",
            created_at_ms=now_ms,
        )
        self.orders.append(order)
        self.transactions.append(tx)
        customer.balance += remaining
        return order, tx

    def add_payment(
        self,
        order_id: str,
        amount: Any,
        *,
        customer_id: str | None = None,
        description: str = "Payment toward order",
        date_format: str = DEFAULT_DATE_FORMAT,
    ) -> Transaction:
        """Record a payment against an order (a negative linked transaction)."""
        paid = _require_amount("Payment amount", amount)
        if paid <= 0:
            raise ValidationError("Payment amount must be greater than zero.")
        order = self._require_order(order_id)
        if customer_id is not None and customer_id != order.customer_id:
            raise ValidationError("Order does not belong to this customer.")
        customer = self._require_customer(order.customer_id)
        tx = Transaction(
            id=_new_id(),
            customer_id=customer.id,
            order_id=order.id,
            amount=-paid,
            date=_today(date_format),
            description=description,
            created_at_ms=_now_ms(),
        )
        self.transactions.append(tx)
        customer.balance -= paid
        return tx

    def record_transaction(
        self,
        customer_id: str,
        amount: Any,
        description: str,
        *,
        date_format: str = DEFAULT_DATE_FORMAT,
    ) -> Transaction:
        """Record a free-standing debt (positive) or payment (negative) entry."""
        if isinstance(amount, bool):
            raise ValidationError("Amount must be a number.")
        try:
            value = float(amount)
        except (TypeError, ValueError):
            raise ValidationError("Amount must be a number.") from None
        if not math.isfinite(value) or value == 0:
            raise ValidationError("Amount must be a non-zero number.")
        description = (description or "").strip()
        if not description:
            raise ValidationError("A description is required for every transaction.")
        customer = self._require_customer(customer_id)
        tx = Transaction(
            id=_new_id(),
            customer_id=customer_id,
            amount=value,
            date=_today(date_format),
            description=description,
            created_at_ms=_now_ms(),
        )
        self.transactions.append(tx)
        customer.balance += value
        return tx

    def order_debt(self, order_id: str) -> float:
        """Remaining amount owed on one order (>0 customer owes, <0 overpaid)."""
        return sum(t.amount for t in self.transactions if t.order_id == order_id)

    def settlement_state(self, order_id: str) -> str:
        debt = self.order_debt(order_id)
        if debt > SETTLEMENT_EPSILON:
            return "customer_owes"
        if debt < -SETTLEMENT_EPSILON:
            return "shop_owes"
        return "settled"

    def update_status(
        self,
        order_id: str,
        status: OrderStatus | str,
        *,
        shop_name: str = "",
    ) -> ReadyNotification | None:
        """Set an order's status. Returns an event when the order becomes READY."""
        try:
            new_status = OrderStatus.parse(status)
        except ValueError as exc:
            raise ValidationError(str(exc)) from None
        order = self._require_order(order_id)
        previous = order.status
        order.status = new_status
        if new_status is not OrderStatus.READY or previous is OrderStatus.READY:
            return None
        customer = self.get_customer(order.customer_id)
        return ReadyNotification(
            customer_name=customer.name if customer else "",
            customer_phone=customer.phone if customer else "",
            order_description=order.description,
            shop_name=shop_name,
            order_id=order.id,
            customer_id=order.customer_id,
        )

    def delete_order(self, order_id: str, *, customer_id: str | None = None) -> Order:
        """Remove a settled order and cascade its linked transactions."""
        order = self._require_order(order_id)
        if customer_id is not None and customer_id != order.customer_id:
            raise ValidationError("Order does not belong to this customer.")
        debt = self.order_debt(order_id)
        if abs(debt) >= SETTLEMENT_EPSILON:
            raise PreconditionViolation(
                f"Cannot delete order: it has an unsettled balance of {debt:g}. "
                "Only fully settled orders can be deleted."
            )
        self.orders = [o for o in self.orders if o.id != order_id]
        self.transactions = [t for t in self.transactions if t.order_id != order_id]

        customer = self.get_customer(order.customer_id)
        if customer is not None:
            customer.balance -= debt
            computed = self.customer_balance_from_transactions(customer.id)
            if abs(computed - customer.balance) >= SETTLEMENT_EPSILON:
                logger.warning(
                    "Balance drift for customer %s after deleting order %s "
                    "(cached %.2f, computed %.2f); resetting to computed.",
                    customer.id, order_id, customer.balance, computed,
                )
                customer.balance = computed
        return order

    # -- consistency ------------------------------------------------------------

    def customer_balance_from_transactions(self, customer_id: str) -> float:
        return sum(t.amount for t in self.transactions if t.customer_id == customer_id)

    def check_consistency(self) -> list[BalanceDiscrepancy]:
        """Compare every cached balance against its transaction fold."""
        totals: dict[str, float] = {}
        for tx in self.transactions:
            totals[tx.customer_id] = totals.get(tx.customer_id, 0.0) + tx.amount
        found = []
        for customer in self.customers:
            computed = totals.get(customer.id, 0.0)
            if abs(computed - customer.balance) >= SETTLEMENT_EPSILON:
                found.append(BalanceDiscrepancy(customer.id, customer.balance, computed))
        return found

    def repair_balances(self) -> list[BalanceDiscrepancy]:
        """Reset drifted balances to their transaction fold. Returns what was fixed."""
        found = self.check_consistency()
        for item in found:
            customer = self.get_customer(item.customer_id)
            if customer is not None:
                customer.balance = item.computed
        return found

    # -- serialization --------------------------------------------------------

    def copy(self) -> PartitionLedger:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "customers": [c.to_dict() for c in self.customers],
            "orders": [o.to_dict() for o in self.orders],
            "transactions": [t.to_dict() for t in self.transactions],
        }

    @classmethod
    def from_collections(
        cls, customers: Any, orders: Any, transactions: Any,
    ) -> PartitionLedger:
        """Build from raw stored lists. Non-list or non-dict entries are dropped."""
        return cls(
            customers=_parse_list(customers, Customer.from_dict, "customers"),
            orders=_parse_list(orders, Order.from_dict, "orders"),
            transactions=_parse_list(transactions, Transaction.from_dict, "transactions"),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PartitionLedger:
        return cls.from_collections(
            data.get("customers"), data.get("orders"), data.get("transactions"),
        )
