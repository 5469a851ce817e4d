"""Order-ready event emitted for an external messaging dispatcher.

The ledger never formats message text or performs I/O; it hands this
structured event to whatever hooks the host registers.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class ReadyNotification:
    customer_name: str
    customer_phone: str
    order_description: str
    shop_name: str
    order_id: str = ""
    customer_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "customerName": self.customer_name,
            "customerPhone": self.customer_phone,
            "orderDescription": self.order_description,
            "shopName": self.shop_name,
            "orderId": self.order_id,
            "customerId": self.customer_id,
        }


ReadyHook = Callable[[ReadyNotification], Union[Awaitable[None], None]]
