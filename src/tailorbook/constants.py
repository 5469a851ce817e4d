"""Constants for the tailoring-shop ledger."""

from enum import Enum


SETTLEMENT_EPSILON = 0.1  # tolerance for float drift in settlement checks
BACKUP_VERSION = "2.0"
AUTO_BACKUP_INTERVAL_SECS = 24 * 60 * 60
APPROVAL_CACHE_TTL_SECS = 24 * 60 * 60


class Partition(str, Enum):
    """The two isolated customer/order/transaction sets."""

    PROFESSIONAL = "professional"
    SIMPLE = "simple"

    @property
    def prefix(self) -> str:
        return "simple_" if self is Partition.SIMPLE else ""

    @property
    def customers_key(self) -> str:
        return f"{self.prefix}customers"

    @property
    def orders_key(self) -> str:
        return f"{self.prefix}orders"

    @property
    def transactions_key(self) -> str:
        return f"{self.prefix}transactions"


class OrderStatus(str, Enum):
    """Order workflow states. Any state may be set directly."""

    PENDING = "pending"
    PROCESSING = "processing"
    SEWN = "sewn"
    READY = "ready"
    COMPLETED = "completed"

    @classmethod
    def parse(cls, raw: "OrderStatus | str") -> "OrderStatus":
        """Accept an enum member, its value, its name, or a legacy display string."""
        if isinstance(raw, OrderStatus):
            return raw
        text = str(raw).strip()
        for member in cls:
            if text == member.value or text.upper() == member.name:
                return member
        legacy = _LEGACY_STATUS_LABELS.get(text)
        if legacy is not None:
            return legacy
        raise ValueError(f"Unknown order status: {raw!r}")


# Display strings written by older exports
_LEGACY_STATUS_LABELS: dict[str, OrderStatus] = {
    "در انتظار دوخت": OrderStatus.PENDING,
    "در حال دوخت": OrderStatus.PROCESSING,
    "دوخته شده": OrderStatus.SEWN,
    "آماده تحویل": OrderStatus.READY,
    "تحویل داده شده": OrderStatus.COMPLETED,
}


# Storage keys
KEY_SHOP_INFO = "shop_info"
KEY_MEASUREMENT_LABELS = "measurement_labels"
KEY_SIMPLE_MEASUREMENT_LABELS = "simple_measurement_labels"
KEY_MIGRATION_DONE = "migration_done"
KEY_APPROVAL_CACHE = "approval_status_cache"
KEY_LAST_AUTO_BACKUP = "last_auto_backup_ts"

# Keys used by the pre-migration flat storage format
LEGACY_KEYS: dict[str, str] = {
    "tailor_customers": Partition.PROFESSIONAL.customers_key,
    "tailor_orders": Partition.PROFESSIONAL.orders_key,
    "tailor_transactions": Partition.PROFESSIONAL.transactions_key,
}

DEFAULT_MEASUREMENT_LABELS: dict[str, str] = {
    "height": "Height",
    "weight": "Weight",
    "neck": "Neck",
    "shoulder": "Shoulder",
    "chest": "Chest",
    "waist": "Waist",
    "hip": "Hip",
    "sleeveLength": "Sleeve length",
    "armhole": "Armhole",
    "wrist": "Wrist",
    "backWidth": "Back width",
    "frontLength": "Front length",
    "backLength": "Back length",
    "inseam": "Inseam",
    "outseam": "Outseam",
    "thigh": "Thigh",
    "ankle": "Ankle",
}

# Reduced field set used by the simple partition
SIMPLE_MEASUREMENT_LABELS: dict[str, str] = {
    "height": "Height",
    "sleeveLength": "Sleeve",
    "shoulder": "Shoulder",
    "neck": "Collar",
    "waist": "Waist",
    "outseam": "Trouser length",
    "ankle": "Hem",
}
