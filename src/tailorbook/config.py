"""Shop configuration: a plain frozen dataclass, no pydantic.

The host application builds this from its own settings (env vars,
stored ``shop_info``, etc.) and passes it into ledger operations.
Nothing in the core reads configuration from ambient storage.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from tailorbook.constants import (
    APPROVAL_CACHE_TTL_SECS,
    AUTO_BACKUP_INTERVAL_SECS,
    DEFAULT_MEASUREMENT_LABELS,
    SIMPLE_MEASUREMENT_LABELS,
    Partition,
)
from tailorbook.errors import ValidationError


def clean_measurement_labels(labels: Any) -> dict[str, str]:
    """Strip keys and labels. Raises ValidationError for blanks or an empty set."""
    if not isinstance(labels, dict):
        raise ValidationError("Measurement labels must be a mapping of key to label.")
    cleaned: dict[str, str] = {}
    for key, label in labels.items():
        key_text = str(key).strip()
        label_text = str(label or "").strip()
        if not key_text or not label_text:
            raise ValidationError("Measurement keys and labels cannot be blank.")
        cleaned[key_text] = label_text
    if not cleaned:
        raise ValidationError("At least one measurement label is required.")
    return cleaned


@dataclass(frozen=True)
class ShopConfig:
    shop_name: str = ""
    shop_phone: str = ""
    shop_address: str = ""
    tailor_name: str = ""
    extra_notes: str | None = None
    measurement_labels: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_MEASUREMENT_LABELS)
    )
    simple_measurement_labels: dict[str, str] = field(
        default_factory=lambda: dict(SIMPLE_MEASUREMENT_LABELS)
    )
    date_format: str = "%Y-%m-%d"
    supabase_url: str | None = None
    supabase_api_key: str | None = None
    backup_table: str = "backups"
    auto_backup_enabled: bool = False
    auto_backup_interval_secs: int = AUTO_BACKUP_INTERVAL_SECS
    approval_cache_ttl_secs: int = APPROVAL_CACHE_TTL_SECS

    def to_shop_info(self) -> dict[str, Any]:
        """Serialize the ``shop_info`` storage record."""
        return {
            "name": self.shop_name,
            "phone": self.shop_phone,
            "address": self.shop_address,
            "tailorName": self.tailor_name,
            "extraNotes": self.extra_notes,
        }

    def with_shop_info(self, info: dict[str, Any] | None) -> ShopConfig:
        """Return a copy with shop identity fields taken from a stored record."""
        if not isinstance(info, dict):
            return self
        return replace(
            self,
            shop_name=str(info.get("name", self.shop_name) or ""),
            shop_phone=str(info.get("phone", self.shop_phone) or ""),
            shop_address=str(info.get("address", self.shop_address) or ""),
            tailor_name=str(info.get("tailorName", self.tailor_name) or ""),
            extra_notes=info.get("extraNotes", self.extra_notes),
        )

    def with_measurement_labels(
        self,
        labels: dict[str, str] | None,
        partition: Partition = Partition.PROFESSIONAL,
    ) -> ShopConfig:
        if not labels:
            return self
        if partition is Partition.SIMPLE:
            return replace(self, simple_measurement_labels=dict(labels))
        return replace(self, measurement_labels=dict(labels))

    def labels_for(self, partition: Partition) -> dict[str, str]:
        """Measurement label set used by ``partition``."""
        if partition is Partition.SIMPLE:
            return dict(self.simple_measurement_labels)
        return dict(self.measurement_labels)
