"""Backup export/import for both partitions, locally or through a remote store.

Restore is always a full replace, never a merge. The envelope is parsed
and checked completely before anything is written, so a malformed backup
or a failed download leaves local data untouched.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from tailorbook.config import clean_measurement_labels
from tailorbook.constants import BACKUP_VERSION, Partition
from tailorbook.errors import (
    MalformedBackupError,
    ValidationError,
    RemoteNotFoundError,
    RemoteSyncFailure,
    RemoteTimeoutError,
)
from tailorbook.ledger import BalanceDiscrepancy, PartitionLedger
from tailorbook.repository import LedgerRepository
from tailorbook.store_backend import RemoteBackupStore

logger = logging.getLogger(__name__)

_COLLECTION_NAMES = ("customers", "orders", "transactions")

_LABEL_FIELDS = {
    Partition.PROFESSIONAL: "measurementLabels",
    Partition.SIMPLE: "simpleMeasurementLabels",
}

FORMAT_V2 = "v2"
FORMAT_LEGACY = "legacy"


@dataclass
class ImportReport:
    """What a restore wrote and which balances it had to repair."""

    format: str
    partitions: list[str] = field(default_factory=list)
    counts: dict[str, dict[str, int]] = field(default_factory=dict)
    repaired: dict[str, list[BalanceDiscrepancy]] = field(default_factory=dict)
    codes_assigned: int = 0

    @property
    def repaired_count(self) -> int:
        return sum(len(items) for items in self.repaired.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "format": self.format,
            "partitions": list(self.partitions),
            "counts": {p: dict(c) for p, c in self.counts.items()},
            "repaired": {
                p: [item.to_dict() for item in items] for p, items in self.repaired.items()
            },
            "codes_assigned": self.codes_assigned,
        }


@dataclass
class BackupSettings:
    """Shop settings carried by a v2 envelope, already checked."""

    shop_info: dict[str, Any] | None = None
    labels: dict[Partition, dict[str, str]] = field(default_factory=dict)


def _has_collections(block: Any) -> bool:
    return isinstance(block, dict) and all(
        isinstance(block.get(name), list) for name in _COLLECTION_NAMES
    )


class BackupCoordinator:
    """Serialize and restore the full ledger state through a LedgerRepository."""

    def __init__(
        self,
        repository: LedgerRepository,
        remote: RemoteBackupStore | None = None,
        remote_timeout_secs: float = 60.0,
    ) -> None:
        self._repository = repository
        self._remote = remote
        self._remote_timeout = remote_timeout_secs

    # -- envelope -------------------------------------------------------------

    async def export_snapshot(self) -> dict[str, Any]:
        """Read both partitions and the stored shop settings into a versioned envelope."""
        professional = await self._repository.load(Partition.PROFESSIONAL)
        simple = await self._repository.load(Partition.SIMPLE)
        config = await self._repository.load_shop_config()
        return {
            "version": BACKUP_VERSION,
            "professional": professional.to_dict(),
            "simple": simple.to_dict(),
            "shopInfo": config.to_shop_info(),
            "measurementLabels": dict(config.measurement_labels),
            "simpleMeasurementLabels": dict(config.simple_measurement_labels),
            "exportedAt": datetime.now(timezone.utc).isoformat(),
        }

    @staticmethod
    def validate(envelope: Any) -> bool:
        """Structural check only: version tag and three lists per partition."""
        if not isinstance(envelope, dict) or envelope.get("version") != BACKUP_VERSION:
            return False
        return all(_has_collections(envelope.get(p.value)) for p in Partition)

    @classmethod
    def detect_format(cls, envelope: Any) -> str | None:
        """Return ``"v2"``, ``"legacy"`` or None for an unrecognized shape."""
        if cls.validate(envelope):
            return FORMAT_V2
        if not isinstance(envelope, dict):
            return None
        block = envelope.get("professional")
        if not isinstance(block, dict):
            block = envelope
        if not isinstance(block.get("customers"), list):
            return None
        for name in ("orders", "transactions"):
            if name in block and not isinstance(block[name], list):
                return None
        return FORMAT_LEGACY

    @classmethod
    def parse_snapshot(
        cls, envelope: Any,
    ) -> tuple[str, dict[Partition, PartitionLedger]]:
        """Parse every partition present. Raises MalformedBackupError on bad shape."""
        fmt = cls.detect_format(envelope)
        if fmt is None:
            raise MalformedBackupError(
                "Backup format not recognized: expected a version "
                f"{BACKUP_VERSION} envelope or a legacy customers/orders/transactions file."
            )
        if fmt == FORMAT_V2:
            return fmt, {
                p: PartitionLedger.from_dict(envelope[p.value]) for p in Partition
            }
        block = envelope.get("professional")
        if not isinstance(block, dict):
            block = envelope
        return fmt, {Partition.PROFESSIONAL: PartitionLedger.from_dict(block)}

    @staticmethod
    def parse_settings(envelope: dict[str, Any]) -> BackupSettings:
        """Check the optional settings blocks of a v2 envelope.

        A non-dict ``shopInfo`` is skipped with a warning. A label set that
        is present but invalid raises MalformedBackupError.
        """
        settings = BackupSettings()
        shop_info = envelope.get("shopInfo")
        if isinstance(shop_info, dict):
            settings.shop_info = shop_info
        elif shop_info is not None:
            logger.warning("Backup shopInfo is not an object; skipping it.")

        for partition, field_name in _LABEL_FIELDS.items():
            labels = envelope.get(field_name)
            if labels is None or labels == {}:
                continue
            try:
                settings.labels[partition] = clean_measurement_labels(labels)
            except ValidationError as exc:
                raise MalformedBackupError(
                    f"Backup {field_name} are invalid: {exc.reason}"
                ) from exc
        return settings

    async def import_snapshot(self, envelope: Any, *, repair: bool = True) -> ImportReport:
        """Replace local partitions with the envelope's contents.

        Legacy envelopes restore only the professional partition. With
        ``repair`` on, cached balances that disagree with their
        transactions are reset and reported rather than trusted. The whole
        envelope, settings included, is checked before anything is written.
        """
        fmt, ledgers = self.parse_snapshot(envelope)
        settings = self.parse_settings(envelope) if fmt == FORMAT_V2 else BackupSettings()
        report = ImportReport(format=fmt)

        for partition, ledger in ledgers.items():
            report.codes_assigned += ledger.backfill_codes()
            found = ledger.repair_balances() if repair else ledger.check_consistency()
            if found:
                report.repaired[partition.value] = found
                logger.warning(
                    "Backup %s partition had %d balance discrepancy(ies)%s.",
                    partition.value, len(found), "; repaired" if repair else "",
                )
            report.partitions.append(partition.value)
            report.counts[partition.value] = {
                "customers": len(ledger.customers),
                "orders": len(ledger.orders),
                "transactions": len(ledger.transactions),
            }

        await self._repository.replace_partitions(ledgers)
        await self._restore_settings(settings)

        logger.info(
            "Restored %s backup (%s).", fmt, ", ".join(report.partitions),
        )
        return report

    async def _restore_settings(self, settings: BackupSettings) -> None:
        if settings.shop_info is not None:
            config = self._repository.config.with_shop_info(settings.shop_info)
            await self._repository.save_shop_info(config)
        for partition, labels in settings.labels.items():
            await self._repository.save_measurement_labels(labels, partition)

    # -- files ------------------------------------------------------------------

    @staticmethod
    def dumps(envelope: dict[str, Any]) -> str:
        return json.dumps(envelope, ensure_ascii=False, indent=2)

    @staticmethod
    def loads(text: str) -> Any:
        try:
            return json.loads(text)
        except (json.JSONDecodeError, TypeError) as exc:
            raise MalformedBackupError(f"Backup file is not valid JSON: {exc}") from exc

    # -- remote -----------------------------------------------------------------

    def _require_remote(self) -> RemoteBackupStore:
        if self._remote is None:
            raise RemoteSyncFailure("Cloud backup is not configured.")
        return self._remote

    async def upload_to_remote(self, user_id: str) -> dict[str, Any]:
        """Export and replace the user's remote backup. Local data is never touched."""
        remote = self._require_remote()
        envelope = await self.export_snapshot()
        if not self.validate(envelope):
            raise MalformedBackupError("Exported data is incomplete; upload aborted.")
        try:
            await asyncio.wait_for(
                remote.upsert_backup(user_id, envelope), timeout=self._remote_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise RemoteTimeoutError(
                f"Backup upload timed out after {self._remote_timeout:g}s."
            ) from exc
        logger.info("Uploaded backup for %s.", user_id)
        return envelope

    async def download_from_remote(self, user_id: str, *, repair: bool = True) -> ImportReport:
        """Fetch the user's remote backup and restore it. Nothing is written unless the fetch succeeds."""
        remote = self._require_remote()
        try:
            envelope = await asyncio.wait_for(
                remote.fetch_backup(user_id), timeout=self._remote_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise RemoteTimeoutError(
                f"Backup download timed out after {self._remote_timeout:g}s."
            ) from exc
        if envelope is None:
            raise RemoteNotFoundError("No cloud backup was found for this account.")
        return await self.import_snapshot(envelope, repair=repair)
