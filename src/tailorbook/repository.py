"""Partition ledgers loaded from a StoreBackend, with serialized write-through.

The repository is the only path from ledger operations to storage:

- ``load()`` reads a partition once, backfills missing customer codes in
  a single pass and caches the result.
- Every mutation runs under a per-partition ``asyncio.Lock``: the
  operation is applied to a copy, the changed collections are written,
  and only then does the copy replace the cached ledger.
- A failed write raises ``PersistenceFailure``; later writes are not
  attempted and the cache is dropped so the next load re-reads storage.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from tailorbook.config import ShopConfig, clean_measurement_labels
from tailorbook.constants import (
    KEY_MEASUREMENT_LABELS,
    KEY_SHOP_INFO,
    KEY_SIMPLE_MEASUREMENT_LABELS,
    OrderStatus,
    Partition,
)
from tailorbook.errors import PersistenceFailure, ValidationError
from tailorbook.ledger import Customer, Order, PartitionLedger, Transaction
from tailorbook.notifications import ReadyHook, ReadyNotification
from tailorbook.store_backend import StoreBackend

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Write order: an order never references a transaction that was not
# written, and balances are written last.
_COLLECTIONS = ("orders", "transactions", "customers")

_LABEL_KEYS = {
    Partition.PROFESSIONAL: KEY_MEASUREMENT_LABELS,
    Partition.SIMPLE: KEY_SIMPLE_MEASUREMENT_LABELS,
}


def _key_for(partition: Partition, collection: str) -> str:
    return f"{partition.prefix}{collection}"


class LedgerRepository:
    """Loads, mutates and persists partition ledgers.

    ``config`` supplies shop name, date format and measurement labels to
    the ledger operations; it is never re-read from storage implicitly.
    """

    def __init__(
        self,
        store: StoreBackend,
        config: ShopConfig | None = None,
        write_retries: int = 0,
        write_retry_delay: float = 0.5,
        repair_on_load: bool = True,
    ) -> None:
        self._store = store
        self._config = config or ShopConfig()
        self._write_retries = write_retries
        self._write_retry_delay = write_retry_delay
        self._repair_on_load = repair_on_load
        self._entries: dict[Partition, PartitionLedger] = {}
        self._locks: dict[Partition, asyncio.Lock] = {}
        self._ready_hooks: list[ReadyHook] = []
        self._total_writes = 0

    @property
    def config(self) -> ShopConfig:
        return self._config

    @config.setter
    def config(self, value: ShopConfig) -> None:
        self._config = value

    def add_ready_hook(self, hook: ReadyHook) -> None:
        """Register a callable (sync or async) invoked when an order becomes READY."""
        self._ready_hooks.append(hook)

    def _get_lock(self, partition: Partition) -> asyncio.Lock:
        if partition not in self._locks:
            self._locks[partition] = asyncio.Lock()
        return self._locks[partition]

    # -- storage primitives ---------------------------------------------------

    async def _read(self, key: str) -> Any | None:
        try:
            return await self._store.get(key)
        except Exception as exc:
            logger.error("Failed to read %s from store.", key)
            raise PersistenceFailure(f"Could not read '{key}' from storage: {exc}") from exc

    async def _write(self, key: str, value: Any) -> None:
        """Write one key with retry. Raises PersistenceFailure on final failure."""
        max_attempts = 1 + self._write_retries
        for attempt in range(max_attempts):
            try:
                await self._store.set(key, value)
                self._total_writes += 1
                return
            except Exception as exc:
                if attempt < max_attempts - 1:
                    logger.warning(
                        "Write attempt %d/%d failed for %s, retrying in %.1fs...",
                        attempt + 1, max_attempts, key, self._write_retry_delay,
                    )
                    await asyncio.sleep(self._write_retry_delay)
                else:
                    logger.error(
                        "Failed to write %s after %d attempt(s).", key, max_attempts,
                    )
                    raise PersistenceFailure(
                        f"Could not save '{key}' to storage: {exc}"
                    ) from exc

    async def _persist(
        self,
        partition: Partition,
        before: dict[str, list[dict[str, Any]]] | None,
        after: PartitionLedger,
    ) -> None:
        """Write every collection whose serialized form changed."""
        serialized = after.to_dict()
        for collection in _COLLECTIONS:
            if before is not None and before[collection] == serialized[collection]:
                continue
            await self._write(_key_for(partition, collection), serialized[collection])

    # -- loading --------------------------------------------------------------

    async def _load_locked(self, partition: Partition) -> PartitionLedger:
        cached = self._entries.get(partition)
        if cached is not None:
            return cached

        raw = {c: await self._read(_key_for(partition, c)) for c in _COLLECTIONS}
        ledger = PartitionLedger.from_collections(
            raw["customers"], raw["orders"], raw["transactions"],
        )

        dirty = False
        assigned = ledger.backfill_codes()
        if assigned:
            logger.info("Assigned codes to %d %s customer(s).", assigned, partition.value)
            dirty = True
        if self._repair_on_load:
            repaired = ledger.repair_balances()
            for item in repaired:
                logger.warning(
                    "Repaired %s balance for customer %s: cached %.2f, computed %.2f.",
                    partition.value, item.customer_id, item.cached, item.computed,
                )
            dirty = dirty or bool(repaired)
        if dirty:
            await self._write(
                _key_for(partition, "customers"),
                [c.to_dict() for c in ledger.customers],
            )

        self._entries[partition] = ledger
        return ledger

    async def load(self, partition: Partition = Partition.PROFESSIONAL) -> PartitionLedger:
        """Return a detached copy of the partition ledger."""
        async with self._get_lock(partition):
            return (await self._load_locked(partition)).copy()

    def invalidate(self, partition: Partition | None = None) -> None:
        """Drop cached ledgers so the next access re-reads storage."""
        if partition is None:
            self._entries.clear()
        else:
            self._entries.pop(partition, None)

    # -- mutation -------------------------------------------------------------

    async def mutate(
        self, partition: Partition, operation: Callable[[PartitionLedger], T],
    ) -> T:
        """Apply ``operation`` to a copy of the ledger, persist, then commit.

        Exceptions raised by ``operation`` leave storage and cache untouched.
        """
        async with self._get_lock(partition):
            current = await self._load_locked(partition)
            working = current.copy()
            result = operation(working)
            try:
                await self._persist(partition, current.to_dict(), working)
            except PersistenceFailure:
                self._entries.pop(partition, None)
                raise
            self._entries[partition] = working
            return result

    async def replace_partitions(self, ledgers: dict[Partition, PartitionLedger]) -> None:
        """Overwrite whole partitions (restore). Locks are taken in a fixed order."""
        ordered = sorted(ledgers, key=lambda p: p.value)
        locks = [self._get_lock(p) for p in ordered]
        for lock in locks:
            await lock.acquire()
        try:
            for partition in ordered:
                self._entries.pop(partition, None)
            for partition in ordered:
                await self._persist(partition, None, ledgers[partition])
            for partition in ordered:
                self._entries[partition] = ledgers[partition].copy()
        finally:
            for lock in reversed(locks):
                lock.release()

    # -- ledger operations ----------------------------------------------------

    async def create_customer(
        self,
        partition: Partition,
        name: str,
        phone: str,
        measurements: dict[str, Any] | None = None,
        *,
        address: str | None = None,
        notes: str | None = None,
    ) -> Customer:
        labels = self._config.labels_for(partition)
        return await self.mutate(
            partition,
            lambda ledger: ledger.create_customer(
                name, phone, measurements, labels=labels, address=address, notes=notes,
            ),
        )

    async def update_customer(
        self, partition: Partition, customer_id: str, fields: dict[str, Any],
    ) -> Customer:
        labels = self._config.labels_for(partition)
        return await self.mutate(
            partition,
            lambda ledger: ledger.update_customer(customer_id, fields, labels=labels),
        )

    async def delete_customer(self, partition: Partition, customer_id: str) -> Customer:
        return await self.mutate(partition, lambda ledger: ledger.delete_customer(customer_id))

    async def create_order(
        self,
        partition: Partition,
        customer_id: str,
        description: str,
        cloth_price: Any,
        sewing_fee: Any,
        deposit: Any = 0,
        *,
        due_date: str | None = None,
        style_details: dict[str, str] | None = None,
        notes: str | None = None,
    ) -> tuple[Order, Transaction]:
        date_format = self._config.date_format
        return await self.mutate(
            partition,
            lambda ledger: ledger.create_order(
                customer_id, description, cloth_price, sewing_fee, deposit,
                due_date=due_date, style_details=style_details, notes=notes,
                date_format=date_format,
            ),
        )

    async def add_payment(
        self,
        partition: Partition,
        order_id: str,
        amount: Any,
        *,
        customer_id: str | None = None,
    ) -> Transaction:
        date_format = self._config.date_format
        return await self.mutate(
            partition,
            lambda ledger: ledger.add_payment(
                order_id, amount, customer_id=customer_id, date_format=date_format,
            ),
        )

    async def record_transaction(
        self, partition: Partition, customer_id: str, amount: Any, description: str,
    ) -> Transaction:
        date_format = self._config.date_format
        return await self.mutate(
            partition,
            lambda ledger: ledger.record_transaction(
                customer_id, amount, description, date_format=date_format,
            ),
        )

    async def update_status(
        self, partition: Partition, order_id: str, status: OrderStatus | str,
    ) -> ReadyNotification | None:
        shop_name = self._config.shop_name
        event = await self.mutate(
            partition,
            lambda ledger: ledger.update_status(order_id, status, shop_name=shop_name),
        )
        if event is not None:
            await self._dispatch_ready(event)
        return event

    async def delete_order(
        self, partition: Partition, order_id: str, *, customer_id: str | None = None,
    ) -> Order:
        return await self.mutate(
            partition,
            lambda ledger: ledger.delete_order(order_id, customer_id=customer_id),
        )

    async def _dispatch_ready(self, event: ReadyNotification) -> None:
        """Hand the event to every hook. A failing hook never undoes the status change."""
        for hook in self._ready_hooks:
            try:
                result = hook(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.warning(
                    "Ready-notification hook failed for order %s.", event.order_id,
                    exc_info=True,
                )

    # -- shop configuration ---------------------------------------------------

    async def load_shop_config(self) -> ShopConfig:
        """Overlay stored shop info and both label sets onto the current config."""
        config = self._config.with_shop_info(await self._read(KEY_SHOP_INFO))
        for partition, key in _LABEL_KEYS.items():
            labels = await self._read(key)
            if not isinstance(labels, dict):
                continue
            try:
                config = config.with_measurement_labels(
                    clean_measurement_labels(labels), partition,
                )
            except ValidationError:
                logger.warning("Stored %s is invalid; keeping current labels.", key)
        self._config = config
        return config

    async def save_shop_info(self, config: ShopConfig) -> None:
        await self._write(KEY_SHOP_INFO, config.to_shop_info())
        self._config = self._config.with_shop_info(config.to_shop_info())

    async def save_measurement_labels(
        self,
        labels: dict[str, str],
        partition: Partition = Partition.PROFESSIONAL,
    ) -> dict[str, str]:
        """Rename or extend a partition's label set. Keys and labels must be non-blank."""
        cleaned = clean_measurement_labels(labels)
        await self._write(_LABEL_KEYS[partition], cleaned)
        self._config = self._config.with_measurement_labels(cleaned, partition)
        return cleaned

    def health(self) -> dict[str, object]:
        return {
            "loaded_partitions": sorted(p.value for p in self._entries),
            "total_writes": self._total_writes,
            "ready_hooks": len(self._ready_hooks),
        }
