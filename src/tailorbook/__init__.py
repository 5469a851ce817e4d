"""Tailorbook: customer, order and balance ledger for a tailoring shop.

Offline-first: ledgers live in a local key-value store and are backed up
wholesale to a remote object store.
"""

__version__ = "0.1.0"

from tailorbook.errors import (
    LedgerError,
    ValidationError,
    PreconditionViolation,
    PersistenceFailure,
    RemoteSyncFailure,
    MalformedBackupError,
)
from tailorbook.config import ShopConfig
from tailorbook.constants import OrderStatus, Partition, SETTLEMENT_EPSILON, BACKUP_VERSION
from tailorbook.ledger import Customer, Order, Transaction, PartitionLedger, BalanceDiscrepancy
from tailorbook.notifications import ReadyNotification
from tailorbook.store_backend import StoreBackend, RemoteBackupStore
from tailorbook.stores import JsonFileStore, MemoryStore
from tailorbook.repository import LedgerRepository
from tailorbook.backup import BackupCoordinator, ImportReport
from tailorbook.remote import SupabaseBackupClient

__all__ = [
    "LedgerError",
    "ValidationError",
    "PreconditionViolation",
    "PersistenceFailure",
    "RemoteSyncFailure",
    "MalformedBackupError",
    "ShopConfig",
    "OrderStatus",
    "Partition",
    "SETTLEMENT_EPSILON",
    "BACKUP_VERSION",
    "Customer",
    "Order",
    "Transaction",
    "PartitionLedger",
    "BalanceDiscrepancy",
    "ReadyNotification",
    "StoreBackend",
    "RemoteBackupStore",
    "JsonFileStore",
    "MemoryStore",
    "LedgerRepository",
    "BackupCoordinator",
    "ImportReport",
    "SupabaseBackupClient",
]
