"""Backup tools: cloud upload/download, file export/import, auto-backup, approval."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Protocol

from tailorbook.backup import BackupCoordinator
from tailorbook.config import ShopConfig
from tailorbook.constants import KEY_APPROVAL_CACHE, KEY_LAST_AUTO_BACKUP
from tailorbook.errors import LedgerError, PersistenceFailure, RemoteSyncFailure
from tailorbook.store_backend import StoreBackend

logger = logging.getLogger(__name__)


class ApprovalSource(Protocol):
    async def fetch_approval(self, user_id: str) -> bool: ...


def _now_ms() -> int:
    return int(time.time() * 1000)


def _to_ms(value: Any) -> int:
    """Stored millisecond timestamp; anything unparseable counts as never."""
    if isinstance(value, bool):
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0


async def _store_get(store: StoreBackend, key: str) -> Any | None:
    try:
        return await store.get(key)
    except Exception as exc:
        raise PersistenceFailure(f"Could not read '{key}' from storage: {exc}") from exc


async def _store_set(store: StoreBackend, key: str, value: Any) -> None:
    try:
        await store.set(key, value)
    except Exception as exc:
        raise PersistenceFailure(f"Could not save '{key}' to storage: {exc}") from exc


def _failure(exc: LedgerError) -> dict[str, Any]:
    return {
        "success": False,
        "error": exc.reason,
        "error_type": type(exc).__name__,
        "retryable": isinstance(exc, (RemoteSyncFailure, PersistenceFailure)),
    }


# ---------------------------------------------------------------------------
# Cloud
# ---------------------------------------------------------------------------


async def upload_backup_tool(coordinator: BackupCoordinator, user_id: str) -> dict[str, Any]:
    """Replace the user's cloud backup with both local partitions.

    Only remote state changes; a failure leaves local data as it was.
    """
    try:
        envelope = await coordinator.upload_to_remote(user_id)
    except LedgerError as e:
        logger.error("Cloud backup failed for %s: %s", user_id, e.reason)
        return _failure(e)
    return {
        "success": True,
        "exported_at": envelope["exportedAt"],
        "message": "Backup uploaded. Any previous cloud copy was replaced.",
    }


async def download_backup_tool(coordinator: BackupCoordinator, user_id: str) -> dict[str, Any]:
    """Restore both partitions from the user's cloud backup (full replace)."""
    try:
        report = await coordinator.download_from_remote(user_id)
    except LedgerError as e:
        logger.error("Cloud restore failed for %s: %s", user_id, e.reason)
        return _failure(e)
    return {
        "success": True,
        "report": report.to_dict(),
        "message": _restore_message(report.partitions, report.repaired_count),
    }


def _restore_message(partitions: list[str], repaired: int) -> str:
    message = f"Restored {', '.join(partitions)} data."
    if repaired:
        message += f" {repaired} customer balance(s) did not match their transactions and were corrected."
    return message


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


async def export_backup_file_tool(
    coordinator: BackupCoordinator, path: str | Path,
) -> dict[str, Any]:
    """Write a versioned backup envelope to ``path`` (a directory gets a dated filename)."""
    target = Path(path)
    try:
        envelope = await coordinator.export_snapshot()
    except LedgerError as e:
        return _failure(e)
    if target.is_dir():
        stamp = envelope["exportedAt"][:10]
        target = target / f"tailorbook_backup_{stamp}.json"
    try:
        await asyncio.to_thread(
            target.write_text, coordinator.dumps(envelope), encoding="utf-8",
        )
    except OSError as e:
        logger.error("Failed to write backup file %s.", target)
        return _failure(PersistenceFailure(f"Could not write backup file: {e}"))
    return {"success": True, "path": str(target), "exported_at": envelope["exportedAt"]}


async def import_backup_file_tool(
    coordinator: BackupCoordinator, path: str | Path,
) -> dict[str, Any]:
    """Replace local data with a backup file. Accepts v2 and legacy flat files."""
    try:
        text = await asyncio.to_thread(Path(path).read_text, encoding="utf-8")
    except OSError as e:
        return _failure(PersistenceFailure(f"Could not read backup file: {e}"))
    try:
        report = await coordinator.import_snapshot(coordinator.loads(text))
    except LedgerError as e:
        return _failure(e)
    return {
        "success": True,
        "report": report.to_dict(),
        "message": _restore_message(report.partitions, report.repaired_count),
    }


# ---------------------------------------------------------------------------
# Scheduled / cached checks
# ---------------------------------------------------------------------------


async def auto_backup_tool(
    coordinator: BackupCoordinator,
    store: StoreBackend,
    user_id: str,
    config: ShopConfig,
    online: bool = True,
    now_ms: int | None = None,
) -> dict[str, Any]:
    """Upload a backup if auto-backup is on and the last one is older than the interval.

    The last-success timestamp only advances when the upload succeeds.
    """
    if not online:
        return {"success": True, "skipped": True, "reason": "offline"}
    if not config.auto_backup_enabled:
        return {"success": True, "skipped": True, "reason": "disabled"}

    now = now_ms if now_ms is not None else _now_ms()
    try:
        last = _to_ms(await _store_get(store, KEY_LAST_AUTO_BACKUP))
    except PersistenceFailure as e:
        return _failure(e)
    if now - last <= config.auto_backup_interval_secs * 1000:
        return {"success": True, "skipped": True, "reason": "recent", "last_backup_ms": last}

    result = await upload_backup_tool(coordinator, user_id)
    if not result["success"]:
        return result
    try:
        await _store_set(store, KEY_LAST_AUTO_BACKUP, now)
    except PersistenceFailure as e:
        failure = _failure(PersistenceFailure(
            f"Backup uploaded, but its time could not be recorded: {e.reason}"
        ))
        failure["uploaded"] = True
        return failure
    result["skipped"] = False
    result["last_backup_ms"] = now
    return result


async def check_approval_tool(
    source: ApprovalSource,
    store: StoreBackend,
    user_id: str,
    ttl_secs: int,
    online: bool = True,
    now_ms: int | None = None,
) -> dict[str, Any]:
    """Return whether the account is approved, preferring a fresh remote answer.

    Falls back to the last cached status when offline, when the cache is
    still fresh, or when the remote lookup fails.
    """
    now = now_ms if now_ms is not None else _now_ms()
    try:
        cached = await _store_get(store, KEY_APPROVAL_CACHE)
    except PersistenceFailure as e:
        logger.warning("Approval cache unreadable (%s); ignoring it.", e.reason)
        cached = None
    if not isinstance(cached, dict) or "status" not in cached:
        cached = None

    stale = cached is None or now - _to_ms(cached.get("timestamp")) > ttl_secs * 1000
    if online and stale:
        try:
            approved = await source.fetch_approval(user_id)
        except RemoteSyncFailure as e:
            logger.warning(
                "Approval lookup failed for %s (%s); using cached status.", user_id, e.reason,
            )
        else:
            try:
                await _store_set(store, KEY_APPROVAL_CACHE, {"status": approved, "timestamp": now})
            except PersistenceFailure as e:
                logger.warning("Could not cache approval status: %s", e.reason)
            return {"success": True, "approved": approved, "source": "remote"}

    if cached is not None:
        return {"success": True, "approved": bool(cached["status"]), "source": "cache"}
    return {"success": True, "approved": False, "source": "none"}
