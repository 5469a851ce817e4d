"""StoreBackend that keeps one JSON file per key in a directory.

Writes are atomic (temp file + ``os.replace``) and keep the previous
version as ``<key>.json.bak``; reads fall back to the backup when the
main file is missing or corrupt. Blocking file I/O runs in a worker
thread so the event loop is never stalled.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from tailorbook.constants import KEY_MIGRATION_DONE, LEGACY_KEYS
from tailorbook.store_backend import StoreBackend

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def _read_json(path: Path) -> Any | None:
    """Read ``path``, falling back to ``path.bak``. Returns None when neither is usable."""
    for candidate in (path, path.with_suffix(path.suffix + ".bak")):
        try:
            return json.loads(candidate.read_text(encoding="utf-8"))
        except FileNotFoundError:
            continue
        except json.JSONDecodeError:
            logger.warning("JSON file %s is corrupted; trying backup.", candidate)
    return None


def _atomic_write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    backup = path.with_suffix(path.suffix + ".bak")
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        if path.exists():
            try:
                os.replace(path, backup)
            except OSError:
                logger.exception("Failed to rotate backup for %s", path)
        os.replace(tmp_path, path)
    finally:
        try:
            os.remove(tmp_path)
        except FileNotFoundError:
            pass


class JsonFileStore:
    """Directory-backed key-value store. Writes are serialized by one lock."""

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self.directory = Path(directory)
        self._lock = asyncio.Lock()

    def _path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.directory / f"{key}.json"

    async def get(self, key: str) -> Any | None:
        return await asyncio.to_thread(_read_json, self._path(key))

    async def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        async with self._lock:
            await asyncio.to_thread(_atomic_write_json, path, value)


async def migrate_legacy_file(
    store: StoreBackend, legacy_path: str | os.PathLike[str],
) -> bool:
    """One-time copy of a pre-migration flat JSON file into ``store``.

    The legacy file holds ``tailor_customers``/``tailor_orders``/
    ``tailor_transactions`` at top level (values may be JSON-encoded
    strings). Runs at most once: ``migration_done`` is set afterwards even
    when there was nothing to copy. Returns True if the migration ran.
    """
    if await store.get(KEY_MIGRATION_DONE):
        return False

    legacy = await asyncio.to_thread(_read_json, Path(legacy_path))
    if isinstance(legacy, dict):
        for old_key, new_key in LEGACY_KEYS.items():
            value = legacy.get(old_key)
            if isinstance(value, str):
                try:
                    value = json.loads(value)
                except json.JSONDecodeError:
                    logger.warning("Legacy value for %s is corrupt; skipping.", old_key)
                    continue
            if value:
                await store.set(new_key, value)
        logger.info("Migrated legacy storage from %s.", legacy_path)
    elif legacy is not None:
        logger.warning("Legacy storage %s is not an object; skipping migration.", legacy_path)

    await store.set(KEY_MIGRATION_DONE, True)
    return True
