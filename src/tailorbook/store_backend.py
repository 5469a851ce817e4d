"""Abstract persistence interfaces.

``StoreBackend`` is the local key-value store the repository depends on;
``RemoteBackupStore`` is the per-user object store used for cloud backup.
Concrete implementations live in ``tailorbook.stores`` and
``tailorbook.remote``.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class StoreBackend(Protocol):
    """Async key-value store of JSON-serializable values.

    ``get`` returns None for a missing key and does not raise for normal use.
    """

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...


@runtime_checkable
class RemoteBackupStore(Protocol):
    """One opaque JSON blob per user id. Last writer wins."""

    async def upsert_backup(self, user_id: str, envelope: dict[str, Any]) -> None: ...

    async def fetch_backup(self, user_id: str) -> dict[str, Any] | None: ...
