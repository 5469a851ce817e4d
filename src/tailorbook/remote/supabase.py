"""SupabaseBackupClient: RemoteBackupStore over Supabase's PostgREST API.

Self-contained: uses raw httpx, no supabase-py dependency. One row per
user in the backup table (``user_id`` unique), replaced wholesale on
every upload.

Endpoints used:
- Upsert backup: POST /rest/v1/{table}?on_conflict=user_id
  with ``Prefer: resolution=merge-duplicates``
- Fetch backup: GET /rest/v1/{table}?user_id=eq.{id}&select=data
- Approval flag: GET /rest/v1/profiles?id=eq.{id}&select=is_approved
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from tailorbook.config import ShopConfig
from tailorbook.errors import (
    RemoteAuthError,
    RemoteConnectionError,
    RemoteNotFoundError,
    RemoteServerError,
    RemoteSyncFailure,
    RemoteTimeoutError,
)

logger = logging.getLogger(__name__)

_STATUS_MAP: dict[int, type[RemoteSyncFailure]] = {
    401: RemoteAuthError,
    403: RemoteAuthError,
    404: RemoteNotFoundError,
}


class SupabaseBackupClient:
    """Async client for the backup table and approval profile.

    Implements the ``RemoteBackupStore`` protocol:

    - ``upsert_backup(user_id, envelope) -> None``
    - ``fetch_backup(user_id) -> dict | None``

    ``access_token`` is the signed-in user's JWT; when omitted the anon
    key is sent as the bearer token (row-level security then decides).
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        access_token: str | None = None,
        table: str = "backups",
        profiles_table: str = "profiles",
    ) -> None:
        self._table = table
        self._profiles_table = profiles_table
        self._client = httpx.AsyncClient(
            base_url=url.rstrip("/") + "/rest/v1",
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {access_token or api_key}",
            },
            timeout=httpx.Timeout(connect=5.0, read=30.0, write=30.0, pool=5.0),
        )

    @classmethod
    def from_config(
        cls, config: ShopConfig, access_token: str | None = None,
    ) -> SupabaseBackupClient:
        """Build a client from ``ShopConfig`` remote settings."""
        if not config.supabase_url or not config.supabase_api_key:
            raise RemoteSyncFailure("Cloud backup is not configured.")
        return cls(
            config.supabase_url,
            config.supabase_api_key,
            access_token=access_token,
            table=config.backup_table,
        )

    # -- internal request dispatcher -----------------------------------------

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict[str, str] | None = None,
        json_data: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Send a request and map errors to the RemoteSyncFailure hierarchy."""
        try:
            response = await self._client.request(
                method, endpoint, params=params, json=json_data, headers=headers,
            )
        except httpx.ConnectError as exc:
            raise RemoteConnectionError(str(exc)) from exc
        except httpx.TimeoutException as exc:
            raise RemoteTimeoutError(str(exc)) from exc
        except httpx.HTTPError as exc:
            raise RemoteSyncFailure(str(exc)) from exc

        if response.status_code >= 400:
            body = response.text
            exc_cls = _STATUS_MAP.get(response.status_code)
            if exc_cls is not None:
                raise exc_cls(body, status_code=response.status_code)
            if response.status_code >= 500:
                raise RemoteServerError(body, status_code=response.status_code)
            raise RemoteSyncFailure(body, status_code=response.status_code)

        if not response.content:
            return None
        return response.json()

    # -- RemoteBackupStore protocol ------------------------------------------

    async def upsert_backup(self, user_id: str, envelope: dict[str, Any]) -> None:
        """Replace the user's backup row entirely."""
        await self._request(
            "POST",
            f"/{self._table}",
            params={"on_conflict": "user_id"},
            json_data={
                "user_id": user_id,
                "data": envelope,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    async def fetch_backup(self, user_id: str) -> dict[str, Any] | None:
        """Return the stored envelope, or None when the user has no backup."""
        rows = await self._request(
            "GET",
            f"/{self._table}",
            params={"user_id": f"eq.{user_id}", "select": "data"},
        )
        if not rows:
            return None
        data = rows[0].get("data") if isinstance(rows, list) else None
        if not isinstance(data, dict):
            logger.warning("Backup row for %s has no usable data.", user_id)
            return None
        return data

    # -- profile --------------------------------------------------------------

    async def fetch_approval(self, user_id: str) -> bool:
        """Return the profile's ``is_approved`` flag. A missing profile is not approved."""
        rows = await self._request(
            "GET",
            f"/{self._profiles_table}",
            params={"id": f"eq.{user_id}", "select": "is_approved"},
        )
        if not rows:
            return False
        return bool(rows[0].get("is_approved", False))

    # -- lifecycle ------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> SupabaseBackupClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
