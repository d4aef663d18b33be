"""Remote backend access for the sync processor.

The processor talks to a row-oriented API through the RemoteBackend
protocol. SupabaseRemote is the production adapter; the supabase client is
synchronous, so each call runs in a worker thread.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Protocol

from supabase import Client, create_client

logger = logging.getLogger(__name__)


class RemoteError(Exception):
    """A transient remote or network failure. Always retryable."""


class RemoteBackend(Protocol):
    async def fetch_version(self, table: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """Return {"id", "updated_at"} for the row, or None if it does not exist."""
        ...

    async def fetch_row(self, table: str, entity_id: str) -> Optional[Dict[str, Any]]: ...

    async def insert(self, table: str, row: Dict[str, Any]) -> None: ...

    async def update(self, table: str, entity_id: str, changes: Dict[str, Any]) -> None: ...

    async def delete(self, table: str, entity_id: str) -> None: ...


class SupabaseRemote:
    """RemoteBackend over a supabase Client.

    Every client failure is re-raised as RemoteError.
    """

    def __init__(self, client: Client):
        self._client = client

    @classmethod
    def from_settings(cls, settings) -> "SupabaseRemote":
        if not settings.supabase_url or not settings.supabase_key:
            raise ValueError("GLOTIAN_SUPABASE_URL and GLOTIAN_SUPABASE_KEY must be set")
        return cls(create_client(settings.supabase_url, settings.supabase_key))

    async def _run(self, label: str, fn: Callable[[], Any]) -> Any:
        try:
            return await asyncio.to_thread(fn)
        except Exception as e:
            raise RemoteError(f"{label} failed: {e}") from e

    async def _select_one(self, table: str, entity_id: str, columns: str):
        def _query():
            return (
                self._client.table(table)
                .select(columns)
                .eq("id", entity_id)
                .limit(1)
                .execute()
            )

        result = await self._run(f"select {table}/{entity_id}", _query)
        return result.data[0] if result.data else None

    async def fetch_version(self, table: str, entity_id: str) -> Optional[Dict[str, Any]]:
        return await self._select_one(table, entity_id, "id, updated_at")

    async def fetch_row(self, table: str, entity_id: str) -> Optional[Dict[str, Any]]:
        return await self._select_one(table, entity_id, "*")

    async def insert(self, table: str, row: Dict[str, Any]) -> None:
        def _insert():
            return self._client.table(table).insert(row).execute()

        await self._run(f"insert {table}/{row.get('id')}", _insert)

    async def update(self, table: str, entity_id: str, changes: Dict[str, Any]) -> None:
        def _update():
            return self._client.table(table).update(changes).eq("id", entity_id).execute()

        await self._run(f"update {table}/{entity_id}", _update)

    async def delete(self, table: str, entity_id: str) -> None:
        def _delete():
            return self._client.table(table).delete().eq("id", entity_id).execute()

        await self._run(f"delete {table}/{entity_id}", _delete)
