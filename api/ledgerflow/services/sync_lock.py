"""At most one sync per tenant: ``sync:lock:{tenant_id}`` holds the running sync_id."""
import logging

from ledgerflow.core.config import settings
from ledgerflow.core.kvstore import KVStore

logger = logging.getLogger(__name__)


def lock_key(tenant_id: str) -> str:
    return f"sync:lock:{tenant_id}"


class SyncLock:
    def __init__(self, kv: KVStore, ttl_seconds: int | None = None):
        self._kv = kv
        self._ttl = ttl_seconds or settings.sync_lock_ttl_seconds

    async def acquire(self, tenant_id: str, sync_id: str) -> bool:
        """Take the lock, or confirm ``sync_id`` already holds it."""
        if await self._kv.set_if_absent(lock_key(tenant_id), {"sync_id": sync_id}, self._ttl):
            return True
        return await self.holder(tenant_id) == sync_id

    async def holder(self, tenant_id: str) -> str | None:
        doc = await self._kv.get(lock_key(tenant_id))
        return doc["sync_id"] if doc else None

    async def refresh(self, tenant_id: str, sync_id: str) -> None:
        if await self.holder(tenant_id) == sync_id:
            await self._kv.expire(lock_key(tenant_id), self._ttl)

    async def release(self, tenant_id: str, sync_id: str) -> None:
        def updater(current: dict | None) -> dict | None:
            if current is not None and current.get("sync_id") != sync_id:
                logger.warning(
                    "Sync %s tried to release lock for tenant %s held by %s",
                    sync_id, tenant_id, current.get("sync_id"),
                )
                return current
            return None

        await self._kv.merge(lock_key(tenant_id), updater, self._ttl)
