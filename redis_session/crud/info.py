"""CRUD, listing and search for category/key info items."""

from __future__ import annotations

from typing import Optional, Tuple

from redis_session import keyspace
from redis_session.crud.base import fetch_records, guarded
from redis_session.errors import DuplicateRecordError, RecordNotFoundError
from redis_session.models import CategorySummary, InfoItem, OperationResult, utc_now
from redis_session.store_client import TTL_MISSING, TTL_PERSISTENT, StoreClient
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="crud/info")

EXPIRE = "expire"
PERSIST = "persist"


def plan_category_expiry(current_ttl: int, item_ttl: Optional[int]) -> Tuple[Optional[str], int]:
    """Decide how a category index's expiry changes when a member is written.

    The index must outlive its longest-lived member: it is extended when the
    new member expires later, and made persistent once a persistent member
    joins. Returns (action, resulting ttl) where action is EXPIRE, PERSIST or
    None and the resulting ttl uses the TTL reply convention.
    """
    if not item_ttl:
        if current_ttl > 0:
            return PERSIST, TTL_PERSISTENT
        return None, TTL_PERSISTENT
    if current_ttl == TTL_MISSING or 0 < current_ttl < item_ttl:
        return EXPIRE, item_ttl
    return None, current_ttl


class InfoCRUD:
    """Info items keyed by (category, key), indexed per category."""

    def __init__(self, store: StoreClient) -> None:
        self.store = store

    async def _reconcile_category(self, category: str, current_ttl: int, item_ttl: Optional[int]) -> None:
        action, _ = plan_category_expiry(current_ttl, item_ttl)
        index_key = keyspace.category_key(category)
        if action == EXPIRE:
            await self.store.expire(index_key, item_ttl)
        elif action == PERSIST:
            await self.store.persist(index_key)

    @guarded("create info")
    async def create_info(self, category: str, key: str, data: str, ttl: Optional[int] = None) -> OperationResult:
        """Create an item; fails without touching the stored value if it already exists."""
        item_key = keyspace.info_key(category, key)
        index_key = keyspace.category_key(category)
        now = utc_now()
        item = InfoItem(category=category, key=key, data=data, ttl=ttl, created_at=now, updated_at=now)

        if not await self.store.set(item_key, item.model_dump_json(), ttl, only_if_absent=True):
            raise DuplicateRecordError(f"Info with category '{category}' and key '{key}' already exists")

        index_ttl = await self.store.ttl(index_key)
        await self.store.sadd(index_key, key)
        await self._reconcile_category(category, index_ttl, ttl)

        self.store.clear_cache(keyspace.info_cache_scope(category))
        logger.debug("Created info %s", item_key)
        return OperationResult.ok(item)

    @guarded("get info")
    async def get_info(self, category: str, key: str) -> OperationResult:
        cache_key = keyspace.info_cache_key(category, key)
        cached = self.store.get_cache(cache_key)
        if cached is not None:
            return OperationResult.ok(cached)

        raw = await self.store.get(keyspace.info_key(category, key))
        if raw is None:
            raise RecordNotFoundError(f"Info with category '{category}' and key '{key}' not found")

        item = InfoItem.model_validate_json(raw)
        self.store.set_cache(cache_key, item)
        return OperationResult.ok(item)

    @guarded("list info")
    async def list_info(self, category: Optional[str] = None, pattern: Optional[str] = None) -> OperationResult:
        """List one category through its index, or scan all info keys matching `pattern`."""
        if category:
            members = await self.store.smembers(keyspace.category_key(category))
            keys = [keyspace.info_key(category, member) for member in members]
        else:
            keys = await self.store.keys(keyspace.info_pattern(pattern))

        items = await fetch_records(self.store, keys, InfoItem)
        return OperationResult.ok(items, count=len(items))

    @guarded("update info")
    async def update_info(self, category: str, key: str, data: str, ttl: Optional[int] = None) -> OperationResult:
        """Replace the data of an item.

        With `ttl` the expiry restarts from that value; without it the current
        expiry is kept.
        """
        item_key = keyspace.info_key(category, key)

        def merge(raw: str) -> str:
            existing = InfoItem.model_validate_json(raw)
            return existing.model_copy(
                update={"data": data, "ttl": ttl or existing.ttl, "updated_at": utc_now()}
            ).model_dump_json()

        written = await self.store.update_if_present(item_key, merge, ttl=ttl)
        if written is None:
            raise RecordNotFoundError(f"Info with category '{category}' and key '{key}' not found")

        if ttl:
            await self._reconcile_category(category, await self.store.ttl(keyspace.category_key(category)), ttl)

        self.store.clear_cache(keyspace.info_cache_key(category, key))
        return OperationResult.ok(InfoItem.model_validate_json(written))

    @guarded("delete info")
    async def delete_info(self, category: str, key: str) -> OperationResult:
        item_key = keyspace.info_key(category, key)
        if not await self.store.exists(item_key):
            raise RecordNotFoundError(f"Info with category '{category}' and key '{key}' not found")

        await self.store.delete(item_key)
        await self.store.srem(keyspace.category_key(category), key)

        self.store.clear_cache(keyspace.info_cache_key(category, key))
        logger.debug("Deleted info %s", item_key)
        return OperationResult.ok(True)

    @guarded("delete category")
    async def delete_category(self, category: str) -> OperationResult:
        """Delete every item of a category and its index; returns how many items were listed."""
        index_key = keyspace.category_key(category)
        members = await self.store.smembers(index_key)
        if not members:
            return OperationResult.ok(0, count=0)

        async with self.store.pipeline() as pipe:
            for member in members:
                pipe.delete(keyspace.info_key(category, member))
            pipe.delete(index_key)
            await pipe.execute()

        self.store.clear_cache(keyspace.info_cache_scope(category))
        logger.info("Deleted category %s with %d items", category, len(members))
        return OperationResult.ok(len(members), count=len(members))

    @guarded("get category info")
    async def get_category_info(self, category: str) -> OperationResult:
        members = await self.store.smembers(keyspace.category_key(category))
        return OperationResult.ok(CategorySummary(category=category, count=len(members), keys=members))

    @guarded("search info")
    async def search_info(self, query: str, category: Optional[str] = None) -> OperationResult:
        """Find items whose primary key matches `*query*`, narrowed by the store's pattern scan."""
        keys = await self.store.keys(keyspace.info_pattern(query, category))
        items = await fetch_records(self.store, keys, InfoItem)
        return OperationResult.ok(items, count=len(items))
