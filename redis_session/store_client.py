"""Single chokepoint for Redis access and for the local read cache."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Sequence

import redis.asyncio as aioredis
from redis.asyncio.retry import Retry
from redis.backoff import AbstractBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from redis_session import config
from redis_session.cache import LocalCache
from redis_session.errors import StoreError, StoreNotConnectedError
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="store_client")

SCAN_COUNT = 500
MAX_CAS_ATTEMPTS = 5

# TTL replies
TTL_PERSISTENT = -1
TTL_MISSING = -2


class LinearBackoff(AbstractBackoff):
    """Reconnect delay growing by `step` seconds per failure, capped at `cap`."""

    def __init__(self, step: float = 0.05, cap: float = 0.5) -> None:
        self._step = step
        self._cap = cap

    def compute(self, failures: int) -> float:
        return min(failures * self._step, self._cap)


class StoreClient:
    """Async Redis wrapper with an explicit connect barrier.

    Primitives are thin pass-throughs, one round trip each. Calling any of them
    before `connect()` raises StoreNotConnectedError. `pipeline()` batches
    commands without making them atomic.
    """

    def __init__(
        self,
        settings: config.Settings | None = None,
        cache: LocalCache | None = None,
        *,
        client: Any = None,
    ) -> None:
        """Use `client` instead of building a pooled connection (tests, shared clients)."""
        self.settings = settings or config.settings
        # An empty LocalCache is falsy (it has __len__), so test for None.
        self.cache = cache if cache is not None else LocalCache(
            default_ttl=self.settings.cache_ttl,
            max_entries=self.settings.cache_max_entries,
        )
        self._client = client
        self._owns_client = client is None
        self._pool: Optional[aioredis.BlockingConnectionPool] = None
        self._connected = False

    # Connection lifecycle

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _build_client(self) -> aioredis.Redis:
        """Create a Redis client over a bounded blocking pool with linear reconnect backoff."""
        pool_kwargs: Dict[str, Any] = {
            "max_connections": self.settings.max_connections,
            "timeout": self.settings.pool_timeout_seconds,
            "decode_responses": True,
            "retry": Retry(LinearBackoff(), self.settings.reconnect_retries),
            "retry_on_error": [RedisConnectionError, RedisTimeoutError],
        }
        if self.settings.url:
            self._pool = aioredis.BlockingConnectionPool.from_url(self.settings.url, **pool_kwargs)
        else:
            self._pool = aioredis.BlockingConnectionPool(
                host=self.settings.host,
                port=self.settings.port,
                db=self.settings.db,
                password=self.settings.password,
                **pool_kwargs,
            )
        return aioredis.Redis(connection_pool=self._pool)

    async def connect(self) -> None:
        """Open the pool and ping the server; no-op when already connected."""
        if self._connected:
            return
        if self._client is None:
            self._client = self._build_client()
        try:
            await self._client.ping()
        except Exception as exc:
            logger.error("Failed to connect to Redis at %s: %s", self.settings.masked_url(), exc)
            await self._release()
            raise
        self._connected = True
        logger.info("Connected to Redis", extra={"redis_url": self.settings.masked_url()})

    async def disconnect(self) -> None:
        """Close connections; no-op when already disconnected."""
        if not self._connected:
            return
        self._connected = False
        await self._release()
        logger.info("Disconnected from Redis")

    async def _release(self) -> None:
        if not self._owns_client:
            return
        client, pool = self._client, self._pool
        self._client = None
        self._pool = None
        if client is not None:
            await client.aclose()
        if pool is not None:
            await pool.disconnect()

    def _redis(self) -> Any:
        if not self._connected or self._client is None:
            raise StoreNotConnectedError("Store client is not connected; call connect() first")
        return self._client

    async def ping(self) -> bool:
        return bool(await self._redis().ping())

    async def server_info(self) -> Dict[str, Any]:
        return await self._redis().info("server")

    # Keys and strings

    async def get(self, key: str) -> Optional[str]:
        return await self._redis().get(key)

    async def set(
        self,
        key: str,
        value: str,
        ttl: Optional[int] = None,
        *,
        only_if_absent: bool = False,
        keep_ttl: bool = False,
    ) -> bool:
        """Write `value`; with no ttl and no keep_ttl the key becomes persistent.

        Returns False when `only_if_absent` is set and the key already exists.
        """
        kwargs: Dict[str, Any] = {}
        if ttl:
            kwargs["ex"] = ttl
        elif keep_ttl:
            kwargs["keepttl"] = True
        if only_if_absent:
            kwargs["nx"] = True
        return bool(await self._redis().set(key, value, **kwargs))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._redis().delete(*keys)

    async def exists(self, key: str) -> bool:
        return await self._redis().exists(key) == 1

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._redis().expire(key, seconds))

    async def persist(self, key: str) -> bool:
        return bool(await self._redis().persist(key))

    async def ttl(self, key: str) -> int:
        """Remaining seconds, -1 for no expiry, -2 when the key is absent or expired."""
        return await self._redis().ttl(key)

    # Hashes

    async def hget(self, key: str, field: str) -> Optional[str]:
        return await self._redis().hget(key, field)

    async def hset(self, key: str, field: str, value: str) -> int:
        return await self._redis().hset(key, field, value)

    async def hgetall(self, key: str) -> Dict[str, str]:
        return await self._redis().hgetall(key)

    async def hdel(self, key: str, *fields: str) -> int:
        return await self._redis().hdel(key, *fields)

    # Lists

    async def lpush(self, key: str, *values: str) -> int:
        return await self._redis().lpush(key, *values)

    async def rpush(self, key: str, *values: str) -> int:
        return await self._redis().rpush(key, *values)

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        return await self._redis().lrange(key, start, stop)

    async def llen(self, key: str) -> int:
        return await self._redis().llen(key)

    async def lrem(self, key: str, count: int, value: str) -> int:
        return await self._redis().lrem(key, count, value)

    # Sets

    async def sadd(self, key: str, *members: str) -> int:
        return await self._redis().sadd(key, *members)

    async def smembers(self, key: str) -> List[str]:
        return sorted(await self._redis().smembers(key))

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return await self._redis().srem(key, *members)

    async def keys(self, pattern: str) -> List[str]:
        """Return keys matching a glob pattern using incremental SCAN.

        SCAN may report a key more than once; each key appears once here, in
        first-seen order.
        """
        seen: Dict[str, None] = {}
        async for key in self._redis().scan_iter(match=pattern, count=SCAN_COUNT):
            seen.setdefault(key, None)
        return list(seen)

    # Batching

    def pipeline(self) -> Any:
        """Return a non-transactional pipeline; use as `async with store.pipeline() as pipe`."""
        return self._redis().pipeline(transaction=False)

    async def _per_key(self, command: str, keys: Sequence[str], failed: Any) -> List[Any]:
        """Run `command` for every key with pipelines of at most `batch_size` commands.

        Replies follow the order of `keys`; a failed reply becomes `failed`.
        """
        client = self._redis()
        values: List[Any] = []
        batch_size = self.settings.batch_size
        for start in range(0, len(keys), batch_size):
            chunk = keys[start:start + batch_size]
            async with client.pipeline(transaction=False) as pipe:
                for key in chunk:
                    getattr(pipe, command)(key)
                replies = await pipe.execute(raise_on_error=False)
            for key, reply in zip(chunk, replies):
                if isinstance(reply, Exception):
                    logger.warning("%s %s failed inside pipeline: %s", command.upper(), key, reply)
                    reply = failed
                values.append(reply)
        return values

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        """Pipelined GET; a key whose GET fails (e.g. WRONGTYPE) yields None."""
        return await self._per_key("get", keys, None)

    async def ttl_many(self, keys: Sequence[str]) -> List[int]:
        """Pipelined TTL; a failed reply counts as a live key (TTL_PERSISTENT)."""
        return await self._per_key("ttl", keys, TTL_PERSISTENT)

    async def update_if_present(
        self,
        key: str,
        mutate: Callable[[str], str],
        ttl: Optional[int] = None,
    ) -> Optional[str]:
        """Compare-and-swap `key` through WATCH/MULTI, re-running `mutate` on conflicts.

        Returns the written value, or None when the key does not exist. Without
        `ttl` the current expiry is kept as is (KEEPTTL).
        """
        client = self._redis()
        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            async with client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    current = await pipe.get(key)
                    if current is None:
                        return None
                    updated = mutate(current)
                    pipe.multi()
                    if ttl:
                        pipe.set(key, updated, ex=ttl)
                    else:
                        pipe.set(key, updated, keepttl=True)
                    await pipe.execute()
                    return updated
                except WatchError:
                    logger.debug("Key %s changed during update (attempt %d); retrying", key, attempt)
        raise StoreError(f"Gave up updating '{key}' after {MAX_CAS_ATTEMPTS} concurrent modifications")

    # Local cache

    def set_cache(self, key: str, data: Any, ttl: Optional[int] = None) -> None:
        self.cache.set(key, data, ttl)

    def get_cache(self, key: str) -> Optional[Any]:
        return self.cache.get(key)

    def clear_cache(self, pattern: Optional[str] = None) -> int:
        return self.cache.clear(pattern)

    def cleanup_cache(self) -> int:
        return self.cache.cleanup()
