"""Service facade wiring the cache, store client, managers and batch engine together."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from redis_session import config
from redis_session.batch import BatchOperations
from redis_session.cache import LocalCache
from redis_session.crud import InfoCRUD, MessageCRUD, SessionCRUD
from redis_session.models import OperationResult
from redis_session.store_client import StoreClient
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="service")


class RedisSessionService:
    """Owns one store connection and everything built on it.

    `start()` is the startup barrier: nothing touches Redis before it returns.
    It also launches the periodic sweep of expired local cache entries.

        async with RedisSessionService() as service:
            await service.sessions.create_session("abc")
    """

    def __init__(self, settings: Optional[config.Settings] = None, *, client: Any = None) -> None:
        self.settings = settings or config.settings
        self.cache = LocalCache(
            default_ttl=self.settings.cache_ttl,
            max_entries=self.settings.cache_max_entries,
        )
        self.store = StoreClient(self.settings, self.cache, client=client)
        self.info = InfoCRUD(self.store)
        self.sessions = SessionCRUD(self.store)
        self.messages = MessageCRUD(self.store)
        self.batch = BatchOperations(self.store)
        self._sweeper: Optional[asyncio.Task] = None

    async def start(self) -> None:
        await self.store.connect()
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_cache(), name="redis-session-cache-sweep")
        logger.info(f"Service started (cache sweep every {self.settings.cache_sweep_interval_seconds}s)")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.store.disconnect()
        logger.info("Service stopped")

    async def __aenter__(self) -> "RedisSessionService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _sweep_cache(self) -> None:
        while True:
            await asyncio.sleep(self.settings.cache_sweep_interval_seconds)
            removed = self.store.cleanup_cache()
            if removed:
                logger.debug(f"Cache sweep removed {removed} expired entries")

    def store_info(self) -> OperationResult:
        """Connection state and cache configuration, with credentials masked."""
        data: Dict[str, Any] = {
            "connected": self.store.is_connected,
            "url": self.settings.masked_url(),
            "db": self.settings.db,
            "max_connections": self.settings.max_connections,
            "cache_ttl": self.settings.cache_ttl,
            "cache_max_entries": self.settings.cache_max_entries,
            "cache_size": len(self.cache),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return OperationResult.ok(data)

    def clear_cache(self, pattern: Optional[str] = None) -> OperationResult:
        """Drop local cache entries whose key contains `pattern` (all when omitted)."""
        removed = self.store.clear_cache(pattern)
        logger.info(f"Cleared {removed} cache entries (pattern={pattern or '*'})")
        return OperationResult.ok(removed, count=removed)


def build_service(settings: Optional[config.Settings] = None) -> RedisSessionService:
    """Build a service from the process settings (not yet started)."""
    settings = settings or config.settings
    logger.debug(f"Building service for {settings.masked_url()}")
    return RedisSessionService(settings)
