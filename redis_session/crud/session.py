"""Session records, the global session index and cascading cleanup."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from redis_session import keyspace
from redis_session.crud.base import fetch_records, guarded
from redis_session.errors import DuplicateRecordError, RecordNotFoundError
from redis_session.models import OperationResult, Session, SessionStats, utc_now
from redis_session.store_client import TTL_MISSING, StoreClient
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="crud/session")

ACTIVE_WINDOW = timedelta(hours=1)
ACTIVE_CACHE_TTL = 300


async def reclaim_sessions(store: StoreClient, session_ids: Sequence[str]) -> int:
    """Delete everything the given sessions own and drop them from the global index.

    Returns the number of keys removed.
    """
    if not session_ids:
        return 0
    doomed: List[str] = []
    for session_id in session_ids:
        message_ids = await store.smembers(keyspace.session_messages_index_key(session_id))
        doomed.extend(keyspace.session_owned_keys(session_id, message_ids))

    removed = await store.delete(*doomed)
    await store.srem(keyspace.SESSIONS_INDEX, *session_ids)
    for session_id in session_ids:
        store.clear_cache(keyspace.session_cache_key(session_id))
        store.clear_cache(keyspace.message_cache_scope(session_id))
    store.clear_cache(keyspace.active_sessions_cache_key())
    return removed


class SessionCRUD:
    def __init__(self, store: StoreClient) -> None:
        self.store = store

    @guarded("create session")
    async def create_session(
        self,
        session_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        ttl: Optional[int] = None,
    ) -> OperationResult:
        session_key = keyspace.session_key(session_id)
        now = utc_now()
        session = Session(session_id=session_id, metadata=metadata or {}, ttl=ttl, created_at=now, updated_at=now)

        if not await self.store.set(session_key, session.model_dump_json(), ttl, only_if_absent=True):
            raise DuplicateRecordError(f"Session '{session_id}' already exists")
        await self.store.sadd(keyspace.SESSIONS_INDEX, session_id)

        self.store.clear_cache(keyspace.active_sessions_cache_key())
        logger.debug("Created session %s (ttl=%s)", session_id, ttl)
        return OperationResult.ok(session)

    @guarded("get session")
    async def get_session(self, session_id: str) -> OperationResult:
        cache_key = keyspace.session_cache_key(session_id)
        cached = self.store.get_cache(cache_key)
        if cached is not None:
            return OperationResult.ok(cached)

        raw = await self.store.get(keyspace.session_key(session_id))
        if raw is None:
            raise RecordNotFoundError(f"Session '{session_id}' not found")

        session = Session.model_validate_json(raw)
        self.store.set_cache(cache_key, session)
        return OperationResult.ok(session)

    async def _matching_keys(self, query: Optional[str]) -> List[str]:
        keys = await self.store.keys(keyspace.session_pattern(query))
        return sorted(key for key in keys if keyspace.is_session_key(key))

    @guarded("list sessions")
    async def list_sessions(self, pattern: Optional[str] = None, limit: Optional[int] = None) -> OperationResult:
        """List sessions by key pattern, or every indexed session; `limit` caps the candidates."""
        if pattern:
            session_ids = [keyspace.session_id_from_key(key) for key in await self._matching_keys(pattern)]
        else:
            session_ids = await self.store.smembers(keyspace.SESSIONS_INDEX)

        if limit and limit > 0:
            session_ids = session_ids[:limit]

        keys = [keyspace.session_key(session_id) for session_id in session_ids]
        sessions = await fetch_records(self.store, keys, Session)
        return OperationResult.ok(sessions, count=len(sessions))

    @guarded("update session")
    async def update_session(self, session_id: str, updates: Dict[str, Any]) -> OperationResult:
        """Shallow-merge `updates` into the session metadata; the remaining TTL is untouched."""
        session_key = keyspace.session_key(session_id)

        def merge(raw: str) -> str:
            existing = Session.model_validate_json(raw)
            return existing.model_copy(
                update={"metadata": {**existing.metadata, **updates}, "updated_at": utc_now()}
            ).model_dump_json()

        written = await self.store.update_if_present(session_key, merge)
        if written is None:
            raise RecordNotFoundError(f"Session '{session_id}' not found")

        self.store.clear_cache(keyspace.session_cache_key(session_id))
        self.store.clear_cache(keyspace.active_sessions_cache_key())
        return OperationResult.ok(Session.model_validate_json(written))

    @guarded("delete session")
    async def delete_session(self, session_id: str) -> OperationResult:
        """Delete a session together with all of its messages and message indexes."""
        if not await self.store.exists(keyspace.session_key(session_id)):
            raise RecordNotFoundError(f"Session '{session_id}' not found")

        removed = await reclaim_sessions(self.store, [session_id])
        logger.info("Deleted session %s (%d keys)", session_id, removed)
        return OperationResult.ok(True)

    @guarded("get active sessions")
    async def get_active_sessions(self) -> OperationResult:
        """Sessions updated within the last hour; the answer is cached for five minutes."""
        cache_key = keyspace.active_sessions_cache_key()
        cached = self.store.get_cache(cache_key)
        if cached is not None:
            return OperationResult.ok(cached, count=len(cached))

        session_ids = await self.store.smembers(keyspace.SESSIONS_INDEX)
        keys = [keyspace.session_key(session_id) for session_id in session_ids]
        cutoff = utc_now() - ACTIVE_WINDOW
        active = [session for session in await fetch_records(self.store, keys, Session) if session.updated_at > cutoff]

        self.store.set_cache(cache_key, active, ACTIVE_CACHE_TTL)
        return OperationResult.ok(active, count=len(active))

    @guarded("search sessions")
    async def search_sessions(self, query: str, limit: Optional[int] = None) -> OperationResult:
        keys = await self._matching_keys(query)
        if limit:
            keys = keys[:limit]
        sessions = await fetch_records(self.store, keys, Session)
        return OperationResult.ok(sessions, count=len(sessions))

    async def _ttls(self) -> Dict[str, int]:
        session_ids = await self.store.smembers(keyspace.SESSIONS_INDEX)
        ttls = await self.store.ttl_many([keyspace.session_key(session_id) for session_id in session_ids])
        return dict(zip(session_ids, ttls))

    @guarded("get session stats")
    async def get_session_stats(self) -> OperationResult:
        ttls = await self._ttls()
        expired = sum(1 for ttl in ttls.values() if ttl == TTL_MISSING)
        return OperationResult.ok(SessionStats(total=len(ttls), active=len(ttls) - expired, expired=expired))

    @guarded("cleanup expired sessions")
    async def cleanup_expired_sessions(self) -> OperationResult:
        """Drop index entries of sessions that have expired and reclaim their messages."""
        expired = [session_id for session_id, ttl in (await self._ttls()).items() if ttl == TTL_MISSING]
        if expired:
            await reclaim_sessions(self.store, expired)
            logger.info("Cleaned up %d expired sessions", len(expired))
        return OperationResult.ok(len(expired), count=len(expired))
