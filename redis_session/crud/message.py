"""Messages within a session: ordered list for paging, index set for enumeration."""

from __future__ import annotations

import json
import time
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

from redis_session import keyspace
from redis_session.crud.base import fetch_records, guarded
from redis_session.errors import DuplicateRecordError, RecordNotFoundError
from redis_session.models import Message, OperationResult, Page, utc_now
from redis_session.store_client import StoreClient
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="crud/message")

DEFAULT_PAGE_SIZE = 50
RECENT_CACHE_TTL = 300


def generate_message_id() -> str:
    """Return `msg_<epoch millis>_<9 random hex chars>`."""
    return f"msg_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class MessageCRUD:
    def __init__(self, store: StoreClient) -> None:
        self.store = store

    async def _require_session(self, session_id: str) -> None:
        if not await self.store.exists(keyspace.session_key(session_id)):
            raise RecordNotFoundError(f"Session '{session_id}' not found")

    async def _all_messages(self, session_id: str) -> List[Message]:
        message_ids = await self.store.smembers(keyspace.session_messages_index_key(session_id))
        keys = [keyspace.message_key(session_id, message_id) for message_id in message_ids]
        return await fetch_records(self.store, keys, Message)

    @guarded("create message")
    async def create_message(
        self,
        session_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> OperationResult:
        await self._require_session(session_id)

        message_id = generate_message_id()
        now = utc_now()
        message = Message(
            message_id=message_id,
            session_id=session_id,
            role=role,
            content=content,
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )

        if not await self.store.set(keyspace.message_key(session_id, message_id), message.model_dump_json(), only_if_absent=True):
            raise DuplicateRecordError(f"Message '{message_id}' already exists in session '{session_id}'")
        await self.store.lpush(keyspace.session_messages_key(session_id), message_id)
        await self.store.sadd(keyspace.session_messages_index_key(session_id), message_id)

        self.store.clear_cache(keyspace.message_cache_scope(session_id))
        return OperationResult.ok(message)

    @guarded("get message")
    async def get_message(self, session_id: str, message_id: str) -> OperationResult:
        cache_key = keyspace.message_cache_key(session_id, message_id)
        cached = self.store.get_cache(cache_key)
        if cached is not None:
            return OperationResult.ok(cached)

        raw = await self.store.get(keyspace.message_key(session_id, message_id))
        if raw is None:
            raise RecordNotFoundError(f"Message '{message_id}' not found in session '{session_id}'")

        message = Message.model_validate_json(raw)
        self.store.set_cache(cache_key, message)
        return OperationResult.ok(message)

    @guarded("get messages")
    async def get_messages(self, session_id: str, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0) -> OperationResult:
        """Page through a session's messages, newest first.

        A non-positive `limit` means the default page size and a negative
        `offset` is treated as 0.
        """
        if limit <= 0:
            limit = DEFAULT_PAGE_SIZE
        offset = max(offset, 0)
        cache_key = keyspace.message_page_cache_key(session_id, limit, offset)
        cached = self.store.get_cache(cache_key)
        if cached is not None:
            return OperationResult.ok(cached, count=len(cached.items))

        await self._require_session(session_id)

        list_key = keyspace.session_messages_key(session_id)
        total = await self.store.llen(list_key)
        start = offset
        end = start + limit - 1
        message_ids = await self.store.lrange(list_key, start, end)

        keys = [keyspace.message_key(session_id, message_id) for message_id in message_ids]
        messages = await fetch_records(self.store, keys, Message)
        page = Page[Message](items=messages, total=total, limit=limit, offset=offset, has_more=end < total - 1)

        self.store.set_cache(cache_key, page)
        return OperationResult.ok(page, count=len(messages))

    @guarded("search messages")
    async def search_messages(self, session_id: str, query: str, limit: Optional[int] = None) -> OperationResult:
        """Case-insensitive substring match over content, role and metadata."""
        await self._require_session(session_id)

        needle = query.lower()
        matches = [
            message
            for message in await self._all_messages(session_id)
            if needle in message.content.lower()
            or needle in message.role.lower()
            or needle in json.dumps(message.metadata).lower()
        ]
        if limit:
            matches = matches[:limit]
        return OperationResult.ok(matches, count=len(matches))

    @guarded("update message")
    async def update_message(self, session_id: str, message_id: str, updates: Dict[str, Any]) -> OperationResult:
        """Apply `content`/`role` overrides and merge `metadata` key by key."""
        message_key = keyspace.message_key(session_id, message_id)

        def merge(raw: str) -> str:
            existing = Message.model_validate_json(raw)
            changes: Dict[str, Any] = {"updated_at": utc_now()}
            if updates.get("content") is not None:
                changes["content"] = updates["content"]
            if updates.get("role") is not None:
                changes["role"] = updates["role"]
            if updates.get("metadata"):
                changes["metadata"] = {**existing.metadata, **updates["metadata"]}
            return existing.model_copy(update=changes).model_dump_json()

        written = await self.store.update_if_present(message_key, merge)
        if written is None:
            raise RecordNotFoundError(f"Message '{message_id}' not found in session '{session_id}'")

        self.store.clear_cache(keyspace.message_cache_scope(session_id))
        return OperationResult.ok(Message.model_validate_json(written))

    @guarded("delete message")
    async def delete_message(self, session_id: str, message_id: str) -> OperationResult:
        message_key = keyspace.message_key(session_id, message_id)
        if not await self.store.exists(message_key):
            raise RecordNotFoundError(f"Message '{message_id}' not found in session '{session_id}'")

        await self.store.delete(message_key)
        await self.store.lrem(keyspace.session_messages_key(session_id), 0, message_id)
        await self.store.srem(keyspace.session_messages_index_key(session_id), message_id)

        self.store.clear_cache(keyspace.message_cache_scope(session_id))
        return OperationResult.ok(True)

    @guarded("delete all messages")
    async def delete_all_messages(self, session_id: str) -> OperationResult:
        """Remove every message of a session and both message indexes; returns the count."""
        await self._require_session(session_id)

        index_key = keyspace.session_messages_index_key(session_id)
        message_ids = await self.store.smembers(index_key)

        async with self.store.pipeline() as pipe:
            for message_id in message_ids:
                pipe.delete(keyspace.message_key(session_id, message_id))
            pipe.delete(keyspace.session_messages_key(session_id))
            pipe.delete(index_key)
            await pipe.execute()

        self.store.clear_cache(keyspace.message_cache_scope(session_id))
        logger.info("Deleted %d messages from session %s", len(message_ids), session_id)
        return OperationResult.ok(len(message_ids), count=len(message_ids))

    @guarded("get message count")
    async def get_message_count(self, session_id: str) -> OperationResult:
        await self._require_session(session_id)
        total = await self.store.llen(keyspace.session_messages_key(session_id))
        return OperationResult.ok(total, count=total)

    @guarded("get recent messages")
    async def get_recent_messages(self, session_id: str, hours: int = 24) -> OperationResult:
        """Messages created within the last `hours`, newest first; cached for five minutes."""
        cache_key = keyspace.recent_messages_cache_key(session_id, hours)
        cached = self.store.get_cache(cache_key)
        if cached is not None:
            return OperationResult.ok(cached, count=len(cached))

        await self._require_session(session_id)

        cutoff = utc_now() - timedelta(hours=hours)
        recent = sorted(
            (message for message in await self._all_messages(session_id) if message.created_at > cutoff),
            key=lambda message: message.created_at,
            reverse=True,
        )

        self.store.set_cache(cache_key, recent, RECENT_CACHE_TTL)
        return OperationResult.ok(recent, count=len(recent))
