"""Batched multi-operation execution over one shared pipeline, plus bulk helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Union

from pydantic import ValidationError

from redis_session import keyspace
from redis_session.batch.operations import (
    SUCCESSFUL_OUTCOMES,
    TYPE_ORDER,
    BatchItemResult,
    BatchOperation,
    BatchOutcome,
    BatchSummary,
    EntityType,
    InfoCreate,
    InfoDelete,
    InfoUpdate,
    MessageCreate,
    MessageDelete,
    MessageUpdate,
    OperationKind,
    SessionCreate,
    SessionDelete,
    SessionUpdate,
    parse_operation,
)
from redis_session.crud.base import guarded
from redis_session.crud.info import EXPIRE, PERSIST, plan_category_expiry
from redis_session.crud.message import generate_message_id
from redis_session.crud.session import reclaim_sessions
from redis_session.models import CleanupReport, InfoItem, Message, OperationResult, Session, StoreStats, utc_now
from redis_session.store_client import TTL_MISSING, StoreClient
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="batch")

# How the primary reply of a queued operation is checked after execution.
CHECK_NX = "nx"
CHECK_DEL = "del"


@dataclass
class _Pending:
    """Bookkeeping for one operation between queuing and pipeline execution."""
    operation: Dict[str, Any]
    outcome: BatchOutcome
    error: Optional[str] = None
    reply_index: Optional[int] = None
    check: Optional[str] = None
    cache_scopes: List[str] = field(default_factory=list)


@dataclass
class _BatchState:
    """What earlier operations of the same batch have queued but not yet executed."""
    category_ttls: Dict[str, int] = field(default_factory=dict)
    queued_messages: Set[str] = field(default_factory=set)


def _echo(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, BatchOperation):
        return raw.model_dump(mode="json")
    if isinstance(raw, Mapping):
        return dict(raw)
    return {"value": repr(raw)}


class BatchOperations:
    """Run many creates, updates and deletes with one pipeline round trip.

    Operations are isolated from each other: a failure is recorded against the
    operation that caused it and never aborts the rest of the batch. The
    pipeline is not transactional, so a batch is not atomic either.
    """

    def __init__(self, store: StoreClient) -> None:
        self.store = store
        self._handlers = {
            InfoCreate: self._queue_info_create,
            InfoUpdate: self._queue_info_update,
            InfoDelete: self._queue_info_delete,
            SessionCreate: self._queue_session_create,
            SessionUpdate: self._queue_session_update,
            SessionDelete: self._queue_session_delete,
            MessageCreate: self._queue_message_create,
            MessageUpdate: self._queue_message_update,
            MessageDelete: self._queue_message_delete,
        }

    @guarded("execute batch operations")
    async def execute_batch_operations(
        self, operations: Sequence[Union[BatchOperation, Mapping[str, Any]]]
    ) -> OperationResult:
        """Execute descriptors and return a BatchSummary.

        Results list invalid descriptors first, then info, session and message
        operations, each group in input order.
        """
        results: List[BatchItemResult] = []
        parsed = []
        for raw in operations:
            try:
                op = raw if isinstance(raw, BatchOperation) else BatchOperation.model_validate(raw)
                parsed.append((op, parse_operation(op)))
            except (ValidationError, ValueError) as exc:
                results.append(BatchItemResult(operation=_echo(raw), result=BatchOutcome.ERROR, error=str(exc)))

        parsed.sort(key=lambda pair: TYPE_ORDER[pair[0].type])

        pending: List[_Pending] = []
        state = _BatchState()
        async with self.store.pipeline() as pipe:
            for op, variant in parsed:
                item = _Pending(operation=op.model_dump(mode="json"), outcome=BatchOutcome.ERROR)
                try:
                    await self._handlers[type(variant)](pipe, variant, item, state)
                except Exception as exc:
                    logger.warning("Batch %s %s '%s' failed: %s", op.operation.value, op.type.value, op.key, exc)
                    item.outcome, item.error, item.reply_index = BatchOutcome.ERROR, str(exc), None
                pending.append(item)
            replies = await pipe.execute(raise_on_error=False)

        summary = BatchSummary()
        for item in pending:
            self._resolve(item, replies)
            if item.outcome in SUCCESSFUL_OUTCOMES:
                summary.successful += 1
                for scope in item.cache_scopes:
                    self.store.clear_cache(scope)
            results.append(BatchItemResult(operation=item.operation, result=item.outcome, error=item.error))
        summary.failed = len(results) - summary.successful
        summary.results = results

        logger.info("Batch finished: %d successful, %d failed", summary.successful, summary.failed)
        return OperationResult.ok(summary, count=len(results))

    @staticmethod
    def _resolve(item: _Pending, replies: List[Any]) -> None:
        if item.reply_index is None:
            return
        reply = replies[item.reply_index]
        if isinstance(reply, Exception):
            item.outcome, item.error = BatchOutcome.ERROR, str(reply)
        elif item.check == CHECK_NX and not reply:
            item.outcome, item.error = BatchOutcome.DUPLICATE, "Record already exists"
        elif item.check == CHECK_DEL and not reply:
            item.outcome, item.error = BatchOutcome.NOT_FOUND, "Record not found"

    @staticmethod
    def _mark(item: _Pending, pipe: Any, outcome: BatchOutcome, check: Optional[str] = None) -> None:
        """Record that the next queued command is the operation's primary one."""
        item.outcome = outcome
        item.reply_index = len(pipe)
        item.check = check

    async def _load_category_ttl(self, category: str, known: Dict[str, int]) -> None:
        if category not in known:
            known[category] = await self.store.ttl(keyspace.category_key(category))

    @staticmethod
    def _queue_category_expiry(pipe: Any, category: str, ttl: Optional[int], known: Dict[str, int]) -> None:
        action, known[category] = plan_category_expiry(known[category], ttl)
        if action == EXPIRE:
            pipe.expire(keyspace.category_key(category), ttl)
        elif action == PERSIST:
            pipe.persist(keyspace.category_key(category))

    # Info

    async def _queue_info_create(self, pipe, op: InfoCreate, item: _Pending, state: _BatchState) -> None:
        await self._load_category_ttl(op.category, state.category_ttls)
        now = utc_now()
        record = InfoItem(category=op.category, key=op.key, data=op.data, ttl=op.ttl, created_at=now, updated_at=now)
        self._mark(item, pipe, BatchOutcome.CREATED, CHECK_NX)
        pipe.set(keyspace.info_key(op.category, op.key), record.model_dump_json(), ex=op.ttl or None, nx=True)
        pipe.sadd(keyspace.category_key(op.category), op.key)
        self._queue_category_expiry(pipe, op.category, op.ttl, state.category_ttls)
        item.cache_scopes.append(keyspace.info_cache_scope(op.category))

    async def _queue_info_update(self, pipe, op: InfoUpdate, item: _Pending, state: _BatchState) -> None:
        item_key = keyspace.info_key(op.category, op.key)
        raw = await self.store.get(item_key)
        if raw is None:
            item.outcome, item.error = BatchOutcome.NOT_FOUND, "Info item not found"
            return
        existing = InfoItem.model_validate_json(raw)
        updated = existing.model_copy(update={"data": op.data, "ttl": op.ttl or existing.ttl, "updated_at": utc_now()})
        if op.ttl:
            await self._load_category_ttl(op.category, state.category_ttls)
        self._mark(item, pipe, BatchOutcome.UPDATED)
        if op.ttl:
            pipe.set(item_key, updated.model_dump_json(), ex=op.ttl)
            self._queue_category_expiry(pipe, op.category, op.ttl, state.category_ttls)
        else:
            pipe.set(item_key, updated.model_dump_json(), keepttl=True)
        item.cache_scopes.append(keyspace.info_cache_key(op.category, op.key))

    async def _queue_info_delete(self, pipe, op: InfoDelete, item: _Pending, state: _BatchState) -> None:
        self._mark(item, pipe, BatchOutcome.DELETED, CHECK_DEL)
        pipe.delete(keyspace.info_key(op.category, op.key))
        pipe.srem(keyspace.category_key(op.category), op.key)
        item.cache_scopes.append(keyspace.info_cache_key(op.category, op.key))

    # Sessions

    async def _queue_session_create(self, pipe, op: SessionCreate, item: _Pending, state: _BatchState) -> None:
        now = utc_now()
        record = Session(session_id=op.session_id, metadata=op.metadata, ttl=op.ttl, created_at=now, updated_at=now)
        self._mark(item, pipe, BatchOutcome.CREATED, CHECK_NX)
        pipe.set(keyspace.session_key(op.session_id), record.model_dump_json(), ex=op.ttl or None, nx=True)
        pipe.sadd(keyspace.SESSIONS_INDEX, op.session_id)
        item.cache_scopes.append(keyspace.active_sessions_cache_key())

    async def _queue_session_update(self, pipe, op: SessionUpdate, item: _Pending, state: _BatchState) -> None:
        session_key = keyspace.session_key(op.session_id)
        raw = await self.store.get(session_key)
        if raw is None:
            item.outcome, item.error = BatchOutcome.NOT_FOUND, "Session not found"
            return
        existing = Session.model_validate_json(raw)
        updated = existing.model_copy(update={"metadata": {**existing.metadata, **op.metadata}, "updated_at": utc_now()})
        self._mark(item, pipe, BatchOutcome.UPDATED)
        pipe.set(session_key, updated.model_dump_json(), keepttl=True)
        item.cache_scopes.extend([keyspace.session_cache_key(op.session_id), keyspace.active_sessions_cache_key()])

    async def _queue_session_delete(self, pipe, op: SessionDelete, item: _Pending, state: _BatchState) -> None:
        message_ids = await self.store.smembers(keyspace.session_messages_index_key(op.session_id))
        owned = keyspace.session_owned_keys(op.session_id, message_ids)
        self._mark(item, pipe, BatchOutcome.DELETED, CHECK_DEL)
        pipe.delete(owned[0])
        pipe.delete(*owned[1:])
        pipe.srem(keyspace.SESSIONS_INDEX, op.session_id)
        item.cache_scopes.extend([
            keyspace.session_cache_key(op.session_id),
            keyspace.active_sessions_cache_key(),
            keyspace.message_cache_scope(op.session_id),
        ])

    # Messages

    async def _queue_message_create(self, pipe, op: MessageCreate, item: _Pending, state: _BatchState) -> None:
        message_key = keyspace.message_key(op.session_id, op.message_id)
        if message_key in state.queued_messages or await self.store.exists(message_key):
            item.outcome, item.error = BatchOutcome.DUPLICATE, "Record already exists"
            return
        state.queued_messages.add(message_key)
        now = utc_now()
        record = Message(
            message_id=op.message_id,
            session_id=op.session_id,
            role=op.role,
            content=op.content,
            metadata=op.metadata,
            created_at=now,
            updated_at=now,
        )
        self._mark(item, pipe, BatchOutcome.CREATED, CHECK_NX)
        pipe.set(message_key, record.model_dump_json(), nx=True)
        pipe.lpush(keyspace.session_messages_key(op.session_id), op.message_id)
        pipe.sadd(keyspace.session_messages_index_key(op.session_id), op.message_id)
        item.cache_scopes.append(keyspace.message_cache_scope(op.session_id))

    async def _queue_message_update(self, pipe, op: MessageUpdate, item: _Pending, state: _BatchState) -> None:
        message_key = keyspace.message_key(op.session_id, op.message_id)
        raw = await self.store.get(message_key)
        if raw is None:
            item.outcome, item.error = BatchOutcome.NOT_FOUND, "Message not found"
            return
        existing = Message.model_validate_json(raw)
        changes: Dict[str, Any] = {"metadata": {**existing.metadata, **op.metadata}, "updated_at": utc_now()}
        if op.content is not None:
            changes["content"] = op.content
        if op.role is not None:
            changes["role"] = op.role
        self._mark(item, pipe, BatchOutcome.UPDATED)
        pipe.set(message_key, existing.model_copy(update=changes).model_dump_json(), keepttl=True)
        item.cache_scopes.append(keyspace.message_cache_scope(op.session_id))

    async def _queue_message_delete(self, pipe, op: MessageDelete, item: _Pending, state: _BatchState) -> None:
        message_key = keyspace.message_key(op.session_id, op.message_id)
        state.queued_messages.discard(message_key)
        self._mark(item, pipe, BatchOutcome.DELETED, CHECK_DEL)
        pipe.delete(message_key)
        pipe.lrem(keyspace.session_messages_key(op.session_id), 0, op.message_id)
        pipe.srem(keyspace.session_messages_index_key(op.session_id), op.message_id)
        item.cache_scopes.append(keyspace.message_cache_scope(op.session_id))

    # Bulk helpers

    async def _run_projected(self, descriptors: Iterable[Dict[str, Any]], label: str) -> OperationResult:
        result = await self.execute_batch_operations(list(descriptors))
        if not result.success:
            return result
        summary: BatchSummary = result.data
        return OperationResult.ok({label: summary.successful, "failed": summary.failed})

    @guarded("bulk create info")
    async def bulk_create_info(self, items: Sequence[Mapping[str, Any]]) -> OperationResult:
        """Create info items given as {category, key, data, ttl?} mappings."""
        return await self._run_projected(
            (
                {
                    "operation": OperationKind.CREATE,
                    "type": EntityType.INFO,
                    "key": f"{item['category']}:{item['key']}",
                    "data": {"data": item["data"]},
                    "ttl": item.get("ttl"),
                }
                for item in items
            ),
            "created",
        )

    @guarded("bulk create sessions")
    async def bulk_create_sessions(self, sessions: Sequence[Mapping[str, Any]]) -> OperationResult:
        """Create sessions given as {session_id, metadata?, ttl?} mappings."""
        return await self._run_projected(
            (
                {
                    "operation": OperationKind.CREATE,
                    "type": EntityType.SESSION,
                    "key": session["session_id"],
                    "data": {"metadata": session.get("metadata") or {}},
                    "ttl": session.get("ttl"),
                }
                for session in sessions
            ),
            "created",
        )

    @guarded("bulk create messages")
    async def bulk_create_messages(self, messages: Sequence[Mapping[str, Any]]) -> OperationResult:
        """Create messages given as {session_id, role, content, metadata?} mappings.

        Sessions are not checked for existence.
        """
        return await self._run_projected(
            (
                {
                    "operation": OperationKind.CREATE,
                    "type": EntityType.MESSAGE,
                    "key": f"{message['session_id']}:{generate_message_id()}",
                    "data": {
                        "role": message["role"],
                        "content": message["content"],
                        "metadata": message.get("metadata") or {},
                    },
                }
                for message in messages
            ),
            "created",
        )

    @guarded("bulk delete info")
    async def bulk_delete_info(self, category: str, keys: Sequence[str]) -> OperationResult:
        return await self._run_projected(
            ({"operation": OperationKind.DELETE, "type": EntityType.INFO, "key": f"{category}:{key}"} for key in keys),
            "deleted",
        )

    @guarded("bulk delete sessions")
    async def bulk_delete_sessions(self, session_ids: Sequence[str]) -> OperationResult:
        return await self._run_projected(
            ({"operation": OperationKind.DELETE, "type": EntityType.SESSION, "key": sid} for sid in session_ids),
            "deleted",
        )

    @guarded("bulk update info")
    async def bulk_update_info(self, updates: Sequence[Mapping[str, Any]]) -> OperationResult:
        """Update info items given as {category, key, data, ttl?} mappings."""
        return await self._run_projected(
            (
                {
                    "operation": OperationKind.UPDATE,
                    "type": EntityType.INFO,
                    "key": f"{update['category']}:{update['key']}",
                    "data": {"data": update["data"]},
                    "ttl": update.get("ttl"),
                }
                for update in updates
            ),
            "updated",
        )

    # Maintenance

    @guarded("get batch stats")
    async def get_batch_stats(self) -> OperationResult:
        info_count = len(await self.store.keys(keyspace.info_pattern()))
        session_keys = await self.store.keys(keyspace.session_pattern())
        session_count = sum(1 for key in session_keys if keyspace.is_session_key(key))
        message_count = sum(1 for key in session_keys if keyspace.is_message_key(key))
        return OperationResult.ok(
            StoreStats(
                info_count=info_count,
                session_count=session_count,
                message_count=message_count,
                total_keys=info_count + session_count + message_count,
            )
        )

    async def _expired_members(self, members: Sequence[str], keys: Sequence[str]) -> List[str]:
        ttls = await self.store.ttl_many(keys)
        return [member for member, ttl in zip(members, ttls) if ttl == TTL_MISSING]

    @guarded("cleanup expired data")
    async def cleanup_expired_data(self) -> OperationResult:
        """Remove index entries whose record has expired.

        Covers category indexes, the global session index (reclaiming the
        messages of expired sessions) and the message list and index of every
        live session. Each index is handled on its own; failures are counted
        and do not stop the sweep.
        """
        report = CleanupReport()

        for index_key in await self.store.keys(keyspace.category_pattern()):
            try:
                category = index_key.split(keyspace.SEPARATOR, 1)[1]
                members = await self.store.smembers(index_key)
                expired = await self._expired_members(
                    members, [keyspace.info_key(category, member) for member in members]
                )
                if expired:
                    await self.store.srem(index_key, *expired)
                    self.store.clear_cache(keyspace.info_cache_scope(category))
                    report.cleaned += len(expired)
            except Exception as exc:
                logger.warning("Cleanup of %s failed: %s", index_key, exc)
                report.errors += 1

        live: List[str] = []
        try:
            session_ids = await self.store.smembers(keyspace.SESSIONS_INDEX)
            expired_sessions = await self._expired_members(
                session_ids, [keyspace.session_key(session_id) for session_id in session_ids]
            )
            if expired_sessions:
                await reclaim_sessions(self.store, expired_sessions)
                report.cleaned += len(expired_sessions)
            gone = set(expired_sessions)
            live = [session_id for session_id in session_ids if session_id not in gone]
        except Exception as exc:
            logger.warning("Cleanup of %s failed: %s", keyspace.SESSIONS_INDEX, exc)
            report.errors += 1

        for session_id in live:
            try:
                index_key = keyspace.session_messages_index_key(session_id)
                message_ids = await self.store.smembers(index_key)
                expired = await self._expired_members(
                    message_ids, [keyspace.message_key(session_id, message_id) for message_id in message_ids]
                )
                if expired:
                    async with self.store.pipeline() as pipe:
                        pipe.srem(index_key, *expired)
                        for message_id in expired:
                            pipe.lrem(keyspace.session_messages_key(session_id), 0, message_id)
                        await pipe.execute()
                    self.store.clear_cache(keyspace.message_cache_scope(session_id))
                    report.cleaned += len(expired)
            except Exception as exc:
                logger.warning("Cleanup of messages for session %s failed: %s", session_id, exc)
                report.errors += 1

        logger.info("Cleanup removed %d stale index entries (%d errors)", report.cleaned, report.errors)
        return OperationResult.ok(report)
