"""Batch descriptors, their typed variants and result models.

A `BatchOperation` is the loose wire shape (type, operation, composite key,
free-form data). `parse_operation` turns it into one of the variant models
below, so the engine only ever sees fully-shaped operations.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from redis_session import keyspace
from redis_session.errors import InvalidKeyError


class EntityType(str, Enum):
    INFO = "info"
    SESSION = "session"
    MESSAGE = "message"


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class BatchOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    NOT_FOUND = "not_found"
    DUPLICATE = "duplicate"
    ERROR = "error"


SUCCESSFUL_OUTCOMES = frozenset({BatchOutcome.CREATED, BatchOutcome.UPDATED, BatchOutcome.DELETED})

# Processing order of the per-type partitions.
TYPE_ORDER = {EntityType.INFO: 0, EntityType.SESSION: 1, EntityType.MESSAGE: 2}


class BatchOperation(BaseModel):
    """Wire descriptor.

    `key` is composite: "<category>:<key>" for info, "<session_id>" for
    sessions and "<session_id>:<message_id>" for messages.
    """
    operation: OperationKind
    type: EntityType
    key: str
    data: Optional[Dict[str, Any]] = None
    ttl: Optional[int] = None


class BatchItemResult(BaseModel):
    operation: Dict[str, Any]
    result: BatchOutcome
    error: Optional[str] = None


class BatchSummary(BaseModel):
    successful: int = 0
    failed: int = 0
    results: List[BatchItemResult] = Field(default_factory=list)


# Variants


class InfoCreate(BaseModel):
    category: str
    key: str
    data: str
    ttl: Optional[int] = None


class InfoUpdate(BaseModel):
    category: str
    key: str
    data: str
    ttl: Optional[int] = None


class InfoDelete(BaseModel):
    category: str
    key: str


class SessionCreate(BaseModel):
    session_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    ttl: Optional[int] = None


class SessionUpdate(BaseModel):
    session_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SessionDelete(BaseModel):
    session_id: str


class MessageCreate(BaseModel):
    session_id: str
    message_id: str
    role: str
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MessageUpdate(BaseModel):
    session_id: str
    message_id: str
    role: Optional[str] = None
    content: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MessageDelete(BaseModel):
    session_id: str
    message_id: str


Variant = Union[
    InfoCreate, InfoUpdate, InfoDelete,
    SessionCreate, SessionUpdate, SessionDelete,
    MessageCreate, MessageUpdate, MessageDelete,
]


def _split_pair(composite: str, what: str) -> Tuple[str, str]:
    head, sep, tail = composite.partition(keyspace.SEPARATOR)
    if not sep or not head or not tail:
        raise InvalidKeyError(f"{what} key '{composite}' must look like '<a>{keyspace.SEPARATOR}<b>'")
    return head, tail


def _info_fields(op: BatchOperation) -> Dict[str, Any]:
    category, key = _split_pair(op.key, "Info")
    keyspace.info_key(category, key)
    return {"category": category, "key": key}


def _session_fields(op: BatchOperation) -> Dict[str, Any]:
    keyspace.session_key(op.key)
    return {"session_id": op.key}


def _message_fields(op: BatchOperation) -> Dict[str, Any]:
    session_id, message_id = _split_pair(op.key, "Message")
    keyspace.message_key(session_id, message_id)
    return {"session_id": session_id, "message_id": message_id}


def _data(op: BatchOperation) -> Dict[str, Any]:
    return op.data or {}


_REGISTRY: Dict[Tuple[EntityType, OperationKind], Callable[[BatchOperation], Variant]] = {
    (EntityType.INFO, OperationKind.CREATE): lambda op: InfoCreate(
        **_info_fields(op), data=_data(op).get("data"), ttl=op.ttl
    ),
    (EntityType.INFO, OperationKind.UPDATE): lambda op: InfoUpdate(
        **_info_fields(op), data=_data(op).get("data"), ttl=op.ttl
    ),
    (EntityType.INFO, OperationKind.DELETE): lambda op: InfoDelete(**_info_fields(op)),
    (EntityType.SESSION, OperationKind.CREATE): lambda op: SessionCreate(
        **_session_fields(op), metadata=_data(op).get("metadata") or {}, ttl=op.ttl
    ),
    (EntityType.SESSION, OperationKind.UPDATE): lambda op: SessionUpdate(
        **_session_fields(op), metadata=_data(op).get("metadata") or {}
    ),
    (EntityType.SESSION, OperationKind.DELETE): lambda op: SessionDelete(**_session_fields(op)),
    (EntityType.MESSAGE, OperationKind.CREATE): lambda op: MessageCreate(
        **_message_fields(op),
        role=_data(op).get("role"),
        content=_data(op).get("content"),
        metadata=_data(op).get("metadata") or {},
    ),
    (EntityType.MESSAGE, OperationKind.UPDATE): lambda op: MessageUpdate(
        **_message_fields(op),
        role=_data(op).get("role"),
        content=_data(op).get("content"),
        metadata=_data(op).get("metadata") or {},
    ),
    (EntityType.MESSAGE, OperationKind.DELETE): lambda op: MessageDelete(**_message_fields(op)),
}


def parse_operation(op: BatchOperation) -> Variant:
    """Build the typed variant for a descriptor.

    Raises InvalidKeyError for malformed composite keys and pydantic's
    ValidationError for missing or mistyped data fields; both are ValueErrors.
    """
    return _REGISTRY[(op.type, op.operation)](op)
