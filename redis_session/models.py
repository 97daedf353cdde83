"""Pydantic schemas for stored records, listings and the uniform result envelope.

Records are stored in Redis as the JSON dump of these models. No store access
happens here.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class InfoItem(BaseModel):
    """Opaque category/key/value record with optional expiry."""
    category: str
    key: str
    data: str
    ttl: Optional[int] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Session(BaseModel):
    """Conversation context; owns the messages stored under its id."""
    session_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    ttl: Optional[int] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Message(BaseModel):
    """Single message within a session."""
    message_id: str
    session_id: str
    role: str
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Page(BaseModel, Generic[T]):
    """One slice of an ordered listing."""
    items: List[T] = Field(default_factory=list)
    total: int = 0
    limit: int
    offset: int
    has_more: bool = False


class CategorySummary(BaseModel):
    category: str
    count: int
    keys: List[str]


class SessionStats(BaseModel):
    total: int = 0
    active: int = 0
    expired: int = 0


class StoreStats(BaseModel):
    info_count: int = 0
    session_count: int = 0
    message_count: int = 0
    total_keys: int = 0


class CleanupReport(BaseModel):
    cleaned: int = 0
    errors: int = 0


class OperationResult(BaseModel, Generic[T]):
    """Uniform envelope returned by every manager method.

    Failures are data: `success` is False and `error` holds a readable message.
    """
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    count: Optional[int] = None

    @classmethod
    def ok(cls, data: Any = None, count: Optional[int] = None) -> "OperationResult":
        return cls(success=True, data=data, count=count)

    @classmethod
    def fail(cls, error: str) -> "OperationResult":
        return cls(success=False, error=error)
