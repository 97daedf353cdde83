"""Exceptions raised inside the store layer.

Managers never let these escape: `crud.base.guarded` maps them to a failed
`OperationResult`. `RecordError` subclasses are expected outcomes and keep
their own message; everything else gets the failing operation's name prefixed.
"""


class StoreError(Exception):
    """Base class for store-layer failures."""


class StoreNotConnectedError(StoreError):
    """A primitive was issued before `StoreClient.connect()` completed."""


class InvalidKeyError(StoreError, ValueError):
    """An identity component cannot be encoded into the key space."""


class RecordError(StoreError):
    """Expected, recoverable outcome about a single record."""


class RecordNotFoundError(RecordError):
    """The primary key for a read, update or delete is absent."""


class DuplicateRecordError(RecordError):
    """A create targeted a primary key that already holds a value."""
