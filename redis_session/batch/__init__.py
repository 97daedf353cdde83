"""Batched execution of create, update and delete descriptors."""

from .engine import BatchOperations
from .operations import (
    BatchItemResult,
    BatchOperation,
    BatchOutcome,
    BatchSummary,
    EntityType,
    OperationKind,
    parse_operation,
)

__all__ = [
    "BatchOperations",
    "BatchItemResult",
    "BatchOperation",
    "BatchOutcome",
    "BatchSummary",
    "EntityType",
    "OperationKind",
    "parse_operation",
]
