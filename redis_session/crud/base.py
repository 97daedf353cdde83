"""Plumbing shared by the info, session and message managers."""

from __future__ import annotations

import functools
from typing import Awaitable, Callable, List, Sequence, Type, TypeVar

from pydantic import BaseModel, ValidationError

from redis_session.errors import RecordError
from redis_session.models import OperationResult
from redis_session.store_client import StoreClient
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="crud")

M = TypeVar("M", bound=BaseModel)


def guarded(action: str) -> Callable[[Callable[..., Awaitable[OperationResult]]], Callable[..., Awaitable[OperationResult]]]:
    """Turn exceptions escaping a manager coroutine into a failed OperationResult.

    Not-found and duplicate errors keep their message; anything else is
    reported as "Failed to <action>: <reason>".
    """

    def decorator(func: Callable[..., Awaitable[OperationResult]]) -> Callable[..., Awaitable[OperationResult]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> OperationResult:
            try:
                return await func(*args, **kwargs)
            except RecordError as exc:
                logger.debug("%s rejected: %s", action, exc)
                return OperationResult.fail(str(exc))
            except Exception as exc:
                logger.error("Failed to %s: %s", action, exc)
                return OperationResult.fail(f"Failed to {action}: {exc}")

        return wrapper

    return decorator


async def fetch_records(store: StoreClient, keys: Sequence[str], model: Type[M]) -> List[M]:
    """Batch-fetch `keys` and parse each value, skipping missing or unparseable ones.

    The result keeps the order of `keys`.
    """
    if not keys:
        return []
    records: List[M] = []
    for key, raw in zip(keys, await store.get_many(keys)):
        if raw is None:
            continue
        try:
            records.append(model.model_validate_json(raw))
        except ValidationError as exc:
            logger.warning("Skipping unparseable %s at %s: %s", model.__name__, key, exc)
    return records
