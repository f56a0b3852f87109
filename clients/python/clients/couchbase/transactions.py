"""Multi-document transactions and bounded conflict retry.

``run_transaction`` runs a coroutine against a :class:`TransactionContext`
inside a Couchbase ACID transaction. Every read, replace and insert made
through the context commits or rolls back together.

``transactional`` wraps a whole atomic operation and re-runs it when the
store reports a write conflict, with a short randomized backoff. After the
last attempt the conflict surfaces as :class:`TransactionConflict`.
"""

import asyncio
import functools
import logging
import random
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from couchbase.exceptions import (
    CASMismatchException,
    CouchbaseException,
    DocumentNotFoundException,
    TransactionCommitAmbiguous,
    TransactionFailed,
)

from .config import get_cluster
from .keyspace import Keyspace

logger = logging.getLogger(__name__)

R = TypeVar("R")

CONFLICT_ERRORS = (CASMismatchException, TransactionFailed, TransactionCommitAmbiguous)

DEFAULT_MAX_ATTEMPTS = 3


class TransactionConflict(Exception):
    """Raised when an atomic operation keeps conflicting after all retries."""
    pass


class TransactionContext:
    """Document access bound to one transaction attempt.

    Documents must be read through the context before they can be replaced.
    """

    def __init__(self, attempt_ctx) -> None:
        self._ctx = attempt_ctx
        self._docs: Dict[Tuple[str, str], Any] = {}

    async def get(self, keyspace: Keyspace, key: str) -> Optional[dict]:
        collection = await keyspace.get_collection()
        try:
            doc = await self._ctx.get(collection, key)
        except DocumentNotFoundException:
            return None
        self._docs[(str(keyspace), key)] = doc
        return doc.content_as[dict]

    async def replace(self, keyspace: Keyspace, key: str, value: dict) -> None:
        doc = self._docs.get((str(keyspace), key))
        if doc is None:
            raise ValueError(f"Document {keyspace}/{key} must be read in this transaction before replace")
        self._docs[(str(keyspace), key)] = await self._ctx.replace(doc, value)

    async def insert(self, keyspace: Keyspace, key: str, value: dict) -> None:
        collection = await keyspace.get_collection()
        self._docs[(str(keyspace), key)] = await self._ctx.insert(collection, key, value)


async def run_transaction(logic: Callable[[TransactionContext], Awaitable[R]]) -> R:
    """Run *logic* in a transaction and return its result.

    The store may run *logic* more than once, so it must not have side
    effects outside the context. An exception raised by *logic* itself rolls
    the transaction back and is re-raised unchanged.
    """
    cluster = await get_cluster()
    outcome: Dict[str, Any] = {}

    async def _attempt(attempt_ctx) -> None:
        outcome.clear()
        try:
            outcome["result"] = await logic(TransactionContext(attempt_ctx))
        except CouchbaseException:
            raise
        except Exception as e:
            outcome["error"] = e
            raise

    try:
        await cluster.transactions.run(_attempt)
    except CouchbaseException:
        if "error" in outcome:
            raise outcome["error"] from None
        raise
    return outcome["result"]


def transactional(max_attempts: int = DEFAULT_MAX_ATTEMPTS, base_delay_ms: int = 20, jitter_ms: int = 30):
    """Retry the decorated coroutine on store conflicts, at most *max_attempts* times."""

    def decorator(fn: Callable[..., Awaitable[R]]) -> Callable[..., Awaitable[R]]:
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs) -> R:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await fn(*args, **kwargs)
                except CONFLICT_ERRORS as e:
                    if attempt == max_attempts:
                        raise TransactionConflict(
                            f"{fn.__name__} conflicted {max_attempts} times, giving up"
                        ) from e
                    delay_ms = base_delay_ms * attempt + random.uniform(0, jitter_ms)
                    logger.warning(
                        f"{fn.__name__}: write conflict (attempt {attempt}/{max_attempts}), "
                        f"retrying in {delay_ms:.0f}ms"
                    )
                    await asyncio.sleep(delay_ms / 1000)
            raise TransactionConflict(f"{fn.__name__}: max attempts exceeded")

        return wrapper

    return decorator
