"""
Document Store Abstraction

Key/value document storage with transactional read-modify-write, the
only storage surface the rollup aggregator depends on.

- get/set for single documents, with top-level merge semantics
- run_transaction for optimistic read-modify-write with automatic retry
- SERVER_TIMESTAMP sentinel, replaced with the commit time on write
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import structlog
from prometheus_client import Counter

from order_rollup.exceptions import TransactionAborted, TransactionConflict

logger = structlog.get_logger(__name__)

TRANSACTION_RETRIES = Counter(
    "order_rollup_transaction_retries_total",
    "Document store transaction attempts that lost a race",
    ["reason"],
)

T = TypeVar("T")
DocumentKey = Tuple[str, str]


class _ServerTimestamp:
    """Placeholder for the commit time of a write"""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def merge_document(
    current: Optional[Dict[str, Any]],
    data: Dict[str, Any],
    merge: bool,
    committed_at: datetime,
) -> Dict[str, Any]:
    """
    Build the stored form of a write.

    With merge, top-level fields in data replace the stored ones and
    absent fields are preserved; without merge, data replaces the document.
    """
    document = copy.deepcopy(current) if merge and current else {}
    for field, value in data.items():
        if value is SERVER_TIMESTAMP:
            document[field] = committed_at.isoformat()
        else:
            document[field] = copy.deepcopy(value)
    return document


class Transaction(ABC):
    """
    Handle passed to a transaction callback.

    Reads are tracked for conflict detection; writes are buffered and
    committed atomically when the callback returns.
    """

    def __init__(self):
        self.writes: List[Tuple[str, str, Dict[str, Any], bool]] = []

    @abstractmethod
    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        """Read a document inside the transaction"""
        pass

    def set(self, collection: str, key: str, data: Dict[str, Any], merge: bool = True) -> None:
        """Buffer a write to be committed with the transaction"""
        self.writes.append((collection, key, dict(data), merge))


class DocumentStore(ABC):
    """
    Abstract document store.

    Subclasses implement a single optimistic attempt; this class owns
    the retry loop around it.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        attempt_timeout: Optional[float] = None,
        backoff_seconds: float = 0.02,
    ):
        self.max_attempts = max_attempts
        self.attempt_timeout = attempt_timeout
        self.backoff_seconds = backoff_seconds

    @abstractmethod
    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        """Read a document outside any transaction"""
        pass

    async def set(self, collection: str, key: str, data: Dict[str, Any], merge: bool = True) -> None:
        """Write a single document"""
        async def write(tx: Transaction) -> None:
            tx.set(collection, key, data, merge=merge)

        await self.run_transaction(write)

    @abstractmethod
    async def _attempt(self, callback: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run the callback once and commit, raising TransactionConflict on a lost race"""
        pass

    async def _before_commit(self, awaitable: Awaitable[T]) -> T:
        """
        Bound the pre-commit phase of an attempt by attempt_timeout.

        Covers reads, the callback and uncommitted statements. The commit
        is not bounded: a timeout here always means nothing was written.
        """
        if self.attempt_timeout:
            return await asyncio.wait_for(awaitable, self.attempt_timeout)
        return await awaitable

    async def run_transaction(
        self,
        callback: Callable[[Transaction], Awaitable[T]],
        max_attempts: Optional[int] = None,
    ) -> T:
        """
        Run a read-modify-write callback atomically.

        The callback may run several times, so it must not have side
        effects outside the transaction handle.

        Args:
            callback: Async function receiving a Transaction
            max_attempts: Override of the configured attempt limit

        Returns:
            The callback's return value from the committed attempt

        Raises:
            TransactionAborted: When every attempt lost a race
            asyncio.TimeoutError: When an attempt ran past attempt_timeout
                before committing; nothing was written and it is not retried
        """
        attempts = max_attempts or self.max_attempts
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            try:
                return await self._attempt(callback)
            except TransactionConflict as e:
                last_error = e
                TRANSACTION_RETRIES.labels(reason="conflict").inc()
                logger.debug(
                    "Transaction attempt failed, retrying",
                    attempt=attempt,
                    max_attempts=attempts,
                    error=str(e) or type(e).__name__,
                )
                if attempt < attempts:
                    await asyncio.sleep(self.backoff_seconds * (2 ** (attempt - 1)))

        raise TransactionAborted(attempts, last_error)


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class _MemoryTransaction(Transaction):
    def __init__(self, store: "MemoryDocumentStore"):
        super().__init__()
        self._store = store
        self.read_versions: Dict[DocumentKey, int] = {}

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        version, data = self._store._documents.get((collection, key), (0, None))
        self.read_versions.setdefault((collection, key), version)
        return copy.deepcopy(data)


class MemoryDocumentStore(DocumentStore):
    """
    In-process document store with per-document versions.

    Commits are serialized by a lock and rejected when any document read
    by the transaction has changed since it was read.

    Example:
        store = MemoryDocumentStore()
        await store.set("evento", "E1", {"clubId": "C1"})
        await store.run_transaction(callback)
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now, **kwargs):
        super().__init__(**kwargs)
        self._clock = clock
        self._documents: Dict[DocumentKey, Tuple[int, Dict[str, Any]]] = {}
        self._commit_lock = asyncio.Lock()
        self.commits = 0

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        _, data = self._documents.get((collection, key), (0, None))
        return copy.deepcopy(data)

    def version(self, collection: str, key: str) -> int:
        """Current version of a document, 0 when absent"""
        return self._documents.get((collection, key), (0, None))[0]

    async def _attempt(self, callback: Callable[[Transaction], Awaitable[T]]) -> T:
        tx = _MemoryTransaction(self)
        result = await self._before_commit(callback(tx))

        async with self._commit_lock:
            for (collection, key), version in tx.read_versions.items():
                if self.version(collection, key) != version:
                    raise TransactionConflict(collection, key)

            committed_at = self._clock()
            for collection, key, data, merge in tx.writes:
                version, current = self._documents.get((collection, key), (0, None))
                document = merge_document(current, data, merge, committed_at)
                self._documents[(collection, key)] = (version + 1, document)
            self.commits += 1

        return result
