"""
SQL Document Store

DocumentStore backed by the documents table. Transactions are
optimistic: every document read records its version, and writes
succeed only if that version is still current.
"""

import copy
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import structlog
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_rollup.database.models import DocumentRecord
from order_rollup.database.store import (
    DocumentKey,
    DocumentStore,
    T,
    Transaction,
    merge_document,
    utc_now,
)
from order_rollup.exceptions import TransactionConflict

logger = structlog.get_logger(__name__)

documents = DocumentRecord.__table__


async def _read(session: AsyncSession, collection: str, key: str) -> Tuple[int, Optional[Dict[str, Any]]]:
    result = await session.execute(
        select(documents.c.version, documents.c.data).where(
            documents.c.collection == collection,
            documents.c.document_id == key,
        )
    )
    row = result.first()
    if row is None:
        return 0, None
    return row.version, row.data


class _SqlTransaction(Transaction):
    def __init__(self, session: AsyncSession):
        super().__init__()
        self.session = session
        self.snapshots: Dict[DocumentKey, Tuple[int, Optional[Dict[str, Any]]]] = {}

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        if (collection, key) not in self.snapshots:
            self.snapshots[(collection, key)] = await _read(self.session, collection, key)
        _, data = self.snapshots[(collection, key)]
        return copy.deepcopy(data)


class SqlDocumentStore(DocumentStore):
    """
    Document store over an async SQLAlchemy session factory.

    Example:
        store = SqlDocumentStore(get_session_factory(), max_attempts=5)
        doc = await store.get("analytics_events", "E1")
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], **kwargs):
        super().__init__(**kwargs)
        self._session_factory = session_factory

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        async with self._session_factory() as session:
            _, data = await _read(session, collection, key)
            return data

    async def _stage(self, tx: _SqlTransaction, callback: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run the callback and issue its writes without committing"""
        session = tx.session
        result = await callback(tx)
        committed_at = utc_now()

        for collection, key, data, merge in tx.writes:
            if (collection, key) not in tx.snapshots:
                await tx.get(collection, key)
            version, current = tx.snapshots[(collection, key)]
            document = merge_document(current, data, merge, committed_at)

            if version == 0:
                try:
                    await session.execute(
                        insert(documents).values(
                            collection=collection,
                            document_id=key,
                            data=document,
                            version=1,
                            created_at=committed_at,
                            updated_at=committed_at,
                        )
                    )
                except IntegrityError as e:
                    logger.debug("Concurrent insert detected", error=str(e.orig))
                    raise TransactionConflict(collection, key) from e
            else:
                outcome = await session.execute(
                    update(documents)
                    .where(
                        documents.c.collection == collection,
                        documents.c.document_id == key,
                        documents.c.version == version,
                    )
                    .values(data=document, version=version + 1, updated_at=committed_at)
                )
                if outcome.rowcount != 1:
                    raise TransactionConflict(collection, key)
            tx.snapshots[(collection, key)] = (version + 1, document)

        written = {(collection, key) for collection, key, _, _ in tx.writes}
        for (collection, key), (version, _) in tx.snapshots.items():
            if (collection, key) in written:
                continue
            current_version, _ = await _read(session, collection, key)
            if current_version != version:
                raise TransactionConflict(collection, key)

        return result

    async def _attempt(self, callback: Callable[[Transaction], Awaitable[T]]) -> T:
        async with self._session_factory() as session:
            tx = _SqlTransaction(session)
            try:
                result = await self._before_commit(self._stage(tx, callback))
                await session.commit()
            except TransactionConflict:
                await session.rollback()
                raise

        return result
