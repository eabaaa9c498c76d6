"""In-process document store.

Keeps documents in a dict and pushes the full ordered result set to every
subscriber after each write. Every call yields to the event loop once before
touching state, so concurrent mutations interleave the way network calls do.
Used by the test-suite and by ``provider = "memory"`` profiles.
"""

import asyncio
import copy
import itertools
import secrets
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from minibug.errors import NotFoundError, TransportError
from minibug.providers.base import Document, DocumentStore, OrderedQuery

logger = structlog.get_logger()

_CLOSED = object()


def _utcnow() -> datetime:
    return datetime.now(UTC)


class MemoryStore(DocumentStore):
    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._seq: dict[str, int] = {}
        self._counter = itertools.count()
        self._subscribers: list[tuple[OrderedQuery, asyncio.Queue]] = []
        self._failures: dict[tuple[str, str | None], Exception] = {}

    # ------------------------------------------------------------------
    # Failure injection
    # ------------------------------------------------------------------

    def fail_on(self, op: str, doc_id: str | None = None, error: Exception | None = None) -> None:
        """Make the next ``op`` ("create" | "update" | "delete") call raise.

        With ``doc_id`` only calls for that document fail.
        """
        self._failures[(op, doc_id)] = error or TransportError(f"{op} failed")

    def break_subscriptions(self, error: Exception | None = None) -> None:
        """Terminate every live subscription with ``error``."""
        err = error or TransportError("subscription lost")
        for _, queue in self._subscribers:
            queue.put_nowait(err)

    def _check(self, op: str, doc_id: str | None = None) -> None:
        err = self._failures.pop((op, doc_id), None) or self._failures.pop((op, None), None)
        if err is not None:
            raise err

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _snapshot(self, query: OrderedQuery) -> list[Document]:
        docs = self._collections.get(query.collection, {})

        def key(item: tuple[str, dict[str, Any]]) -> tuple[Any, int]:
            doc_id, fields = item
            return (fields.get(query.order_by), self._seq[doc_id])

        ordered = sorted(docs.items(), key=key, reverse=query.descending)
        return [Document(id=doc_id, fields=copy.deepcopy(fields)) for doc_id, fields in ordered]

    def _publish(self, collection: str) -> None:
        for query, queue in self._subscribers:
            if query.collection == collection:
                queue.put_nowait(self._snapshot(query))

    async def subscribe(self, query: OrderedQuery) -> AsyncIterator[list[Document]]:
        queue: asyncio.Queue = asyncio.Queue()
        entry = (query, queue)
        self._subscribers.append(entry)
        queue.put_nowait(self._snapshot(query))
        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self._subscribers.remove(entry)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_document(self, collection: str, fields: dict[str, Any]) -> str:
        await asyncio.sleep(0)
        self._check("create")
        doc_id = secrets.token_hex(10)
        now = self._clock()
        self._collections.setdefault(collection, {})[doc_id] = {
            **copy.deepcopy(fields),
            "createdAt": now,
            "updatedAt": now,
        }
        self._seq[doc_id] = next(self._counter)
        self._publish(collection)
        return doc_id

    async def update_document(self, collection: str, doc_id: str, patch: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        self._check("update", doc_id)
        doc = self._collections.get(collection, {}).get(doc_id)
        if doc is None:
            raise NotFoundError(doc_id)
        doc.update(copy.deepcopy(patch))
        doc["updatedAt"] = self._clock()
        self._publish(collection)

    async def delete_document(self, collection: str, doc_id: str) -> None:
        await asyncio.sleep(0)
        self._check("delete", doc_id)
        if self._collections.get(collection, {}).pop(doc_id, None) is None:
            logger.debug("delete_missing_document", doc_id=doc_id)
            return
        self._seq.pop(doc_id, None)
        self._publish(collection)

    async def close(self) -> None:
        for _, queue in self._subscribers:
            queue.put_nowait(_CLOSED)
