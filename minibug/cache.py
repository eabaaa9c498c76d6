"""Local issue cache fed by the store subscription.

The cache has exactly one writer: the consumer task reading the store's
snapshot stream. Every snapshot replaces the whole contents. Listeners run
synchronously right after the replace, before any awaiting reader wakes up.
Documents that fail normalization are logged and left out of the snapshot.
"""

import asyncio
import contextlib
from collections.abc import AsyncIterator, Callable, Iterator

import pydantic
import structlog

from minibug.errors import SubscriptionError
from minibug.models import Issue
from minibug.providers.base import Document, DocumentStore, OrderedQuery

logger = structlog.get_logger()

Listener = Callable[[tuple[Issue, ...]], None]


class IssueCache:
    def __init__(self, store: DocumentStore, query: OrderedQuery) -> None:
        self._store = store
        self._query = query
        self._issues: tuple[Issue, ...] = ()
        self._by_id: dict[str, Issue] = {}
        self._listeners: list[Listener] = []
        self._stream: AsyncIterator[list[Document]] | None = None
        self._task: asyncio.Task | None = None
        self._updated = asyncio.Event()
        self._finished = False
        self.loading = True
        self.error: SubscriptionError | None = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> tuple[Issue, ...]:
        """Current issues, ``created_at`` descending (the subscription's order)."""
        return self._issues

    def get(self, issue_id: str) -> Issue | None:
        return self._by_id.get(issue_id)

    def ids(self) -> frozenset[str]:
        return frozenset(self._by_id)

    def __len__(self) -> int:
        return len(self._issues)

    def __iter__(self) -> Iterator[Issue]:
        return iter(self._issues)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    async def wait_for(self, predicate: Callable[[tuple[Issue, ...]], bool] = lambda _: True) -> tuple[Issue, ...]:
        """Wait until a delivered snapshot satisfies ``predicate``.

        Raises the cache's ``SubscriptionError`` if the feed fails first.
        """
        while True:
            if self.error is not None:
                raise self.error
            if not self.loading and predicate(self._issues):
                return self._issues
            if self._finished:
                raise SubscriptionError("Issue feed ended")
            await self._updated.wait()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("IssueCache already started")
        self._stream = self._store.subscribe(self._query)
        self._task = asyncio.create_task(self._consume(), name="issue-cache")

    async def close(self) -> None:
        """Stop consuming and close the subscription stream."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        if self._stream is not None:
            await self._stream.aclose()  # type: ignore[attr-defined]
            self._stream = None

    async def _consume(self) -> None:
        assert self._stream is not None
        try:
            async for docs in self._stream:
                self._replace(docs)
        except Exception as exc:
            self.error = SubscriptionError(f"Issue feed failed: {exc}")
            self.error.__cause__ = exc
            self.loading = False
            logger.error("subscription_failed", collection=self._query.collection, error=str(exc))
        else:
            logger.info("subscription_ended", collection=self._query.collection)
        self._finished = True
        self._signal()

    def _replace(self, docs: list[Document]) -> None:
        by_id: dict[str, Issue] = {}
        for doc in docs:
            if doc.id in by_id:
                logger.warning("duplicate_issue_in_snapshot", issue_id=doc.id)
                continue
            try:
                by_id[doc.id] = Issue.from_document(doc)
            except pydantic.ValidationError as exc:
                logger.warning("malformed_issue_skipped", issue_id=doc.id, error=str(exc))
        self._by_id = by_id
        self._issues = tuple(by_id.values())
        if self.loading:
            self.loading = False
            logger.info("cache_loaded", count=len(self._issues))
        else:
            logger.debug("cache_replaced", count=len(self._issues))
        for listener in self._listeners:
            try:
                listener(self._issues)
            except Exception:
                # A broken observer must not end the feed
                logger.exception("cache_listener_failed", listener=getattr(listener, "__qualname__", repr(listener)))
        self._signal()

    def _signal(self) -> None:
        event, self._updated = self._updated, asyncio.Event()
        event.set()
