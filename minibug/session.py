"""One signed-in user's view of the issue collection.

A session signs in, opens the store, starts the cache subscription and wires
the selection pruner onto the cache. Closing it tears the subscription down::

    async with Session(lambda identity: MemoryStore(), StaticIdentity("u1")) as session:
        await session.cache.wait_for()
        issue_id = await session.mutations.create({"title": "...", "description": "..."})
"""

from collections.abc import Callable
from datetime import date, tzinfo
from typing import Any

import structlog

from minibug.cache import IssueCache
from minibug.errors import ConfigurationError
from minibug.filters import FilterCriteria, apply_filter
from minibug.identity import Identity, IdentityProvider
from minibug.models import Issue
from minibug.mutations import IssueMutations
from minibug.providers.base import DocumentStore, OrderedQuery
from minibug.selection import SelectionController
from minibug.stats import DashboardStats, compute_stats

logger = structlog.get_logger()

StoreFactory = Callable[[Identity], DocumentStore]


class Session:
    def __init__(
        self,
        store_factory: StoreFactory,
        identity_provider: IdentityProvider,
        collection: str = "issues",
    ) -> None:
        self._store_factory = store_factory
        self._identity_provider = identity_provider
        self._collection = collection
        self._store: DocumentStore | None = None
        self.identity: Identity | None = None
        self.cache: IssueCache
        self.mutations: IssueMutations
        self.selection: SelectionController
        self.criteria = FilterCriteria()

    async def start(self) -> "Session":
        try:
            self.identity = await self._identity_provider.sign_in()
        except ConfigurationError:
            raise
        except Exception as exc:
            raise ConfigurationError(f"Could not establish an identity: {exc}") from exc

        self._store = self._store_factory(self.identity)
        self.cache = IssueCache(self._store, OrderedQuery(collection=self._collection))
        self.mutations = IssueMutations(self._store, self.cache, self.identity.user_id, self._collection)
        self.selection = SelectionController(self.mutations)
        # Registered first: pruning must precede every other observer
        self.cache.add_listener(self.selection.prune)
        self.cache.start()
        logger.info("session_started", user_id=self.identity.user_id, collection=self._collection)
        return self

    async def close(self) -> None:
        if self._store is None:
            return
        await self.cache.close()
        await self._store.close()
        self._store = None
        logger.info("session_closed")

    async def __aenter__(self) -> "Session":
        return await self.start()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    def set_filter(self, **changes: Any) -> FilterCriteria:
        self.criteria = FilterCriteria.model_validate({**self.criteria.model_dump(), **changes})
        return self.criteria

    def clear_filter(self) -> None:
        self.criteria = FilterCriteria()

    def filtered(self) -> tuple[Issue, ...]:
        return apply_filter(self.cache.snapshot, self.criteria)

    def select_all(self) -> None:
        self.selection.select_all(self.filtered())

    def stats(self, today: date | None = None, tz: tzinfo | None = None) -> DashboardStats:
        return compute_stats(self.cache.snapshot, today=today, tz=tz)
