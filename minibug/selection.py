"""Selection state and bulk actions over it.

The pure transition functions work on frozensets of issue ids;
``SelectionController`` holds the current set and is registered as a cache
listener so ids that vanish from the cache are pruned before anyone else sees
the new snapshot.
"""

from collections.abc import Iterable

import structlog

from minibug.models import Issue, Status
from minibug.mutations import BulkResult, IssueMutations

logger = structlog.get_logger()


def toggle_selection(selected: frozenset[str], issue_id: str) -> frozenset[str]:
    return selected - {issue_id} if issue_id in selected else selected | {issue_id}


def select_all(filtered: Iterable[Issue]) -> frozenset[str]:
    """Select exactly the issues in the current filtered view, not the whole cache."""
    return frozenset(issue.id for issue in filtered)


def clear_selection() -> frozenset[str]:
    return frozenset()


def prune_selection(selected: frozenset[str], snapshot: Iterable[Issue]) -> frozenset[str]:
    return selected & {issue.id for issue in snapshot}


class SelectionController:
    def __init__(self, mutations: IssueMutations) -> None:
        self._mutations = mutations
        self._selected: frozenset[str] = frozenset()

    @property
    def selected(self) -> frozenset[str]:
        return self._selected

    def __len__(self) -> int:
        return len(self._selected)

    def is_selected(self, issue_id: str) -> bool:
        return issue_id in self._selected

    def toggle(self, issue_id: str) -> None:
        self._selected = toggle_selection(self._selected, issue_id)

    def select_all(self, filtered: Iterable[Issue]) -> None:
        self._selected = select_all(filtered)

    def clear(self) -> None:
        self._selected = clear_selection()

    def prune(self, snapshot: Iterable[Issue]) -> None:
        pruned = prune_selection(self._selected, snapshot)
        if pruned != self._selected:
            logger.debug("selection_pruned", removed=sorted(self._selected - pruned))
            self._selected = pruned

    async def bulk_change_status(self, status: Status | str) -> BulkResult:
        try:
            return await self._mutations.bulk_change_status(self._selected, status)
        finally:
            # Cleared whatever the outcome
            self.clear()

    async def bulk_delete(self) -> BulkResult:
        try:
            return await self._mutations.bulk_delete(self._selected)
        finally:
            self.clear()
