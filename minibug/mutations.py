"""Mutation API: every write to the issue collection goes through here.

Writes are not merged into the cache. The cache changes only when the store
pushes the resulting snapshot back, so callers must not expect a mutation to
be visible as soon as it returns.

``add_comment`` and the label helpers are read-modify-write: they read the
current sequence from the cache, extend it and write the whole sequence back.
Two clients doing this concurrently lose one of the writes. Moving to an
atomic array-append only has to touch ``_rewrite``.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict

from minibug.cache import IssueCache
from minibug.errors import MinibugError, NotFoundError, ValidationError
from minibug.models import (
    Comment,
    Issue,
    Priority,
    Status,
    add_label,
    distinct_labels,
    next_status,
    remove_label,
)
from minibug.providers.base import DocumentStore

logger = structlog.get_logger()

EDITABLE_FIELDS = frozenset({"title", "description", "status", "priority", "assignee", "labels", "comments"})
REQUIRED_FIELDS = ("title", "description")


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class BulkResult(BaseModel):
    """Per-id outcome of a bulk operation."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    succeeded: tuple[str, ...] = ()
    failed: dict[str, Exception] = {}

    @property
    def ok(self) -> bool:
        return not self.failed


def validate_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Check a new issue's fields; raises ValidationError before any remote call."""
    missing = [name for name in REQUIRED_FIELDS if not str(fields.get(name) or "").strip()]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}")
    return _to_wire(fields)


def _to_wire(patch: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(patch) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown or read-only field(s): {', '.join(sorted(unknown))}")
    wire: dict[str, Any] = {}
    for key, value in patch.items():
        match key:
            case "title" | "description":
                if not str(value or "").strip():
                    raise ValidationError(f"{key} cannot be empty")
                wire[key] = value
            case "status":
                wire[key] = _enum_value(Status, value)
            case "priority":
                wire[key] = _enum_value(Priority, value)
            case "labels":
                wire[key] = list(distinct_labels(value or ()))
            case "comments":
                wire[key] = [c.to_wire() if isinstance(c, Comment) else dict(c) for c in value]
            case _:
                wire[key] = value
    return wire


def _enum_value(enum_cls: type[Status] | type[Priority], value: Any) -> str:
    try:
        return enum_cls(value).value
    except ValueError as exc:
        valid = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {enum_cls.__name__.lower()} '{value}'. Valid: {valid}") from exc


class IssueMutations:
    def __init__(
        self,
        store: DocumentStore,
        cache: IssueCache,
        user_id: str,
        collection: str = "issues",
        clock_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._cache = cache
        self._user_id = user_id
        self._collection = collection
        self._clock_ms = clock_ms

    # ------------------------------------------------------------------
    # Single-item operations
    # ------------------------------------------------------------------

    async def create(self, fields: Mapping[str, Any]) -> str:
        """Create an issue and return the store-assigned id."""
        data = validate_fields(fields)
        doc = {
            "status": Status.OPEN.value,
            "priority": Priority.MEDIUM.value,
            **data,
            "assignee": data.get("assignee") or self._user_id,
            "labels": data.get("labels") or [],
            "comments": data.get("comments") or [],
        }
        try:
            issue_id = await self._store.create_document(self._collection, doc)
        except MinibugError as exc:
            logger.error("issue_create_failed", error=str(exc))
            raise
        logger.info("issue_created", issue_id=issue_id)
        return issue_id

    async def update(self, issue_id: str, patch: Mapping[str, Any]) -> None:
        wire = _to_wire(patch)
        if not wire:
            raise ValidationError("Nothing to update")
        try:
            await self._store.update_document(self._collection, issue_id, wire)
        except MinibugError as exc:
            logger.error("issue_update_failed", issue_id=issue_id, fields=sorted(wire), error=str(exc))
            raise
        logger.info("issue_updated", issue_id=issue_id, fields=sorted(wire))

    async def delete(self, issue_id: str) -> None:
        try:
            await self._store.delete_document(self._collection, issue_id)
        except MinibugError as exc:
            logger.error("issue_delete_failed", issue_id=issue_id, error=str(exc))
            raise
        logger.info("issue_deleted", issue_id=issue_id)

    async def change_status(self, issue_id: str, status: Status | str) -> None:
        await self.update(issue_id, {"status": status})

    async def advance_status(self, issue_id: str) -> Status:
        """Move the issue one step along Open → In-Progress → Review → Closed → Open."""
        new_status = next_status(self._cached(issue_id).status)
        await self.change_status(issue_id, new_status)
        return new_status

    async def add_comment(self, issue_id: str, text: str) -> Comment:
        text = text.strip()
        if not text:
            raise ValidationError("Comment cannot be empty")
        comment = Comment(author_id=self._user_id, text=text, created_at_ms=self._clock_ms())
        await self._rewrite(issue_id, "comments", lambda issue: [*issue.comments, comment])
        return comment

    async def add_label(self, issue_id: str, label: str) -> None:
        await self._rewrite(issue_id, "labels", lambda issue: add_label(issue.labels, label))

    async def remove_label(self, issue_id: str, label: str) -> None:
        await self._rewrite(issue_id, "labels", lambda issue: remove_label(issue.labels, label))

    def _cached(self, issue_id: str) -> Issue:
        issue = self._cache.get(issue_id)
        if issue is None:
            raise NotFoundError(issue_id)
        return issue

    async def _rewrite(self, issue_id: str, field: str, build: Callable[[Issue], Iterable[Any]]) -> None:
        # Read from the cache, write the whole sequence back. Last writer wins.
        value = list(build(self._cached(issue_id)))
        await self.update(issue_id, {field: value})

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    async def bulk_change_status(self, issue_ids: Iterable[str], status: Status | str) -> BulkResult:
        status = Status(_enum_value(Status, status))
        return await self._bulk("bulk_change_status", issue_ids, lambda i: self.change_status(i, status))

    async def bulk_delete(self, issue_ids: Iterable[str]) -> BulkResult:
        return await self._bulk("bulk_delete", issue_ids, self.delete)

    async def _bulk(self, op: str, issue_ids: Iterable[str], action: Callable[[str], Awaitable[Any]]) -> BulkResult:
        ids = list(dict.fromkeys(issue_ids))
        results = await asyncio.gather(*(action(i) for i in ids), return_exceptions=True)
        succeeded: list[str] = []
        failed: dict[str, Exception] = {}
        for issue_id, result in zip(ids, results):
            if isinstance(result, Exception):
                failed[issue_id] = result
            elif isinstance(result, BaseException):
                raise result
            else:
                succeeded.append(issue_id)
        if failed:
            logger.warning("bulk_partial_failure", op=op, total=len(ids), failed=sorted(failed))
        else:
            logger.info("bulk_completed", op=op, total=len(ids))
        return BulkResult(succeeded=tuple(succeeded), failed=failed)
