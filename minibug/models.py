"""Shared pydantic models: the contract between the store, the cache and the views."""

from collections.abc import Iterable
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from minibug.errors import ValidationError
from minibug.providers.base import Document


class Status(StrEnum):
    OPEN = "Open"
    IN_PROGRESS = "In-Progress"
    REVIEW = "Review"
    CLOSED = "Closed"


class Priority(StrEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


# Open → In-Progress → Review → Closed → Open
STATUS_FLOW: tuple[Status, ...] = (Status.OPEN, Status.IN_PROGRESS, Status.REVIEW, Status.CLOSED)

# Display grouping only; nothing compares priorities.
PRIORITY_ORDER: tuple[Priority, ...] = (Priority.CRITICAL, Priority.HIGH, Priority.MEDIUM, Priority.LOW)


def next_status(status: Status) -> Status:
    return STATUS_FLOW[(STATUS_FLOW.index(status) + 1) % len(STATUS_FLOW)]


def _coerce(enum_cls: type[StrEnum], value: Any, default: StrEnum) -> StrEnum:
    try:
        return enum_cls(value)
    except ValueError:
        return default


class Comment(BaseModel):
    """One entry of an issue's append-only comment sequence.

    Stored as ``{authorId, text, createdAtEpochMillis}``; documents written by
    older clients used ``userId``/``timestamp`` and are read as well.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    author_id: str = Field(
        validation_alias=AliasChoices("authorId", "userId", "author_id"),
        serialization_alias="authorId",
    )
    text: str
    created_at_ms: int = Field(
        validation_alias=AliasChoices("createdAtEpochMillis", "timestamp", "created_at_ms"),
        serialization_alias="createdAtEpochMillis",
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class Issue(BaseModel):
    """Normalized issue as held by the cache.

    Defaulting happens here, once, when a document enters the cache: a missing
    or unrecognised status reads as Open, priority as Medium, labels are
    de-duplicated in insertion order.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    description: str = ""
    status: Status = Status.OPEN
    priority: Priority = Priority.MEDIUM
    assignee: str | None = None
    labels: tuple[str, ...] = ()
    comments: tuple[Comment, ...] = ()
    created_at: datetime | None = None  # None while a server timestamp is pending
    updated_at: datetime | None = None

    @field_validator("title", "description", mode="before")
    @classmethod
    def _text_or_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("status", mode="before")
    @classmethod
    def _default_status(cls, v: Any) -> Status:
        return _coerce(Status, v, Status.OPEN)  # type: ignore[return-value]

    @field_validator("priority", mode="before")
    @classmethod
    def _default_priority(cls, v: Any) -> Priority:
        return _coerce(Priority, v, Priority.MEDIUM)  # type: ignore[return-value]

    @field_validator("labels", mode="before")
    @classmethod
    def _distinct_labels(cls, v: Any) -> tuple[str, ...]:
        return distinct_labels(v or ())

    @field_validator("comments", mode="before")
    @classmethod
    def _comment_list(cls, v: Any) -> tuple[Any, ...]:
        return tuple(c for c in v or () if isinstance(c, (dict, Comment)))

    @classmethod
    def from_document(cls, doc: Document) -> "Issue":
        f = doc.fields
        return cls(
            id=doc.id,
            title=f.get("title"),
            description=f.get("description"),
            status=f.get("status"),
            priority=f.get("priority"),
            assignee=f.get("assignee"),
            labels=f.get("labels"),
            comments=f.get("comments"),
            created_at=f.get("createdAt"),
            updated_at=f.get("updatedAt"),
        )


def distinct_labels(values: Iterable[Any]) -> tuple[str, ...]:
    """Drop blanks and repeats, keeping first-seen order."""
    labels: list[str] = []
    for label in values:
        if isinstance(label, str) and label.strip() and label not in labels:
            labels.append(label)
    return tuple(labels)


def add_label(labels: tuple[str, ...], label: str) -> tuple[str, ...]:
    label = label.strip()
    if not label:
        raise ValidationError("Label cannot be empty")
    if label in labels:
        raise ValidationError(f"Label '{label}' already present")
    return (*labels, label)


def remove_label(labels: tuple[str, ...], label: str) -> tuple[str, ...]:
    return tuple(lb for lb in labels if lb != label)
