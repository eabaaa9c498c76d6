"""Filter criteria and the filter evaluator."""

from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from minibug.models import Issue, Priority, Status


class FilterCriteria(BaseModel):
    """Transient list filter. Empty fields impose no constraint."""

    model_config = ConfigDict(frozen=True)

    search: str = ""
    status: Status | None = None
    priority: Priority | None = None

    @field_validator("status", "priority", mode="before")
    @classmethod
    def _blank_is_none(cls, v: Any) -> Any:
        return None if v == "" else v

    @field_validator("search", mode="before")
    @classmethod
    def _none_is_blank(cls, v: Any) -> Any:
        return "" if v is None else v

    @property
    def is_active(self) -> bool:
        return bool(self.search or self.status or self.priority)


def matches(issue: Issue, criteria: FilterCriteria) -> bool:
    if criteria.search:
        needle = criteria.search.lower()
        if needle not in issue.title.lower() and needle not in issue.description.lower():
            return False
    if criteria.status and issue.status != criteria.status:
        return False
    if criteria.priority and issue.priority != criteria.priority:
        return False
    return True


def apply_filter(issues: Iterable[Issue], criteria: FilterCriteria) -> tuple[Issue, ...]:
    """Return the issues matching every non-empty criterion, in input order."""
    return tuple(issue for issue in issues if matches(issue, criteria))
