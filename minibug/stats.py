"""Dashboard statistics derived from a cache snapshot."""

from collections import Counter
from collections.abc import Iterable, Sequence
from datetime import date, datetime, timedelta, tzinfo

from pydantic import BaseModel, ConfigDict

from minibug.models import PRIORITY_ORDER, STATUS_FLOW, Issue, Priority, Status

MS_PER_DAY = 86_400_000
HISTOGRAM_DAYS = 7


class DayCount(BaseModel):
    model_config = ConfigDict(frozen=True)

    day: date
    count: int


class DashboardStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    by_status: dict[Status, int]
    by_priority: dict[Priority, int]
    avg_resolution_days: int | None  # None: no closed issue to average over
    created_last_7_days: tuple[DayCount, ...]
    completion_rate: int  # percent
    critical_count: int


def average_resolution_days(issues: Iterable[Issue]) -> int | None:
    """Mean of updated_at - created_at over closed issues, truncated to whole days.

    Closed issues still waiting on a server timestamp are left out.
    """
    durations = [
        (issue.updated_at - issue.created_at) // timedelta(milliseconds=1)
        for issue in issues
        if issue.status == Status.CLOSED and issue.created_at is not None and issue.updated_at is not None
    ]
    if not durations:
        return None
    return sum(durations) // len(durations) // MS_PER_DAY


def creation_histogram(
    issues: Iterable[Issue],
    today: date | None = None,
    tz: tzinfo | None = None,
    days: int = HISTOGRAM_DAYS,
) -> tuple[DayCount, ...]:
    """Issues created per calendar day for the ``days`` days ending ``today``.

    Days are calendar days in ``tz`` (local time when None), ascending, with
    empty days included.
    """
    if today is None:
        today = datetime.now(tz).date()
    counts = Counter(issue.created_at.astimezone(tz).date() for issue in issues if issue.created_at is not None)
    window = [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
    return tuple(DayCount(day=day, count=counts.get(day, 0)) for day in window)


def completion_rate(closed: int, total: int) -> int:
    """closed / total as a percentage rounded half-up; 0 for an empty collection."""
    if total == 0:
        return 0
    return (closed * 200 + total) // (total * 2)


def compute_stats(issues: Sequence[Issue], today: date | None = None, tz: tzinfo | None = None) -> DashboardStats:
    by_status = Counter(issue.status for issue in issues)
    by_priority = Counter(issue.priority for issue in issues)
    total = len(issues)
    return DashboardStats(
        total=total,
        by_status={status: by_status.get(status, 0) for status in STATUS_FLOW},
        by_priority={priority: by_priority.get(priority, 0) for priority in PRIORITY_ORDER},
        avg_resolution_days=average_resolution_days(issues),
        created_last_7_days=creation_histogram(issues, today=today, tz=tz),
        completion_rate=completion_rate(by_status.get(Status.CLOSED, 0), total),
        critical_count=by_priority.get(Priority.CRITICAL, 0),
    )
