"""Shared test fixtures."""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from minibug.cache import IssueCache
from minibug.identity import StaticIdentity
from minibug.logging import configure_logging
from minibug.models import Comment, Issue, Priority, Status
from minibug.providers.memory import MemoryStore
from minibug.session import Session


@pytest.fixture(autouse=True, scope="session")
def quiet_logging():
    """Send structlog through stdlib at WARNING so CLI output stays clean."""
    configure_logging(level="WARNING")


class FakeClock:
    """Server clock for MemoryStore: every call advances one minute."""

    def __init__(self, start: datetime = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        value = self.now
        self.now += timedelta(minutes=1)
        return value


async def _settle(cache: IssueCache, predicate: Callable[[tuple[Issue, ...]], bool]) -> tuple[Issue, ...]:
    return await asyncio.wait_for(cache.wait_for(predicate), timeout=2)


@pytest.fixture
def settle():
    """Await until the cache shows a snapshot matching a predicate (2s timeout)."""
    return _settle


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest_asyncio.fixture
async def session(store: MemoryStore):
    async with Session(lambda _identity: store, StaticIdentity("user-1")) as s:
        await s.cache.wait_for()
        yield s


@pytest.fixture
def login_issue() -> Issue:
    return Issue(
        id="abc123",
        title="Fix login bug",
        description="Users cannot log in with SSO.",
        status=Status.IN_PROGRESS,
        priority=Priority.HIGH,
        assignee="user-1",
        labels=("bug", "auth"),
        comments=(Comment(author_id="user-2", text="Seeing this too", created_at_ms=1_773_133_200_000),),
        created_at=datetime(2026, 3, 8, 10, 0, tzinfo=UTC),
        updated_at=datetime(2026, 3, 9, 10, 0, tzinfo=UTC),
    )


@pytest.fixture
def make_issue() -> Callable[..., Issue]:
    counter = iter(range(1, 10_000))

    def _make(**fields) -> Issue:
        n = next(counter)
        fields.setdefault("id", f"issue-{n}")
        fields.setdefault("title", f"Issue {n}")
        fields.setdefault("description", f"Description {n}")
        return Issue(**fields)

    return _make
