"""Tests for minibug.session."""

import httpx
import pytest

from minibug.errors import ConfigurationError
from minibug.identity import Identity, IdentityProvider, StaticIdentity
from minibug.models import Priority, Status
from minibug.session import Session

pytestmark = pytest.mark.asyncio


class _BrokenIdentity(IdentityProvider):
    async def sign_in(self) -> Identity:
        raise httpx.ConnectError("network down")


async def test_end_to_end(session, settle) -> None:
    issue_id = await session.mutations.create({"title": "Fix login bug", "description": "Users cannot log in"})
    issues = await settle(session.cache, lambda issues: any(i.id == issue_id for i in issues))
    created = next(i for i in issues if i.id == issue_id)
    assert created.status == Status.OPEN
    assert created.priority == Priority.MEDIUM

    await session.mutations.change_status(issue_id, "In-Progress")
    await settle(session.cache, lambda issues: issues[0].status == Status.IN_PROGRESS)
    session.set_filter(status="In-Progress")
    assert [i.id for i in session.filtered()] == [issue_id]

    await session.mutations.add_comment(issue_id, "Investigating")
    await settle(session.cache, lambda issues: len(issues[0].comments) == 1)
    assert session.cache.get(issue_id).comments[0].text == "Investigating"

    session.selection.toggle(issue_id)
    result = await session.mutations.bulk_delete([issue_id])
    assert result.ok
    await settle(session.cache, lambda issues: not issues)
    assert session.cache.get(issue_id) is None
    assert not session.selection.is_selected(issue_id)


async def test_identity_failure_is_configuration_error(store) -> None:
    factory_calls = []

    def factory(identity):
        factory_calls.append(identity)
        return store

    with pytest.raises(ConfigurationError, match="network down"):
        async with Session(factory, _BrokenIdentity()):
            pass
    assert factory_calls == []


async def test_empty_static_identity_rejected(store) -> None:
    with pytest.raises(ConfigurationError):
        await Session(lambda _identity: store, StaticIdentity("")).start()


async def test_identity_passed_to_store_factory(store) -> None:
    seen = []

    def factory(identity):
        seen.append(identity)
        return store

    async with Session(factory, StaticIdentity("user-9")) as session:
        assert session.identity.user_id == "user-9"
    assert seen == [Identity(user_id="user-9")]


async def test_selection_pruned_before_other_listeners(session, store, settle) -> None:
    keep = await session.mutations.create({"title": "keep", "description": "d"})
    drop = await session.mutations.create({"title": "drop", "description": "d"})
    await settle(session.cache, lambda issues: len(issues) == 2)
    session.selection.toggle(keep)
    session.selection.toggle(drop)

    seen_by_observer = []
    session.cache.add_listener(lambda issues: seen_by_observer.append(session.selection.selected))

    # Removed by another client
    await store.delete_document("issues", drop)
    await settle(session.cache, lambda issues: len(issues) == 1)

    assert session.selection.selected == {keep}
    assert seen_by_observer[-1] == {keep}


async def test_select_all_follows_filter(session, settle) -> None:
    high = await session.mutations.create({"title": "a", "description": "d", "priority": "High"})
    await session.mutations.create({"title": "b", "description": "d", "priority": "Low"})
    await settle(session.cache, lambda issues: len(issues) == 2)

    session.set_filter(priority="High")
    session.select_all()
    assert session.selection.selected == {high}

    session.clear_filter()
    assert not session.criteria.is_active
    assert len(session.filtered()) == 2


async def test_stats_follow_cache(session, settle) -> None:
    await session.mutations.create({"title": "a", "description": "d", "status": "Closed"})
    await session.mutations.create({"title": "b", "description": "d", "priority": "Critical"})
    await settle(session.cache, lambda issues: len(issues) == 2)
    stats = session.stats()
    assert stats.total == 2
    assert stats.completion_rate == 50
    assert stats.critical_count == 1


async def test_close_tears_down_subscription(store) -> None:
    session = Session(lambda _identity: store, StaticIdentity("user-1"))
    await session.start()
    await session.cache.wait_for()
    assert len(store._subscribers) == 1
    await session.close()
    assert store._subscribers == []
    # second close is a no-op
    await session.close()
