"""Online/offline transitions and the retry hooks they fire."""

import pytest

from app.services.notifier import Notifier
from app.services.presence import PresenceService


class FakeScheduler:
    def __init__(self):
        self.online = []
        self.offline = []

    def on_user_online(self, user_id):
        self.online.append(user_id)

    def on_user_offline(self, user_id):
        self.offline.append(user_id)
        return True


@pytest.fixture
def presence():
    return PresenceService(Notifier(), FakeScheduler())


class TestConnections:
    @pytest.mark.asyncio
    async def test_only_the_first_connection_triggers_retries(self, db, create_user, presence):
        bob = await create_user("bob@example.com")

        assert await presence.connection_opened(db, bob.id) is True
        assert await presence.connection_opened(db, bob.id) is False

        assert presence.scheduler.online == [bob.id]
        assert await presence.is_recently_online(db, bob.id)

    @pytest.mark.asyncio
    async def test_last_close_goes_offline(self, db, create_user, presence):
        bob = await create_user("bob@example.com")
        await presence.connection_opened(db, bob.id)
        await presence.connection_opened(db, bob.id)

        assert await presence.connection_closed(db, bob.id) is False
        assert presence.scheduler.offline == []
        assert await presence.connection_closed(db, bob.id) is True

        assert presence.scheduler.offline == [bob.id]
        assert not await presence.is_recently_online(db, bob.id)

    @pytest.mark.asyncio
    async def test_reconnect_triggers_a_new_scan(self, db, create_user, presence):
        bob = await create_user("bob@example.com")

        await presence.connection_opened(db, bob.id)
        await presence.connection_closed(db, bob.id)
        await presence.connection_opened(db, bob.id)

        assert presence.scheduler.online == [bob.id, bob.id]

    @pytest.mark.asyncio
    async def test_row_left_online_by_a_previous_process_still_triggers_retries(
        self, db, create_user, mark_online, presence,
    ):
        """A fresh service owns no sockets, so the first connection is a transition"""
        bob = await create_user("bob@example.com")
        await mark_online(bob)

        assert await presence.connection_opened(db, bob.id) is True
        assert presence.scheduler.online == [bob.id]

    @pytest.mark.asyncio
    async def test_close_without_a_local_connection_is_not_a_transition(
        self, db, create_user, mark_online, presence,
    ):
        bob = await create_user("bob@example.com")
        await mark_online(bob)

        assert await presence.connection_closed(db, bob.id) is False
        assert presence.scheduler.offline == []
        assert not await presence.is_recently_online(db, bob.id)

    @pytest.mark.asyncio
    async def test_mark_all_offline_resets_every_row(self, db, create_user, mark_online, presence):
        bob = await create_user("bob@example.com")
        carol = await create_user("carol@example.com")
        await mark_online(bob)
        await mark_online(carol)
        await presence.connection_opened(db, bob.id)

        await presence.mark_all_offline(db)

        assert not await presence.is_recently_online(db, bob.id)
        assert not await presence.is_recently_online(db, carol.id)
        assert await presence.connection_opened(db, bob.id) is True

    @pytest.mark.asyncio
    async def test_status_changes_are_broadcast(self, db, create_user, presence, socket_factory):
        bob = await create_user("bob@example.com")
        watcher = socket_factory()
        await presence.notifier.connect("alice", watcher)

        await presence.connection_opened(db, bob.id)
        await presence.connection_closed(db, bob.id)
        await presence.notifier.drain()

        changes = [m["data"]["is_online"] for m in watcher.sent if m["event"] == "user-status-changed"]
        assert changes == [True, False]


class TestRecentlyOnline:
    @pytest.mark.asyncio
    async def test_unknown_user_is_offline(self, db, create_user, presence):
        bob = await create_user("bob@example.com")

        assert not await presence.is_recently_online(db, bob.id)

    @pytest.mark.asyncio
    async def test_stale_heartbeat_counts_as_offline(self, db, create_user, mark_online, presence):
        bob = await create_user("bob@example.com")
        carol = await create_user("carol@example.com")
        await mark_online(bob, seconds_ago=30)
        await mark_online(carol, seconds_ago=3600)

        assert await presence.is_recently_online(db, bob.id)
        assert not await presence.is_recently_online(db, carol.id)

    @pytest.mark.asyncio
    async def test_heartbeat_refreshes_last_seen(self, db, create_user, mark_online, presence):
        bob = await create_user("bob@example.com")
        await mark_online(bob, seconds_ago=3600)

        await presence.heartbeat(db, bob.id)

        assert await presence.is_recently_online(db, bob.id)


class TestPresenceMap:
    @pytest.mark.asyncio
    async def test_keyed_by_email(self, db, create_user, mark_online, presence):
        bob = await create_user("bob@example.com", "Bob")
        await mark_online(bob)

        presence_map = await presence.presence_map(db)

        assert list(presence_map) == ["bob@example.com"]
        assert presence_map["bob@example.com"]["is_online"] is True
        assert presence_map["bob@example.com"]["user"]["name"] == "Bob"
