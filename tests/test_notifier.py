"""WebSocket registry and event fan-out."""

import pytest

from app.services.notifier import Notifier


class TestConnections:
    @pytest.mark.asyncio
    async def test_connect_accepts_and_counts(self, socket_factory):
        notifier = Notifier()
        first, second = socket_factory(), socket_factory()

        assert await notifier.connect("bob", first) == 1
        assert await notifier.connect("bob", second) == 2

        assert first.accepted and second.accepted
        assert notifier.is_connected("bob")
        assert notifier.connection_count("bob") == 2

    @pytest.mark.asyncio
    async def test_disconnect_forgets_the_user_with_the_last_socket(self, socket_factory):
        notifier = Notifier()
        socket = socket_factory()
        await notifier.connect("bob", socket)

        assert notifier.disconnect("bob", socket) == 0
        assert not notifier.is_connected("bob")
        assert notifier.disconnect("bob", socket) == 0


class TestSendToUser:
    @pytest.mark.asyncio
    async def test_only_the_target_user_receives(self, socket_factory):
        notifier = Notifier()
        bob, carol = socket_factory(), socket_factory()
        await notifier.connect("bob", bob)
        await notifier.connect("carol", carol)

        accepted = await notifier.send_to_user("bob", "file-delivery", {"delivery_id": "d1"})

        assert accepted == 1
        assert bob.sent[0]["event"] == "file-delivery"
        assert bob.sent[0]["data"] == {"delivery_id": "d1"}
        assert "timestamp" in bob.sent[0]
        assert carol.sent == []

    @pytest.mark.asyncio
    async def test_broken_socket_is_dropped(self, socket_factory):
        notifier = Notifier()
        healthy, broken = socket_factory(), socket_factory(fail=True)
        await notifier.connect("bob", healthy)
        await notifier.connect("bob", broken)

        accepted = await notifier.send_to_user("bob", "file-delivery", {})

        assert accepted == 1
        assert notifier.connection_count("bob") == 1

    @pytest.mark.asyncio
    async def test_nobody_online(self):
        assert await Notifier().send_to_user("ghost", "file-delivery", {}) == 0


class TestEmit:
    @pytest.mark.asyncio
    async def test_broadcast_reaches_every_socket(self, socket_factory):
        notifier = Notifier()
        bob, carol = socket_factory(), socket_factory()
        await notifier.connect("bob", bob)
        await notifier.connect("carol", carol)

        notifier.emit("user-status-changed", {"user_id": "bob", "is_online": True})
        await notifier.drain()

        assert bob.events() == ["user-status-changed"]
        assert carol.events() == ["user-status-changed"]

    @pytest.mark.asyncio
    async def test_emit_never_raises_on_transport_errors(self, socket_factory):
        notifier = Notifier()
        broken = socket_factory(fail=True)
        await notifier.connect("bob", broken)

        notifier.emit("share-revoked", {"share_id": "s1"})
        await notifier.drain()

        assert not notifier.is_connected("bob")

    def test_emit_without_a_loop_is_dropped(self):
        notifier = Notifier()

        notifier.emit("share-revoked", {"share_id": "s1"})

        assert notifier._pending == set()
