"""
Tests for DocumentSubscription and CollaborationHub
"""

import asyncio

import pytest

from coedit.broadcast import FIELD_UPDATE_EVENT
from coedit.hub import CollaborationHub, get_hub, set_hub
from coedit.records import FieldUpdate
from coedit.subscription import DocumentSubscription, FieldUpdateReceived, RosterChanged


@pytest.mark.asyncio
class TestDocumentSubscription:
    async def test_initial_roster_is_first_event(self, presence_backend, channel_layer):
        hub = CollaborationHub(backend=presence_backend, channel_layer=channel_layer, settle_delay=0.01)
        await hub.store.upsert_presence(7, "alice", "summary", 3)

        subscription = await hub.subscribe(7)
        event = await asyncio.wait_for(subscription.get(), timeout=1)

        assert isinstance(event, RosterChanged)
        assert event.document_id == 7
        assert [r.user_id for r in event.roster] == ["alice"]
        await subscription.close()
        await hub.close()

    async def test_without_initial_roster(self, presence_backend, channel_layer):
        hub = CollaborationHub(backend=presence_backend, channel_layer=channel_layer, settle_delay=0.01)
        subscription = await hub.subscribe(7, initial_roster=False)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(subscription.get(), timeout=0.05)

        await subscription.close()
        await hub.close()

    async def test_peer_events_arrive_in_order(self, presence_backend, channel_layer):
        local = CollaborationHub(backend=presence_backend, channel_layer=channel_layer, settle_delay=0.01)
        peer = CollaborationHub(backend=presence_backend, channel_layer=channel_layer, settle_delay=0.01)

        async with await local.subscribe(7, initial_roster=False) as events:
            await peer.store.upsert_presence(7, "bob", "summary", 2)
            roster_event = await asyncio.wait_for(events.get(), timeout=1)

            await peer.channels.broadcast(7, "summary", "Hi", user_id="bob")
            update_event = await asyncio.wait_for(events.get(), timeout=1)

        assert isinstance(roster_event, RosterChanged)
        assert [r.user_id for r in roster_event.roster] == ["bob"]
        assert isinstance(update_event, FieldUpdateReceived)
        assert update_event.update.content == "Hi"
        assert events.closed

        await local.close()
        await peer.close()

    async def test_iteration_ends_on_close(self, presence_backend, channel_layer):
        hub = CollaborationHub(backend=presence_backend, channel_layer=channel_layer, settle_delay=0.01)
        subscription = await hub.subscribe(7)

        async def consume():
            return [event async for event in subscription]

        consumer = asyncio.ensure_future(consume())
        await asyncio.sleep(0.02)
        await subscription.close()
        events = await asyncio.wait_for(consumer, timeout=1)

        assert len(events) == 1
        assert isinstance(events[0], RosterChanged)
        with pytest.raises(StopAsyncIteration):
            await subscription.get()
        await hub.close()

    async def test_close_detaches_only_own_listeners(self, presence_backend, channel_layer):
        hub = CollaborationHub(backend=presence_backend, channel_layer=channel_layer, settle_delay=0.01)
        first = await hub.subscribe(7, initial_roster=False)
        second = await hub.subscribe(7, initial_roster=False)

        await first.close()
        await first.close()

        channel = hub.channels.get_channel(7)
        assert channel.listener_count(FIELD_UPDATE_EVENT) == 1
        assert not channel.is_stale
        await second.close()
        await hub.close()

    async def test_full_queue_drops_oldest(self, presence_backend, channel_layer, caplog):
        hub = CollaborationHub(backend=presence_backend, channel_layer=channel_layer, settle_delay=0.01)
        subscription = DocumentSubscription(7, hub.notifier, hub.channels, max_queue=2)
        updates = [
            FieldUpdate("summary", text, "bob", timestamp=None) for text in ("one", "two", "three")
        ]

        for update in updates:
            subscription._on_update(update)

        received = [await subscription.get(), await subscription.get()]

        assert [e.update.content for e in received] == ["two", "three"]
        assert "Subscription queue full" in caplog.text
        await subscription.close()
        await hub.close()

    async def test_events_after_close_are_ignored(self, presence_backend, channel_layer):
        hub = CollaborationHub(backend=presence_backend, channel_layer=channel_layer, settle_delay=0.01)
        subscription = DocumentSubscription(7, hub.notifier, hub.channels, max_queue=4)
        await subscription.close()

        subscription._on_roster([])

        with pytest.raises(StopAsyncIteration):
            await subscription.get()
        await hub.close()


class TestDefaultHub:
    def test_get_hub_is_memoized(self):
        set_hub(None)

        assert get_hub() is get_hub()

    def test_set_hub(self, presence_backend):
        hub = CollaborationHub(backend=presence_backend)

        set_hub(hub)

        assert get_hub() is hub
        assert hub.store.channels is hub.channels
        assert hub.notifier.store is hub.store
