"""
Ephemeral per-document broadcast channels over the Channels layer.

A ``BroadcastChannel`` is one channel-layer group plus one reader task that
dispatches incoming messages to local listeners. Its lifecycle::

    CREATED -> SUBSCRIBING -> SUBSCRIBED -> CLOSED | ERRORED

Closed and errored channels are never reused: the manager evicts them on the
next demand and opens a fresh one, moving any surviving listeners across. A
channel whose reader fails is replaced after the settle delay while it
still has listeners.

``BroadcastChannelManager`` owns the cache of resident channels, keyed by
``(document_id, purpose)``. Pass one manager to everything that broadcasts or
listens for a document; it serializes channel creation per key so concurrent
callers share a single channel.

Delivery is at-most-once and unordered. Messages carry no sequence number, so
listeners cannot detect drops.
"""

import asyncio
import functools
import inspect
import logging
import re
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from channels.layers import get_channel_layer
from django.utils import timezone

from .config import config
from .exceptions import BroadcastFailure, SubscribeFailure
from .records import FieldUpdate
from .signals import report_failure

logger = logging.getLogger(__name__)

MESSAGE_TYPE = "coedit.broadcast"
FIELD_UPDATE_EVENT = "field_update"
PRESENCE_CHANGED_EVENT = "presence_changed"


class ChannelPurpose(str, Enum):
    PRESENCE = "presence"
    CONTENT = "content"


class ChannelState(str, Enum):
    CREATED = "created"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"
    CLOSED = "closed"
    ERRORED = "errored"


class SendStatus(str, Enum):
    OK = "ok"
    ERROR = "error"
    CLOSED = "closed"


_GROUP_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9\-_.]")


def channel_name_for(document_id: int, purpose: ChannelPurpose) -> str:
    """Logical channel name: ``document:{id}`` or ``document:{id}:updates``."""
    if purpose is ChannelPurpose.CONTENT:
        return f"document:{document_id}:updates"
    return f"document:{document_id}"


def group_name_for(channel_name: str) -> str:
    """Channels group names only allow ASCII alphanumerics, '-', '_' and '.'."""
    return f"coedit.{_GROUP_UNSAFE_RE.sub('-', channel_name)}"


def build_message(event: str, payload: Dict[str, Any], sender: Optional[str] = None) -> Dict[str, Any]:
    return {"type": MESSAGE_TYPE, "event": event, "payload": payload, "sender": sender}


class ListenerHandle:
    """Detachable registration of one callback on one channel event."""

    def __init__(self, channel: "BroadcastChannel", event: str, callback: Callable[[Any], Any]):
        self.channel = channel
        self.event = event
        self.callback = callback
        self._attached = True

    @property
    def attached(self) -> bool:
        return self._attached

    def detach(self) -> None:
        """Stop receiving events. The channel itself stays open for other listeners."""
        if self._attached:
            self.channel._remove_listener(self)
            self._attached = False

    def __repr__(self):
        return f"<ListenerHandle {self.channel.name}/{self.event} attached={self._attached}>"


class BroadcastChannel:
    """One channel-layer group with a reader task fanning messages out to listeners."""

    def __init__(
        self,
        name: str,
        channel_layer,
        receive_own: bool = False,
        on_error: Optional[Callable[["BroadcastChannel"], Any]] = None,
    ):
        self.name = name
        self.receive_own = receive_own
        self._on_error = on_error
        self.group = group_name_for(name)
        self.state = ChannelState.CREATED
        self._layer = channel_layer
        self._channel_name: Optional[str] = None
        self._listeners: Dict[str, List[ListenerHandle]] = {}
        self._reader: Optional[asyncio.Task] = None
        self._handshake_done = asyncio.Event()

    def __repr__(self):
        return f"<BroadcastChannel {self.name} {self.state.value}>"

    @property
    def is_stale(self) -> bool:
        return self.state in (ChannelState.CLOSED, ChannelState.ERRORED)

    def on(self, event: str, callback: Callable[[Any], Any]) -> ListenerHandle:
        """Register ``callback(payload)`` for ``event``. Coroutine functions are awaited."""
        handle = ListenerHandle(self, event, callback)
        self._listeners.setdefault(event, []).append(handle)
        return handle

    def _remove_listener(self, handle: ListenerHandle) -> None:
        handles = self._listeners.get(handle.event, [])
        if handle in handles:
            handles.remove(handle)

    def listener_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._listeners.get(event, []))
        return sum(len(handles) for handles in self._listeners.values())

    def adopt_listeners(self, other: "BroadcastChannel") -> int:
        """Move every listener of ``other`` onto this channel. Returns how many moved."""
        moved = 0
        for event, handles in other._listeners.items():
            for handle in handles:
                handle.channel = self
            self._listeners.setdefault(event, []).extend(handles)
            moved += len(handles)
        other._listeners.clear()
        return moved

    async def subscribe(self) -> bool:
        """
        Join the group and start reading. Returns True once subscribed.

        Failures are logged and leave the channel ERRORED.
        """
        if self.state is not ChannelState.CREATED:
            return self.state is ChannelState.SUBSCRIBED

        self.state = ChannelState.SUBSCRIBING
        logger.debug("Subscribing %s", self.name)
        try:
            if self._layer is None:
                raise RuntimeError("no channel layer configured (check CHANNEL_LAYERS)")
            self._channel_name = await self._layer.new_channel()
            await self._layer.group_add(self.group, self._channel_name)
        except Exception as e:
            self.state = ChannelState.ERRORED
            self._handshake_done.set()
            report_failure(
                logger, type(self), SubscribeFailure(self.name, str(e)), "subscribe"
            )
            return False

        if self.state is not ChannelState.SUBSCRIBING:
            # Closed while the handshake was in flight
            try:
                await self._layer.group_discard(self.group, self._channel_name)
            except Exception as e:
                logger.warning("Error leaving group for %s: %s", self.name, e)
            return False

        self.state = ChannelState.SUBSCRIBED
        self._reader = asyncio.ensure_future(self._read())
        self._handshake_done.set()
        logger.debug("Subscribed %s as %s", self.name, self._channel_name)
        return True

    async def wait_subscribed(self, timeout: float) -> bool:
        """
        Wait for the subscription handshake to finish, at most ``timeout`` seconds.

        The bound is a settle delay: if no confirmation arrives the caller
        proceeds anyway and the send may be dropped. A failed or closed
        channel returns False at once.
        """
        if self.state is ChannelState.SUBSCRIBED:
            return True
        if self.is_stale:
            return False
        try:
            await asyncio.wait_for(self._handshake_done.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return self.state is ChannelState.SUBSCRIBED

    async def send(self, event: str, payload: Dict[str, Any]) -> SendStatus:
        """Fire-and-forget group send. Never raises."""
        if self.is_stale:
            return SendStatus.CLOSED
        try:
            await self._layer.group_send(self.group, build_message(event, payload, self._channel_name))
        except Exception as e:
            logger.debug("Send on %s failed: %s", self.name, e)
            return SendStatus.ERROR
        return SendStatus.OK

    async def close(self) -> None:
        """Stop the reader, leave the group and drop all listeners."""
        if self.state is ChannelState.CLOSED:
            return
        self.state = ChannelState.CLOSED
        self._handshake_done.set()

        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        elif reader is not None:
            reader.cancel()

        if self._channel_name is not None and self._layer is not None:
            try:
                await self._layer.group_discard(self.group, self._channel_name)
            except Exception as e:
                logger.warning("Error leaving group for %s: %s", self.name, e)
        for handles in self._listeners.values():
            for handle in handles:
                handle._attached = False
        self._listeners.clear()
        logger.debug("Closed %s", self.name)

    async def _read(self) -> None:
        try:
            while True:
                message = await self._layer.receive(self._channel_name)
                await self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self.state is ChannelState.SUBSCRIBED:
                self.state = ChannelState.ERRORED
                logger.error("Broadcast channel %s errored: %s", self.name, e)
                if self._on_error is not None:
                    self._on_error(self)

    async def _dispatch(self, message: Dict[str, Any]) -> None:
        if message.get("type") != MESSAGE_TYPE:
            return
        # A peer never hears its own broadcasts
        sender = message.get("sender")
        if not self.receive_own and sender is not None and sender == self._channel_name:
            return

        event = message.get("event")
        payload = message.get("payload")
        for handle in list(self._listeners.get(event, ())):
            try:
                result = handle.callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Error in %s listener on %s", event, self.name)


class BroadcastChannelManager:
    """
    Cache of resident broadcast channels, at most one per (document, purpose).

    Example::

        manager = BroadcastChannelManager()
        handle = await manager.subscribe_to_updates(7, on_update)
        await manager.broadcast(7, "summary", "new text", user_id="42")
        handle.detach()
        await manager.close_channel(7)
    """

    def __init__(
        self,
        channel_layer=None,
        settle_delay: Optional[float] = None,
        receive_own: bool = False,
    ):
        self._layer = channel_layer
        self.receive_own = receive_own
        self.settle_delay = (
            settle_delay if settle_delay is not None else float(config.get("settle_delay", 0.1))
        )
        self._channels: Dict[Tuple[int, ChannelPurpose], BroadcastChannel] = {}
        self._pending: Dict[Tuple[int, ChannelPurpose], asyncio.Future] = {}

    @property
    def channel_layer(self):
        if self._layer is None:
            self._layer = get_channel_layer(config.get("channel_layer", "default"))
        return self._layer

    def get_channel(
        self, document_id: int, purpose: ChannelPurpose = ChannelPurpose.CONTENT
    ) -> Optional[BroadcastChannel]:
        """Return the cached channel without creating one."""
        return self._channels.get((document_id, purpose))

    async def channel(
        self, document_id: int, purpose: ChannelPurpose = ChannelPurpose.CONTENT
    ) -> BroadcastChannel:
        """Return the resident channel for the key, opening a fresh one if absent or stale."""
        key = (document_id, purpose)
        pending = self._pending.get(key)
        if pending is None or pending.done():
            cached = self._channels.get(key)
            if cached is not None and not cached.is_stale:
                return cached
            self._open(key)
        return await asyncio.shield(self._pending[key])

    def _open(self, key: Tuple[int, ChannelPurpose], delay: float = 0.0) -> BroadcastChannel:
        # Caches the new channel and memoizes its start-up before any await,
        # so a concurrent caller finds the in-flight task instead of racing.
        stale = self._channels.pop(key, None)
        channel = BroadcastChannel(
            channel_name_for(*key),
            self.channel_layer,
            self.receive_own,
            on_error=functools.partial(self._reader_failed, key),
        )
        if stale is not None:
            # Listeners outlive the channel they were attached to
            moved = channel.adopt_listeners(stale)
            if moved:
                logger.debug("Moved %d listeners from %s to a fresh channel", moved, stale)
        self._channels[key] = channel
        task = asyncio.ensure_future(self._start(channel, stale, delay))
        self._pending[key] = task
        task.add_done_callback(functools.partial(self._settled, key))
        return channel

    def _settled(self, key, task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]

    def _reader_failed(self, key: Tuple[int, ChannelPurpose], channel: BroadcastChannel) -> None:
        """Replace a channel whose reader died, so its listeners keep receiving."""
        if self._channels.get(key) is not channel or not channel.listener_count():
            return
        logger.warning(
            "Reopening %s for %d listeners in %ss", channel.name, channel.listener_count(), self.settle_delay
        )
        self._open(key, delay=self.settle_delay)

    async def _start(
        self, channel: BroadcastChannel, stale: Optional[BroadcastChannel], delay: float = 0.0
    ) -> BroadcastChannel:
        if stale is not None:
            logger.debug("Evicting %s", stale)
            await stale.close()
        if delay:
            await asyncio.sleep(delay)
        await channel.subscribe()
        await channel.wait_subscribed(self.settle_delay)
        return channel

    async def broadcast(self, document_id: int, field_name: str, content: str, user_id: str) -> None:
        """
        Send the latest content of a field to every peer on the document.

        Best effort: a failed or non-OK send is logged and dropped.
        """
        update = FieldUpdate(
            field_name=field_name,
            content=content,
            user_id=str(user_id),
            timestamp=timezone.now(),
        )
        try:
            channel = await self.channel(document_id)
            if channel.state is ChannelState.SUBSCRIBING:
                await channel.wait_subscribed(self.settle_delay)
            status = await channel.send(FIELD_UPDATE_EVENT, update.to_dict())
        except Exception as e:
            report_failure(
                logger,
                type(self),
                BroadcastFailure(f"Broadcast of {field_name!r} to document {document_id} failed: {e}"),
                "broadcast",
                document_id,
            )
            return

        if status is not SendStatus.OK:
            logger.warning(
                "Broadcast status: %s (document %s, field %s)", status.value, document_id, field_name
            )

    async def listen(
        self,
        document_id: int,
        purpose: ChannelPurpose,
        event: str,
        callback: Callable[[Any], Any],
    ) -> ListenerHandle:
        """Attach ``callback`` to the shared channel, opening it if needed."""
        key = (document_id, purpose)
        cached = self._channels.get(key)
        if cached is not None and not cached.is_stale:
            return cached.on(event, callback)

        channel = self._open(key)
        handle = channel.on(event, callback)
        await asyncio.shield(self._pending[key])
        if not handle.attached:
            logger.warning("%s closed before the %s listener attached", channel.name, event)
        return handle

    async def subscribe_to_updates(
        self, document_id: int, on_update: Callable[[FieldUpdate], Any]
    ) -> ListenerHandle:
        """
        Call ``on_update(FieldUpdate)`` for every field update peers broadcast.

        Local consumers share one channel per document; detaching the returned
        handle never closes it.
        """

        def deliver(payload):
            try:
                update = FieldUpdate.from_dict(payload)
            except (KeyError, TypeError, ValueError):
                logger.warning("Dropping malformed field update on document %s", document_id)
                return None
            logger.debug("Received broadcast on document %s: %s", document_id, update.field_name)
            return on_update(update)

        return await self.listen(document_id, ChannelPurpose.CONTENT, FIELD_UPDATE_EVENT, deliver)

    async def publish(
        self, document_id: int, purpose: ChannelPurpose, event: str, payload: Dict[str, Any]
    ) -> SendStatus:
        """Send to a document's group without holding a channel (no self-filtering)."""
        layer = self.channel_layer
        if layer is None:
            return SendStatus.ERROR
        group = group_name_for(channel_name_for(document_id, purpose))
        try:
            await layer.group_send(group, build_message(event, payload))
        except Exception as e:
            logger.warning("Publish of %s to %s failed: %s", event, group, e)
            return SendStatus.ERROR
        return SendStatus.OK

    async def close_channel(
        self, document_id: int, purpose: ChannelPurpose = ChannelPurpose.CONTENT
    ) -> None:
        """Unsubscribe and evict the cached channel. The only way a channel is force-closed."""
        key = (document_id, purpose)
        channel = self._channels.pop(key, None)
        self._pending.pop(key, None)
        if channel is not None:
            await channel.close()

    async def close_all(self) -> None:
        for document_id, purpose in list(self._channels):
            await self.close_channel(document_id, purpose)
