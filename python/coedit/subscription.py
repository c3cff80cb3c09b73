"""
Typed, cancellable event stream for one document.

``DocumentSubscription`` merges roster refreshes and field updates into a
single queue so one task per document can consume them in order of arrival::

    async with await hub.subscribe(doc_id) as events:
        async for event in events:
            if isinstance(event, RosterChanged):
                render_roster(event.roster)
            elif isinstance(event, FieldUpdateReceived):
                apply_update(event.update)

Closing the subscription detaches its own listeners only; the shared
broadcast channels stay open for other consumers.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Union

from .broadcast import BroadcastChannelManager, ListenerHandle
from .config import config
from .presence import ChangeNotifier
from .records import FieldUpdate, PresenceRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RosterChanged:
    document_id: int
    roster: List[PresenceRecord]


@dataclass(frozen=True)
class FieldUpdateReceived:
    document_id: int
    update: FieldUpdate


DocumentEvent = Union[RosterChanged, FieldUpdateReceived]

_CLOSED = object()


class DocumentSubscription:
    """Async iterator of ``RosterChanged`` / ``FieldUpdateReceived`` events."""

    def __init__(
        self,
        document_id: int,
        notifier: ChangeNotifier,
        channels: BroadcastChannelManager,
        max_queue: Optional[int] = None,
    ):
        self.document_id = document_id
        self._notifier = notifier
        self._channels = channels
        if max_queue is None:
            max_queue = int(config.get("subscription_queue_size", 256))
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._handles: List[ListenerHandle] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self, initial_roster: bool = True) -> "DocumentSubscription":
        """Attach listeners; optionally queue the current roster first."""
        self._handles.append(await self._notifier.subscribe(self.document_id, self._on_roster))
        self._handles.append(
            await self._channels.subscribe_to_updates(self.document_id, self._on_update)
        )
        if initial_roster:
            roster = await self._notifier.store.fetch_active_roster(self.document_id)
            self._on_roster(roster)
        return self

    def _on_roster(self, roster: List[PresenceRecord]) -> None:
        self._put(RosterChanged(self.document_id, roster))

    def _on_update(self, update: FieldUpdate) -> None:
        self._put(FieldUpdateReceived(self.document_id, update))

    def _put(self, event) -> None:
        if self._closed:
            return
        if self._queue.full():
            dropped = self._queue.get_nowait()
            logger.warning(
                "Subscription queue full on document %s, dropped %s",
                self.document_id,
                type(dropped).__name__,
            )
        self._queue.put_nowait(event)

    async def get(self) -> DocumentEvent:
        """Next event. Raises StopAsyncIteration once closed."""
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is _CLOSED:
            raise StopAsyncIteration
        return event

    def __aiter__(self):
        return self

    async def __anext__(self) -> DocumentEvent:
        return await self.get()

    async def close(self) -> None:
        """Detach this subscription's listeners and end iteration."""
        if self._closed:
            return
        for handle in self._handles:
            handle.detach()
        self._handles.clear()
        self._closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    async def __aenter__(self) -> "DocumentSubscription":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
