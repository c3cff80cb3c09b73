"""
Wiring of the collaboration services for a process.

A ``CollaborationHub`` owns one ``BroadcastChannelManager`` and the
``PresenceStore`` / ``ChangeNotifier`` built on it. Pass the hub (or its
parts) explicitly to consumers; ``get_hub()`` provides a lazily created
default for projects that only need one.
"""

import logging
from typing import Optional

from .broadcast import BroadcastChannelManager
from .presence import ChangeNotifier, PresenceStore
from .subscription import DocumentSubscription

logger = logging.getLogger(__name__)


class CollaborationHub:
    def __init__(
        self,
        backend=None,
        channel_layer=None,
        settle_delay: Optional[float] = None,
        staleness_horizon: Optional[float] = None,
    ):
        # One hub serves every connection in the process, so its channels
        # deliver local sends too and consumers filter by user.
        self.channels = BroadcastChannelManager(
            channel_layer=channel_layer, settle_delay=settle_delay, receive_own=True
        )
        self.store = PresenceStore(
            backend=backend, channels=self.channels, staleness_horizon=staleness_horizon
        )
        self.notifier = ChangeNotifier(self.store, self.channels)

    async def subscribe(self, document_id: int, initial_roster: bool = True) -> DocumentSubscription:
        """Open a typed event stream for a document."""
        subscription = DocumentSubscription(document_id, self.notifier, self.channels)
        return await subscription.open(initial_roster=initial_roster)

    async def close(self) -> None:
        """Close every channel this hub opened."""
        await self.channels.close_all()


_hub: Optional[CollaborationHub] = None


def get_hub() -> CollaborationHub:
    global _hub
    if _hub is None:
        _hub = CollaborationHub()
        logger.info("Initialized default collaboration hub")
    return _hub


def set_hub(hub: Optional[CollaborationHub]) -> None:
    """Replace the default hub (useful for testing)."""
    global _hub
    _hub = hub
