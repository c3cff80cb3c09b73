"""
Presence tracking for collaborative field editing.

Tracks which users are editing which fields of a document and where their
cursors are. Every keystroke refreshes a presence row; rows not refreshed
within the staleness horizon (30 seconds by default) drop out of the roster.

Example usage:

    store = PresenceStore(channels=manager)
    notifier = ChangeNotifier(store, manager)

    # Local user focuses a field and types
    await store.remove_other_fields(doc_id, user_id, "summary")
    await store.upsert_presence(doc_id, user_id, "summary", cursor_position=12)

    # Peers re-fetch the roster whenever any row of the document changes
    handle = await notifier.subscribe(doc_id, render_roster)

The roster keeps only each user's most recent row, so a user shows up in one
field at a time even if rows exist for several.

Every storage failure is logged and degrades the result (empty roster,
missing profiles, dropped write). Nothing here raises into the caller.
"""

import inspect
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from asgiref.sync import sync_to_async
from django.utils import timezone

from .broadcast import (
    PRESENCE_CHANGED_EVENT,
    BroadcastChannelManager,
    ChannelPurpose,
    ListenerHandle,
    SendStatus,
)
from .config import config
from .exceptions import (
    CollaborationError,
    DeleteFailure,
    FetchFailure,
    ProfileLookupFailure,
    UpsertFailure,
)
from .records import PresenceRecord
from .signals import presence_changed, report_failure

logger = logging.getLogger(__name__)

# Timeouts
STALENESS_HORIZON = 30  # seconds - rows older than this are not active


def collapse_roster(records: Iterable[PresenceRecord]) -> List[PresenceRecord]:
    """
    Reduce records to one per user, keeping the greatest ``last_seen``.

    A later record replaces an earlier one only if it is strictly newer;
    ties keep the record seen first. Users stay in first-seen order.
    """
    latest: Dict[str, PresenceRecord] = {}
    for record in records:
        existing = latest.get(record.user_id)
        if existing is None or record.last_seen > existing.last_seen:
            latest[record.user_id] = record
    return list(latest.values())


class PresenceStore:
    """
    Fetches and mutates presence rows through the configured backend.

    Nothing is cached between calls; each fetch is authoritative. Successful
    mutations are announced on the document's presence channel so every
    ``ChangeNotifier`` (in any process sharing the channel layer) refreshes.
    """

    def __init__(
        self,
        backend=None,
        channels: Optional[BroadcastChannelManager] = None,
        staleness_horizon: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._backend = backend
        self.channels = channels
        if staleness_horizon is None:
            staleness_horizon = config.get("staleness_horizon", STALENESS_HORIZON)
        self.staleness_horizon = timedelta(seconds=staleness_horizon)
        self._clock = clock or timezone.now

    @property
    def backend(self):
        if self._backend is None:
            from .backends.registry import get_presence_backend

            self._backend = get_presence_backend()
        return self._backend

    def _fail(self, kind, error: Exception, operation: str, document_id: int) -> None:
        if not isinstance(error, kind):
            if isinstance(error, CollaborationError):
                error = kind(error.message, hint=error.hint)
            else:
                error = kind(f"{type(error).__name__}: {error}")
        report_failure(logger, type(self), error, operation, document_id)

    async def fetch_active_roster(self, document_id: int) -> List[PresenceRecord]:
        """
        Get the active editors of a document, one record per user.

        Args:
            document_id: The document whose roster to read

        Returns:
            Records seen within the staleness horizon, newest first, each
            carrying the user's profile (or None if profiles were unavailable)
        """
        since = self._clock() - self.staleness_horizon
        try:
            rows = await sync_to_async(self.backend.select_active)(document_id, since)
        except Exception as e:
            self._fail(FetchFailure, e, "fetch_active_roster", document_id)
            return []

        if not rows:
            return []

        user_ids = list(dict.fromkeys(row.user_id for row in rows))
        try:
            profiles = await sync_to_async(self.backend.fetch_profiles)(user_ids)
        except Exception as e:
            self._fail(ProfileLookupFailure, e, "fetch_profiles", document_id)
            profiles = {}

        return collapse_roster(row.with_profile(profiles.get(row.user_id)) for row in rows)

    async def upsert_presence(
        self,
        document_id: int,
        user_id: str,
        field_name: str,
        cursor_position: int,
        selection_start: Optional[int] = None,
        selection_end: Optional[int] = None,
    ) -> None:
        """Insert or refresh the user's row for a field, stamping ``last_seen`` with now."""
        record = PresenceRecord(
            document_id=document_id,
            user_id=str(user_id),
            field_name=field_name,
            cursor_position=cursor_position,
            selection_start=selection_start,
            selection_end=selection_end,
            last_seen=self._clock(),
        )
        try:
            await sync_to_async(self.backend.upsert)(record)
        except Exception as e:
            self._fail(UpsertFailure, e, "upsert_presence", document_id)
            return
        await self._changed(document_id, "upsert", record.user_id)

    async def remove_presence(self, document_id: int, user_id: str) -> None:
        """Remove every row of a user who left the document."""
        try:
            removed = await sync_to_async(self.backend.delete)(document_id, str(user_id))
        except Exception as e:
            self._fail(DeleteFailure, e, "remove_presence", document_id)
            return
        if removed:
            await self._changed(document_id, "remove", str(user_id))

    async def remove_other_fields(self, document_id: int, user_id: str, keep_field_name: str) -> None:
        """Remove the user's rows for every field except ``keep_field_name`` (focus change)."""
        try:
            removed = await sync_to_async(self.backend.delete)(
                document_id, str(user_id), keep_field_name
            )
        except Exception as e:
            self._fail(DeleteFailure, e, "remove_other_fields", document_id)
            return
        if removed:
            await self._changed(document_id, "remove_other_fields", str(user_id))

    async def _changed(self, document_id: int, action: str, user_id: str) -> None:
        presence_changed.send_robust(
            sender=type(self), document_id=document_id, action=action, user_id=user_id
        )
        if self.channels is None:
            return
        status = await self.channels.publish(
            document_id,
            ChannelPurpose.PRESENCE,
            PRESENCE_CHANGED_EVENT,
            {"document_id": document_id, "action": action, "user_id": user_id},
        )
        if status is not SendStatus.OK:
            logger.warning("Presence change on document %s not published: %s", document_id, status.value)


class ChangeNotifier:
    """
    Re-fetches the roster whenever a presence row of the document changes.

    This is poll-on-notify: each change event triggers a full
    ``fetch_active_roster`` instead of applying a diff. Events missed during a
    disconnect are not replayed; the next change (or the staleness horizon)
    brings the roster back in line.
    """

    def __init__(self, store: PresenceStore, channels: BroadcastChannelManager):
        self.store = store
        self.channels = channels

    async def subscribe(
        self, document_id: int, on_roster_changed: Callable[[List[PresenceRecord]], Any]
    ) -> ListenerHandle:
        """
        Call ``on_roster_changed(roster)`` after every insert/update/delete.

        Args:
            document_id: The document to watch
            on_roster_changed: Plain callable or coroutine function

        Returns:
            Handle whose ``detach()`` stops this listener only
        """

        async def refresh(payload):
            logger.debug("Presence changed on document %s: %s", document_id, payload)
            roster = await self.store.fetch_active_roster(document_id)
            result = on_roster_changed(roster)
            if inspect.isawaitable(result):
                await result

        return await self.channels.listen(
            document_id, ChannelPurpose.PRESENCE, PRESENCE_CHANGED_EVENT, refresh
        )
