"""
Exceptions raised inside the collaboration core.

None of these ever reach the host application: backends raise them, and the
presence store and channel manager catch, log and drop them. The taxonomy
exists so logs and the ``collaboration_failure`` signal say *what* degraded.
"""

from typing import Optional


class CollaborationError(Exception):
    """Base exception for collaboration errors."""

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint

    def __str__(self):
        if self.hint:
            return f"{self.message} ({self.hint})"
        return self.message


class FetchFailure(CollaborationError):
    """Presence rows could not be read. The roster degrades to empty."""


class ProfileLookupFailure(CollaborationError):
    """User profiles could not be resolved. Records keep a null profile."""


class UpsertFailure(CollaborationError):
    """A presence row could not be written."""


class DeleteFailure(CollaborationError):
    """Presence rows could not be removed."""


class BroadcastFailure(CollaborationError):
    """A field update could not be sent. The message is dropped."""


class SubscribeFailure(CollaborationError):
    """A broadcast channel could not join its group."""

    def __init__(self, channel_name: str, reason: str):
        super().__init__(
            f"Subscription to '{channel_name}' failed: {reason}",
            hint="the next broadcast or subscribe call creates a fresh channel",
        )
        self.channel_name = channel_name
