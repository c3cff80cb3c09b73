"""
Plain value types passed between the presence store, the broadcast channels
and their consumers.

Wire shapes follow the presence row / broadcast envelope formats::

    {"document_id": 7, "user_id": "42", "field_name": "summary",
     "cursor_position": 12, "selection_start": null, "selection_end": null,
     "last_seen": "2024-05-01T10:00:00+00:00"}

    {"field_name": "summary", "content": "...", "user_id": "42",
     "timestamp": "2024-05-01T10:00:00+00:00"}
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict, Optional

from django.utils import timezone
from django.utils.dateparse import parse_datetime


def to_iso(value: datetime) -> str:
    """Serialize a datetime as ISO-8601, assuming UTC for naive values."""
    if timezone.is_naive(value):
        value = timezone.make_aware(value, dt_timezone.utc)
    return value.isoformat()


def from_iso(value: Any) -> datetime:
    """Parse an ISO-8601 string (or pass a datetime through) into an aware datetime."""
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = parse_datetime(str(value))
        if parsed is None:
            raise ValueError(f"Invalid ISO-8601 timestamp: {value!r}")
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed, dt_timezone.utc)
    return parsed


@dataclass(frozen=True)
class UserProfile:
    """Display snippet of the user behind a presence record."""

    full_name: Optional[str] = None
    initials: Optional[str] = None
    email: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"full_name": self.full_name, "initials": self.initials, "email": self.email}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserProfile":
        return cls(
            full_name=data.get("full_name"),
            initials=data.get("initials"),
            email=data.get("email"),
        )


@dataclass(frozen=True)
class PresenceRecord:
    """One user's cursor activity in one field of a document."""

    document_id: int
    user_id: str
    field_name: str
    cursor_position: int
    last_seen: datetime
    selection_start: Optional[int] = None
    selection_end: Optional[int] = None
    user: Optional[UserProfile] = field(default=None, compare=False)

    @property
    def key(self):
        """The storage uniqueness key."""
        return (self.document_id, self.user_id, self.field_name)

    def with_profile(self, profile: Optional[UserProfile]) -> "PresenceRecord":
        return replace(self, user=profile)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "user_id": self.user_id,
            "field_name": self.field_name,
            "cursor_position": self.cursor_position,
            "selection_start": self.selection_start,
            "selection_end": self.selection_end,
            "last_seen": to_iso(self.last_seen),
            "users": self.user.to_dict() if self.user else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PresenceRecord":
        profile = data.get("users")
        return cls(
            document_id=int(data["document_id"]),
            user_id=str(data["user_id"]),
            field_name=data["field_name"],
            cursor_position=int(data.get("cursor_position") or 0),
            selection_start=data.get("selection_start"),
            selection_end=data.get("selection_end"),
            last_seen=from_iso(data["last_seen"]),
            user=UserProfile.from_dict(profile) if profile else None,
        )


@dataclass(frozen=True)
class FieldUpdate:
    """Latest content of one field, as sent over the broadcast channel."""

    field_name: str
    content: str
    user_id: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field_name": self.field_name,
            "content": self.content,
            "user_id": self.user_id,
            "timestamp": to_iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldUpdate":
        return cls(
            field_name=data["field_name"],
            content=data["content"],
            user_id=str(data["user_id"]),
            timestamp=from_iso(data["timestamp"]),
        )
