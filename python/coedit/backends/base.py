"""
Abstract base class for presence backends.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..exceptions import ProfileLookupFailure
from ..records import PresenceRecord, UserProfile


def profile_for_user(user) -> UserProfile:
    """Build the display snippet for a Django user."""
    first = (getattr(user, "first_name", "") or "").strip()
    last = (getattr(user, "last_name", "") or "").strip()
    full_name = f"{first} {last}".strip() or None
    if first or last:
        initials = "".join(part[0] for part in (first, last) if part).upper()
    else:
        initials = user.get_username()[:2].upper() or None
    return UserProfile(
        full_name=full_name,
        initials=initials,
        email=getattr(user, "email", None) or None,
    )


def lookup_user_profiles(user_ids: Iterable[str]) -> Dict[str, UserProfile]:
    """Resolve profiles for ``user_ids`` from the Django user model in one query."""
    from django.contrib.auth import get_user_model

    ids = list(user_ids)
    if not ids:
        return {}
    try:
        users = list(get_user_model().objects.filter(pk__in=ids))
    except Exception as e:
        raise ProfileLookupFailure(f"User lookup failed: {e}") from e
    return {str(user.pk): profile_for_user(user) for user in users}


class PresenceBackend(ABC):
    """
    Abstract interface for presence row storage.

    Rows are unique on ``(document_id, user_id, field_name)``. Implementations
    translate driver errors into ``coedit.exceptions`` failures.
    """

    @abstractmethod
    def select_active(self, document_id: int, since: datetime) -> List[PresenceRecord]:
        """Return rows with ``last_seen`` newer than ``since``, newest first. Prunes the rest."""
        ...

    @abstractmethod
    def upsert(self, record: PresenceRecord) -> None:
        """Insert the row, or overwrite the row with the same key."""
        ...

    @abstractmethod
    def delete(self, document_id: int, user_id: str, keep_field_name: Optional[str] = None) -> int:
        """
        Delete a user's rows in a document. Returns count removed.

        With ``keep_field_name`` set, the row for that field survives.
        """
        ...

    @abstractmethod
    def cleanup_stale(self, document_id: int, since: datetime) -> int:
        """Remove rows with ``last_seen`` at or before ``since``. Returns count removed."""
        ...

    def fetch_profiles(self, user_ids: Iterable[str]) -> Dict[str, UserProfile]:
        """Resolve display profiles for many users at once. Missing users are absent."""
        return lookup_user_profiles(user_ids)

    def health_check(self) -> Dict[str, Any]:
        """Check backend health. Override for backend-specific checks."""
        return {"status": "healthy", "backend": self.__class__.__name__}
