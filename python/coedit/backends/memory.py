"""
In-memory presence backend for development, tests and single-node deployments.
"""

import logging
from datetime import datetime
from threading import RLock
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..records import PresenceRecord, UserProfile
from .base import PresenceBackend

logger = logging.getLogger(__name__)

RowKey = Tuple[int, str, str]


class InMemoryPresenceBackend(PresenceBackend):
    """
    Thread-safe in-memory presence store.

    Data structure::

        _rows = {
            (42, "user_1", "summary"): PresenceRecord(...),
            ...
        }

    Profiles come from the ``profiles`` mapping given at construction (or
    added with ``register_profile``); unknown users resolve to no profile.

    Limitations:
        - Single-process only — other workers won't see this data.
        - Data lost on restart.
    """

    def __init__(self, profiles: Optional[Dict[str, UserProfile]] = None) -> None:
        self._rows: Dict[RowKey, PresenceRecord] = {}
        self._profiles: Dict[str, UserProfile] = dict(profiles or {})
        self._lock = RLock()

    def register_profile(self, user_id: str, profile: UserProfile) -> None:
        with self._lock:
            self._profiles[str(user_id)] = profile

    def select_active(self, document_id: int, since: datetime) -> List[PresenceRecord]:
        with self._lock:
            self.cleanup_stale(document_id, since)
            rows = [record for record in self._rows.values() if record.document_id == document_id]
        rows.sort(key=lambda record: record.last_seen, reverse=True)
        return rows

    def upsert(self, record: PresenceRecord) -> None:
        with self._lock:
            self._rows[record.key] = record.with_profile(None)
        logger.debug(
            "Presence %s/%s/%s at %d",
            record.document_id,
            record.user_id,
            record.field_name,
            record.cursor_position,
        )

    def delete(self, document_id: int, user_id: str, keep_field_name: Optional[str] = None) -> int:
        with self._lock:
            doomed = [
                key
                for key in self._rows
                if key[0] == document_id
                and key[1] == user_id
                and (keep_field_name is None or key[2] != keep_field_name)
            ]
            for key in doomed:
                del self._rows[key]
        return len(doomed)

    def cleanup_stale(self, document_id: int, since: datetime) -> int:
        with self._lock:
            stale = [
                key
                for key, record in self._rows.items()
                if key[0] == document_id and record.last_seen <= since
            ]
            for key in stale:
                del self._rows[key]
        if stale:
            logger.debug("Cleaned %d stale presence rows from document %s", len(stale), document_id)
        return len(stale)

    def fetch_profiles(self, user_ids: Iterable[str]) -> Dict[str, UserProfile]:
        with self._lock:
            return {uid: self._profiles[uid] for uid in user_ids if uid in self._profiles}

    def health_check(self) -> Dict[str, Any]:
        with self._lock:
            total = len(self._rows)
            documents = len({key[0] for key in self._rows})
        return {
            "status": "healthy",
            "backend": "memory",
            "total_rows": total,
            "total_documents": documents,
        }
