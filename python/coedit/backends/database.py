"""
Django ORM presence backend.

Stores rows in the ``coedit_editor_presence`` table (see ``coedit.models``),
so every process sharing the database sees the same roster. Requires
``coedit`` in INSTALLED_APPS and its migrations applied.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from django.db import DatabaseError

from ..exceptions import DeleteFailure, FetchFailure, UpsertFailure
from ..records import PresenceRecord
from .base import PresenceBackend

logger = logging.getLogger(__name__)


class DatabasePresenceBackend(PresenceBackend):
    """Presence rows in a relational table, unique on (document, user, field)."""

    @staticmethod
    def _model():
        from ..models import EditorPresence

        return EditorPresence

    def select_active(self, document_id: int, since: datetime) -> List[PresenceRecord]:
        try:
            self.cleanup_stale(document_id, since)
            rows = list(
                self._model()
                .objects.filter(document_id=document_id, last_seen__gt=since)
                .order_by("-last_seen")
            )
        except DatabaseError as e:
            raise FetchFailure(f"Presence query for document {document_id} failed: {e}") from e
        return [row.to_record() for row in rows]

    def upsert(self, record: PresenceRecord) -> None:
        try:
            self._model().objects.update_or_create(
                document_id=record.document_id,
                user_id=record.user_id,
                field_name=record.field_name,
                defaults={
                    "cursor_position": record.cursor_position,
                    "selection_start": record.selection_start,
                    "selection_end": record.selection_end,
                    "last_seen": record.last_seen,
                },
            )
        except DatabaseError as e:
            raise UpsertFailure(f"Presence write for document {record.document_id} failed: {e}") from e

    def delete(self, document_id: int, user_id: str, keep_field_name: Optional[str] = None) -> int:
        rows = self._model().objects.filter(document_id=document_id, user_id=user_id)
        if keep_field_name is not None:
            rows = rows.exclude(field_name=keep_field_name)
        try:
            removed, _ = rows.delete()
        except DatabaseError as e:
            raise DeleteFailure(f"Presence delete for document {document_id} failed: {e}") from e
        if removed:
            logger.debug("Removed %d presence rows for %s in %s", removed, user_id, document_id)
        return removed

    def cleanup_stale(self, document_id: int, since: datetime) -> int:
        removed, _ = (
            self._model().objects.filter(document_id=document_id, last_seen__lte=since).delete()
        )
        if removed:
            logger.debug("Cleaned %d stale presence rows from document %s", removed, document_id)
        return removed

    def health_check(self) -> Dict[str, Any]:
        try:
            total = self._model().objects.count()
        except DatabaseError as e:
            return {"status": "unhealthy", "backend": "database", "error": str(e)}
        return {"status": "healthy", "backend": "database", "total_rows": total}
