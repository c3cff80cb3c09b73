"""
Database storage for presence rows (used by ``DatabasePresenceBackend``).
"""

from django.db import models

from .records import PresenceRecord


class EditorPresence(models.Model):
    """A user's cursor in one field of one document, refreshed on every keystroke."""

    document_id = models.BigIntegerField(db_index=True)
    user_id = models.CharField(max_length=255)
    field_name = models.CharField(max_length=255)
    cursor_position = models.PositiveIntegerField(default=0)
    selection_start = models.PositiveIntegerField(null=True, blank=True)
    selection_end = models.PositiveIntegerField(null=True, blank=True)
    last_seen = models.DateTimeField(db_index=True)

    class Meta:
        db_table = "coedit_editor_presence"
        constraints = [
            models.UniqueConstraint(
                fields=["document_id", "user_id", "field_name"],
                name="coedit_presence_unique_field",
            )
        ]
        ordering = ["-last_seen"]

    def __str__(self):
        return f"{self.user_id}@{self.document_id}:{self.field_name}"

    def to_record(self) -> PresenceRecord:
        return PresenceRecord(
            document_id=self.document_id,
            user_id=self.user_id,
            field_name=self.field_name,
            cursor_position=self.cursor_position,
            selection_start=self.selection_start,
            selection_end=self.selection_end,
            last_seen=self.last_seen,
        )
