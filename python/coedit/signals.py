"""Django signals emitted by coedit.

These signals allow host projects (metrics, audit trails) to observe
collaboration events without tight coupling.
"""

import logging

from django.dispatch import Signal

presence_changed = Signal()
"""
Sent after a presence row was written or deleted successfully.

Kwargs sent:
    sender      (type) — the PresenceStore class
    document_id (int)  — document whose roster changed
    action      (str)  — "upsert", "remove" or "remove_other_fields"
    user_id     (str)  — user whose rows changed
"""

collaboration_failure = Signal()
"""
Sent whenever a failure is logged and dropped instead of propagated.

Kwargs sent:
    sender      (type)               — class that caught the failure
    error       (CollaborationError) — the failure, one of coedit.exceptions
    operation   (str)                — e.g. "fetch_active_roster", "broadcast"
    document_id (int or None)
"""


def report_failure(logger, sender, error, operation, document_id=None, level=logging.ERROR):
    """Log a dropped failure on the caller's logger and announce it on ``collaboration_failure``."""
    logger.log(level, "%s failed: %s", operation, error)
    collaboration_failure.send_robust(
        sender=sender, error=error, operation=operation, document_id=document_id
    )
