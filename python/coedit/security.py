"""
Log hygiene for user-controlled values.

Field names, user ids and document content arrive from clients. The filter
installed on the ``coedit`` logger strips control characters from string
arguments so they cannot forge extra log lines.
"""

import logging
import re

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
MAX_LOG_VALUE = 200


def sanitize_for_log(value, max_length: int = MAX_LOG_VALUE) -> str:
    """Return ``value`` as a single printable line, truncated to ``max_length``."""
    text = _CONTROL_CHARS_RE.sub("?", str(value))
    if len(text) > max_length:
        text = text[:max_length] + "..."
    return text


class LogSanitizerFilter(logging.Filter):
    """Sanitize string arguments of every record passing through."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.args, tuple):
            record.args = tuple(
                sanitize_for_log(arg) if isinstance(arg, str) else arg for arg in record.args
            )
        elif isinstance(record.args, dict):
            record.args = {
                key: sanitize_for_log(arg) if isinstance(arg, str) else arg
                for key, arg in record.args.items()
            }
        return True
